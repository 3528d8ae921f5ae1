"""
Admin API - staff-facing JSON endpoints

Domain errors raised here are turned into {error, message} responses by
the app-level FlowStackError handler.
"""

from flask import Blueprint, current_app, jsonify, request

from services.common.errors import ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError("Request body must be JSON")
    return data


def _int_arg(name, default, minimum=1, maximum=None):
    raw = request.args.get(name, default)
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    value = max(value, minimum)
    return min(value, maximum) if maximum else value


# --- Conversations ---

@api_bp.route('/businesses/<int:business_id>/conversations', methods=['GET'])
def list_conversations(business_id):
    """Paginated conversations of one tenant, most recently active first"""
    conversation_service = current_app.services.get('conversation')
    page = _int_arg('page', 1)
    per_page = _int_arg('per_page', 50, maximum=100)
    result = conversation_service.list_conversations(
        business_id, page=page, per_page=per_page, state=request.args.get('state')
    )
    return jsonify({
        'conversations': [c.to_dict() for c in result.items],
        'total': result.total,
        'page': result.page,
        'per_page': result.per_page,
        'pages': result.pages,
        'has_next': result.has_next,
    })


@api_bp.route('/conversations/<int:conversation_id>', methods=['GET'])
def get_conversation(conversation_id):
    conversation_service = current_app.services.get('conversation')
    return jsonify(conversation_service.get_conversation_details(conversation_id))


@api_bp.route('/conversations/<int:conversation_id>/transition', methods=['POST'])
def transition_conversation(conversation_id):
    """Manually move a conversation, e.g. to CLOSED"""
    data = _json_body()
    target_state = data.get('target_state')
    if not target_state:
        raise ValidationError("target_state is required")

    state_machine = current_app.services.get('state_machine')
    conversation = state_machine.transition_to(
        conversation_id,
        target_state,
        data.get('trigger') or 'manual',
        actor=data.get('actor') or 'staff',
        metadata=data.get('metadata')
    )
    return jsonify(conversation.to_dict())


@api_bp.route('/conversations/<int:conversation_id>/history', methods=['GET'])
def transition_history(conversation_id):
    state_machine = current_app.services.get('state_machine')
    limit = _int_arg('limit', 10)
    history = state_machine.get_transition_history(conversation_id, limit)
    return jsonify({'transitions': [t.to_dict() for t in history]})


@api_bp.route('/conversations/<int:conversation_id>/events', methods=['GET'])
def conversation_events(conversation_id):
    conversation_service = current_app.services.get('conversation')
    events = conversation_service.get_events(conversation_id, request.args.get('type'))
    return jsonify({'events': [e.to_dict() for e in events]})


@api_bp.route('/conversations/<int:conversation_id>/messages', methods=['GET'])
def conversation_messages(conversation_id):
    current_app.services.get('conversation').get_conversation(conversation_id)
    message_handler = current_app.services.get('message_handler')
    messages = message_handler.get_conversation_messages(conversation_id, _int_arg('limit', 50, maximum=200))
    return jsonify({'messages': [m.to_dict() for m in messages]})


@api_bp.route('/conversations/<int:conversation_id>/reply', methods=['POST'])
def staff_reply(conversation_id):
    data = _json_body()
    message_handler = current_app.services.get('message_handler')
    message = message_handler.send_staff_reply(
        conversation_id, data.get('body', ''), actor=data.get('actor') or 'staff'
    )
    return jsonify(message.to_dict()), 201


# --- Payments ---

@api_bp.route('/conversations/<int:conversation_id>/payments', methods=['POST'])
def create_payment(conversation_id):
    """Request a payment: moves to WAITING_FOR_PAYMENT and opens an intent"""
    data = _json_body()
    if data.get('amount') is None:
        raise ValidationError("amount is required")

    conversation_service = current_app.services.get('conversation')
    intent = conversation_service.request_payment(
        conversation_id,
        data['amount'],
        expiry_hours=data.get('expiry_hours'),
        description=data.get('description'),
        actor=data.get('actor') or 'staff'
    )
    logger.info("Payment requested", conversation_id=conversation_id, payment_intent_id=intent.id)
    return jsonify(intent.to_dict()), 201


@api_bp.route('/payments/<int:intent_id>', methods=['GET'])
def get_payment(intent_id):
    payment_service = current_app.services.get('payment_intent')
    return jsonify(payment_service.get_intent(intent_id).to_dict())


@api_bp.route('/payments/<int:intent_id>/stk-push', methods=['POST'])
def stk_push(intent_id):
    """Send an M-Pesa STK push for an initiated intent"""
    data = request.get_json(silent=True) or {}
    mpesa = current_app.services.get('mpesa')
    payment_service = current_app.services.get('payment_intent')

    phone_number = data.get('phone_number')
    if not phone_number:
        phone_number = payment_service.get_intent(intent_id).conversation.customer_phone

    intent = mpesa.initiate_payment(intent_id, phone_number)
    return jsonify(intent.to_dict())


@api_bp.route('/payments/<int:intent_id>/status-query', methods=['POST'])
def query_payment_status(intent_id):
    """Reconcile a pending intent with Daraja when its callback went missing"""
    intent = current_app.services.get('mpesa').query_payment_status(intent_id)
    return jsonify(intent.to_dict())


# --- Follow-ups ---

@api_bp.route('/conversations/<int:conversation_id>/follow-ups', methods=['GET'])
def list_follow_ups(conversation_id):
    current_app.services.get('conversation').get_conversation(conversation_id)
    follow_up_service = current_app.services.get('follow_up')
    tasks = follow_up_service.list_for_conversation(conversation_id)
    return jsonify({'follow_ups': [t.to_dict() for t in tasks]})


@api_bp.route('/conversations/<int:conversation_id>/follow-ups', methods=['POST'])
def schedule_follow_up(conversation_id):
    data = _json_body()
    follow_up_service = current_app.services.get('follow_up')
    task = follow_up_service.schedule_follow_up(
        conversation_id,
        data.get('template_key'),
        data.get('delay_minutes', 0),
        context=data.get('context'),
        payment_intent_id=data.get('payment_intent_id'),
        trigger_reason=data.get('trigger_reason') or 'manual'
    )
    return jsonify(task.to_dict()), 201


@api_bp.route('/follow-ups/<int:task_id>/escalate', methods=['POST'])
def escalate_follow_up(task_id):
    follow_up_service = current_app.services.get('follow_up')
    task = follow_up_service.escalate_follow_up(task_id)
    return jsonify(task.to_dict())
