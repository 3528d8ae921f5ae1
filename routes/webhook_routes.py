"""
Provider webhooks: WhatsApp Cloud API and M-Pesa STK callbacks
"""

from flask import Blueprint, current_app, jsonify, request

from services.common.errors import FlowStackError
from logging_config import get_logger, log_context

logger = get_logger(__name__)

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/webhooks')


@webhooks_bp.route('/whatsapp', methods=['GET'])
def verify_whatsapp_webhook():
    """Meta subscription handshake: echo hub.challenge when the token matches"""
    whatsapp = current_app.services.get('whatsapp')
    mode = request.args.get('hub.mode')
    token = request.args.get('hub.verify_token')

    if whatsapp.verify_webhook(mode, token):
        logger.info("WhatsApp webhook verified")
        return request.args.get('hub.challenge', ''), 200

    logger.warning("WhatsApp webhook verification rejected", mode=mode)
    return 'Forbidden', 403


@webhooks_bp.route('/whatsapp', methods=['POST'])
def whatsapp_webhook():
    """
    Inbound WhatsApp traffic.

    Once the signature checks out the delivery is always acknowledged with
    200, otherwise Meta keeps redelivering. Messages that cannot be stored
    are logged.
    """
    whatsapp = current_app.services.get('whatsapp')
    if not whatsapp.verify_signature(request.get_data(), request.headers.get('X-Hub-Signature-256')):
        logger.warning("WhatsApp webhook signature mismatch")
        return jsonify({'status': 'invalid signature'}), 403

    payload = request.get_json(silent=True) or {}
    message_handler = current_app.services.get('message_handler')

    processed = 0
    for message in whatsapp.parse_incoming_messages(payload):
        try:
            with log_context(whatsapp_message_id=message.message_id):
                result = message_handler.handle_inbound(message)
        except FlowStackError as e:
            logger.error("Inbound message failed", whatsapp_message_id=message.message_id,
                         error_kind=e.kind, error=e.message)
            continue
        if result.is_success:
            processed += 1
        else:
            logger.warning("Inbound message skipped", whatsapp_message_id=message.message_id,
                           error_code=result.error_code, error=result.error)

    return jsonify({'status': 'ok', 'processed': processed}), 200


@webhooks_bp.route('/mpesa', methods=['POST'])
def mpesa_callback():
    """Daraja STK callback; Daraja is always told the callback was accepted"""
    payload = request.get_json(silent=True) or {}
    mpesa = current_app.services.get('mpesa')

    checkout_request_id = _checkout_request_id(payload)
    try:
        with log_context(checkout_request_id=checkout_request_id):
            result = mpesa.handle_callback(payload)
        if result.is_failure:
            logger.warning("M-Pesa callback rejected", error_code=result.error_code, error=result.error)
        else:
            logger.info("M-Pesa callback applied", payment_intent_id=result.data.id,
                        status=result.data.status)
    except FlowStackError as e:
        logger.error("M-Pesa callback failed", error_kind=e.kind, error=e.message)

    return jsonify({'ResultCode': 0, 'ResultDesc': 'Accepted'}), 200


def _checkout_request_id(payload):
    try:
        return payload['Body']['stkCallback'].get('CheckoutRequestID')
    except (KeyError, TypeError, AttributeError):
        return None
