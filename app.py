# app.py

from flask import Flask, g, jsonify, request
from config import get_config
from extensions import db, migrate
import os
import uuid
from werkzeug.middleware.proxy_fix import ProxyFix
from logging_config import setup_logging, get_logger

# Configure logging as early as possible
setup_logging(app_name="flowstack", log_level=os.environ.get('LOG_LEVEL', 'INFO'))
logger = get_logger(__name__)

# HTTP status for each error kind raised by the service layer
ERROR_STATUS_CODES = {
    'NotFound': 404,
    'InvalidTransition': 409,
    'ValidationError': 400,
    'TemplateNotFound': 422,
    'TransientIOError': 503,
}


# Configure Sentry for production error tracking
def init_sentry():
    """Initialize Sentry error tracking in production."""
    sentry_dsn = os.environ.get('SENTRY_DSN')
    if sentry_dsn and os.environ.get('FLASK_ENV') == 'production':
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration
        from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
        from sentry_sdk.integrations.celery import CeleryIntegration

        sentry_sdk.init(
            dsn=sentry_dsn,
            integrations=[
                FlaskIntegration(transaction_style='endpoint'),
                SqlalchemyIntegration(),
                CeleryIntegration()
            ],
            traces_sample_rate=0.1,
            environment=os.environ.get('FLASK_ENV', 'development'),
            release=os.environ.get('GIT_SHA', 'unknown')
        )
        logger.info("Sentry error tracking initialized")


init_sentry()


def create_app(config_name=None, test_config=None):
    """Create and configure an instance of the Flask application."""
    app = Flask(__name__)

    config_class = get_config(config_name)
    app.config.from_object(config_class)

    # Initialize app with config
    config_class.init_app(app)

    if test_config:
        app.config.update(test_config)

    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    db.init_app(app)
    migrate.init_app(app, db)

    registry = _build_registry(app)

    # Validate all dependencies are registered
    errors = registry.validate_dependencies()
    if errors:
        for error in errors:
            logger.error("Service dependency error", error=error)
        raise RuntimeError(f"Service dependency errors: {errors}")

    if app.debug:
        logger.debug("Service initialization order", order=registry.get_initialization_order())

    # Attach registry to app
    app.services = registry

    # Subscribing the event processor starts the reaction pipeline
    registry.get('event_processor')

    @app.before_request
    def before_request():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())
        logger.info("Request started",
                    request_id=g.request_id,
                    method=request.method,
                    path=request.path)

    @app.after_request
    def after_request(response):
        logger.info("Request completed",
                    request_id=getattr(g, 'request_id', None),
                    status_code=response.status_code)
        response.headers['X-Request-ID'] = getattr(g, 'request_id', '')
        return response

    # Global error handlers
    from services.common.errors import FlowStackError

    @app.errorhandler(FlowStackError)
    def flowstack_error(error):
        status_code = ERROR_STATUS_CODES.get(error.kind, 500)
        log = logger.warning if status_code < 500 else logger.error
        log("Request failed",
            request_id=getattr(g, 'request_id', None),
            error_kind=error.kind,
            error=error.message)
        body = {'error': error.kind, 'message': error.message}
        if error.details:
            body['details'] = error.details
        return jsonify(body), status_code

    @app.errorhandler(404)
    def not_found_error(error):
        logger.warning("Page not found",
                       request_id=getattr(g, 'request_id', None),
                       path=request.path)
        return jsonify({'error': 'NotFound', 'message': 'Resource not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        logger.error("Internal server error",
                     request_id=getattr(g, 'request_id', None),
                     error=str(error))
        return jsonify({'error': 'InternalError', 'message': 'Internal server error'}), 500

    @app.route('/health')
    def health_check():
        """Health check endpoint for monitoring"""
        from sqlalchemy import text
        health_status = {
            'status': 'healthy',
            'service': 'flowstack',
            'event_bus': 'running' if registry.get('event_bus').is_running else 'stopped'
        }

        try:
            db.session.execute(text('SELECT 1'))
            health_status['database'] = 'connected'
        except Exception as e:
            health_status['database'] = 'error'
            health_status['status'] = 'degraded'
            logger.error("Health check database error", error=str(e))

        return jsonify(health_status), 200 if health_status['status'] == 'healthy' else 503

    # Register blueprints
    from routes.webhook_routes import webhooks_bp
    from routes.api_routes import api_bp
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(api_bp)

    # Register CLI commands
    from scripts import commands
    commands.init_app(app)

    return app


def _build_registry(app):
    """Register every service factory; nothing is built until first use"""
    from services.registry import ServiceRegistry

    registry = ServiceRegistry()
    config = app.config

    registry.register_factory('db_session', lambda: db.session)

    # Repositories share the scoped session
    for name, factory in _repository_factories().items():
        registry.register_factory(name, factory, dependencies=['db_session'])

    registry.register_factory(
        'event_bus',
        lambda event_repository: _create_event_bus(event_repository),
        dependencies=['event_repository']
    )

    registry.register_factory(
        'state_machine',
        lambda conversation_repository, state_transition_repository, event_bus: _create_state_machine(
            conversation_repository, state_transition_repository, event_bus),
        dependencies=['conversation_repository', 'state_transition_repository', 'event_bus']
    )

    registry.register_factory(
        'payment_intent',
        lambda payment_intent_repository, conversation_repository, business_repository, event_bus:
            _create_payment_intent_service(
                payment_intent_repository, conversation_repository, business_repository, event_bus,
                config.get('DEFAULT_PAYMENT_EXPIRY_HOURS', 48)),
        dependencies=['payment_intent_repository', 'conversation_repository', 'business_repository', 'event_bus']
    )

    registry.register_factory('composer', lambda: _create_composer())

    registry.register_factory('whatsapp', lambda: _create_whatsapp_client(config))

    registry.register_factory(
        'mpesa',
        lambda payment_intent: _create_mpesa_connector(payment_intent, config),
        dependencies=['payment_intent']
    )

    # Swapped out in tests so nothing is sent to the broker
    registry.register_factory('follow_up_dispatcher', lambda: _get_follow_up_dispatcher())

    registry.register_factory(
        'follow_up',
        lambda follow_up_task_repository, conversation_repository, message_repository, event_bus,
        composer, whatsapp: _create_follow_up_service(
            follow_up_task_repository, conversation_repository, message_repository, event_bus,
            composer, whatsapp, registry, config),
        dependencies=['follow_up_task_repository', 'conversation_repository', 'message_repository',
                      'event_bus', 'composer', 'whatsapp']
    )

    registry.register_factory(
        'message_handler',
        lambda business_repository, conversation_repository, message_repository, state_machine,
        event_bus, whatsapp: _create_message_handler(
            business_repository, conversation_repository, message_repository, state_machine,
            event_bus, whatsapp),
        dependencies=['business_repository', 'conversation_repository', 'message_repository',
                      'state_machine', 'event_bus', 'whatsapp']
    )

    registry.register_factory(
        'owner_notifier',
        lambda whatsapp, composer: _create_owner_notifier(whatsapp, composer),
        dependencies=['whatsapp', 'composer']
    )

    registry.register_factory(
        'event_processor',
        lambda state_machine, follow_up, owner_notifier, conversation_repository, event_bus:
            _create_event_processor(state_machine, follow_up, owner_notifier, conversation_repository, event_bus),
        dependencies=['state_machine', 'follow_up', 'owner_notifier', 'conversation_repository', 'event_bus']
    )

    registry.register_factory(
        'conversation',
        lambda conversation_repository, business_repository, event_repository, state_machine, payment_intent:
            _create_conversation_service(
                conversation_repository, business_repository, event_repository, state_machine, payment_intent),
        dependencies=['conversation_repository', 'business_repository', 'event_repository',
                      'state_machine', 'payment_intent']
    )

    return registry


# Service Factory Functions
# These are only called when the service is first requested

def _repository_factories():
    from repositories import (
        BusinessRepository,
        ConversationRepository,
        EventRepository,
        FollowUpTaskRepository,
        MessageRepository,
        PaymentIntentRepository,
        StateTransitionRepository,
    )
    return {
        'business_repository': lambda db_session: BusinessRepository(session=db_session),
        'conversation_repository': lambda db_session: ConversationRepository(session=db_session),
        'state_transition_repository': lambda db_session: StateTransitionRepository(session=db_session),
        'payment_intent_repository': lambda db_session: PaymentIntentRepository(session=db_session),
        'event_repository': lambda db_session: EventRepository(session=db_session),
        'message_repository': lambda db_session: MessageRepository(session=db_session),
        'follow_up_task_repository': lambda db_session: FollowUpTaskRepository(session=db_session),
    }


def _create_event_bus(event_repository):
    from services.event_bus import EventBus
    logger.info("Initializing EventBus")
    return EventBus(event_repository).start()


def _create_state_machine(conversation_repository, state_transition_repository, event_bus):
    from services.state_machine import ConversationStateMachine
    return ConversationStateMachine(conversation_repository, state_transition_repository, event_bus)


def _create_payment_intent_service(payment_intent_repository, conversation_repository,
                                   business_repository, event_bus, default_expiry_hours):
    from services.payment_intent_service import PaymentIntentService
    return PaymentIntentService(
        payment_intent_repository=payment_intent_repository,
        conversation_repository=conversation_repository,
        business_repository=business_repository,
        event_bus=event_bus,
        default_expiry_hours=default_expiry_hours
    )


def _create_composer():
    from services.message_composer import MessageComposer
    return MessageComposer()


def _create_whatsapp_client(config):
    from services.whatsapp_client import WhatsAppClient
    logger.info("Initializing WhatsAppClient")
    return WhatsAppClient(
        phone_number_id=config.get('WHATSAPP_PHONE_NUMBER_ID'),
        access_token=config.get('WHATSAPP_ACCESS_TOKEN'),
        verify_token=config.get('WHATSAPP_VERIFY_TOKEN'),
        app_secret=config.get('WHATSAPP_APP_SECRET'),
        base_url=config.get('WHATSAPP_API_BASE_URL') or 'https://graph.facebook.com/v18.0'
    )


def _create_mpesa_connector(payment_service, config):
    from services.mpesa_connector import MPesaConnector
    logger.info("Initializing MPesaConnector")
    return MPesaConnector(
        payment_service=payment_service,
        consumer_key=config.get('MPESA_CONSUMER_KEY'),
        consumer_secret=config.get('MPESA_CONSUMER_SECRET'),
        shortcode=config.get('MPESA_SHORTCODE'),
        passkey=config.get('MPESA_PASSKEY'),
        environment=config.get('MPESA_ENVIRONMENT', 'sandbox'),
        callback_url=config.get('CALLBACK_URL')
    )


def _get_follow_up_dispatcher():
    from tasks.follow_up_tasks import enqueue_follow_up
    return enqueue_follow_up


def _create_follow_up_service(task_repository, conversation_repository, message_repository,
                              event_bus, composer, whatsapp_client, registry, config):
    from services.follow_up_service import FollowUpService

    def enqueue(task_id, eta=None):
        # Looked up per call so the dispatcher can be replaced after startup
        return registry.get('follow_up_dispatcher')(task_id, eta)

    return FollowUpService(
        task_repository=task_repository,
        conversation_repository=conversation_repository,
        message_repository=message_repository,
        event_bus=event_bus,
        composer=composer,
        whatsapp_client=whatsapp_client,
        enqueue=enqueue,
        max_attempts=config.get('FOLLOW_UP_MAX_ATTEMPTS', 3),
        retry_base_seconds=config.get('FOLLOW_UP_RETRY_BASE_SECONDS', 2),
        claim_timeout_seconds=config.get('FOLLOW_UP_CLAIM_TIMEOUT_SECONDS', 600),
        sweep_batch_size=config.get('FOLLOW_UP_SWEEP_BATCH_SIZE', 100)
    )


def _create_message_handler(business_repository, conversation_repository, message_repository,
                            state_machine, event_bus, whatsapp_client):
    from services.message_handler import MessageHandler
    return MessageHandler(
        business_repository=business_repository,
        conversation_repository=conversation_repository,
        message_repository=message_repository,
        state_machine=state_machine,
        event_bus=event_bus,
        whatsapp_client=whatsapp_client
    )


def _create_owner_notifier(whatsapp_client, composer):
    from services.owner_notifier import OwnerNotifier
    return OwnerNotifier(whatsapp_client, composer)


def _create_event_processor(state_machine, follow_up_service, owner_notifier,
                            conversation_repository, event_bus):
    from services.event_processor import EventProcessor
    processor = EventProcessor(
        state_machine=state_machine,
        follow_up_service=follow_up_service,
        owner_notifier=owner_notifier,
        conversation_repository=conversation_repository
    )
    processor.register(event_bus)
    logger.info("EventProcessor subscribed to event bus")
    return processor


def _create_conversation_service(conversation_repository, business_repository, event_repository,
                                 state_machine, payment_service):
    from services.conversation_service import ConversationService
    return ConversationService(
        conversation_repository=conversation_repository,
        business_repository=business_repository,
        event_repository=event_repository,
        state_machine=state_machine,
        payment_service=payment_service
    )
