# tests/conftest.py
"""
Shared fixtures for the pytest test suite.

Every test gets its own Flask app on an in-memory SQLite database, so the
service registry (and the event bus subscriptions it wires) never leaks
between tests. Follow-up dispatch is captured instead of going to Celery.
"""
import os

# Must be set before the app module is imported
os.environ['FLASK_ENV'] = 'testing'

import pytest
from datetime import timedelta
from decimal import Decimal

from app import create_app
from extensions import db
from flowstack_database import (
    Business,
    Conversation,
    PaymentIntent,
    FollowUpTask,
    DEFAULT_FOLLOW_UP_RULES,
    DEFAULT_MESSAGE_TEMPLATES,
)
from services.enums import ConversationState, PaymentIntentStatus, FollowUpStatus
from utils.datetime_utils import utc_now


class DispatchRecorder:
    """Stands in for the Celery dispatcher; remembers what was enqueued"""

    def __init__(self):
        self.calls = []

    def __call__(self, task_id, eta=None):
        self.calls.append((task_id, eta))

    @property
    def task_ids(self):
        return [task_id for task_id, _ in self.calls]


def create_test_business(**kwargs):
    """
    Helper function to create a tenant with default values.
    Used across multiple test files.
    """
    defaults = {
        'business_name': 'Mama Mboga Deliveries',
        'whatsapp_number': '+254700000001',
        'owner_phone': '+254711000001',
        'industry': 'grocery delivery',
        'currency': 'KES',
        'timezone': 'Africa/Nairobi',
        'follow_up_rules': dict(DEFAULT_FOLLOW_UP_RULES),
        'message_templates': dict(DEFAULT_MESSAGE_TEMPLATES),
    }
    defaults.update(kwargs)
    business = Business(**defaults)
    db.session.add(business)
    db.session.commit()
    return business


def create_test_conversation(business, **kwargs):
    """Helper function to create a conversation for a tenant"""
    defaults = {
        'business_id': business.id,
        'customer_phone': '254722000001',
        'customer_name': 'Wanjiru',
        'current_state': ConversationState.NEW_LEAD.value,
        'state_changed_at': utc_now(),
        'message_count': 0,
    }
    defaults.update(kwargs)
    conversation = Conversation(**defaults)
    db.session.add(conversation)
    db.session.commit()
    return conversation


def create_test_intent(conversation, **kwargs):
    """Helper function to insert a payment intent directly, bypassing events"""
    defaults = {
        'conversation_id': conversation.id,
        'business_id': conversation.business_id,
        'expected_amount': Decimal('1500.00'),
        'currency': 'KES',
        'status': PaymentIntentStatus.INITIATED.value,
        'expires_at': utc_now() + timedelta(hours=48),
    }
    defaults.update(kwargs)
    intent = PaymentIntent(**defaults)
    db.session.add(intent)
    db.session.commit()
    return intent


def create_test_task(conversation, **kwargs):
    """Helper function to insert a follow-up task directly, bypassing dispatch"""
    defaults = {
        'conversation_id': conversation.id,
        'business_id': conversation.business_id,
        'trigger_reason': 'test',
        'scheduled_time': utc_now() - timedelta(minutes=1),
        'status': FollowUpStatus.PENDING.value,
        'message_template_key': 'follow_up_2hr',
        'message_context': {},
    }
    defaults.update(kwargs)
    task = FollowUpTask(**defaults)
    db.session.add(task)
    db.session.commit()
    return task


@pytest.fixture
def app():
    """
    A fresh Flask application with an empty in-memory database.

    The follow-up dispatcher is replaced with a DispatchRecorder so that no
    test needs a broker.
    """
    app = create_app(config_name='testing')
    app.services.register('follow_up_dispatcher', DispatchRecorder())

    with app.app_context():
        db.create_all()
        yield app

        # --- Teardown ---
        db.session.remove()
        db.drop_all()

    app.services.get('event_bus').close()


@pytest.fixture
def client(app):
    """A test client for the app's endpoints"""
    return app.test_client()


@pytest.fixture
def services(app):
    """The app's service registry"""
    return app.services


@pytest.fixture
def dispatched(services):
    """Everything handed to the follow-up dispatcher during the test"""
    return services.get('follow_up_dispatcher')


@pytest.fixture
def business(app):
    return create_test_business()


@pytest.fixture
def conversation(business):
    return create_test_conversation(business)


@pytest.fixture
def whatsapp(services):
    """The WhatsApp client (mock mode in tests)"""
    return services.get('whatsapp')


@pytest.fixture
def event_bus(services):
    return services.get('event_bus')


@pytest.fixture
def state_machine(services):
    return services.get('state_machine')


@pytest.fixture
def payment_service(services):
    return services.get('payment_intent')


@pytest.fixture
def follow_up_service(services):
    return services.get('follow_up')


@pytest.fixture
def conversation_service(services):
    return services.get('conversation')


@pytest.fixture
def message_handler(services):
    return services.get('message_handler')
