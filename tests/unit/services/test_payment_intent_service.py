"""
Tests for PaymentIntentService - the payment lifecycle engine
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from extensions import db
from flowstack_database import Event, PaymentIntent
from services.common.errors import InvalidTransitionError, NotFoundError, ValidationError
from services.enums import EventType, PaymentIntentStatus
from services.payment_intent_service import (
    FailedDetails,
    PaidDetails,
    PendingDetails,
    to_amount,
)
from utils.datetime_utils import ensure_utc, utc_now
from tests.conftest import create_test_intent


def _events(intent_id, event_type):
    return db.session.query(Event).filter_by(payment_intent_id=intent_id, event_type=event_type.value).all()


class TestCreateIntent:

    def test_create_intent_starts_initiated(self, payment_service, conversation):
        # Act
        intent = payment_service.create_intent(conversation.id, '1500', expiry_hours=24, description='Deposit')

        # Assert
        assert intent.status == PaymentIntentStatus.INITIATED.value
        assert intent.expected_amount == Decimal('1500.00')
        assert intent.currency == 'KES'
        remaining = ensure_utc(intent.expires_at) - utc_now()
        assert timedelta(hours=23, minutes=59) < remaining <= timedelta(hours=24)

        events = _events(intent.id, EventType.PAYMENT_INITIATED)
        assert len(events) == 1
        assert events[0].payload['amount'] == '1500.00'

    def test_default_expiry_comes_from_tenant_rules(self, payment_service, business, conversation):
        business.follow_up_rules = dict(business.follow_up_rules, payment_expiry_hours=6)
        db.session.commit()

        intent = payment_service.create_intent(conversation.id, 100)

        remaining = ensure_utc(intent.expires_at) - utc_now()
        assert timedelta(hours=5, minutes=59) < remaining <= timedelta(hours=6)

    @pytest.mark.parametrize('amount', [0, -5, 'abc', None])
    def test_rejects_bad_amounts(self, payment_service, conversation, amount):
        with pytest.raises(ValidationError):
            payment_service.create_intent(conversation.id, amount)
        assert db.session.query(PaymentIntent).count() == 0

    def test_rejects_non_positive_expiry(self, payment_service, conversation):
        with pytest.raises(ValidationError):
            payment_service.create_intent(conversation.id, 100, expiry_hours=0)

    def test_unknown_conversation(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.create_intent(9999, 100)

    def test_amounts_are_rounded_to_cents(self):
        assert to_amount('10.005') == Decimal('10.01')
        assert to_amount(99) == Decimal('99.00')


class TestUpdateStatus:

    def test_pending_then_paid(self, payment_service, conversation):
        intent = create_test_intent(conversation)

        payment_service.update_status(intent.id, PaymentIntentStatus.PENDING, PendingDetails('ws_CO_123'))
        paid = payment_service.update_status(
            intent.id, PaymentIntentStatus.PAID,
            PaidDetails(provider_transaction_id='QKX123', provider_metadata={'Amount': 1500})
        )

        assert paid.status == PaymentIntentStatus.PAID.value
        assert paid.provider_reference == 'ws_CO_123'
        assert paid.provider_transaction_id == 'QKX123'
        assert paid.paid_at is not None
        assert len(_events(intent.id, EventType.PAYMENT_CONFIRMED)) == 1

    def test_paid_cannot_become_failed(self, payment_service, conversation):
        intent = create_test_intent(conversation)
        payment_service.update_status(intent.id, 'paid', PaidDetails(provider_transaction_id='QKX123'))
        paid_at = db.session.get(PaymentIntent, intent.id).paid_at

        with pytest.raises(InvalidTransitionError):
            payment_service.update_status(intent.id, 'failed', FailedDetails(reason='late failure'))

        stored = db.session.get(PaymentIntent, intent.id)
        assert stored.status == 'paid'
        assert stored.paid_at == paid_at
        assert stored.failed_at is None
        assert _events(intent.id, EventType.PAYMENT_FAILED) == []

    def test_failed_records_reason(self, payment_service, conversation):
        intent = create_test_intent(conversation, status='pending', provider_reference='ws_CO_1')

        failed = payment_service.update_status(
            intent.id, PaymentIntentStatus.FAILED, FailedDetails(reason='Request cancelled by user')
        )

        assert failed.failure_reason == 'Request cancelled by user'
        assert failed.failed_at is not None
        events = _events(intent.id, EventType.PAYMENT_FAILED)
        assert events[0].payload['reason'] == 'Request cancelled by user'

    def test_details_must_match_status(self, payment_service, conversation):
        intent = create_test_intent(conversation)

        with pytest.raises(ValidationError):
            payment_service.update_status(intent.id, 'paid', FailedDetails(reason='x'))
        with pytest.raises(ValidationError):
            payment_service.update_status(intent.id, 'pending')
        with pytest.raises(ValidationError):
            payment_service.update_status(intent.id, 'expired', PaidDetails(provider_transaction_id='x'))

        assert db.session.get(PaymentIntent, intent.id).status == 'initiated'

    def test_cannot_move_back_to_initiated(self, payment_service, conversation):
        intent = create_test_intent(conversation, status='pending', provider_reference='ws_CO_1')

        with pytest.raises(ValidationError):
            payment_service.update_status(intent.id, 'initiated')

    def test_unknown_intent(self, payment_service):
        with pytest.raises(NotFoundError):
            payment_service.update_status(9999, 'expired')


class TestExpirySweep:

    def test_expires_overdue_active_intents_once(self, payment_service, conversation):
        # Arrange
        past = utc_now() - timedelta(minutes=1)
        overdue = create_test_intent(conversation, expires_at=past)
        overdue_pending = create_test_intent(
            conversation, status='pending', provider_reference='ws_CO_2', expires_at=past
        )
        paid = create_test_intent(conversation, status='paid', expires_at=past)
        fresh = create_test_intent(conversation)

        # Act
        first_run = payment_service.check_expired_intents()
        second_run = payment_service.check_expired_intents()

        # Assert
        assert first_run == 2
        assert second_run == 0
        assert db.session.get(PaymentIntent, overdue.id).status == 'expired'
        assert db.session.get(PaymentIntent, overdue_pending.id).status == 'expired'
        assert db.session.get(PaymentIntent, paid.id).status == 'paid'
        assert db.session.get(PaymentIntent, fresh.id).status == 'initiated'
        assert len(_events(overdue.id, EventType.PAYMENT_EXPIRED)) == 1

    def test_expired_intent_rejects_late_confirmation(self, payment_service, conversation):
        intent = create_test_intent(conversation, expires_at=utc_now() - timedelta(minutes=1))
        payment_service.check_expired_intents()

        with pytest.raises(InvalidTransitionError):
            payment_service.update_status(intent.id, 'paid', PaidDetails(provider_transaction_id='late'))

    def test_active_intent_lookup(self, payment_service, conversation):
        assert payment_service.get_active_intent(conversation.id) is None

        intent = create_test_intent(conversation)
        assert payment_service.get_active_intent(conversation.id).id == intent.id

        payment_service.update_status(intent.id, 'expired')
        assert payment_service.get_active_intent(conversation.id) is None
