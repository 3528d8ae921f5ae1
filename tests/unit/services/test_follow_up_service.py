"""
Tests for FollowUpService - scheduling, at-most-once delivery, retries
"""

import pytest
import pytz
from datetime import timedelta

from extensions import db
from flowstack_database import Conversation, Event, FollowUpTask, Message
from services.common.errors import (
    InvalidTransitionError,
    NotFoundError,
    TemplateNotFoundError,
    TransportError,
    ValidationError,
)
from services.enums import ConversationState, EventType, FollowUpStatus, MessageDirection
from services.follow_up_service import FollowUpOutcome, REQUIRED_STATE_KEY
from services.whatsapp_client import SendResult
from utils.datetime_utils import ensure_utc, utc_now
from tests.conftest import create_test_intent, create_test_task


def _task(task_id):
    return db.session.get(FollowUpTask, task_id)


def _sent_events(conversation_id):
    return db.session.query(Event).filter_by(
        conversation_id=conversation_id, event_type=EventType.FOLLOW_UP_SENT.value
    ).all()


class TestScheduleFollowUp:

    def test_schedule_persists_pending_task_and_dispatches(self, follow_up_service, conversation, dispatched):
        # Act
        task = follow_up_service.schedule_follow_up(
            conversation.id, 'follow_up_2hr', 120, context={'note': 'x'}, trigger_reason='awaiting_customer'
        )

        # Assert
        stored = _task(task.id)
        assert stored.status == FollowUpStatus.PENDING.value
        assert stored.attempt_count == 0
        assert stored.message_context == {'note': 'x'}
        delay = ensure_utc(stored.scheduled_time) - utc_now()
        assert timedelta(minutes=119) < delay <= timedelta(minutes=120)
        assert task.id in dispatched.task_ids

    def test_unknown_template_is_rejected(self, follow_up_service, conversation):
        with pytest.raises(TemplateNotFoundError):
            follow_up_service.schedule_follow_up(conversation.id, 'no_such_template', 10)
        assert db.session.query(FollowUpTask).count() == 0

    def test_negative_delay_is_rejected(self, follow_up_service, conversation):
        with pytest.raises(ValidationError):
            follow_up_service.schedule_follow_up(conversation.id, 'follow_up_2hr', -1)

    def test_unknown_conversation(self, follow_up_service):
        with pytest.raises(NotFoundError):
            follow_up_service.schedule_follow_up(9999, 'follow_up_2hr', 10)

    def test_dispatch_failure_leaves_task_for_sweep(self, follow_up_service, services, conversation):
        def broken_dispatcher(task_id, eta=None):
            raise ConnectionError('broker down')
        services.register('follow_up_dispatcher', broken_dispatcher)

        task = follow_up_service.schedule_follow_up(conversation.id, 'follow_up_2hr', 0)

        assert _task(task.id).status == FollowUpStatus.PENDING.value


class TestProcessFollowUp:

    def test_sends_and_completes(self, follow_up_service, whatsapp, conversation, mocker):
        # Arrange
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.1'))
        task = create_test_task(conversation, message_template_key='follow_up_2hr')

        # Act
        outcome = follow_up_service.process_follow_up(task.id)

        # Assert
        assert outcome == FollowUpOutcome.SENT
        send.assert_called_once()
        assert send.call_args.kwargs['to'] == conversation.customer_phone

        stored = _task(task.id)
        assert stored.status == FollowUpStatus.COMPLETED.value
        assert stored.message_sent is True
        assert stored.whatsapp_message_id == 'wamid.1'
        assert stored.claim_token is None

        assert db.session.get(Conversation, conversation.id).follow_up_count == 1
        outbound = db.session.query(Message).filter_by(
            conversation_id=conversation.id, direction=MessageDirection.OUTBOUND.value
        ).one()
        assert outbound.message_body == stored.message_body
        assert len(_sent_events(conversation.id)) == 1

    def test_direct_and_sweep_invocations_send_once(self, follow_up_service, whatsapp, conversation,
                                                    dispatched, mocker):
        """The ETA job and the recovery sweep can both fire; only one send happens"""
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.1'))
        task = create_test_task(conversation)

        assert follow_up_service.check_pending_follow_ups() == 1
        assert dispatched.task_ids == [task.id]

        outcomes = [follow_up_service.process_follow_up(task_id) for task_id in [task.id] + dispatched.task_ids]

        assert outcomes == [FollowUpOutcome.SENT, FollowUpOutcome.SKIPPED]
        assert send.call_count == 1
        assert len(_sent_events(conversation.id)) == 1
        assert follow_up_service.check_pending_follow_ups() == 0

    def test_live_claim_blocks_second_worker(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        task = create_test_task(conversation, claim_token='other-worker', claimed_at=utc_now())

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.SKIPPED
        send.assert_not_called()

    def test_not_yet_due_is_released(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        task = create_test_task(conversation, scheduled_time=utc_now() + timedelta(hours=1))

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.SKIPPED

        stored = _task(task.id)
        assert stored.status == FollowUpStatus.PENDING.value
        assert stored.claim_token is None
        send.assert_not_called()

    def test_transient_failure_backs_off_then_fails(self, follow_up_service, whatsapp, conversation, mocker):
        # Arrange
        send = mocker.patch.object(whatsapp, 'send_message', side_effect=TransportError('timeout', 503))
        task = create_test_task(conversation)
        follow_up_service.retry_base_seconds = 2

        # Act / Assert - first attempt
        before = utc_now()
        with pytest.raises(TransportError):
            follow_up_service.process_follow_up(task.id)
        stored = _task(task.id)
        assert stored.status == FollowUpStatus.PENDING.value
        assert stored.attempt_count == 1
        assert ensure_utc(stored.scheduled_time) >= before + timedelta(seconds=2)

        # Second attempt, made due by hand
        stored.scheduled_time = utc_now() - timedelta(seconds=1)
        db.session.commit()
        with pytest.raises(TransportError):
            follow_up_service.process_follow_up(task.id)
        stored = _task(task.id)
        assert stored.attempt_count == 2
        assert ensure_utc(stored.scheduled_time) >= utc_now() + timedelta(seconds=3)

        stored.scheduled_time = utc_now() - timedelta(seconds=1)
        db.session.commit()
        outcome = follow_up_service.process_follow_up(task.id)

        # Assert - third attempt is the last
        assert outcome == FollowUpOutcome.FAILED
        stored = _task(task.id)
        assert stored.status == FollowUpStatus.FAILED.value
        assert stored.attempt_count == 3
        assert 'timeout' in stored.last_error
        assert send.call_count == 3
        assert _sent_events(conversation.id) == []

    def test_retry_delay_doubles(self, follow_up_service):
        follow_up_service.retry_base_seconds = 2

        assert [follow_up_service.retry_delay_seconds(n) for n in (1, 2, 3)] == [2, 4, 8]

    def test_failed_task_is_not_resurrected_by_sweep(self, follow_up_service, conversation, dispatched):
        task = create_test_task(conversation, status=FollowUpStatus.FAILED.value, attempt_count=3)

        assert follow_up_service.check_pending_follow_ups() == 0
        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.SKIPPED
        assert _task(task.id).status == FollowUpStatus.FAILED.value

    def test_unknown_template_fails_without_retry(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        task = create_test_task(conversation, message_template_key='deleted_template')

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.FAILED

        stored = _task(task.id)
        assert stored.status == FollowUpStatus.FAILED.value
        assert stored.last_error.startswith('TemplateNotFound')
        send.assert_not_called()

    def test_unexpected_error_spends_attempts_then_fails(self, follow_up_service, whatsapp, conversation,
                                                         dispatched, mocker):
        # Arrange
        send = mocker.patch.object(whatsapp, 'send_message', side_effect=RuntimeError('boom'))
        task = create_test_task(conversation)

        # Act / Assert - the claim is dropped and the attempt counted each time
        for attempt in (1, 2):
            with pytest.raises(RuntimeError):
                follow_up_service.process_follow_up(task.id)
            stored = _task(task.id)
            assert stored.status == FollowUpStatus.PENDING.value
            assert stored.attempt_count == attempt
            assert stored.claim_token is None

        with pytest.raises(RuntimeError):
            follow_up_service.process_follow_up(task.id)

        stored = _task(task.id)
        assert stored.status == FollowUpStatus.FAILED.value
        assert stored.attempt_count == 3
        assert stored.last_error == 'RuntimeError: boom'

        # Neither a late invocation nor the sweep sends it again
        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.SKIPPED
        assert follow_up_service.check_pending_follow_ups() == 0
        assert send.call_count == 3

    def test_bad_tenant_timezone_releases_the_claim(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        conversation.business.timezone = 'Mars/Olympus'
        conversation.current_state = ConversationState.WAITING_FOR_PAYMENT.value
        db.session.commit()
        intent = create_test_intent(conversation)
        task = create_test_task(conversation, message_template_key='payment_reminder', payment_intent_id=intent.id)

        with pytest.raises(pytz.UnknownTimeZoneError):
            follow_up_service.process_follow_up(task.id)

        stored = _task(task.id)
        assert stored.status == FollowUpStatus.PENDING.value
        assert stored.attempt_count == 1
        assert stored.claim_token is None
        assert stored.last_error.startswith('UnknownTimeZoneError')
        send.assert_not_called()


class TestRelevance:

    def test_closed_conversation_cancels(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        task = create_test_task(conversation)
        # Bypass the cancel-on-close reaction to reach the execution-time check
        conversation.current_state = ConversationState.CLOSED.value
        db.session.commit()

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.CANCELLED
        assert _task(task.id).status == FollowUpStatus.CANCELLED.value
        send.assert_not_called()

    def test_state_bound_reminder_cancelled_after_reply(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        task = create_test_task(
            conversation, message_context={REQUIRED_STATE_KEY: ConversationState.AWAITING_CUSTOMER.value}
        )
        conversation.current_state = ConversationState.ENGAGED.value
        db.session.commit()

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.CANCELLED
        send.assert_not_called()

    def test_payment_reminder_cancelled_when_intent_terminal(self, follow_up_service, whatsapp,
                                                             conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message')
        intent = create_test_intent(conversation, status='expired')
        task = create_test_task(conversation, message_template_key='payment_reminder', payment_intent_id=intent.id)

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.CANCELLED
        assert _task(task.id).last_error == 'payment_expired'
        send.assert_not_called()

    def test_payment_reminder_renders_intent_details(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.2'))
        conversation.current_state = ConversationState.WAITING_FOR_PAYMENT.value
        db.session.commit()
        intent = create_test_intent(conversation)
        task = create_test_task(conversation, message_template_key='payment_reminder', payment_intent_id=intent.id)

        assert follow_up_service.process_follow_up(task.id) == FollowUpOutcome.SENT

        body = send.call_args.kwargs['body']
        assert 'KES 1500.00' in body
        assert '{' not in body


class TestCancelAndEscalate:

    def test_cancel_follow_ups(self, follow_up_service, conversation):
        first = create_test_task(conversation)
        second = create_test_task(conversation)
        done = create_test_task(conversation, status=FollowUpStatus.COMPLETED.value)

        assert follow_up_service.cancel_follow_ups(conversation.id, reason='conversation_closed') == 2

        assert _task(first.id).status == FollowUpStatus.CANCELLED.value
        assert _task(second.id).status == FollowUpStatus.CANCELLED.value
        assert _task(done.id).status == FollowUpStatus.COMPLETED.value

    def test_escalate_failed_task(self, follow_up_service, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.3'))
        task = create_test_task(conversation, status=FollowUpStatus.FAILED.value, last_error='TransientIOError: x')

        escalated = follow_up_service.escalate_follow_up(task.id)

        assert escalated.status == FollowUpStatus.ESCALATED.value
        assert escalated.escalation_level == 1
        event = db.session.query(Event).filter_by(event_type=EventType.ESCALATION_REQUIRED.value).one()
        assert event.payload['task_id'] == task.id
        # The owner is told about it
        assert send.call_args.kwargs['to'] == conversation.business.owner_phone

    def test_escalate_requires_failed(self, follow_up_service, conversation):
        task = create_test_task(conversation)

        with pytest.raises(InvalidTransitionError):
            follow_up_service.escalate_follow_up(task.id)
        with pytest.raises(NotFoundError):
            follow_up_service.escalate_follow_up(9999)
