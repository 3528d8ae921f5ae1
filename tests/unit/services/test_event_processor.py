"""
Tests for EventProcessor - reactions wired onto the event bus
"""

from datetime import timedelta

from extensions import db
from flowstack_database import Event, FollowUpTask
from services.enums import ConversationState, EventType, FollowUpStatus
from services.follow_up_service import FollowUpOutcome
from services.payment_intent_service import FailedDetails, PaidDetails
from services.whatsapp_client import SendResult
from utils.datetime_utils import ensure_utc, utc_now
from tests.conftest import create_test_task


def _tasks(conversation_id, **filters):
    return db.session.query(FollowUpTask).filter_by(conversation_id=conversation_id, **filters)\
        .order_by(FollowUpTask.id).all()


def _waiting_for_payment(conversation):
    conversation.current_state = ConversationState.WAITING_FOR_PAYMENT.value
    db.session.commit()
    return conversation


class TestPaymentReactions:

    def test_initiated_intent_schedules_reminder(self, payment_service, conversation, dispatched):
        # Act
        intent = payment_service.create_intent(conversation.id, 1500)

        # Assert
        reminder = _tasks(conversation.id, message_template_key='payment_reminder')[0]
        assert reminder.payment_intent_id == intent.id
        assert reminder.status == FollowUpStatus.PENDING.value
        delay = ensure_utc(reminder.scheduled_time) - utc_now()
        assert timedelta(minutes=239) < delay <= timedelta(minutes=240)
        assert reminder.id in dispatched.task_ids

    def test_confirmed_payment_moves_to_paid(self, payment_service, state_machine, conversation):
        # Arrange
        _waiting_for_payment(conversation)
        intent = payment_service.create_intent(conversation.id, 1500)

        # Act
        payment_service.update_status(intent.id, 'paid', PaidDetails(provider_transaction_id='QKX1'))

        # Assert
        assert state_machine.get_current_state(conversation.id) == ConversationState.PAID
        reminder = _tasks(conversation.id, message_template_key='payment_reminder')[0]
        assert reminder.status == FollowUpStatus.CANCELLED.value
        notice = _tasks(conversation.id, message_template_key='payment_confirmed')
        assert len(notice) == 1
        assert notice[0].status == FollowUpStatus.PENDING.value

    def test_confirmed_outside_waiting_keeps_state(self, payment_service, state_machine, conversation):
        conversation.current_state = ConversationState.ENGAGED.value
        db.session.commit()
        intent = payment_service.create_intent(conversation.id, 1500)

        payment_service.update_status(intent.id, 'paid', PaidDetails(provider_transaction_id='QKX2'))

        assert state_machine.get_current_state(conversation.id) == ConversationState.ENGAGED
        reminder = _tasks(conversation.id, message_template_key='payment_reminder')[0]
        assert reminder.status == FollowUpStatus.CANCELLED.value

    def test_failed_payment_cancels_reminder_and_tells_owner(self, payment_service, whatsapp,
                                                             conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.O'))
        _waiting_for_payment(conversation)
        intent = payment_service.create_intent(conversation.id, 1500)
        payment_service.update_status(intent.id, 'failed', FailedDetails(reason='Insufficient balance'))

        reminder = _tasks(conversation.id, message_template_key='payment_reminder')[0]
        assert reminder.status == FollowUpStatus.CANCELLED.value
        assert send.call_args.kwargs['to'] == conversation.business.owner_phone
        assert 'Insufficient balance' in send.call_args.kwargs['body']

    def test_expired_payment_sends_notice(self, payment_service, conversation):
        _waiting_for_payment(conversation)
        intent = payment_service.create_intent(conversation.id, 1500)

        payment_service.update_status(intent.id, 'expired')

        reminder = _tasks(conversation.id, message_template_key='payment_reminder')[0]
        assert reminder.status == FollowUpStatus.CANCELLED.value
        notice = _tasks(conversation.id, message_template_key='payment_expired')[0]
        assert notice.status == FollowUpStatus.PENDING.value
        assert notice.payment_intent_id is None


class TestConversationReactions:

    def test_closing_cancels_pending_follow_ups(self, state_machine, conversation):
        task = create_test_task(conversation, scheduled_time=utc_now() + timedelta(hours=2))

        state_machine.transition_to(conversation.id, ConversationState.CLOSED, 'manual')

        assert db.session.get(FollowUpTask, task.id).status == FollowUpStatus.CANCELLED.value

    def test_reentering_awaiting_customer_sends_one_round_of_reminders(self, state_machine, follow_up_service,
                                                                      whatsapp, conversation, mocker):
        # Arrange - wait, customer replies, wait again
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.R'))
        state_machine.transition_to(conversation.id, ConversationState.ENGAGED, 'customer_replied')
        state_machine.transition_to(conversation.id, ConversationState.AWAITING_CUSTOMER, 'staff_replied')
        state_machine.transition_to(conversation.id, ConversationState.ENGAGED, 'customer_replied')
        state_machine.transition_to(conversation.id, ConversationState.AWAITING_CUSTOMER, 'staff_replied')

        reminders = _tasks(conversation.id, trigger_reason='awaiting_customer')
        assert [(t.message_template_key, t.status) for t in reminders] == [
            ('follow_up_2hr', FollowUpStatus.CANCELLED.value),
            ('follow_up_24hr', FollowUpStatus.CANCELLED.value),
            ('follow_up_2hr', FollowUpStatus.PENDING.value),
            ('follow_up_24hr', FollowUpStatus.PENDING.value),
        ]
        assert reminders[0].last_error == 'conversation_left_awaiting_customer'

        # Act - both first reminders come due
        first_reminders = [t for t in reminders if t.message_template_key == 'follow_up_2hr']
        for task in first_reminders:
            task.scheduled_time = utc_now() - timedelta(minutes=1)
        db.session.commit()
        outcomes = [follow_up_service.process_follow_up(t.id) for t in first_reminders]

        # Assert
        assert outcomes == [FollowUpOutcome.SKIPPED, FollowUpOutcome.SENT]
        assert send.call_count == 1

    def test_dormant_conversation_notifies_owner(self, state_machine, whatsapp, conversation, mocker):
        send = mocker.patch.object(whatsapp, 'send_message', return_value=SendResult(True, 'wamid.D'))
        state_machine.transition_to(conversation.id, ConversationState.ENGAGED, 'customer_replied')
        state_machine.transition_to(conversation.id, ConversationState.AWAITING_CUSTOMER, 'staff_replied')

        state_machine.transition_to(conversation.id, ConversationState.DORMANT, 'no_customer_reply')

        send.assert_called_once()
        assert send.call_args.kwargs['to'] == '+254711000001'
        assert conversation.customer_phone in send.call_args.kwargs['body']

    def test_failing_reaction_keeps_the_event(self, services, state_machine, conversation, mocker):
        follow_up = services.get('follow_up')
        mocker.patch.object(follow_up, 'cancel_follow_ups', side_effect=RuntimeError('boom'))

        closed = state_machine.transition_to(conversation.id, ConversationState.CLOSED, 'manual')

        assert closed.current_state == ConversationState.CLOSED.value
        assert db.session.query(Event).filter_by(
            conversation_id=conversation.id, event_type=EventType.CONVERSATION_CLOSED.value
        ).count() == 1
