"""
EventProcessor - reacts to domain events

Subscribes to the event bus and turns events into follow-up work: state
changes after a confirmed payment, reminders, cancellations and owner
notices. Each reaction is its own unit of work; a failing reaction is
isolated by the bus and never undoes the event that triggered it.
"""

from typing import Callable, Dict

from flowstack_database import Event
from repositories.conversation_repository import ConversationRepository
from services.enums import ConversationState, EventType
from services.event_bus import EventBus
from services.follow_up_service import FollowUpService, REQUIRED_STATE_KEY
from services.owner_notifier import OwnerNotifier
from services.state_machine import ConversationStateMachine
from logging_config import get_logger

logger = get_logger(__name__)

AWAITING_REMINDER_TRIGGER = 'awaiting_customer'


class EventProcessor:
    """Orchestrates reactions between the state machine, payments and follow-ups"""

    def __init__(self, state_machine: ConversationStateMachine,
                 follow_up_service: FollowUpService,
                 owner_notifier: OwnerNotifier,
                 conversation_repository: ConversationRepository):
        self.state_machine = state_machine
        self.follow_up_service = follow_up_service
        self.owner_notifier = owner_notifier
        self.conversation_repository = conversation_repository

    def handlers(self) -> Dict[EventType, Callable[[Event], None]]:
        return {
            EventType.NEW_LEAD: self.on_new_lead,
            EventType.STATE_CHANGED: self.on_state_changed,
            EventType.PAYMENT_INITIATED: self.on_payment_initiated,
            EventType.PAYMENT_CONFIRMED: self.on_payment_confirmed,
            EventType.PAYMENT_FAILED: self.on_payment_failed,
            EventType.PAYMENT_EXPIRED: self.on_payment_expired,
            EventType.ESCALATION_REQUIRED: self.notify_owner,
            EventType.CONVERSATION_DORMANT: self.notify_owner,
        }

    def register(self, event_bus: EventBus) -> None:
        for event_type, handler in self.handlers().items():
            event_bus.subscribe(event_type, handler)

    def _conversation(self, event: Event):
        return self.conversation_repository.get_by_id(event.conversation_id) if event.conversation_id else None

    # Conversation events

    def on_new_lead(self, event: Event) -> None:
        self.follow_up_service.schedule_follow_up(
            event.conversation_id, 'welcome', 0, trigger_reason='new_lead'
        )

    def on_state_changed(self, event: Event) -> None:
        payload = event.payload or {}
        from_state = payload.get('from_state')
        to_state = payload.get('to_state')

        if to_state in (ConversationState.CLOSED.value, ConversationState.PAID.value):
            self.follow_up_service.cancel_follow_ups(
                event.conversation_id, reason=f'conversation_{to_state.lower()}'
            )
        elif from_state == ConversationState.AWAITING_CUSTOMER.value:
            # A later return to AWAITING_CUSTOMER schedules its own reminders
            self.follow_up_service.cancel_follow_ups(
                event.conversation_id, trigger_reason=AWAITING_REMINDER_TRIGGER,
                reason='conversation_left_awaiting_customer'
            )

        if to_state == ConversationState.AWAITING_CUSTOMER.value:
            conversation = self._conversation(event)
            if conversation is None:
                return
            business = conversation.business
            only_when_waiting = {REQUIRED_STATE_KEY: ConversationState.AWAITING_CUSTOMER.value}
            self.follow_up_service.schedule_follow_up(
                conversation.id, 'follow_up_2hr', business.rule('first_reminder_minutes'),
                context=dict(only_when_waiting), trigger_reason=AWAITING_REMINDER_TRIGGER
            )
            self.follow_up_service.schedule_follow_up(
                conversation.id, 'follow_up_24hr', business.rule('second_reminder_hours') * 60,
                context=dict(only_when_waiting), trigger_reason=AWAITING_REMINDER_TRIGGER
            )

    # Payment events

    def on_payment_initiated(self, event: Event) -> None:
        conversation = self._conversation(event)
        if conversation is None:
            return
        self.follow_up_service.schedule_follow_up(
            conversation.id, 'payment_reminder', conversation.business.rule('payment_reminder_minutes'),
            payment_intent_id=event.payment_intent_id, trigger_reason='payment_pending'
        )

    def on_payment_confirmed(self, event: Event) -> None:
        conversation = self._conversation(event)
        if conversation is None:
            return

        if conversation.current_state == ConversationState.WAITING_FOR_PAYMENT.value:
            self.state_machine.transition_to(
                conversation.id, ConversationState.PAID, EventType.PAYMENT_CONFIRMED.value,
                metadata={'payment_intent_id': event.payment_intent_id}
            )
        else:
            logger.warning(
                "Payment confirmed outside WAITING_FOR_PAYMENT",
                conversation_id=conversation.id,
                current_state=conversation.current_state,
                payment_intent_id=event.payment_intent_id
            )
            self.follow_up_service.cancel_follow_ups(
                conversation.id, payment_intent_id=event.payment_intent_id, reason='payment_paid'
            )

        if conversation.current_state != ConversationState.CLOSED.value:
            self.follow_up_service.schedule_follow_up(
                conversation.id, 'payment_confirmed', 0,
                context={'payment_intent_id': event.payment_intent_id}, trigger_reason='payment_confirmed'
            )

    def on_payment_failed(self, event: Event) -> None:
        self.follow_up_service.cancel_follow_ups(
            event.conversation_id, payment_intent_id=event.payment_intent_id, reason='payment_failed'
        )
        self.notify_owner(event)

    def on_payment_expired(self, event: Event) -> None:
        self.follow_up_service.cancel_follow_ups(
            event.conversation_id, payment_intent_id=event.payment_intent_id, reason='payment_expired'
        )
        conversation = self._conversation(event)
        if conversation is None or conversation.current_state == ConversationState.CLOSED.value:
            return
        # The notice is about the expiry itself, so it does not reference the intent
        self.follow_up_service.schedule_follow_up(
            conversation.id, 'payment_expired', 0,
            context={'payment_intent_id': event.payment_intent_id}, trigger_reason='payment_expired'
        )

    # Owner notices

    def notify_owner(self, event: Event) -> None:
        conversation = self._conversation(event)
        if conversation is None:
            return
        payload = event.payload or {}
        details = {
            'customer_phone': conversation.customer_phone,
            'customer_name': conversation.customer_name or conversation.customer_phone,
            'reason': payload.get('reason') or payload.get('trigger') or event.event_type.lower(),
            'amount': payload.get('amount', ''),
            'currency': payload.get('currency', conversation.business.currency),
        }
        self.owner_notifier.notify(conversation.business, event.event_type, details)
