"""
Service layer enums
These enums are stored as plain strings in the database and shared by
models, services and routes.
"""

from enum import Enum


class ConversationState(str, Enum):
    """Lifecycle states of a conversation"""
    NEW_LEAD = 'NEW_LEAD'
    ENGAGED = 'ENGAGED'
    AWAITING_CUSTOMER = 'AWAITING_CUSTOMER'
    WAITING_FOR_PAYMENT = 'WAITING_FOR_PAYMENT'
    PAID = 'PAID'
    DORMANT = 'DORMANT'
    ESCALATED = 'ESCALATED'
    CLOSED = 'CLOSED'


# Allowed edges of the conversation lifecycle graph. CLOSED is terminal.
STATE_TRANSITIONS = {
    ConversationState.NEW_LEAD: {ConversationState.ENGAGED, ConversationState.CLOSED},
    ConversationState.ENGAGED: {
        ConversationState.AWAITING_CUSTOMER,
        ConversationState.WAITING_FOR_PAYMENT,
        ConversationState.CLOSED,
    },
    ConversationState.AWAITING_CUSTOMER: {
        ConversationState.ENGAGED,
        ConversationState.DORMANT,
        ConversationState.ESCALATED,
        ConversationState.CLOSED,
    },
    ConversationState.WAITING_FOR_PAYMENT: {ConversationState.PAID, ConversationState.CLOSED},
    ConversationState.PAID: {ConversationState.CLOSED},
    ConversationState.DORMANT: {ConversationState.ENGAGED, ConversationState.CLOSED},
    ConversationState.ESCALATED: {ConversationState.ENGAGED, ConversationState.CLOSED},
    ConversationState.CLOSED: set(),
}


class PaymentIntentStatus(str, Enum):
    """Status of a payment intent"""
    INITIATED = 'initiated'
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    EXPIRED = 'expired'


ACTIVE_PAYMENT_STATUSES = (PaymentIntentStatus.INITIATED.value, PaymentIntentStatus.PENDING.value)
TERMINAL_PAYMENT_STATUSES = (
    PaymentIntentStatus.PAID.value,
    PaymentIntentStatus.FAILED.value,
    PaymentIntentStatus.EXPIRED.value,
)


class EventType(str, Enum):
    """Closed vocabulary of domain events"""
    NEW_LEAD = 'NEW_LEAD'
    PAYMENT_INITIATED = 'PAYMENT_INITIATED'
    PAYMENT_CONFIRMED = 'PAYMENT_CONFIRMED'
    PAYMENT_FAILED = 'PAYMENT_FAILED'
    PAYMENT_EXPIRED = 'PAYMENT_EXPIRED'
    FOLLOW_UP_SENT = 'FOLLOW_UP_SENT'
    ESCALATION_REQUIRED = 'ESCALATION_REQUIRED'
    CONVERSATION_DORMANT = 'CONVERSATION_DORMANT'
    CONVERSATION_CLOSED = 'CONVERSATION_CLOSED'
    STATE_CHANGED = 'STATE_CHANGED'


class FollowUpStatus(str, Enum):
    """Status of a scheduled follow-up task"""
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    ESCALATED = 'escalated'
    CANCELLED = 'cancelled'


class MessageDirection(str, Enum):
    INBOUND = 'inbound'
    OUTBOUND = 'outbound'


class PaymentProvider(str, Enum):
    MPESA = 'mpesa'
