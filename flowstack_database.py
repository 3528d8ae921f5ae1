# flowstack_database.py

from extensions import db
from utils.datetime_utils import utc_now, format_utc_iso
from services.enums import (
    ConversationState,
    PaymentIntentStatus,
    FollowUpStatus,
    PaymentProvider,
    TERMINAL_PAYMENT_STATUSES,
)

DEFAULT_FOLLOW_UP_RULES = {
    'first_reminder_minutes': 120,
    'second_reminder_hours': 24,
    'dormant_days': 3,
    'payment_expiry_hours': 48,
    'payment_reminder_minutes': 240,
}

DEFAULT_MESSAGE_TEMPLATES = {
    'welcome': 'welcome_template',
    'follow_up_2hr': 'follow_up_gentle',
    'follow_up_24hr': 'follow_up_reminder',
    'payment_reminder': 'payment_pending',
    'payment_expired': 'payment_expired',
    'payment_confirmed': 'payment_confirmed',
}


# --- Tenant ---
class Business(db.Model):
    """A tenant. Every other row is foreign-keyed to one."""
    __tablename__ = 'businesses'

    id = db.Column(db.Integer, primary_key=True)
    business_name = db.Column(db.String(255), nullable=False)
    whatsapp_number = db.Column(db.String(20), unique=True, nullable=False)
    owner_phone = db.Column(db.String(20), nullable=False)
    industry = db.Column(db.String(100), nullable=True)

    currency = db.Column(db.String(3), nullable=False, default='KES')
    timezone = db.Column(db.String(50), nullable=False, default='Africa/Nairobi')

    # Per-tenant configuration
    follow_up_rules = db.Column(db.JSON, nullable=True, default=lambda: dict(DEFAULT_FOLLOW_UP_RULES))
    message_templates = db.Column(db.JSON, nullable=True, default=lambda: dict(DEFAULT_MESSAGE_TEMPLATES))

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    conversations = db.relationship('Conversation', backref='business', lazy=True, cascade="all, delete-orphan")

    def rule(self, key: str):
        """Read a follow-up rule, falling back to the platform default"""
        rules = self.follow_up_rules or {}
        return rules.get(key, DEFAULT_FOLLOW_UP_RULES.get(key))

    def to_dict(self):
        return {
            'id': self.id,
            'business_name': self.business_name,
            'whatsapp_number': self.whatsapp_number,
            'currency': self.currency,
            'timezone': self.timezone,
        }


# --- Conversation (the state machine's row) ---
class Conversation(db.Model):
    __tablename__ = 'conversations'

    id = db.Column(db.Integer, primary_key=True)
    business_id = db.Column(db.Integer, db.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False, index=True)

    customer_phone = db.Column(db.String(20), nullable=False, index=True)
    customer_name = db.Column(db.String(255), nullable=True)

    # Only the state machine writes these three columns
    current_state = db.Column(db.String(30), nullable=False, default=ConversationState.NEW_LEAD.value, index=True)
    previous_state = db.Column(db.String(30), nullable=True)
    state_changed_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    # Activity tracking
    last_message_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    last_customer_message_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_staff_reply_at = db.Column(db.DateTime(timezone=True), nullable=True)
    message_count = db.Column(db.Integer, nullable=False, default=0)

    # Follow-up tracking
    follow_up_count = db.Column(db.Integer, nullable=False, default=0)
    last_follow_up_at = db.Column(db.DateTime(timezone=True), nullable=True)

    source = db.Column(db.String(50), default='whatsapp')
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    messages = db.relationship('Message', backref='conversation', lazy=True, cascade="all, delete-orphan")
    transitions = db.relationship('StateTransition', backref='conversation', lazy=True, cascade="all, delete-orphan")
    payment_intents = db.relationship('PaymentIntent', backref='conversation', lazy=True, cascade="all, delete-orphan")
    follow_up_tasks = db.relationship('FollowUpTask', backref='conversation', lazy=True, cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint('business_id', 'customer_phone', name='uq_conversation_business_customer'),
    )

    def __repr__(self):
        return f'<Conversation {self.id}: {self.customer_phone} [{self.current_state}]>'

    def to_dict(self):
        return {
            'id': self.id,
            'business_id': self.business_id,
            'customer_phone': self.customer_phone,
            'customer_name': self.customer_name,
            'current_state': self.current_state,
            'previous_state': self.previous_state,
            'state_changed_at': format_utc_iso(self.state_changed_at),
            'message_count': self.message_count,
            'last_message_at': format_utc_iso(self.last_message_at),
            'last_customer_message_at': format_utc_iso(self.last_customer_message_at),
            'last_staff_reply_at': format_utc_iso(self.last_staff_reply_at),
            'follow_up_count': self.follow_up_count,
            'closed_at': format_utc_iso(self.closed_at),
        }


class Message(db.Model):
    __tablename__ = 'messages'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)

    direction = db.Column(db.String(10), nullable=False)  # 'inbound' or 'outbound'
    sender_phone = db.Column(db.String(20), nullable=True)
    message_body = db.Column(db.Text, nullable=True)
    whatsapp_message_id = db.Column(db.String(100), nullable=True, unique=True)
    sent_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    def to_dict(self):
        return {
            'id': self.id,
            'direction': self.direction,
            'sender_phone': self.sender_phone,
            'message_body': self.message_body,
            'whatsapp_message_id': self.whatsapp_message_id,
            'sent_at': format_utc_iso(self.sent_at),
        }


# --- Payment intents (first-class entity) ---
class PaymentIntent(db.Model):
    __tablename__ = 'payment_intents'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False, index=True)

    # Immutable after creation
    expected_amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='KES')
    description = db.Column(db.Text, nullable=True)

    # Internal authority; only the lifecycle engine writes it
    status = db.Column(db.String(20), nullable=False, default=PaymentIntentStatus.INITIATED.value, index=True)

    # Provider correlation (written through the engine on behalf of the connector)
    provider = db.Column(db.String(20), nullable=False, default=PaymentProvider.MPESA.value)
    provider_reference = db.Column(db.String(255), nullable=True, index=True)
    provider_transaction_id = db.Column(db.String(255), nullable=True)
    provider_metadata = db.Column(db.JSON, nullable=True)

    # Lifecycle
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        db.Index('idx_payment_intents_status_expires', 'status', 'expires_at'),
    )

    def __repr__(self):
        return f'<PaymentIntent {self.id}: {self.currency} {self.expected_amount} [{self.status}]>'

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'business_id': self.business_id,
            'expected_amount': str(self.expected_amount) if self.expected_amount is not None else None,
            'currency': self.currency,
            'description': self.description,
            'status': self.status,
            'provider': self.provider,
            'provider_reference': self.provider_reference,
            'provider_transaction_id': self.provider_transaction_id,
            'expires_at': format_utc_iso(self.expires_at),
            'paid_at': format_utc_iso(self.paid_at),
            'failed_at': format_utc_iso(self.failed_at),
            'failure_reason': self.failure_reason,
            'created_at': format_utc_iso(self.created_at),
        }


# --- Audit trail of state changes ---
class StateTransition(db.Model):
    """Append-only. Never updated after insert."""
    __tablename__ = 'state_transitions'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False)
    business_id = db.Column(db.Integer, db.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)

    from_state = db.Column(db.String(30), nullable=False)
    to_state = db.Column(db.String(30), nullable=False)
    trigger = db.Column(db.String(100), nullable=False)
    triggered_by = db.Column(db.String(100), nullable=False, default='system')
    transition_metadata = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        db.Index('idx_state_transitions_conversation', 'conversation_id', 'id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'business_id': self.business_id,
            'from_state': self.from_state,
            'to_state': self.to_state,
            'trigger': self.trigger,
            'triggered_by': self.triggered_by,
            'metadata': self.transition_metadata,
            'created_at': format_utc_iso(self.created_at),
        }


# --- Event log ---
class Event(db.Model):
    """Durable record of every domain occurrence. The id gives append order."""
    __tablename__ = 'events'

    id = db.Column(db.Integer, primary_key=True)
    event_type = db.Column(db.String(50), nullable=False, index=True)
    business_id = db.Column(db.Integer, db.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=True)
    payment_intent_id = db.Column(db.Integer, db.ForeignKey('payment_intents.id', ondelete='SET NULL'), nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        db.Index('idx_events_conversation', 'conversation_id', 'id'),
        db.Index('idx_events_business_type', 'business_id', 'event_type'),
    )

    def __repr__(self):
        return f'<Event {self.id}: {self.event_type}>'

    def to_dict(self):
        return {
            'event_id': self.id,
            'event_type': self.event_type,
            'business_id': self.business_id,
            'conversation_id': self.conversation_id,
            'payment_intent_id': self.payment_intent_id,
            'payload': self.payload or {},
            'created_at': format_utc_iso(self.created_at),
        }


# --- Scheduled follow-ups ---
class FollowUpTask(db.Model):
    __tablename__ = 'follow_up_tasks'

    id = db.Column(db.Integer, primary_key=True)
    conversation_id = db.Column(db.Integer, db.ForeignKey('conversations.id', ondelete='CASCADE'), nullable=False)
    business_id = db.Column(db.Integer, db.ForeignKey('businesses.id', ondelete='CASCADE'), nullable=False)
    # Weak reference, the intent does not own its reminders
    payment_intent_id = db.Column(db.Integer, db.ForeignKey('payment_intents.id', ondelete='SET NULL'), nullable=True)

    trigger_reason = db.Column(db.String(100), nullable=False)
    scheduled_time = db.Column(db.DateTime(timezone=True), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=FollowUpStatus.PENDING.value)

    message_template_key = db.Column(db.String(100), nullable=False)
    message_context = db.Column(db.JSON, nullable=True)

    # Delivery bookkeeping
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    claim_token = db.Column(db.String(36), nullable=True)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Outcome
    executed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    message_body = db.Column(db.Text, nullable=True)
    message_sent = db.Column(db.Boolean, nullable=False, default=False)
    whatsapp_message_id = db.Column(db.String(100), nullable=True)

    escalation_level = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    payment_intent = db.relationship('PaymentIntent', lazy=True)

    __table_args__ = (
        db.Index('idx_follow_up_tasks_due', 'status', 'scheduled_time'),
        db.Index('idx_follow_up_tasks_conversation', 'conversation_id'),
    )

    def __repr__(self):
        return f'<FollowUpTask {self.id}: {self.message_template_key} [{self.status}]>'

    def to_dict(self):
        return {
            'id': self.id,
            'conversation_id': self.conversation_id,
            'business_id': self.business_id,
            'payment_intent_id': self.payment_intent_id,
            'trigger_reason': self.trigger_reason,
            'scheduled_time': format_utc_iso(self.scheduled_time),
            'status': self.status,
            'message_template_key': self.message_template_key,
            'message_context': self.message_context or {},
            'attempt_count': self.attempt_count,
            'last_error': self.last_error,
            'executed_at': format_utc_iso(self.executed_at),
            'message_body': self.message_body,
            'message_sent': self.message_sent,
            'whatsapp_message_id': self.whatsapp_message_id,
            'escalation_level': self.escalation_level,
        }
