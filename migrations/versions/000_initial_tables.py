"""Create tenant, conversation, payment, event and follow-up tables

Revision ID: 000_initial_tables
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '000_initial_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Tenants first (no foreign keys)
    op.create_table('businesses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('whatsapp_number', sa.String(length=20), nullable=False),
        sa.Column('owner_phone', sa.String(length=20), nullable=False),
        sa.Column('industry', sa.String(length=100), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('timezone', sa.String(length=50), nullable=False),
        sa.Column('follow_up_rules', sa.JSON(), nullable=True),
        sa.Column('message_templates', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('whatsapp_number')
    )

    op.create_table('conversations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('customer_phone', sa.String(length=20), nullable=False),
        sa.Column('customer_name', sa.String(length=255), nullable=True),
        sa.Column('current_state', sa.String(length=30), nullable=False),
        sa.Column('previous_state', sa.String(length=30), nullable=True),
        sa.Column('state_changed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_customer_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_staff_reply_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('message_count', sa.Integer(), nullable=False),
        sa.Column('follow_up_count', sa.Integer(), nullable=False),
        sa.Column('last_follow_up_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('business_id', 'customer_phone', name='uq_conversation_business_customer')
    )
    op.create_index('ix_conversations_business_id', 'conversations', ['business_id'])
    op.create_index('ix_conversations_customer_phone', 'conversations', ['customer_phone'])
    op.create_index('ix_conversations_current_state', 'conversations', ['current_state'])

    op.create_table('messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(length=10), nullable=False),
        sa.Column('sender_phone', sa.String(length=20), nullable=True),
        sa.Column('message_body', sa.Text(), nullable=True),
        sa.Column('whatsapp_message_id', sa.String(length=100), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('whatsapp_message_id')
    )
    op.create_index('ix_messages_conversation_id', 'messages', ['conversation_id'])

    op.create_table('payment_intents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('expected_amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('provider', sa.String(length=20), nullable=False),
        sa.Column('provider_reference', sa.String(length=255), nullable=True),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('provider_metadata', sa.JSON(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payment_intents_conversation_id', 'payment_intents', ['conversation_id'])
    op.create_index('ix_payment_intents_business_id', 'payment_intents', ['business_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_provider_reference', 'payment_intents', ['provider_reference'])
    op.create_index('idx_payment_intents_status_expires', 'payment_intents', ['status', 'expires_at'])

    op.create_table('state_transitions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('from_state', sa.String(length=30), nullable=False),
        sa.Column('to_state', sa.String(length=30), nullable=False),
        sa.Column('trigger', sa.String(length=100), nullable=False),
        sa.Column('triggered_by', sa.String(length=100), nullable=False),
        sa.Column('transition_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_state_transitions_conversation', 'state_transitions', ['conversation_id', 'id'])

    op.create_table('events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=True),
        sa.Column('payment_intent_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_intent_id'], ['payment_intents.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_events_event_type', 'events', ['event_type'])
    op.create_index('idx_events_conversation', 'events', ['conversation_id', 'id'])
    op.create_index('idx_events_business_type', 'events', ['business_id', 'event_type'])

    op.create_table('follow_up_tasks',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('conversation_id', sa.Integer(), nullable=False),
        sa.Column('business_id', sa.Integer(), nullable=False),
        sa.Column('payment_intent_id', sa.Integer(), nullable=True),
        sa.Column('trigger_reason', sa.String(length=100), nullable=False),
        sa.Column('scheduled_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('message_template_key', sa.String(length=100), nullable=False),
        sa.Column('message_context', sa.JSON(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('claim_token', sa.String(length=36), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('message_body', sa.Text(), nullable=True),
        sa.Column('message_sent', sa.Boolean(), nullable=False),
        sa.Column('whatsapp_message_id', sa.String(length=100), nullable=True),
        sa.Column('escalation_level', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['conversation_id'], ['conversations.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['business_id'], ['businesses.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_intent_id'], ['payment_intents.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_follow_up_tasks_due', 'follow_up_tasks', ['status', 'scheduled_time'])
    op.create_index('idx_follow_up_tasks_conversation', 'follow_up_tasks', ['conversation_id'])


def downgrade():
    op.drop_table('follow_up_tasks')
    op.drop_table('events')
    op.drop_table('state_transitions')
    op.drop_table('payment_intents')
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('businesses')
