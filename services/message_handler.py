"""
MessageHandler - inbound customer messages and outbound staff replies

Keeps the message log and activity counters current and nudges the
conversation through the state machine when someone replies. It never
writes conversation state itself.
"""

from typing import Optional

from sqlalchemy.exc import IntegrityError

from flowstack_database import Conversation, Message
from repositories.business_repository import BusinessRepository
from repositories.conversation_repository import ConversationRepository
from repositories.message_repository import MessageRepository
from services.common.errors import FlowStackError, NotFoundError, ValidationError
from services.common.result import Result
from services.enums import ConversationState, EventType, MessageDirection
from services.event_bus import EventBus
from services.state_machine import ConversationStateMachine
from services.whatsapp_client import InboundMessage, WhatsAppClient
from utils.datetime_utils import utc_now
from logging_config import get_logger

logger = get_logger(__name__)

# A customer writing back in these states re-opens the dialogue
REENGAGE_ON_CUSTOMER_REPLY = {
    ConversationState.NEW_LEAD.value,
    ConversationState.AWAITING_CUSTOMER.value,
    ConversationState.DORMANT.value,
}


class MessageHandler:
    """Routes WhatsApp traffic into conversations"""

    def __init__(self, business_repository: BusinessRepository,
                 conversation_repository: ConversationRepository,
                 message_repository: MessageRepository,
                 state_machine: ConversationStateMachine,
                 event_bus: EventBus,
                 whatsapp_client: WhatsAppClient):
        self.business_repository = business_repository
        self.conversation_repository = conversation_repository
        self.message_repository = message_repository
        self.state_machine = state_machine
        self.event_bus = event_bus
        self.whatsapp_client = whatsapp_client

    def handle_inbound(self, message: InboundMessage) -> Result[Conversation]:
        """
        Store one inbound message against its conversation.

        New customers get a conversation in NEW_LEAD and a NEW_LEAD event.
        Returns a failure Result instead of raising so the webhook can
        acknowledge every delivery.
        """
        business = self.business_repository.find_by_whatsapp_number(message.display_phone_number or '')
        if business is None:
            logger.warning(
                "Inbound message for unknown business number",
                display_phone_number=message.display_phone_number,
                phone_number_id=message.phone_number_id
            )
            return Result.failure("Unknown business number", code=NotFoundError.kind)

        if self.message_repository.find_by_whatsapp_message_id(message.message_id):
            logger.info("Duplicate inbound message ignored", whatsapp_message_id=message.message_id)
            existing = self.conversation_repository.find_by_business_and_phone(business.id, message.from_phone)
            return Result.success(existing, metadata={'duplicate': True})

        try:
            conversation, created = self._find_or_create(business.id, message)
            received_at = message.timestamp or utc_now()
            self.message_repository.create(
                conversation_id=conversation.id,
                business_id=business.id,
                direction=MessageDirection.INBOUND.value,
                sender_phone=message.from_phone,
                message_body=message.body,
                whatsapp_message_id=message.message_id,
                sent_at=received_at,
            )
            self.conversation_repository.record_activity(conversation, from_customer=True)
            if message.contact_name and not conversation.customer_name:
                conversation.customer_name = message.contact_name

            event = None
            if created:
                event = self.event_bus.record(
                    EventType.NEW_LEAD,
                    business_id=business.id,
                    conversation_id=conversation.id,
                    payload={'customer_phone': message.from_phone, 'first_message': message.body[:200]},
                )
            self.conversation_repository.commit()
        except FlowStackError as e:
            self.conversation_repository.rollback()
            logger.error("Inbound message not stored", error_kind=e.kind, error=e.message)
            return Result.from_error(e)

        logger.info(
            "Inbound message stored",
            conversation_id=conversation.id,
            created=created,
            message_length=len(message.body or '')
        )
        if event is not None:
            self.event_bus.publish(event)
        elif conversation.current_state in REENGAGE_ON_CUSTOMER_REPLY:
            try:
                self.state_machine.transition_to(
                    conversation.id, ConversationState.ENGAGED, 'customer_replied', actor='customer'
                )
            except FlowStackError as e:
                # Another writer moved the conversation in the meantime
                logger.info("Customer reply did not re-engage", conversation_id=conversation.id, error=e.message)

        return Result.success(conversation, metadata={'created': created})

    def _find_or_create(self, business_id: int, message: InboundMessage):
        repo = self.conversation_repository
        conversation = repo.find_by_business_and_phone(business_id, message.from_phone)
        if conversation is not None:
            return conversation, False

        try:
            conversation = repo.create(
                business_id=business_id,
                customer_phone=message.from_phone,
                customer_name=message.contact_name,
                current_state=ConversationState.NEW_LEAD.value,
                state_changed_at=utc_now(),
                message_count=0,
            )
            return conversation, True
        except IntegrityError:
            # Concurrent first message from the same customer; create() rolled back
            existing = repo.find_by_business_and_phone(business_id, message.from_phone)
            if existing is None:
                raise
            return existing, False

    def send_staff_reply(self, conversation_id: int, body: str, actor: str = 'staff') -> Message:
        """
        Send a reply on behalf of staff and move the conversation to
        AWAITING_CUSTOMER.

        Raises:
            NotFoundError: Conversation does not exist
            ValidationError: Empty body or closed conversation
            TransportError: WhatsApp send failed; nothing was recorded
        """
        if not body or not body.strip():
            raise ValidationError("Reply body is required")

        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        if conversation.current_state == ConversationState.CLOSED.value:
            raise ValidationError(f"Conversation {conversation_id} is closed")

        business = conversation.business
        result = self.whatsapp_client.send_message(
            to=conversation.customer_phone, body=body, from_number=business.whatsapp_number
        )

        try:
            message = self.message_repository.create(
                conversation_id=conversation.id,
                business_id=conversation.business_id,
                direction=MessageDirection.OUTBOUND.value,
                sender_phone=business.whatsapp_number,
                message_body=body,
                whatsapp_message_id=result.message_id,
                sent_at=utc_now(),
            )
            self.conversation_repository.record_activity(conversation, from_customer=False)
            self.conversation_repository.commit()
        except Exception:
            self.conversation_repository.rollback()
            raise

        if conversation.current_state == ConversationState.NEW_LEAD.value:
            self.state_machine.transition_to(conversation.id, ConversationState.ENGAGED, 'staff_replied', actor=actor)
        if conversation.current_state == ConversationState.ENGAGED.value:
            self.state_machine.transition_to(
                conversation.id, ConversationState.AWAITING_CUSTOMER, 'staff_replied', actor=actor
            )
        return message

    def get_conversation_messages(self, conversation_id: int, limit: int = 50):
        return self.message_repository.find_for_conversation(conversation_id, limit)
