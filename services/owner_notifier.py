"""
OwnerNotifier - WhatsApp notices to a tenant's owner
"""

from typing import Any, Dict, Optional

from flowstack_database import Business
from services.common.errors import FlowStackError
from services.enums import EventType
from services.message_composer import MessageComposer
from services.whatsapp_client import WhatsAppClient
from logging_config import get_logger

logger = get_logger(__name__)

OWNER_TEMPLATES = {
    EventType.ESCALATION_REQUIRED.value: 'owner_escalation',
    EventType.PAYMENT_FAILED.value: 'owner_payment_failed',
    EventType.CONVERSATION_DORMANT.value: 'owner_dormant',
}


class OwnerNotifier:
    """Sends short operational notices to the business owner's phone"""

    def __init__(self, whatsapp_client: WhatsAppClient, composer: MessageComposer):
        self.whatsapp_client = whatsapp_client
        self.composer = composer

    def notify(self, business: Business, event_type: str, details: Optional[Dict[str, Any]] = None) -> bool:
        """
        Notify the owner about an event.

        Returns:
            True if a notice was sent. Delivery problems are logged and
            reported as False; an owner notice is never worth failing for.
        """
        template_key = OWNER_TEMPLATES.get(event_type)
        if template_key is None:
            logger.debug("No owner notice for event type", event_type=event_type)
            return False
        if not business.owner_phone:
            logger.warning("Business has no owner phone", business_id=business.id)
            return False

        try:
            body = self.composer.render(business, template_key, details)
            self.whatsapp_client.send_message(
                to=business.owner_phone, body=body, from_number=business.whatsapp_number
            )
        except FlowStackError as e:
            logger.error(
                "Owner notification failed",
                business_id=business.id,
                event_type=event_type,
                error_kind=e.kind,
                error=e.message
            )
            return False

        logger.info("Owner notified", business_id=business.id, event_type=event_type)
        return True
