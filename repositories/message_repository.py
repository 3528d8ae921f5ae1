"""
MessageRepository - Data access layer for the WhatsApp message log
"""

from typing import List, Optional
from repositories.base_repository import BaseRepository
from flowstack_database import Message


class MessageRepository(BaseRepository):
    """Repository for Message data access"""

    def __init__(self, session):
        super().__init__(session, Message)

    def find_by_whatsapp_message_id(self, whatsapp_message_id: str) -> Optional[Message]:
        """Used to drop webhook redeliveries of the same inbound message"""
        if not whatsapp_message_id:
            return None
        return self.session.query(self.model_class)\
            .filter_by(whatsapp_message_id=whatsapp_message_id)\
            .first()

    def find_for_conversation(self, conversation_id: int, limit: int = 50) -> List[Message]:
        return self.session.query(self.model_class)\
            .filter_by(conversation_id=conversation_id)\
            .order_by(self.model_class.id)\
            .limit(limit)\
            .all()
