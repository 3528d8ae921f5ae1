"""
EventRepository - Read and append access to the durable event log
"""

from typing import List, Optional, Dict, Any
from sqlalchemy import desc
from repositories.base_repository import BaseRepository
from flowstack_database import Event


class EventRepository(BaseRepository):
    """Repository for Event rows. Rows are never updated."""

    def __init__(self, session):
        super().__init__(session, Event)

    def add(self, event_type: str, business_id: int, conversation_id: Optional[int] = None,
            payment_intent_id: Optional[int] = None,
            payload: Optional[Dict[str, Any]] = None) -> Event:
        """Stage an event row and flush it to obtain its sequence id"""
        return self.create(
            event_type=event_type,
            business_id=business_id,
            conversation_id=conversation_id,
            payment_intent_id=payment_intent_id,
            payload=payload or {},
        )

    def find_for_conversation(self, conversation_id: int, event_type: Optional[str] = None) -> List[Event]:
        """
        Events of one conversation in append order.

        Args:
            conversation_id: Conversation to read
            event_type: Optional filter on a single type
        """
        query = self.session.query(self.model_class)\
            .filter_by(conversation_id=conversation_id)
        if event_type:
            query = query.filter_by(event_type=event_type)
        return query.order_by(self.model_class.id).all()

    def find_for_payment_intent(self, payment_intent_id: int, event_type: Optional[str] = None) -> List[Event]:
        query = self.session.query(self.model_class)\
            .filter_by(payment_intent_id=payment_intent_id)
        if event_type:
            query = query.filter_by(event_type=event_type)
        return query.order_by(self.model_class.id).all()

    def find_by_type(self, event_type: str, business_id: Optional[int] = None, limit: int = 100) -> List[Event]:
        """Most recent events of a type, newest first"""
        query = self.session.query(self.model_class).filter_by(event_type=event_type)
        if business_id is not None:
            query = query.filter_by(business_id=business_id)
        return query.order_by(desc(self.model_class.id)).limit(limit).all()
