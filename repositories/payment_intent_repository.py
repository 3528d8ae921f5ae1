"""
PaymentIntentRepository - Data access layer for PaymentIntent model
"""

from typing import List, Optional
from datetime import datetime
from sqlalchemy import desc
from repositories.base_repository import BaseRepository
from flowstack_database import PaymentIntent
from services.enums import ACTIVE_PAYMENT_STATUSES


class PaymentIntentRepository(BaseRepository):
    """Repository for PaymentIntent data access"""

    def __init__(self, session):
        super().__init__(session, PaymentIntent)

    def find_active_for_conversation(self, conversation_id: int) -> Optional[PaymentIntent]:
        """Most recent intent of a conversation still in initiated/pending"""
        return self.session.query(self.model_class)\
            .filter(self.model_class.conversation_id == conversation_id)\
            .filter(self.model_class.status.in_(ACTIVE_PAYMENT_STATUSES))\
            .order_by(desc(self.model_class.created_at), desc(self.model_class.id))\
            .first()

    def find_by_provider_reference(self, provider_reference: str) -> Optional[PaymentIntent]:
        return self.session.query(self.model_class)\
            .filter_by(provider_reference=provider_reference)\
            .first()

    def find_overdue(self, now: datetime, limit: Optional[int] = None) -> List[PaymentIntent]:
        """
        Non-terminal intents whose expiry has passed, oldest expiry first.

        Args:
            now: Reference time
            limit: Optional batch size
        """
        query = self.session.query(self.model_class)\
            .filter(self.model_class.status.in_(ACTIVE_PAYMENT_STATUSES))\
            .filter(self.model_class.expires_at <= now)\
            .order_by(self.model_class.expires_at, self.model_class.id)
        if limit:
            query = query.limit(limit)
        return query.all()

    def transition_if_active(self, intent_id: int, updates: dict) -> int:
        """
        Write a status change only while the intent is still non-terminal.

        Returns:
            1 if this writer won, 0 if the intent was already terminal
        """
        return self.update_where(
            [
                self.model_class.id == intent_id,
                self.model_class.status.in_(ACTIVE_PAYMENT_STATUSES),
            ],
            updates
        )
