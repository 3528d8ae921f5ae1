"""
ConversationRepository - Data access layer for Conversation model
"""

from typing import List, Optional
from datetime import datetime
from sqlalchemy import or_
from repositories.base_repository import BaseRepository, PaginatedResult, PaginationParams, SortOrder
from flowstack_database import Conversation
from services.enums import ConversationState
from utils.datetime_utils import utc_now


class ConversationRepository(BaseRepository):
    """Repository for Conversation data access"""

    def __init__(self, session):
        """Initialize repository with database session"""
        super().__init__(session, Conversation)

    def get_for_update(self, conversation_id: int) -> Optional[Conversation]:
        """
        Load a conversation holding an exclusive row lock until commit/rollback.

        Concurrent callers on the same conversation queue behind the lock and
        see the committed post-transition row. populate_existing() makes sure
        an identity-mapped instance is refreshed from that row.
        """
        return self.session.query(self.model_class)\
            .filter(self.model_class.id == conversation_id)\
            .with_for_update()\
            .populate_existing()\
            .first()

    def update_state(self, conversation_id: int, from_state: ConversationState,
                     to_state: ConversationState, at: Optional[datetime] = None) -> int:
        """
        from_state -> to_state, only while the row is still in from_state.

        Returns:
            1 if the state was written, 0 if another writer moved it first
        """
        at = at or utc_now()
        updates = {
            'previous_state': from_state.value,
            'current_state': to_state.value,
            'state_changed_at': at,
        }
        if to_state == ConversationState.CLOSED:
            updates['closed_at'] = at
        return self.update_where(
            [
                self.model_class.id == conversation_id,
                self.model_class.current_state == from_state.value,
            ],
            updates
        )

    def find_by_business_and_phone(self, business_id: int, customer_phone: str) -> Optional[Conversation]:
        """
        Find the conversation for a customer within one tenant.

        Args:
            business_id: Owning tenant
            customer_phone: Customer's WhatsApp number

        Returns:
            Conversation object or None if not found
        """
        return self.session.query(self.model_class)\
            .filter_by(business_id=business_id, customer_phone=customer_phone)\
            .first()

    def find_inactive_in_state(self, state: ConversationState, inactive_since: datetime,
                               business_id: Optional[int] = None) -> List[Conversation]:
        """
        Find conversations in a state with no customer message since a cutoff.

        Conversations where the customer never wrote fall back to the time
        the state was entered.
        """
        query = self.session.query(self.model_class)\
            .filter(self.model_class.current_state == state.value)\
            .filter(or_(
                self.model_class.last_customer_message_at < inactive_since,
                (self.model_class.last_customer_message_at.is_(None)) &
                (self.model_class.state_changed_at < inactive_since)
            ))
        if business_id is not None:
            query = query.filter(self.model_class.business_id == business_id)
        return query.order_by(self.model_class.id).all()

    def get_conversations_page(self, business_id: int, page: int = 1, per_page: int = 50,
                               state: Optional[str] = None) -> PaginatedResult:
        """Get paginated conversations for a tenant, most recent activity first"""
        filters = {'business_id': business_id}
        if state:
            filters['current_state'] = state
        return self.get_paginated(
            PaginationParams(page=page, per_page=per_page),
            filters=filters,
            order_by='last_message_at',
            order=SortOrder.DESC
        )

    def record_activity(self, conversation: Conversation, from_customer: bool,
                        at: Optional[datetime] = None) -> Conversation:
        """Bump message counters and activity timestamps"""
        at = at or utc_now()
        conversation.message_count = (conversation.message_count or 0) + 1
        conversation.last_message_at = at
        if from_customer:
            conversation.last_customer_message_at = at
        else:
            conversation.last_staff_reply_at = at
        self.session.flush()
        return conversation

    def increment_follow_up_count(self, conversation_id: int, at: Optional[datetime] = None) -> int:
        """Atomically bump the follow-up counter without a read-modify-write"""
        return self.update_where(
            [self.model_class.id == conversation_id],
            {
                'follow_up_count': self.model_class.follow_up_count + 1,
                'last_follow_up_at': at or utc_now(),
            }
        )
