"""
StateTransitionRepository - Audit trail of conversation state changes
"""

from typing import List, Optional, Dict, Any
from sqlalchemy import desc
from repositories.base_repository import BaseRepository
from flowstack_database import StateTransition


class StateTransitionRepository(BaseRepository):
    """Append-only access to transition records"""

    def __init__(self, session):
        super().__init__(session, StateTransition)

    def add(self, conversation_id: int, business_id: int, from_state: str, to_state: str,
            trigger: str, triggered_by: str = 'system',
            metadata: Optional[Dict[str, Any]] = None) -> StateTransition:
        """Stage a transition record in the current unit of work"""
        return self.create(
            conversation_id=conversation_id,
            business_id=business_id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            triggered_by=triggered_by,
            transition_metadata=metadata,
        )

    def get_history(self, conversation_id: int, limit: int = 10) -> List[StateTransition]:
        """
        Most recent transitions first.

        Ordered by id rather than created_at so records written within the
        same clock tick keep their commit order.
        """
        return self.session.query(self.model_class)\
            .filter_by(conversation_id=conversation_id)\
            .order_by(desc(self.model_class.id))\
            .limit(limit)\
            .all()

    def find_for_conversation(self, conversation_id: int) -> List[StateTransition]:
        """All transitions of a conversation in the order they happened"""
        return self.session.query(self.model_class)\
            .filter_by(conversation_id=conversation_id)\
            .order_by(self.model_class.id)\
            .all()
