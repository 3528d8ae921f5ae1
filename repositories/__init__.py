"""
Repository Layer - Data Access Abstraction
Implements the Repository Pattern for database isolation
"""

from .base_repository import (
    BaseRepository,
    PaginationParams,
    PaginatedResult,
    SortOrder
)
from .business_repository import BusinessRepository
from .conversation_repository import ConversationRepository
from .event_repository import EventRepository
from .follow_up_task_repository import FollowUpTaskRepository
from .message_repository import MessageRepository
from .payment_intent_repository import PaymentIntentRepository
from .state_transition_repository import StateTransitionRepository

__all__ = [
    'BaseRepository',
    'PaginationParams',
    'PaginatedResult',
    'SortOrder',
    'BusinessRepository',
    'ConversationRepository',
    'EventRepository',
    'FollowUpTaskRepository',
    'MessageRepository',
    'PaymentIntentRepository',
    'StateTransitionRepository',
]
