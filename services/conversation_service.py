"""
ConversationService - read models and multi-step conversation workflows
"""

from typing import Any, Dict, List, Optional

from flowstack_database import Conversation, Event, PaymentIntent
from repositories.base_repository import PaginatedResult
from repositories.business_repository import BusinessRepository
from repositories.conversation_repository import ConversationRepository
from repositories.event_repository import EventRepository
from services.common.errors import FlowStackError, InvalidTransitionError, NotFoundError
from services.enums import ConversationState
from services.payment_intent_service import PaymentIntentService, to_amount
from services.state_machine import ConversationStateMachine
from utils.datetime_utils import utc_days_ago
from logging_config import get_logger

logger = get_logger(__name__)


class ConversationService:
    """Service for conversation queries, payment requests and dormancy"""

    def __init__(self, conversation_repository: ConversationRepository,
                 business_repository: BusinessRepository,
                 event_repository: EventRepository,
                 state_machine: ConversationStateMachine,
                 payment_service: PaymentIntentService):
        self.conversation_repository = conversation_repository
        self.business_repository = business_repository
        self.event_repository = event_repository
        self.state_machine = state_machine
        self.payment_service = payment_service

    def get_conversation(self, conversation_id: int) -> Conversation:
        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return conversation

    def list_conversations(self, business_id: int, page: int = 1, per_page: int = 50,
                           state: Optional[str] = None) -> PaginatedResult:
        if self.business_repository.get_by_id(business_id) is None:
            raise NotFoundError(f"Business {business_id} not found")
        return self.conversation_repository.get_conversations_page(business_id, page, per_page, state)

    def get_events(self, conversation_id: int, event_type: Optional[str] = None) -> List[Event]:
        """Event log of a conversation in append order"""
        self.get_conversation(conversation_id)
        return self.event_repository.find_for_conversation(conversation_id, event_type)

    def get_conversation_details(self, conversation_id: int) -> Dict[str, Any]:
        conversation = self.get_conversation(conversation_id)
        active_intent = self.payment_service.get_active_intent(conversation_id)
        return {
            'conversation': conversation.to_dict(),
            'active_payment_intent': active_intent.to_dict() if active_intent else None,
            'recent_transitions': [
                t.to_dict() for t in self.state_machine.get_transition_history(conversation_id, 10)
            ],
        }

    def request_payment(self, conversation_id: int, amount: Any,
                        expiry_hours: Optional[float] = None,
                        description: Optional[str] = None,
                        actor: str = 'staff') -> PaymentIntent:
        """
        Ask the customer to pay: move to WAITING_FOR_PAYMENT and create the
        intent.

        Only one intent per conversation may be active at a time.

        Raises:
            InvalidTransitionError: An intent is already active, or the
                conversation cannot move to WAITING_FOR_PAYMENT
        """
        expected_amount = to_amount(amount)
        self.get_conversation(conversation_id)
        active = self.payment_service.get_active_intent(conversation_id)
        if active is not None:
            raise InvalidTransitionError(
                f"Conversation {conversation_id} already has active payment intent {active.id}",
                {'payment_intent_id': active.id}
            )

        current = self.state_machine.get_current_state(conversation_id)
        if current != ConversationState.WAITING_FOR_PAYMENT:
            self.state_machine.transition_to(
                conversation_id,
                ConversationState.WAITING_FOR_PAYMENT,
                'payment_requested',
                actor=actor,
                metadata={'amount': str(expected_amount)}
            )
        return self.payment_service.create_intent(conversation_id, expected_amount, expiry_hours, description)

    def mark_dormant_conversations(self, business_id: Optional[int] = None) -> int:
        """
        Move AWAITING_CUSTOMER conversations whose customer has been silent
        for the tenant's dormant_days to DORMANT.

        Returns:
            Number of conversations moved
        """
        businesses = [self.business_repository.get_by_id(business_id)] if business_id \
            else self.business_repository.find_by()
        moved = 0
        for business in filter(None, businesses):
            cutoff = utc_days_ago(business.rule('dormant_days'))
            candidates = self.conversation_repository.find_inactive_in_state(
                ConversationState.AWAITING_CUSTOMER, cutoff, business.id
            )
            for conversation in candidates:
                try:
                    self.state_machine.transition_to(
                        conversation.id, ConversationState.DORMANT, 'no_customer_reply'
                    )
                    moved += 1
                except FlowStackError as e:
                    # A reply or another sweep got there first
                    logger.info("Dormancy skipped", conversation_id=conversation.id, error=e.message)
        if moved:
            logger.info("Dormancy sweep finished", moved=moved)
        return moved
