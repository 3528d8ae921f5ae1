"""
ConversationStateMachine - the only writer of a conversation's state

A transition is one unit of work: lock the conversation row, validate the
edge against STATE_TRANSITIONS, write the new state, append the transition
record and stage the STATE_CHANGED event, then commit. Subscribers are
notified only after the commit succeeded.

The state write is also conditional on the row still holding the state that
was validated. SQLite ignores FOR UPDATE, so there the conditional write is
what makes one of two racing transitions lose.
"""

from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from flowstack_database import Conversation, StateTransition
from repositories.base_repository import translate_storage_error
from repositories.conversation_repository import ConversationRepository
from repositories.state_transition_repository import StateTransitionRepository
from services.common.errors import InvalidTransitionError, NotFoundError, ValidationError
from services.enums import ConversationState, EventType, STATE_TRANSITIONS
from services.event_bus import EventBus
from utils.datetime_utils import utc_now
from logging_config import get_logger

logger = get_logger(__name__)

MAX_HISTORY_PAGE = 100

# States whose entry is announced with its own event besides STATE_CHANGED
LIFECYCLE_EVENTS = {
    ConversationState.CLOSED: EventType.CONVERSATION_CLOSED,
    ConversationState.DORMANT: EventType.CONVERSATION_DORMANT,
    ConversationState.ESCALATED: EventType.ESCALATION_REQUIRED,
}


def coerce_state(state: Union[ConversationState, str]) -> ConversationState:
    try:
        return ConversationState(state)
    except ValueError:
        raise ValidationError(f"Unknown conversation state: {state}")


class ConversationStateMachine:
    """Validates and applies conversation lifecycle transitions"""

    def __init__(self, conversation_repository: ConversationRepository,
                 transition_repository: StateTransitionRepository,
                 event_bus: EventBus):
        self.conversation_repository = conversation_repository
        self.transition_repository = transition_repository
        self.event_bus = event_bus

    @staticmethod
    def is_valid_transition(from_state: Union[ConversationState, str],
                            to_state: Union[ConversationState, str]) -> bool:
        """Check whether (from_state, to_state) is an edge of the lifecycle graph"""
        return coerce_state(to_state) in STATE_TRANSITIONS[coerce_state(from_state)]

    def transition_to(self, conversation_id: int, target_state: Union[ConversationState, str],
                      trigger: str, actor: str = 'system',
                      metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        """
        Move a conversation to target_state.

        Args:
            conversation_id: Conversation to transition
            target_state: Desired state
            trigger: Label of what caused the change (e.g. 'customer_replied')
            actor: Who triggered it ('system', a staff id, ...)
            metadata: Optional structured data kept on the transition record

        Returns:
            The updated Conversation

        Raises:
            NotFoundError: Conversation does not exist
            InvalidTransitionError: The edge is not in the graph
            ValidationError: Unknown target state or missing trigger
            TransientIOError: Storage failed; nothing was written
        """
        target = coerce_state(target_state)
        if not trigger:
            raise ValidationError("A transition needs a trigger label")

        repo = self.conversation_repository
        try:
            conversation = repo.get_for_update(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")

            current = ConversationState(conversation.current_state)
            if target not in STATE_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot transition conversation {conversation_id} from {current.value} to {target.value}",
                    {'from_state': current.value, 'to_state': target.value}
                )

            now = utc_now()
            if repo.update_state(conversation.id, current, target, now) == 0:
                raise InvalidTransitionError(
                    f"Conversation {conversation_id} left {current.value} concurrently",
                    {'from_state': current.value, 'to_state': target.value}
                )

            self.transition_repository.add(
                conversation_id=conversation.id,
                business_id=conversation.business_id,
                from_state=current.value,
                to_state=target.value,
                trigger=trigger,
                triggered_by=actor,
                metadata=metadata,
            )

            events = [self.event_bus.record(
                EventType.STATE_CHANGED,
                business_id=conversation.business_id,
                conversation_id=conversation.id,
                payload={
                    'from_state': current.value,
                    'to_state': target.value,
                    'trigger': trigger,
                    'actor': actor,
                },
            )]
            lifecycle_event = LIFECYCLE_EVENTS.get(target)
            if lifecycle_event is not None:
                events.append(self.event_bus.record(
                    lifecycle_event,
                    business_id=conversation.business_id,
                    conversation_id=conversation.id,
                    payload={'from_state': current.value, 'trigger': trigger, 'actor': actor},
                ))

            repo.session.commit()
        except SQLAlchemyError as e:
            repo.rollback()
            logger.error("State transition aborted", conversation_id=conversation_id, error=str(e))
            raise translate_storage_error(e) from e
        except Exception:
            repo.rollback()
            raise

        logger.info(
            "Conversation state changed",
            conversation_id=conversation_id,
            from_state=current.value,
            to_state=target.value,
            trigger=trigger,
            actor=actor
        )

        for event in events:
            self.event_bus.publish(event)
        return conversation

    def get_current_state(self, conversation_id: int) -> ConversationState:
        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return ConversationState(conversation.current_state)

    def get_transition_history(self, conversation_id: int, limit: int = 10) -> List[StateTransition]:
        """
        Most recent transitions first.

        The page size is clamped to 1..100.
        """
        if self.conversation_repository.get_by_id(conversation_id) is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        limit = max(1, min(int(limit), MAX_HISTORY_PAGE))
        return self.transition_repository.get_history(conversation_id, limit)
