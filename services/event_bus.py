"""
EventBus - Durable event log with in-process subscriber delivery

Every domain occurrence is written to the events table first and only then
handed to subscribers. The row is the record; delivery is best-effort. A
subscriber that raises is logged and skipped, its pending session work is
rolled back, and the remaining subscribers still run. Neither the emitter
nor the already-committed row is affected.

Writers that change authoritative state (the state machine, the payment
engine, the follow-up scheduler) use record() to stage the event inside
their own unit of work, commit once, then publish(). Everything else can
use append(), which does all three.
"""

from typing import Callable, Dict, List, Optional, Any, Union

from flowstack_database import Event
from repositories.event_repository import EventRepository
from services.enums import EventType
from logging_config import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[Event], Any]


def _type_value(event_type: Union[EventType, str]) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventBus:
    """Process-scoped event dispatcher owned by the service registry"""

    def __init__(self, event_repository: EventRepository):
        self.event_repository = event_repository
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._running = False

    # Lifetime

    def start(self) -> 'EventBus':
        self._running = True
        logger.debug("Event bus started")
        return self

    def close(self) -> None:
        """Stop delivering and drop every subscription"""
        self._running = False
        self._handlers.clear()
        logger.debug("Event bus closed")

    @property
    def is_running(self) -> bool:
        return self._running

    # Subscriptions

    def subscribe(self, event_type: Union[EventType, str], handler: EventHandler) -> None:
        """
        Register a handler for one event type.

        Handlers for the same type run in registration order. Registering
        the same handler twice for a type is ignored.
        """
        handlers = self._handlers.setdefault(_type_value(event_type), [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: Union[EventType, str], handler: EventHandler) -> None:
        handlers = self._handlers.get(_type_value(event_type), [])
        if handler in handlers:
            handlers.remove(handler)

    def subscribers(self, event_type: Union[EventType, str]) -> List[EventHandler]:
        return list(self._handlers.get(_type_value(event_type), []))

    def clear(self) -> None:
        self._handlers.clear()

    # Writing

    def record(self, event_type: Union[EventType, str], business_id: int,
               conversation_id: Optional[int] = None,
               payment_intent_id: Optional[int] = None,
               payload: Optional[Dict[str, Any]] = None) -> Event:
        """
        Stage an event row in the caller's open unit of work.

        Nothing is committed or delivered; the caller commits together with
        its own write and then calls publish().
        """
        return self.event_repository.add(
            event_type=_type_value(event_type),
            business_id=business_id,
            conversation_id=conversation_id,
            payment_intent_id=payment_intent_id,
            payload=payload,
        )

    def append(self, event_type: Union[EventType, str], business_id: int,
               conversation_id: Optional[int] = None,
               payment_intent_id: Optional[int] = None,
               payload: Optional[Dict[str, Any]] = None) -> Event:
        """
        Durably persist an event, then deliver it to subscribers.

        Returns:
            The committed Event; its id orders it within the log

        Raises:
            TransientIOError: If the row could not be committed. Nothing is
                delivered in that case.
        """
        event = self.record(event_type, business_id, conversation_id, payment_intent_id, payload)
        self.event_repository.commit()
        self.publish(event)
        return event

    # Delivery

    def publish(self, event: Event) -> int:
        """
        Deliver a committed event to its subscribers.

        Returns:
            Number of handlers that completed without raising
        """
        if not self._running:
            logger.debug("Event bus not running, delivery skipped", event_id=event.id)
            return 0

        event_type = event.event_type
        event_id = event.id
        delivered = 0
        for handler in self.subscribers(event_type):
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                self.event_repository.rollback()
                logger.error(
                    "Event subscriber failed",
                    event_type=event_type,
                    event_id=event_id,
                    handler=getattr(handler, '__qualname__', repr(handler)),
                    error=str(e),
                    exc_info=True
                )
        return delivered
