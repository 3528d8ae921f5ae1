"""
FollowUpService - delayed, retried outbound messages

A follow-up task is persisted as 'pending' and handed to Celery with an ETA.
The periodic recovery sweep re-submits due tasks nobody is working on, so a
task may be invoked more than once. Delivery stays at most once per task
because every step that matters is a conditional write:

1. claim    pending AND (unclaimed OR claim stale)  -> claim_token = mine
2. check    conversation/intent still make the message relevant
3. send     render the template and send through WhatsApp
4. complete pending AND claim_token = mine          -> completed

A second invocation loses at step 1 and skips. Transient send failures
release the claim and push scheduled_time back; after the last allowed
attempt the task stays 'failed' until someone escalates it.
"""

import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from flowstack_database import Business, Conversation, FollowUpTask
from repositories.conversation_repository import ConversationRepository
from repositories.follow_up_task_repository import FollowUpTaskRepository
from repositories.message_repository import MessageRepository
from services.common.errors import (
    FlowStackError,
    InvalidTransitionError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from services.enums import ConversationState, EventType, FollowUpStatus, MessageDirection
from services.event_bus import EventBus
from services.message_composer import MessageComposer
from services.whatsapp_client import WhatsAppClient
from utils.datetime_utils import ensure_utc, hours_until, utc_now, utc_to_local
from logging_config import get_logger

logger = get_logger(__name__)

# Celery can fire an ETA task slightly before the stored time
EARLY_EXECUTION_TOLERANCE = timedelta(seconds=5)

# Context key restricting a reminder to a single conversation state
REQUIRED_STATE_KEY = 'only_in_state'

Enqueue = Callable[[int, Optional[Any]], Any]


class FollowUpOutcome(str, Enum):
    SENT = 'sent'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


class FollowUpService:
    """Schedules and executes follow-up tasks"""

    def __init__(self, task_repository: FollowUpTaskRepository,
                 conversation_repository: ConversationRepository,
                 message_repository: MessageRepository,
                 event_bus: EventBus,
                 composer: MessageComposer,
                 whatsapp_client: WhatsAppClient,
                 enqueue: Optional[Enqueue] = None,
                 max_attempts: int = 3,
                 retry_base_seconds: float = 2,
                 claim_timeout_seconds: int = 600,
                 sweep_batch_size: int = 100):
        self.task_repository = task_repository
        self.conversation_repository = conversation_repository
        self.message_repository = message_repository
        self.event_bus = event_bus
        self.composer = composer
        self.whatsapp_client = whatsapp_client
        self.enqueue = enqueue
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds
        self.claim_timeout_seconds = claim_timeout_seconds
        self.sweep_batch_size = sweep_batch_size

    def retry_delay_seconds(self, attempt: int) -> float:
        """Backoff before attempt number attempt + 1 (attempt counts from 1)"""
        return self.retry_base_seconds * (2 ** max(attempt - 1, 0))

    # Scheduling

    def schedule_follow_up(self, conversation_id: int, template_key: str, delay_minutes: float,
                           context: Optional[Dict[str, Any]] = None,
                           payment_intent_id: Optional[int] = None,
                           trigger_reason: Optional[str] = None) -> FollowUpTask:
        """
        Persist a pending follow-up and dispatch it for delivery at
        now + delay_minutes.

        Raises:
            NotFoundError: Conversation does not exist
            TemplateNotFoundError: Unknown template key for the tenant
            ValidationError: Negative delay or empty template key
        """
        if not template_key:
            raise ValidationError("template_key is required")
        try:
            delay_minutes = float(delay_minutes)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid delay: {delay_minutes!r}")
        if delay_minutes < 0:
            raise ValidationError("delay_minutes cannot be negative")

        conversation = self.conversation_repository.get_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        self.composer.resolve(conversation.business, template_key)

        scheduled_time = utc_now() + timedelta(minutes=delay_minutes)
        repo = self.task_repository
        try:
            task = repo.create(
                conversation_id=conversation.id,
                business_id=conversation.business_id,
                payment_intent_id=payment_intent_id,
                trigger_reason=trigger_reason or template_key,
                scheduled_time=scheduled_time,
                status=FollowUpStatus.PENDING.value,
                message_template_key=template_key,
                message_context=context or {},
            )
            repo.commit()
        except Exception:
            repo.rollback()
            raise

        logger.info(
            "Follow-up scheduled",
            task_id=task.id,
            conversation_id=conversation_id,
            template_key=template_key,
            delay_minutes=delay_minutes
        )
        self._dispatch(task.id, scheduled_time)
        return task

    def _dispatch(self, task_id: int, eta=None) -> bool:
        """
        Hand a task to the execution mechanism.

        A broker outage is logged, not raised: the task row is already
        committed and the recovery sweep will pick it up once it is due.
        """
        if self.enqueue is None:
            return False
        try:
            self.enqueue(task_id, eta)
            return True
        except Exception as e:
            logger.warning("Follow-up dispatch failed, left for recovery sweep", task_id=task_id, error=str(e))
            return False

    # Execution

    def process_follow_up(self, task_id: int) -> FollowUpOutcome:
        """
        Execute one follow-up task.

        Returns:
            The outcome of this invocation

        Raises:
            TransientIOError: Sending failed and attempts remain; the task
                was released and rescheduled, the caller may retry
            Exception: Anything else is re-raised after the attempt was
                counted and the claim dropped (failed on the last attempt)
        """
        repo = self.task_repository
        token = uuid.uuid4().hex
        now = utc_now()
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)

        try:
            claimed = repo.claim(task_id, token, now, stale_before)
            repo.commit()
        except Exception:
            repo.rollback()
            raise
        if not claimed:
            logger.info("Follow-up not claimable, skipping", task_id=task_id)
            return FollowUpOutcome.SKIPPED

        task = repo.get_by_id(task_id)
        if ensure_utc(task.scheduled_time) > now + EARLY_EXECUTION_TOLERANCE:
            self._release(task, token)
            logger.info("Follow-up not due yet, released", task_id=task_id)
            return FollowUpOutcome.SKIPPED

        attempt = (task.attempt_count or 0) + 1
        try:
            conversation = self.conversation_repository.get_by_id(task.conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation {task.conversation_id} not found")
            business = conversation.business

            reason = self.irrelevance_reason(task, conversation)
            if reason:
                repo.cancel_claimed(task.id, token, reason)
                repo.commit()
                logger.info("Follow-up no longer relevant, cancelled", task_id=task_id, reason=reason)
                return FollowUpOutcome.CANCELLED

            body = self.composer.render(
                business, task.message_template_key, self.build_context(task, conversation, business)
            )
            result = self.whatsapp_client.send_message(
                to=conversation.customer_phone,
                body=body,
                from_number=business.whatsapp_number
            )
        except TransientIOError as e:
            repo.rollback()
            return self._handle_transient_failure(task_id, token, attempt, e)
        except FlowStackError as e:
            repo.rollback()
            repo.mark_failed(task_id, token, f"{e.kind}: {e.message}", attempt)
            repo.commit()
            logger.error("Follow-up failed permanently", task_id=task_id, error_kind=e.kind, error=e.message)
            return FollowUpOutcome.FAILED
        except Exception as e:
            repo.rollback()
            self._handle_unexpected_failure(task_id, token, attempt, e)
            raise

        return self._complete(task, conversation, token, body, result.message_id, attempt)

    def _complete(self, task: FollowUpTask, conversation: Conversation, token: str,
                  body: str, message_id: Optional[str], attempt: int) -> FollowUpOutcome:
        repo = self.task_repository
        task_id = task.id
        now = utc_now()
        try:
            if repo.mark_completed(task_id, token, body, message_id, now) == 0:
                repo.rollback()
                # Sent, but the claim was lost (stale reclaim or cancellation)
                logger.warning(
                    "Follow-up sent after losing its claim",
                    task_id=task_id,
                    whatsapp_message_id=message_id
                )
                return FollowUpOutcome.SENT

            self.conversation_repository.increment_follow_up_count(conversation.id, now)
            self.message_repository.create(
                conversation_id=conversation.id,
                business_id=conversation.business_id,
                direction=MessageDirection.OUTBOUND.value,
                sender_phone=conversation.business.whatsapp_number,
                message_body=body,
                whatsapp_message_id=message_id,
                sent_at=now,
            )
            event = self.event_bus.record(
                EventType.FOLLOW_UP_SENT,
                business_id=conversation.business_id,
                conversation_id=conversation.id,
                payment_intent_id=task.payment_intent_id,
                payload={
                    'task_id': task_id,
                    'template_key': task.message_template_key,
                    'whatsapp_message_id': message_id,
                    'attempt': attempt,
                },
            )
            repo.commit()
        except Exception:
            repo.rollback()
            raise

        logger.info("Follow-up sent", task_id=task_id, conversation_id=conversation.id, attempt=attempt)
        self.event_bus.publish(event)
        return FollowUpOutcome.SENT

    def _handle_transient_failure(self, task_id: int, token: str, attempt: int,
                                  error: TransientIOError) -> FollowUpOutcome:
        repo = self.task_repository
        message = f"{error.kind}: {error.message}"
        if attempt >= self.max_attempts:
            repo.mark_failed(task_id, token, message, attempt)
            repo.commit()
            logger.error("Follow-up failed after final attempt", task_id=task_id, attempts=attempt, error=message)
            return FollowUpOutcome.FAILED

        delay = self.retry_delay_seconds(attempt)
        released = repo.release_for_retry(task_id, token, message, attempt, utc_now() + timedelta(seconds=delay))
        repo.commit()
        logger.warning(
            "Follow-up attempt failed, will retry",
            task_id=task_id,
            attempt=attempt,
            retry_in_seconds=delay,
            released=bool(released),
            error=message
        )
        raise error

    def _handle_unexpected_failure(self, task_id: int, token: str, attempt: int, error: Exception) -> None:
        """
        Count a non-domain error as a spent attempt. The claim is always
        dropped so the task cannot sit held until the claim goes stale.
        """
        repo = self.task_repository
        message = f"{type(error).__name__}: {error}"
        if attempt >= self.max_attempts:
            repo.mark_failed(task_id, token, message, attempt)
            repo.commit()
            logger.error("Follow-up failed after final attempt", task_id=task_id, attempts=attempt, error=message)
            return

        repo.release_for_retry(
            task_id, token, message, attempt, utc_now() + timedelta(seconds=self.retry_delay_seconds(attempt))
        )
        repo.commit()
        logger.error("Follow-up attempt raised unexpectedly", task_id=task_id, attempt=attempt, error=message)

    def _release(self, task: FollowUpTask, token: str) -> None:
        repo = self.task_repository
        repo.release_for_retry(task.id, token, task.last_error, task.attempt_count or 0, task.scheduled_time)
        repo.commit()

    @staticmethod
    def irrelevance_reason(task: FollowUpTask, conversation: Conversation) -> Optional[str]:
        """
        Why a task should not be sent any more, judged against the current
        conversation and payment intent. None means it is still relevant.
        """
        if conversation.current_state == ConversationState.CLOSED.value:
            return 'conversation_closed'

        required_state = (task.message_context or {}).get(REQUIRED_STATE_KEY)
        if required_state and conversation.current_state != required_state:
            return f'conversation_left_{required_state.lower()}'

        if task.payment_intent_id is not None:
            if conversation.current_state == ConversationState.PAID.value:
                return 'conversation_paid'
            intent = task.payment_intent
            if intent is not None and intent.is_terminal:
                return f'payment_{intent.status}'
        return None

    @staticmethod
    def build_context(task: FollowUpTask, conversation: Conversation, business: Business) -> Dict[str, Any]:
        """Template values computed at send time, overridden by the task's own context"""
        context: Dict[str, Any] = {
            'customer_name': conversation.customer_name or 'there',
            'customer_phone': conversation.customer_phone,
            'business_name': business.business_name,
            'service': business.industry or 'our services',
        }
        intent = task.payment_intent if task.payment_intent_id is not None else None
        if intent is not None:
            context.update({
                'amount': str(intent.expected_amount),
                'currency': intent.currency,
                'hours_left': hours_until(intent.expires_at),
                'expires_at': utc_to_local(intent.expires_at, business.timezone or 'Africa/Nairobi')
                .strftime('%d %b %Y %H:%M'),
                'description': intent.description or '',
            })
        context.update({
            key: value for key, value in (task.message_context or {}).items()
            if key != REQUIRED_STATE_KEY
        })
        return context

    # Recovery and management

    def check_pending_follow_ups(self, limit: Optional[int] = None) -> int:
        """
        Re-submit due pending tasks that no live worker holds.

        Failed tasks are not picked up; they stay failed until escalated.

        Returns:
            Number of tasks dispatched
        """
        now = utc_now()
        stale_before = now - timedelta(seconds=self.claim_timeout_seconds)
        due = self.task_repository.find_due(now, stale_before, limit or self.sweep_batch_size)
        dispatched = sum(1 for task in due if self._dispatch(task.id))
        if due:
            logger.info("Follow-up recovery sweep", due=len(due), dispatched=dispatched)
        return dispatched

    def cancel_follow_ups(self, conversation_id: int, payment_intent_id: Optional[int] = None,
                          reason: str = 'cancelled', trigger_reason: Optional[str] = None) -> int:
        """Cancel outstanding pending tasks of a conversation (or one of its intents or triggers)"""
        repo = self.task_repository
        try:
            count = repo.cancel_pending(conversation_id, payment_intent_id, reason, trigger_reason)
            repo.commit()
        except Exception:
            repo.rollback()
            raise
        if count:
            logger.info(
                "Follow-ups cancelled",
                conversation_id=conversation_id,
                payment_intent_id=payment_intent_id,
                count=count,
                reason=reason
            )
        return count

    def escalate_follow_up(self, task_id: int) -> FollowUpTask:
        """
        Hand a failed task to a human: failed -> escalated.

        Raises:
            NotFoundError: Task does not exist
            InvalidTransitionError: Task is not failed
        """
        repo = self.task_repository
        task = repo.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Follow-up task {task_id} not found")

        try:
            if repo.escalate(task_id) == 0:
                raise InvalidTransitionError(
                    f"Follow-up task {task_id} is {task.status}, only failed tasks can be escalated"
                )
            event = self.event_bus.record(
                EventType.ESCALATION_REQUIRED,
                business_id=task.business_id,
                conversation_id=task.conversation_id,
                payment_intent_id=task.payment_intent_id,
                payload={
                    'reason': 'follow_up_failed',
                    'task_id': task_id,
                    'escalation_level': (task.escalation_level or 0) + 1,
                    'last_error': task.last_error,
                },
            )
            repo.commit()
        except Exception:
            repo.rollback()
            raise

        logger.warning("Follow-up escalated", task_id=task_id, conversation_id=task.conversation_id)
        self.event_bus.publish(event)
        return repo.refresh(task)

    def get_task(self, task_id: int) -> FollowUpTask:
        task = self.task_repository.get_by_id(task_id)
        if task is None:
            raise NotFoundError(f"Follow-up task {task_id} not found")
        return task

    def list_for_conversation(self, conversation_id: int) -> List[FollowUpTask]:
        return self.task_repository.find_for_conversation(conversation_id)
