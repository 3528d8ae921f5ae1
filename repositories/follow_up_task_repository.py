"""
FollowUpTaskRepository - Data access layer for scheduled follow-ups

Every status write here is conditional on the row still being in the
status the writer expects. A zero rowcount means another worker already
moved the task on and the caller must back off.
"""

from typing import List, Optional
from datetime import datetime
from sqlalchemy import or_
from repositories.base_repository import BaseRepository
from flowstack_database import FollowUpTask
from services.enums import FollowUpStatus
from utils.datetime_utils import utc_now


class FollowUpTaskRepository(BaseRepository):
    """Repository for FollowUpTask data access and claim management"""

    def __init__(self, session):
        """Initialize repository with database session"""
        super().__init__(session, FollowUpTask)

    def _claimable(self, stale_before: datetime):
        return or_(
            self.model_class.claim_token.is_(None),
            self.model_class.claimed_at < stale_before
        )

    def find_due(self, now: datetime, stale_before: datetime, limit: int = 100) -> List[FollowUpTask]:
        """
        Find pending tasks that are due and not held by a live claim.

        Args:
            now: Reference time
            stale_before: Claims older than this are considered abandoned
            limit: Maximum number of tasks to return

        Returns:
            Tasks ordered oldest-scheduled first
        """
        return self.session.query(self.model_class)\
            .filter(self.model_class.status == FollowUpStatus.PENDING.value)\
            .filter(self.model_class.scheduled_time <= now)\
            .filter(self._claimable(stale_before))\
            .order_by(self.model_class.scheduled_time, self.model_class.id)\
            .limit(limit)\
            .all()

    def find_for_conversation(self, conversation_id: int, status: Optional[FollowUpStatus] = None) -> List[FollowUpTask]:
        query = self.session.query(self.model_class).filter_by(conversation_id=conversation_id)
        if status is not None:
            query = query.filter_by(status=status.value)
        return query.order_by(self.model_class.id).all()

    def claim(self, task_id: int, token: str, now: datetime, stale_before: datetime) -> int:
        """
        Take exclusive ownership of a pending task.

        Returns:
            1 if the claim was taken, 0 if the task is not claimable
        """
        return self.update_where(
            [
                self.model_class.id == task_id,
                self.model_class.status == FollowUpStatus.PENDING.value,
                self._claimable(stale_before),
            ],
            {'claim_token': token, 'claimed_at': now}
        )

    def _held_by(self, task_id: int, token: str):
        return [
            self.model_class.id == task_id,
            self.model_class.status == FollowUpStatus.PENDING.value,
            self.model_class.claim_token == token,
        ]

    def mark_completed(self, task_id: int, token: str, message_body: str,
                       whatsapp_message_id: Optional[str], executed_at: Optional[datetime] = None) -> int:
        """pending -> completed, only for the current claim holder"""
        return self.update_where(
            self._held_by(task_id, token),
            {
                'status': FollowUpStatus.COMPLETED.value,
                'message_body': message_body,
                'message_sent': True,
                'whatsapp_message_id': whatsapp_message_id,
                'executed_at': executed_at or utc_now(),
                'claim_token': None,
                'claimed_at': None,
                'last_error': None,
            }
        )

    def mark_failed(self, task_id: int, token: str, error: str, attempt_count: int) -> int:
        """pending -> failed, only for the current claim holder"""
        return self.update_where(
            self._held_by(task_id, token),
            {
                'status': FollowUpStatus.FAILED.value,
                'last_error': error,
                'attempt_count': attempt_count,
                'executed_at': utc_now(),
                'claim_token': None,
                'claimed_at': None,
            }
        )

    def release_for_retry(self, task_id: int, token: str, error: str,
                          attempt_count: int, next_attempt_at: datetime) -> int:
        """Drop the claim and push the task back for another attempt"""
        return self.update_where(
            self._held_by(task_id, token),
            {
                'last_error': error,
                'attempt_count': attempt_count,
                'scheduled_time': next_attempt_at,
                'claim_token': None,
                'claimed_at': None,
            }
        )

    def cancel_claimed(self, task_id: int, token: str, reason: str) -> int:
        return self.update_where(
            self._held_by(task_id, token),
            {
                'status': FollowUpStatus.CANCELLED.value,
                'last_error': reason,
                'claim_token': None,
                'claimed_at': None,
            }
        )

    def cancel_pending(self, conversation_id: int, payment_intent_id: Optional[int] = None,
                       reason: Optional[str] = None, trigger_reason: Optional[str] = None) -> int:
        """
        Bulk pending -> cancelled for a conversation, optionally narrowed to
        the tasks of one payment intent or one trigger reason.
        """
        criteria = [
            self.model_class.conversation_id == conversation_id,
            self.model_class.status == FollowUpStatus.PENDING.value,
        ]
        if payment_intent_id is not None:
            criteria.append(self.model_class.payment_intent_id == payment_intent_id)
        if trigger_reason is not None:
            criteria.append(self.model_class.trigger_reason == trigger_reason)
        return self.update_where(
            criteria,
            {'status': FollowUpStatus.CANCELLED.value, 'last_error': reason}
        )

    def escalate(self, task_id: int) -> int:
        """failed -> escalated, bumping the escalation level"""
        return self.update_where(
            [
                self.model_class.id == task_id,
                self.model_class.status == FollowUpStatus.FAILED.value,
            ],
            {
                'status': FollowUpStatus.ESCALATED.value,
                'escalation_level': self.model_class.escalation_level + 1,
            }
        )
