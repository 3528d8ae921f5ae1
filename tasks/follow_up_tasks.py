"""
Celery tasks for follow-up delivery

- process_follow_up_task: deliver one follow-up (dispatched with an ETA)
- check_pending_follow_ups: periodic recovery sweep for due tasks
"""

from flask import current_app

from celery_worker import celery
from services.common.errors import TransientIOError
from utils.datetime_utils import utc_now
from logging_config import get_logger, log_context

logger = get_logger(__name__)


@celery.task(bind=True, max_retries=3)
def process_follow_up_task(self, task_id: int):
    """
    Deliver a single follow-up task.

    Transient send failures come back as TransientIOError after the service
    has released the task; the task is then retried with exponential
    backoff. The database attempt counter, not Celery, decides when a task
    is given up.

    Args:
        task_id: FollowUpTask id

    Returns:
        Dict with the outcome of this invocation
    """
    follow_up_service = current_app.services.get('follow_up')

    try:
        with log_context(follow_up_task_id=task_id, celery_task_id=self.request.id):
            outcome = follow_up_service.process_follow_up(task_id)
    except TransientIOError as e:
        if self.request.retries < self.max_retries:
            countdown = follow_up_service.retry_delay_seconds(self.request.retries + 1)
            logger.info(
                "Retrying follow-up task",
                task_id=task_id,
                attempt=self.request.retries + 1,
                countdown=countdown
            )
            raise self.retry(exc=e, countdown=countdown)
        logger.error("Follow-up task retries exhausted", task_id=task_id, error=str(e))
        return {'task_id': task_id, 'outcome': 'retries_exhausted', 'timestamp': utc_now().isoformat()}

    return {'task_id': task_id, 'outcome': outcome.value, 'timestamp': utc_now().isoformat()}


@celery.task(bind=True, max_retries=3)
def check_pending_follow_ups(self, limit: int = None):
    """
    Re-dispatch due follow-ups that no worker is holding.

    Args:
        limit: Maximum number of tasks to dispatch in one batch
    """
    follow_up_service = current_app.services.get('follow_up')
    try:
        dispatched = follow_up_service.check_pending_follow_ups(limit)
    except TransientIOError as e:
        logger.error("Follow-up recovery sweep failed", error=str(e))
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    return {'status': 'success', 'dispatched': dispatched, 'timestamp': utc_now().isoformat()}


def enqueue_follow_up(task_id: int, eta=None):
    """Dispatch process_follow_up_task, at eta when given"""
    if eta is None:
        return process_follow_up_task.apply_async(args=[task_id])
    return process_follow_up_task.apply_async(args=[task_id], eta=eta)
