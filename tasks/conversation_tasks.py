"""
Celery tasks for conversation housekeeping
"""

from flask import current_app

from celery_worker import celery
from services.common.errors import TransientIOError
from utils.datetime_utils import utc_now
from logging_config import get_logger

logger = get_logger(__name__)


@celery.task(bind=True, max_retries=3)
def mark_dormant_conversations(self):
    """Move silent AWAITING_CUSTOMER conversations to DORMANT"""
    conversation_service = current_app.services.get('conversation')
    try:
        moved = conversation_service.mark_dormant_conversations()
    except TransientIOError as e:
        logger.error("Dormancy sweep failed", error=str(e))
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    return {'status': 'success', 'moved': moved, 'timestamp': utc_now().isoformat()}
