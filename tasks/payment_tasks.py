"""
Celery tasks for the payment intent lifecycle
"""

from flask import current_app

from celery_worker import celery
from services.common.errors import TransientIOError
from utils.datetime_utils import utc_now
from logging_config import get_logger

logger = get_logger(__name__)


@celery.task(bind=True, max_retries=3)
def check_expired_intents(self):
    """Expire initiated/pending intents whose expires_at has passed"""
    payment_service = current_app.services.get('payment_intent')
    try:
        expired = payment_service.check_expired_intents()
    except TransientIOError as e:
        logger.error("Payment expiry sweep failed", error=str(e))
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))

    return {'status': 'success', 'expired': expired, 'timestamp': utc_now().isoformat()}
