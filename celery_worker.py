# celery_worker.py
from celery.schedules import crontab

from app import create_app
from celery_config import create_celery_app

# Create Celery instance with shared configuration
celery = create_celery_app(__name__)

# The Flask app provides context (config, db session, service registry) for tasks
flask_app = create_app()


class ContextTask(celery.Task):
    """Run every task inside the Flask app context"""

    def __call__(self, *args, **kwargs):
        with flask_app.app_context():
            return self.run(*args, **kwargs)


celery.Task = ContextTask

# --- Celery Beat Schedule ---
celery.conf.beat_schedule = {
    'follow-up-recovery-sweep': {
        'task': 'tasks.follow_up_tasks.check_pending_follow_ups',
        # Re-dispatch due follow-ups every 5 minutes
        'schedule': 300.0,
    },
    'payment-expiry-sweep': {
        'task': 'tasks.payment_tasks.check_expired_intents',
        # Expire overdue payment intents every 10 minutes
        'schedule': 600.0,
    },
    'dormancy-sweep': {
        'task': 'tasks.conversation_tasks.mark_dormant_conversations',
        # Hourly, on the hour
        'schedule': crontab(minute=0),
    },
}
celery.conf.timezone = 'UTC'

# Import tasks to ensure they're registered with Celery
import tasks.follow_up_tasks  # noqa: E402,F401
import tasks.payment_tasks  # noqa: E402,F401
import tasks.conversation_tasks  # noqa: E402,F401
