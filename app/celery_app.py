"""
Payroll Engine - Celery Configuration

Celery configuration for background task processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings


# Create Celery app
celery_app = Celery(
    'payroll_engine',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['app.tasks.celery_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='Asia/Kolkata',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=1800,  # 30 minutes, a run covers the whole workforce
    task_soft_time_limit=1740,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Retry settings
    task_default_retry_delay=60,  # 1 minute
    task_max_retries=3,

    # Beat schedule for periodic tasks
    beat_schedule={
        # Deadlines for the month just closed, on the 1st at 6 AM
        'generate-statutory-deadlines': {
            'task': 'app.tasks.celery_tasks.generate_statutory_deadlines_task',
            'schedule': crontab(day_of_month=1, hour=6, minute=0),
        },

        # Deadline alerts every day at 8 AM
        'check-statutory-deadline-alerts': {
            'task': 'app.tasks.celery_tasks.check_statutory_deadline_alerts_task',
            'schedule': crontab(hour=8, minute=0),
        },
    },
)


# Task routing
celery_app.conf.task_routes = {
    'app.tasks.celery_tasks.process_payroll_run_task': {'queue': 'payroll'},
    'app.tasks.celery_tasks.*': {'queue': 'default'},
}
