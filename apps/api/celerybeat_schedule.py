"""
Celery Beat Schedule Configuration

Defines periodic tasks that run on a schedule.
"""

from celery.schedules import crontab

# Schedule configuration
beat_schedule = {
    # Idempotency records live 24h; expired rows are also removed lazily on lookup.
    'purge-expired-idempotency-keys': {
        'task': 'tasks.purge_expired_idempotency_keys',
        'schedule': crontab(minute=17),  # Hourly
    },
}
