from core.celery import app as celery_app

__all__ = ('celery_app',)

# Register tasks explicitly
from .marketing import run_marketing_worker_tick, ingest_provider_events_async

# Register periodic tasks
from django.conf import settings

if getattr(settings, 'MARKETING_WORKER_ENABLED', False):
    celery_app.conf.beat_schedule = {
        **getattr(settings, 'CELERY_BEAT_SCHEDULE', {}),
        'marketing-worker-tick': {
            'task': 'tasks.marketing.run_marketing_worker_tick',
            'schedule': float(settings.MARKETING_WORKER_INTERVAL_SECONDS),
        },
    }
