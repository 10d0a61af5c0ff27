import os
from celery import Celery

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'core.settings.local')

app = Celery('marketing')
app.config_from_object('django.conf:settings', namespace='CELERY')

# Sends are long-running; one task per worker process at a time
app.conf.update(
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)

app.autodiscover_tasks(['tasks'])
