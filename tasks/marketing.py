from celery import shared_task
from django.db import OperationalError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
import logging

logger = logging.getLogger(__name__)


@shared_task
def run_marketing_worker_tick():
    """One worker pass: scheduled and resumed campaigns, trigger scans, due automation steps"""
    from apps.campaigns.worker import run_marketing_worker_once

    summary = run_marketing_worker_once()
    logger.info(
        f"Marketing tick: {len(summary['scheduled'])} scheduled, {len(summary['resumed'])} resumed, "
        f"{summary['enrolled']} enrolled, {summary['steps']} steps"
    )
    return {
        'scheduled': summary['scheduled'],
        'resumed': summary['resumed'],
        'enrolled': summary['enrolled'],
        'steps': summary['steps'],
    }


@shared_task
@retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
def ingest_provider_events_async(events):
    """Webhook batches already authenticated by the view; receipts make retries safe"""
    from apps.suppressions.ingestion import record_provider_events

    result = record_provider_events(events)
    return result.as_dict()
