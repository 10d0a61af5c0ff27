# apps/campaigns/sending.py
import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .models import DailySendCounter, EmailEventType, MarketingEmailEvent

logger = logging.getLogger(__name__)


def next_retry_at(retry_count, now=None):
    """Exponential backoff from MARKETING_SEND_RETRY_BASE_SECONDS, capped."""
    now = now or timezone.now()
    base = max(1, settings.MARKETING_SEND_RETRY_BASE_SECONDS)
    seconds = min(base * 2 ** max(0, retry_count), settings.MARKETING_SEND_RETRY_MAX_MINUTES * 60)
    return now + timedelta(seconds=seconds)


def _delivered_today(tenant_id, day_start):
    return MarketingEmailEvent.objects.filter(
        tenant_id=tenant_id,
        type=EmailEventType.DELIVERED,
        occurred_at__gte=day_start,
    ).count()


def reserve_daily_send_slot(tenant_id, daily_limit, now=None) -> bool:
    """Count one send against today's (UTC) limit; False once the limit is reached."""
    now = now or timezone.now()
    day = now.date()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    with transaction.atomic():
        counter, created = DailySendCounter.objects.select_for_update().get_or_create(
            tenant_id=tenant_id,
            day=day,
            defaults={'count': _delivered_today(tenant_id, day_start)},
        )
        if counter.count >= daily_limit:
            return False
        DailySendCounter.objects.filter(pk=counter.pk).update(count=F('count') + 1)
    return True


def record_delivered(*, tenant_id, email, provider_message_id, provider_name,
                     campaign=None, automation=None, contact_id=None):
    return MarketingEmailEvent.objects.create(
        tenant_id=tenant_id,
        campaign=campaign,
        automation=automation,
        contact_id=contact_id,
        email=email,
        type=EmailEventType.DELIVERED,
        provider_message_id=provider_message_id or '',
        meta={'provider': provider_name},
    )


def release_daily_send_slot(tenant_id, now=None):
    """Give back a slot reserved for a message that never reached the provider."""
    day = (now or timezone.now()).date()
    DailySendCounter.objects.filter(tenant_id=tenant_id, day=day, count__gt=0).update(count=F('count') - 1)
