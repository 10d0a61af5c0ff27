# apps/suppressions/ingestion.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as dt_timezone

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.crypto import constant_time_compare

from apps.automations.models import Automation
from apps.campaigns.models import Campaign, EmailEventType, MarketingEmailEvent
from apps.contacts.models import Contact
from .exceptions import WebhookAuthenticationError
from .guard import apply_suppression
from .models import EmailEventReceipt, SuppressionType
from .serializers import ProviderEventSerializer

logger = logging.getLogger(__name__)

PROVIDER = 'sendgrid'

EVENT_TYPE_MAP = {
    'delivered': EmailEventType.DELIVERED,
    'bounce': EmailEventType.BOUNCE,
    'spamreport': EmailEventType.COMPLAINT,
    'open': EmailEventType.OPEN,
    'click': EmailEventType.CLICK,
    'unsubscribe': EmailEventType.UNSUBSCRIBE,
}


@dataclass
class IngestionResult:
    received: int = 0
    recorded: int = 0
    duplicates: int = 0
    skipped: int = 0
    suppressions: int = 0

    def as_dict(self):
        return {
            'received': self.received,
            'recorded': self.recorded,
            'duplicates': self.duplicates,
            'skipped': self.skipped,
            'suppressions': self.suppressions,
        }


def verify_webhook_token(provided):
    """No-op when MARKETING_WEBHOOK_TOKEN is unset."""
    expected = settings.MARKETING_WEBHOOK_TOKEN
    if not expected:
        return
    if not provided or not constant_time_compare(str(provided).strip(), expected):
        raise WebhookAuthenticationError('Invalid webhook token')


def is_hard_bounce(event):
    try:
        if int(event.get('bounce_class') or 0) >= 10:
            return True
    except (TypeError, ValueError):
        pass
    bounce_type = str(event.get('type') or '').lower()
    return 'hard' in bounce_type or 'invalid' in bounce_type


def suppression_type_for(event):
    name = event['event']
    if name == 'bounce':
        return SuppressionType.HARD_BOUNCE if is_hard_bounce(event) else None
    if name == 'spamreport':
        return SuppressionType.SPAM_COMPLAINT
    if name == 'unsubscribe':
        return SuppressionType.UNSUBSCRIBE
    return None


def _event_time(event):
    timestamp = event.get('timestamp')
    if not timestamp:
        return None
    try:
        return datetime.fromtimestamp(int(timestamp), tz=dt_timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _resolve_source(event):
    """(campaign, automation) for the event's tenant; both None when unresolvable."""
    tenant_id = event['tenantId']
    if event['campaignId'].isdigit():
        campaign = Campaign.objects.filter(pk=int(event['campaignId']), tenant_id=tenant_id).first()
        if campaign:
            return campaign, None
    if event['automationId'].isdigit():
        automation = Automation.objects.filter(pk=int(event['automationId']), tenant_id=tenant_id).first()
        if automation:
            return None, automation
    return None, None


def _resolve_contact_id(event):
    tenant_id = event['tenantId']
    contacts = Contact.objects.filter(tenant_id=tenant_id)
    if event['contactId'].isdigit():
        contact_id = contacts.filter(pk=int(event['contactId'])).values_list('id', flat=True).first()
        if contact_id:
            return contact_id
    return contacts.filter(email=event['email']).values_list('id', flat=True).first()


def _already_delivered(event, campaign, automation):
    return MarketingEmailEvent.objects.filter(
        tenant_id=event['tenantId'],
        campaign=campaign,
        automation=automation,
        email=event['email'],
        type=EmailEventType.DELIVERED,
    ).exists()


def _record_receipt(event, event_at):
    """False when this provider event id was already ingested."""
    if not event['provider_event_id']:
        return True
    try:
        with transaction.atomic():
            EmailEventReceipt.objects.create(
                tenant_id=event['tenantId'],
                provider=PROVIDER,
                provider_event_id=event['provider_event_id'],
                event_at=event_at,
            )
    except IntegrityError:
        return False
    return True


def ingest_provider_events(events, token=None, now=None):
    """Authenticate and record a batch of provider webhook events.

    Bad events are skipped one by one; only a token mismatch rejects the batch.
    """
    verify_webhook_token(token)
    return record_provider_events(events, now=now)


def record_provider_events(events, now=None):
    now = now or timezone.now()
    max_age_hours = settings.MARKETING_WEBHOOK_MAX_AGE_HOURS
    result = IngestionResult()

    if not isinstance(events, (list, tuple)):
        events = []

    for raw in events:
        result.received += 1
        serializer = ProviderEventSerializer(data=raw if isinstance(raw, dict) else {})
        if not serializer.is_valid():
            logger.debug(f"Skipping malformed webhook event: {serializer.errors}")
            result.skipped += 1
            continue
        event = serializer.validated_data

        if not event['tenantId']:
            result.skipped += 1
            continue

        event_at = _event_time(event)
        if event_at and max_age_hours > 0 and now - event_at > timedelta(hours=max_age_hours):
            logger.debug(f"Skipping stale webhook event {event['provider_event_id']}")
            result.skipped += 1
            continue

        campaign, automation = _resolve_source(event)
        if campaign is None and automation is None:
            result.skipped += 1
            continue

        # Receipt, event row and suppression commit together
        with transaction.atomic():
            if not _record_receipt(event, event_at):
                result.duplicates += 1
                continue

            event_type = EVENT_TYPE_MAP.get(event['event'])
            if event_type == EmailEventType.DELIVERED and _already_delivered(event, campaign, automation):
                # The worker records DELIVERED at dispatch; the provider echo adds nothing
                event_type = None
            if event_type:
                MarketingEmailEvent.objects.create(
                    tenant_id=event['tenantId'],
                    campaign=campaign,
                    automation=automation,
                    contact_id=_resolve_contact_id(event),
                    email=event['email'],
                    type=event_type,
                    meta={
                        'provider': PROVIDER,
                        'event': event['event'],
                        'providerEventId': event['provider_event_id'],
                        'reason': event.get('reason') or '',
                    },
                    occurred_at=event_at or now,
                )
                result.recorded += 1

            suppression_type = suppression_type_for(event)
            if suppression_type:
                apply_suppression(
                    event['tenantId'], event['email'], suppression_type,
                    reason=f"SendGrid {event['event']}",
                )
                result.suppressions += 1

    logger.info(f"Webhook batch ingested: {result.as_dict()}")
    return result
