# apps/campaigns/eligibility.py
"""
Frequency governance for system-generated ("intelligent") campaigns.

Two checks must both pass before a contact is materialized into an
intelligent campaign: the trailing 30-day send cap and the per-show
cooldown. Missing identifiers reject the contact.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List

from django.conf import settings
from django.utils import timezone

from apps.contacts.models import normalize_email
from .models import CampaignRecipient, EmailEventType, MarketingEmailEvent, RecipientStatus

logger = logging.getLogger(__name__)

INTELLIGENT_PREFIX = 'IC:'
CAP_WINDOW_DAYS = 30


@dataclass
class EligibilityResult:
    eligible: bool
    reasons: List[str] = field(default_factory=list)


def is_intelligent_campaign(name):
    return bool(name) and name.startswith(INTELLIGENT_PREFIX)


def extract_show_id(merge_context):
    if not isinstance(merge_context, dict):
        return None
    show = merge_context.get('show')
    raw = merge_context.get('showId') or merge_context.get('show_id')
    if not raw and isinstance(show, dict):
        raw = show.get('id') or show.get('showId')
    if not raw:
        return None
    return str(raw).strip() or None


def count_intelligent_sends_last_30d(tenant_id, email, cap=None, now=None) -> EligibilityResult:
    """DELIVERED events of intelligent campaigns are the only source for the cap."""
    email = normalize_email(email)
    if not tenant_id or not email:
        return EligibilityResult(False, ['missing_tenant_or_email'])

    cap = settings.MARKETING_INTELLIGENT_CAP_30D if cap is None else max(0, int(cap))
    since = (now or timezone.now()) - timedelta(days=CAP_WINDOW_DAYS)
    count = MarketingEmailEvent.objects.filter(
        tenant_id=tenant_id,
        email=email,
        type=EmailEventType.DELIVERED,
        occurred_at__gte=since,
        campaign__name__startswith=INTELLIGENT_PREFIX,
    ).count()

    if count >= cap:
        return EligibilityResult(False, [f'intelligent_send_cap_reached:{count}'])
    return EligibilityResult(True)


def has_emailed_show_recently(tenant_id, email, show_id, cooldown_days=None, now=None) -> EligibilityResult:
    email = normalize_email(email)
    show_id = str(show_id or '').strip()
    if not tenant_id or not email or not show_id:
        return EligibilityResult(False, ['missing_tenant_email_or_show'])

    cooldown_days = settings.MARKETING_SHOW_COOLDOWN_DAYS if cooldown_days is None else cooldown_days
    cooldown_days = max(0, int(cooldown_days or 0))
    if cooldown_days == 0:
        return EligibilityResult(True)

    since = (now or timezone.now()) - timedelta(days=cooldown_days)

    # Recipient snapshots carry the show even when the campaign row does not
    snapshots = CampaignRecipient.objects.filter(
        tenant_id=tenant_id,
        email=email,
        status=RecipientStatus.SENT,
        sent_at__gte=since,
        campaign__name__startswith=INTELLIGENT_PREFIX,
    ).values('merge_context', 'campaign__show_id')
    for snapshot in snapshots:
        if snapshot['campaign__show_id'] == show_id or extract_show_id(snapshot['merge_context']) == show_id:
            return EligibilityResult(False, ['intelligent_show_recently_emailed'])

    recent_event = MarketingEmailEvent.objects.filter(
        tenant_id=tenant_id,
        email=email,
        type=EmailEventType.DELIVERED,
        occurred_at__gte=since,
        campaign__name__startswith=INTELLIGENT_PREFIX,
        campaign__show_id=show_id,
    ).exists()
    if recent_event:
        return EligibilityResult(False, ['intelligent_show_recently_emailed'])

    return EligibilityResult(True)


def check_intelligent_eligibility(tenant_id, email, show_id=None, cap=None, cooldown_days=None, now=None):
    """Cap and cooldown combined; the cooldown only applies to show-linked sends."""
    result = count_intelligent_sends_last_30d(tenant_id, email, cap=cap, now=now)
    if not result.eligible:
        return result
    if not show_id:
        return result
    return has_emailed_show_recently(tenant_id, email, show_id, cooldown_days=cooldown_days, now=now)
