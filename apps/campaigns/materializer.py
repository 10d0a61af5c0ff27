# apps/campaigns/materializer.py
import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from django.conf import settings
from django.core.cache import cache
from django.db import transaction
from django.utils import timezone

from apps.contacts.models import ConsentStatus, normalize_email
from apps.segments.rules import evaluate_segment_contacts
from apps.suppressions.guard import fetch_suppressions, should_suppress
from .eligibility import check_intelligent_eligibility, is_intelligent_campaign
from .models import Campaign, CampaignRecipient
from .sender import fetch_marketing_settings, resolve_intelligent_cap, resolve_show_cooldown_days

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecipientEntry:
    tenant_id: str
    campaign_id: object
    contact_id: int
    email: str
    merge_context: Dict[str, str] = field(default_factory=dict, hash=False)


def _contact_field(contact, name, default=None):
    if isinstance(contact, dict):
        return contact.get(name, default)
    return getattr(contact, name, default)


def _merge_context(contact):
    if hasattr(contact, 'merge_context'):
        return contact.merge_context()
    return {
        'first_name': _contact_field(contact, 'first_name', '') or '',
        'last_name': _contact_field(contact, 'last_name', '') or '',
        'email': normalize_email(_contact_field(contact, 'email')),
    }


def _partition(tenant_id, campaign_id, contacts, suppressions, extra_context=None):
    by_email = {}
    for suppression in suppressions:
        email = normalize_email(_contact_field(suppression, 'email'))
        if email:
            by_email[email] = suppression

    entries, suppressed = [], []
    seen = set()
    for contact in contacts:
        contact_id = _contact_field(contact, 'id')
        if contact_id is None or contact_id in seen:
            continue
        seen.add(contact_id)

        email = normalize_email(_contact_field(contact, 'email'))
        if not email:
            continue
        consent = _contact_field(contact, 'consent_status') or ConsentStatus.UNKNOWN
        decision = should_suppress(consent, by_email.get(email))
        if decision.suppressed:
            suppressed.append((email, decision.reason))
            continue

        context = dict(_merge_context(contact))
        context.update(extra_context or {})
        entries.append(RecipientEntry(tenant_id, campaign_id, contact_id, email, context))
    return entries, suppressed


def build_recipient_entries(tenant_id, campaign_id, contacts, suppressions, extra_context=None) -> List[RecipientEntry]:
    """One entry per distinct contact id, in input order, suppressed contacts dropped.

    Pure: equal input always gives equal output, so a failed materialization
    can simply be retried.
    """
    entries, _ = _partition(tenant_id, campaign_id, contacts, suppressions, extra_context)
    return entries


def filter_intelligent_candidates(campaign, contacts, now=None):
    marketing_settings = fetch_marketing_settings(campaign.tenant_id)
    cap = resolve_intelligent_cap(marketing_settings)
    cooldown_days = resolve_show_cooldown_days(marketing_settings)

    eligible = []
    for contact in contacts:
        result = check_intelligent_eligibility(
            campaign.tenant_id, contact.email,
            show_id=campaign.show_id, cap=cap, cooldown_days=cooldown_days, now=now,
        )
        if result.eligible:
            eligible.append(contact)
        else:
            logger.debug(f"Contact {contact.id} ineligible for {campaign.name}: {', '.join(result.reasons)}")
    return eligible


def materialize_recipients(campaign: Campaign, now=None) -> int:
    """Persist the campaign's send list. Safe to re-run after a partial failure."""
    now = now or timezone.now()
    contacts = evaluate_segment_contacts(campaign.tenant_id, campaign.get_rules(), now=now)
    if is_intelligent_campaign(campaign.name):
        contacts = filter_intelligent_candidates(campaign, contacts, now=now)

    suppressions = fetch_suppressions(campaign.tenant_id, [c.email for c in contacts])
    extra_context = {'showId': campaign.show_id} if campaign.show_id else None
    entries = build_recipient_entries(
        campaign.tenant_id, campaign.id, contacts, suppressions, extra_context=extra_context
    )

    with transaction.atomic():
        CampaignRecipient.objects.bulk_create(
            [
                CampaignRecipient(
                    tenant_id=entry.tenant_id,
                    campaign_id=entry.campaign_id,
                    contact_id=entry.contact_id,
                    email=entry.email,
                    merge_context=entry.merge_context,
                )
                for entry in entries
            ],
            batch_size=500,
            ignore_conflicts=True,
        )
        Campaign.objects.filter(pk=campaign.pk, recipients_prepared_at__isnull=True).update(
            recipients_prepared_at=now
        )

    logger.info(f"Materialized {len(entries)} recipients for campaign {campaign.id} ({len(contacts) - len(entries)} filtered)")
    return len(entries)


def ensure_recipients(campaign: Campaign):
    if campaign.recipients_prepared_at is None:
        materialize_recipients(campaign)
        campaign.refresh_from_db(fields=['recipients_prepared_at'])
    return campaign


def _estimate_cache_key(tenant_id, rules) -> str:
    digest = hashlib.md5(json.dumps(rules or [], sort_keys=True, default=str).encode()).hexdigest()
    return f"marketing:estimate:{tenant_id}:{digest}"


def estimate_campaign_recipients(tenant_id, rules):
    cache_key = _estimate_cache_key(tenant_id, rules)
    cached = cache.get(cache_key)
    if cached is not None:
        return cached

    contacts = evaluate_segment_contacts(tenant_id, rules)
    suppressions = fetch_suppressions(tenant_id, [c.email for c in contacts])
    entries, suppressed = _partition(tenant_id, 'estimate', contacts, suppressions)
    estimate = {
        'total': len(entries) + len(suppressed),
        'sendable': len(entries),
        'suppressed': len(suppressed),
        'sample': [entry.email for entry in entries[:20]],
    }
    cache.set(cache_key, estimate, settings.MARKETING_ESTIMATE_CACHE_SECONDS)
    return estimate
