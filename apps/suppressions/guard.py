# apps/suppressions/guard.py
import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction

from apps.contacts.models import Contact, ConsentStatus, normalize_email
from .models import PERMANENT_SUPPRESSION_TYPES, SUPPRESSION_SEVERITY, Suppression, SuppressionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SuppressionDecision:
    suppressed: bool
    reason: Optional[str] = None


def _suppression_type(record):
    if record is None:
        return None
    if isinstance(record, dict):
        raw = record.get('type')
    else:
        raw = getattr(record, 'type', record)
    try:
        return SuppressionType(raw)
    except ValueError:
        # Unknown suppression kinds still block the send
        return raw


def should_suppress(consent_status, suppression=None) -> SuppressionDecision:
    """Marketing send decision for one contact.

    Bounce and complaint suppressions win over any consent state; an
    UNSUBSCRIBE row or an UNSUBSCRIBED consent blocks marketing mail.
    """
    suppression_type = _suppression_type(suppression)
    if suppression_type is not None:
        return SuppressionDecision(True, f'suppressed:{suppression_type}')
    if consent_status == ConsentStatus.UNSUBSCRIBED:
        return SuppressionDecision(True, f'consent:{ConsentStatus.UNSUBSCRIBED}')
    return SuppressionDecision(False)


def merge_suppression_type(current, incoming):
    """Most restrictive type wins; a later UNSUBSCRIBE never clears a bounce."""
    if current is None:
        return incoming
    if incoming is None:
        return current
    if SUPPRESSION_SEVERITY.get(incoming, 0) > SUPPRESSION_SEVERITY.get(current, 0):
        return incoming
    return current


def fetch_suppressions(tenant_id, emails=None):
    """Always hits the database; suppression state is never cached across sends."""
    queryset = Suppression.objects.filter(tenant_id=tenant_id)
    if emails is not None:
        queryset = queryset.filter(email__in={normalize_email(e) for e in emails})
    return list(queryset.only('email', 'type'))


def apply_suppression(tenant_id, email, suppression_type, reason=''):
    """Idempotent upsert keyed on (tenant_id, email)."""
    email = normalize_email(email)
    if not tenant_id or not email:
        return None

    with transaction.atomic():
        suppression, created = Suppression.objects.select_for_update().get_or_create(
            tenant_id=tenant_id,
            email=email,
            defaults={'type': suppression_type, 'reason': reason or ''},
        )
        if not created:
            merged = merge_suppression_type(suppression.type, suppression_type)
            if merged == suppression_type:
                suppression.type = merged
                suppression.reason = reason or suppression.reason
                suppression.save(update_fields=['type', 'reason', 'updated_at'])

        Contact.objects.filter(tenant_id=tenant_id, email=email).exclude(
            consent_status=ConsentStatus.UNSUBSCRIBED
        ).update(consent_status=ConsentStatus.UNSUBSCRIBED)

    logger.info(f"Suppression {suppression.type} recorded for tenant {tenant_id} ({'new' if created else 'existing'})")
    return suppression


def clear_suppression(tenant_id, email):
    """Removes an UNSUBSCRIBE suppression. Bounces and complaints are permanent."""
    email = normalize_email(email)
    if not email:
        return False
    deleted, _ = Suppression.objects.filter(
        tenant_id=tenant_id, email=email
    ).exclude(type__in=PERMANENT_SUPPRESSION_TYPES).delete()
    if deleted:
        logger.info(f"Unsubscribe suppression cleared for tenant {tenant_id}")
    return bool(deleted)
