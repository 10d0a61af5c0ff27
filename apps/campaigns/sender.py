# apps/campaigns/sender.py
import logging

from django.conf import settings

from apps.delivery.dispatch import SenderDetails
from .exceptions import SenderVerificationError
from .models import MarketingSettings, SenderDomain

logger = logging.getLogger(__name__)


def fetch_marketing_settings(tenant_id):
    return MarketingSettings.objects.filter(tenant_id=tenant_id).first()


def _override(marketing_settings, field, fallback):
    value = getattr(marketing_settings, field, None) if marketing_settings else None
    return fallback if value is None else value


def resolve_daily_limit(marketing_settings):
    return _override(marketing_settings, 'daily_limit_override', settings.MARKETING_DAILY_LIMIT)


def resolve_send_rate(marketing_settings):
    return _override(marketing_settings, 'send_rate_per_sec_override', settings.MARKETING_SEND_RATE_PER_SEC)


def resolve_require_verified_from(marketing_settings):
    return _override(marketing_settings, 'require_verified_from', settings.MARKETING_REQUIRE_VERIFIED_FROM)


def resolve_intelligent_cap(marketing_settings):
    return _override(marketing_settings, 'intelligent_send_cap_override', settings.MARKETING_INTELLIGENT_CAP_30D)


def resolve_show_cooldown_days(marketing_settings):
    return _override(marketing_settings, 'show_cooldown_days_override', settings.MARKETING_SHOW_COOLDOWN_DAYS)


def resolve_sender_details(template, marketing_settings) -> SenderDetails:
    """Template fields win over tenant defaults; blanks count as unset."""

    def pick(template_value, default_value):
        value = (template_value or '').strip() or (default_value or '').strip()
        return value or None

    return SenderDetails(
        from_name=pick(template.from_name, getattr(marketing_settings, 'default_from_name', '')),
        from_email=pick(template.from_email, getattr(marketing_settings, 'default_from_email', '')),
        reply_to=pick(template.reply_to, getattr(marketing_settings, 'default_reply_to', '')),
    )


def sender_domain(email):
    if not email or '@' not in email:
        return None
    return email.rsplit('@', 1)[1].strip().lower() or None


def assert_sender_verified(tenant_id, sender, require_verified):
    if not sender.from_email:
        raise SenderVerificationError('From email required for marketing sends.')
    if not sender.from_name:
        raise SenderVerificationError('From name required for marketing sends.')
    if not require_verified:
        return

    domain = sender_domain(sender.from_email)
    if domain is None:
        raise SenderVerificationError(f'Invalid from email {sender.from_email}.')
    verified = SenderDomain.objects.filter(
        tenant_id=tenant_id, domain=domain, status=SenderDomain.Status.VERIFIED
    ).exists()
    if not verified:
        logger.warning(f"Sender domain {domain} not verified for tenant {tenant_id}")
        raise SenderVerificationError(f'Sender domain {domain} is not verified.')
