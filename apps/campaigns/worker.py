# apps/campaigns/worker.py
"""
Campaign send worker.

A campaign is owned by whichever tick moves it SCHEDULED -> SENDING with a
conditional UPDATE. The dispatch lease (``send_locked_until`` plus the
owning tick's ``send_lock_token``) lets a later tick resume a SENDING campaign
that was left unfinished (daily limit, pending retries, crashed process).

The lease is re-checked before every send, and each recipient is claimed on
its own before dispatch, so a tick that lost the campaign to another one
stops instead of sending the same recipients twice.
"""

import logging
import threading
import time
import uuid
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import close_old_connections
from django.db.models import Q
from django.utils import timezone

from apps.automations.engine import process_automation_steps, run_automation_triggers
from apps.delivery.dispatch import Dispatcher, RenderError, build_message
from apps.delivery.exceptions import CircuitOpenError, ProviderConfigurationError, ProviderTransportError
from apps.suppressions.guard import fetch_suppressions, should_suppress
from .materializer import ensure_recipients
from .models import (
    OPEN_RECIPIENT_STATUSES, Campaign, CampaignRecipient, CampaignStatus, RecipientStatus,
)
from .sender import (
    assert_sender_verified, fetch_marketing_settings, resolve_daily_limit,
    resolve_require_verified_from, resolve_send_rate, resolve_sender_details,
)
from .sending import (
    next_retry_at, record_delivered, release_daily_send_slot, reserve_daily_send_slot,
)

logger = logging.getLogger(__name__)


def _lease_until(now):
    return now + timedelta(minutes=settings.MARKETING_CAMPAIGN_LOCK_MINUTES)


def _lease_free(now):
    return Q(send_locked_until__isnull=True) | Q(send_locked_until__lte=now)


def _owned(campaign_id, lock_token=None):
    queryset = Campaign.objects.filter(pk=campaign_id, status=CampaignStatus.SENDING)
    if lock_token is not None:
        queryset = queryset.filter(send_lock_token=lock_token)
    return queryset


def claim_campaign(campaign_id, from_status=CampaignStatus.SCHEDULED, now=None) -> Optional[str]:
    """Take the dispatch lease.

    Exactly one concurrent caller gets the lease token back; the others get None.
    """
    now = now or timezone.now()
    lock_token = uuid.uuid4().hex
    queryset = Campaign.objects.filter(_lease_free(now), pk=campaign_id, status=from_status)
    if from_status == CampaignStatus.SCHEDULED:
        queryset = queryset.filter(scheduled_at__lte=now)
    claimed = queryset.update(
        status=CampaignStatus.SENDING,
        send_locked_until=_lease_until(now),
        send_lock_token=lock_token,
    )
    return lock_token if claimed == 1 else None


def release_campaign(campaign_id, lock_token=None):
    _owned(campaign_id, lock_token).update(send_locked_until=None, send_lock_token='')


def refresh_campaign_lease(campaign_id, lock_token) -> bool:
    """Extend the lease; False once another tick has taken the campaign over."""
    return _owned(campaign_id, lock_token).update(send_locked_until=_lease_until(timezone.now())) == 1


def mark_campaign_failed(campaign_id, reason, lock_token=None):
    updated = _owned(campaign_id, lock_token).update(
        status=CampaignStatus.FAILED,
        failure_reason=str(reason)[:2000],
        send_locked_until=None,
        send_lock_token='',
    )
    if updated:
        logger.error(f"Campaign {campaign_id} FAILED: {reason}")
    return bool(updated)


def mark_campaign_sent(campaign_id, lock_token=None):
    updated = _owned(campaign_id, lock_token).update(
        status=CampaignStatus.SENT,
        sent_at=timezone.now(),
        send_locked_until=None,
        send_lock_token='',
    )
    if updated:
        failures = CampaignRecipient.objects.filter(campaign_id=campaign_id, status=RecipientStatus.FAILED).count()
        logger.info(f"Campaign {campaign_id} SENT ({failures} recipients failed)")
    return bool(updated)


def _fail_recipient(recipient, error_text, now):
    recipient.status = RecipientStatus.FAILED
    recipient.error_text = error_text
    recipient.retry_at = None
    recipient.last_attempt_at = now
    recipient.save(update_fields=['status', 'error_text', 'retry_at', 'last_attempt_at'])


def claim_recipient(recipient, now=None) -> bool:
    """Hold an open recipient for one dispatch attempt; the hold lapses with the campaign lease."""
    now = now or timezone.now()
    claimed = CampaignRecipient.objects.filter(
        Q(retry_at__isnull=True) | Q(retry_at__lte=now),
        pk=recipient.pk,
        status__in=OPEN_RECIPIENT_STATUSES,
    ).update(retry_at=_lease_until(now))
    return claimed == 1


def unclaim_recipient(recipient):
    CampaignRecipient.objects.filter(pk=recipient.pk, status__in=OPEN_RECIPIENT_STATUSES).update(retry_at=None)


def dispatch_to_recipient(campaign, recipient, sender, dispatcher):
    """Send one message. Configuration errors propagate; transport errors are recorded."""
    now = timezone.now()
    try:
        message = build_message(
            tenant_id=campaign.tenant_id,
            email=recipient.email,
            template=campaign.template,
            sender=sender,
            merge_context=recipient.merge_context,
            custom_args={
                'tenantId': campaign.tenant_id,
                'campaignId': campaign.id,
                'contactId': recipient.contact_id,
            },
        )
    except RenderError as e:
        _fail_recipient(recipient, f'Template error: {e}', now)
        return RecipientStatus.FAILED

    try:
        result = dispatcher.send(campaign.tenant_id, message)
    except CircuitOpenError:
        # Never reached the provider; not an attempt
        raise
    except ProviderTransportError as e:
        attempts = recipient.retry_count + 1
        if e.retryable and attempts < settings.MARKETING_SEND_MAX_ATTEMPTS:
            recipient.status = RecipientStatus.RETRYABLE
            recipient.retry_at = next_retry_at(recipient.retry_count, now)
        else:
            recipient.status = RecipientStatus.FAILED
            recipient.retry_at = None
        recipient.retry_count = attempts
        recipient.error_text = str(e)
        recipient.last_attempt_at = now
        recipient.save(update_fields=['status', 'retry_at', 'retry_count', 'error_text', 'last_attempt_at'])
        logger.error(f"Send failed for recipient {recipient.id} of campaign {campaign.id}: {e} (retryable={e.retryable})")
        return recipient.status

    recipient.status = RecipientStatus.SENT
    recipient.sent_at = now
    recipient.last_attempt_at = now
    recipient.retry_at = None
    recipient.error_text = ''
    recipient.provider_message_id = result.id
    recipient.save(update_fields=[
        'status', 'sent_at', 'last_attempt_at', 'retry_at', 'error_text', 'provider_message_id',
    ])
    record_delivered(
        tenant_id=campaign.tenant_id,
        email=recipient.email,
        provider_message_id=result.id,
        provider_name=dispatcher.provider.name,
        campaign=campaign,
        contact_id=recipient.contact_id,
    )
    return RecipientStatus.SENT


def process_campaign_send(campaign_id, dispatcher=None, sleep=time.sleep, lock_token=None):
    """Dispatch a claimed campaign until done, rate limited or out of daily quota.

    ``lock_token`` is the token ``claim_campaign`` returned; it defaults to
    whatever token the campaign row holds when loaded.

    Returns the campaign's status afterwards.
    """
    campaign = Campaign.objects.select_related('template').get(pk=campaign_id)
    if campaign.status != CampaignStatus.SENDING:
        return campaign.status
    lock_token = lock_token or campaign.send_lock_token

    ensure_recipients(campaign)

    marketing_settings = fetch_marketing_settings(campaign.tenant_id)
    sender = resolve_sender_details(campaign.template, marketing_settings)
    assert_sender_verified(campaign.tenant_id, sender, resolve_require_verified_from(marketing_settings))

    dispatcher = dispatcher or Dispatcher()
    daily_limit = resolve_daily_limit(marketing_settings)
    send_rate = resolve_send_rate(marketing_settings)
    delay = 1.0 / send_rate if send_rate > 0 else 0

    while True:
        now = timezone.now()
        batch = list(
            CampaignRecipient.objects.filter(
                Q(retry_at__isnull=True) | Q(retry_at__lte=now),
                campaign=campaign,
                status__in=OPEN_RECIPIENT_STATUSES,
            ).select_related('contact').order_by('id')[:settings.MARKETING_SEND_BATCH_SIZE]
        )
        if not batch:
            break

        suppressions = {s.email: s for s in fetch_suppressions(campaign.tenant_id, [r.email for r in batch])}
        for recipient in batch:
            if not refresh_campaign_lease(campaign.id, lock_token):
                logger.warning(f"Lost the dispatch lease on campaign {campaign.id}; stopping this tick")
                return CampaignStatus.SENDING
            if not claim_recipient(recipient):
                continue

            decision = should_suppress(recipient.contact.consent_status, suppressions.get(recipient.email))
            if decision.suppressed:
                _fail_recipient(recipient, decision.reason, now)
                continue

            if not reserve_daily_send_slot(campaign.tenant_id, daily_limit):
                unclaim_recipient(recipient)
                release_campaign(campaign.id, lock_token)
                logger.info(f"Daily send limit reached for tenant {campaign.tenant_id}; campaign {campaign.id} paused")
                return CampaignStatus.SENDING

            try:
                dispatch_to_recipient(campaign, recipient, sender, dispatcher)
            except CircuitOpenError as e:
                release_daily_send_slot(campaign.tenant_id)
                unclaim_recipient(recipient)
                release_campaign(campaign.id, lock_token)
                logger.warning(f"Campaign {campaign.id} paused: {e}")
                return CampaignStatus.SENDING
            if delay:
                sleep(delay)

    remaining = CampaignRecipient.objects.filter(
        campaign=campaign, status__in=OPEN_RECIPIENT_STATUSES
    ).exists()
    if remaining:
        release_campaign(campaign.id, lock_token)
        return CampaignStatus.SENDING

    if not mark_campaign_sent(campaign.id, lock_token):
        return CampaignStatus.SENDING
    return CampaignStatus.SENT


def _run_claimed(campaign_id, lock_token, dispatcher=None):
    try:
        return process_campaign_send(campaign_id, dispatcher=dispatcher, lock_token=lock_token)
    except ProviderConfigurationError as e:
        mark_campaign_failed(campaign_id, e, lock_token)
    except Exception as e:
        logger.exception(f"Unexpected error sending campaign {campaign_id}")
        mark_campaign_failed(campaign_id, f'Unexpected error: {e}', lock_token)
    return CampaignStatus.FAILED


def process_scheduled_campaigns(dispatcher=None, now=None):
    now = now or timezone.now()
    due = list(
        Campaign.objects.filter(
            _lease_free(now), status=CampaignStatus.SCHEDULED, scheduled_at__lte=now,
        ).order_by('scheduled_at').values_list('id', flat=True)
    )
    processed = []
    for campaign_id in due:
        lock_token = claim_campaign(campaign_id, CampaignStatus.SCHEDULED, now=now)
        if not lock_token:
            logger.debug(f"Campaign {campaign_id} already claimed")
            continue
        logger.info(f"Claimed campaign {campaign_id} for sending")
        _run_claimed(campaign_id, lock_token, dispatcher=dispatcher)
        processed.append(campaign_id)
    return processed


def process_sending_campaigns(dispatcher=None, now=None):
    """Resume SENDING campaigns whose lease has lapsed."""
    now = now or timezone.now()
    stalled = list(
        Campaign.objects.filter(_lease_free(now), status=CampaignStatus.SENDING).values_list('id', flat=True)
    )
    processed = []
    for campaign_id in stalled:
        lock_token = claim_campaign(campaign_id, CampaignStatus.SENDING, now=now)
        if not lock_token:
            continue
        logger.info(f"Resuming campaign {campaign_id}")
        _run_claimed(campaign_id, lock_token, dispatcher=dispatcher)
        processed.append(campaign_id)
    return processed


def run_marketing_worker_once(dispatcher=None):
    dispatcher = dispatcher or Dispatcher()
    summary = {
        'scheduled': process_scheduled_campaigns(dispatcher=dispatcher),
        'resumed': process_sending_campaigns(dispatcher=dispatcher),
        'enrolled': run_automation_triggers(),
        'steps': process_automation_steps(dispatcher=dispatcher),
    }
    logger.debug(f"Marketing worker tick: {summary}")
    return summary


class MarketingWorker:
    """Periodic driver for ``run_marketing_worker_once``.

    Each tick runs in its own thread so a slow dispatch never delays the next
    tick. ``stop()`` prevents new ticks; running ticks finish on their own.
    """

    def __init__(self, interval=None, tick=None, enabled=None):
        self.interval = interval if interval is not None else settings.MARKETING_WORKER_INTERVAL_SECONDS
        self.enabled = enabled if enabled is not None else settings.MARKETING_WORKER_ENABLED
        self.tick = tick or run_marketing_worker_once
        self._stop_event = threading.Event()
        self._thread = None
        self._lock = threading.Lock()

    @property
    def is_running(self):
        return self._thread is not None

    def start(self):
        with self._lock:
            if self._thread is not None:
                return False
            if not self.enabled:
                logger.info("Marketing worker disabled (MARKETING_WORKER_ENABLED=false)")
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name='marketing-worker', daemon=True)
            self._thread.start()
        logger.info(f"Marketing worker started (every {self.interval}s)")
        return True

    def stop(self, timeout=None):
        with self._lock:
            thread = self._thread
            if thread is None:
                return False
            self._thread = None
            self._stop_event.set()
        thread.join(timeout)
        logger.info("Marketing worker stopped")
        return True

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            threading.Thread(target=self.run_once, name='marketing-worker-tick', daemon=True).start()

    def run_once(self):
        close_old_connections()
        try:
            return self.tick()
        except Exception:
            logger.exception("Marketing worker tick failed")
            return None
        finally:
            close_old_connections()
