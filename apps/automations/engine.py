# apps/automations/engine.py
"""
Trigger scans enroll contacts into automation runs; the step pass sends each
run's due step through the same suppression and delivery path as campaigns.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta, timezone as dt_timezone
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from apps.campaigns.materializer import build_recipient_entries
from apps.campaigns.sender import (
    assert_sender_verified, fetch_marketing_settings, resolve_daily_limit,
    resolve_require_verified_from, resolve_sender_details,
)
from apps.campaigns.sending import (
    next_retry_at, record_delivered, release_daily_send_slot, reserve_daily_send_slot,
)
from apps.contacts.models import Contact, normalize_email
from apps.contacts.stats import compute_order_stats, snapshot_contact
from apps.delivery.dispatch import Dispatcher, RenderError, build_message
from apps.delivery.exceptions import CircuitOpenError, ProviderConfigurationError, ProviderTransportError
from apps.segments.rules import matches_segment_rules, needs_order_stats, parse_rules
from apps.suppressions.guard import fetch_suppressions
from .models import (
    Automation, AutomationRun, AutomationStepExecution, CheckoutEvent, RunStatus, TriggerType,
)

logger = logging.getLogger(__name__)

DEFAULT_NO_PURCHASE_DAYS = 30
DEFAULT_ABANDONED_MINUTES = 60
ABANDONED_LOOKBACK_DAYS = 7


def _first_step_delay(automation):
    first = automation.steps.order_by('step_order').first()
    return first.delay_minutes if first else 0


def _config_int(automation, key, default):
    try:
        value = int(automation.trigger_config.get(key, default))
    except (AttributeError, TypeError, ValueError):
        return default
    return max(0, value)


def enroll_contact(automation, contact, trigger_key, now=None) -> Optional[AutomationRun]:
    """Start a run at step 0. Returns None when the contact is already enrolled."""
    now = now or timezone.now()
    try:
        with transaction.atomic():
            run = AutomationRun.objects.create(
                tenant_id=automation.tenant_id,
                automation=automation,
                contact=contact,
                trigger_key=trigger_key,
                last_advanced_at=now,
                next_run_at=now + timedelta(minutes=_first_step_delay(automation)),
            )
    except IntegrityError:
        logger.debug(f"Contact {contact.pk} already enrolled in automation {automation.pk} ({trigger_key})")
        return None
    logger.info(f"Enrolled contact {contact.pk} in automation {automation.pk} ({trigger_key})")
    return run


def _enabled_automations(trigger_type, tenant_id=None):
    automations = Automation.objects.filter(trigger_type=trigger_type, is_enabled=True)
    if tenant_id is not None:
        automations = automations.filter(tenant_id=tenant_id)
    return automations


def _claim_daily_scan(automation, today):
    claimed = Automation.objects.filter(
        Q(last_scanned_on__isnull=True) | Q(last_scanned_on__lt=today), pk=automation.pk
    ).update(last_scanned_on=today)
    return claimed == 1


def process_no_purchase_automations(now=None):
    """Enroll contacts with no paid order in the last N days; one scan per automation per day."""
    now = now or timezone.now()
    enrolled = 0
    for automation in _enabled_automations(TriggerType.NO_PURCHASE_DAYS):
        if not _claim_daily_scan(automation, now.date()):
            continue
        days = _config_int(automation, 'days', DEFAULT_NO_PURCHASE_DAYS)
        cutoff = now - timedelta(days=days)
        contacts = list(Contact.objects.filter(tenant_id=automation.tenant_id))
        stats = compute_order_stats(automation.tenant_id, [c.email for c in contacts], now=now)
        for contact in contacts:
            contact_stats = stats.get(contact.email)
            if contact_stats and contact_stats.last_purchase and contact_stats.last_purchase > cutoff:
                continue
            if enroll_contact(automation, contact, f'no-purchase:{days}', now=now):
                enrolled += 1
    return enrolled


def process_abandoned_checkout_automations(now=None):
    now = now or timezone.now()
    enrolled = 0
    for automation in _enabled_automations(TriggerType.ABANDONED_CHECKOUT):
        minutes = _config_int(automation, 'minutes_since_start', DEFAULT_ABANDONED_MINUTES)
        events = CheckoutEvent.objects.filter(
            tenant_id=automation.tenant_id,
            status=CheckoutEvent.Status.STARTED,
            created_at__lte=now - timedelta(minutes=minutes),
            created_at__gte=now - timedelta(days=ABANDONED_LOOKBACK_DAYS),
        ).exclude(email='')
        seen = set(automation.runs.values_list('trigger_key', flat=True))
        for event in events:
            trigger_key = f'abandoned:{event.order_ref}'
            if trigger_key in seen:
                continue
            contact = Contact.objects.filter(
                tenant_id=automation.tenant_id, email=normalize_email(event.email)
            ).first()
            if contact is None:
                continue
            if enroll_contact(automation, contact, trigger_key, now=now):
                enrolled += 1
    return enrolled


def _process_yearly_date_automations(trigger_type, date_field, now):
    """Enroll contacts whose ``date_field`` falls on today's month and day (UTC)."""
    today = now.astimezone(dt_timezone.utc).date()
    enrolled = 0
    for automation in _enabled_automations(trigger_type):
        contacts = Contact.objects.filter(**{
            'tenant_id': automation.tenant_id,
            f'{date_field}__month': today.month,
            f'{date_field}__day': today.day,
        })
        for contact in contacts:
            if enroll_contact(automation, contact, f'{date_field}:{today.isoformat()}', now=now):
                enrolled += 1
    return enrolled


def process_birthday_automations(now=None):
    return _process_yearly_date_automations(TriggerType.BIRTHDAY, 'birthday', now or timezone.now())


def process_anniversary_automations(now=None):
    return _process_yearly_date_automations(TriggerType.ANNIVERSARY, 'anniversary', now or timezone.now())


def on_tag_applied(contact, tag_name, now=None):
    """Enroll into TAG_APPLIED automations configured for ``tag_name`` (or for any tag)."""
    tag = (tag_name or '').strip().lower()
    if not tag:
        return []
    runs = []
    for automation in _enabled_automations(TriggerType.TAG_APPLIED, tenant_id=contact.tenant_id):
        wanted = str((automation.trigger_config or {}).get('tag') or '').strip().lower()
        if wanted and wanted != tag:
            continue
        run = enroll_contact(automation, contact, f'tag:{tag}', now=now)
        if run:
            runs.append(run)
    return runs


def record_checkout_started(tenant_id, order_ref, email='', show_id=''):
    event, _ = CheckoutEvent.objects.update_or_create(
        tenant_id=tenant_id,
        order_ref=order_ref,
        defaults={'email': normalize_email(email), 'show_id': show_id or ''},
    )
    return event


def mark_checkout_completed(tenant_id, order_ref):
    """Completing the order cancels any abandoned-checkout run it started."""
    CheckoutEvent.objects.filter(tenant_id=tenant_id, order_ref=order_ref).update(
        status=CheckoutEvent.Status.COMPLETED
    )
    return AutomationRun.objects.filter(
        tenant_id=tenant_id,
        trigger_key=f'abandoned:{order_ref}',
        status=RunStatus.ACTIVE,
    ).update(status=RunStatus.CANCELLED, active_key=None, completed_at=timezone.now())


def run_automation_triggers(now=None):
    return (
        process_no_purchase_automations(now=now)
        + process_abandoned_checkout_automations(now=now)
        + process_birthday_automations(now=now)
        + process_anniversary_automations(now=now)
    )


@dataclass
class StepOutcome:
    status: str
    detail: str = ''
    provider_message_id: str = ''


DEFERRED = None


def quiet_hours_resume_at(step, now):
    """End of the step's quiet window if ``now`` falls inside it, else None.

    Hours are UTC. ``start > end`` wraps midnight; ``start == end`` means no window.
    """
    start, end = step.quiet_hours_start, step.quiet_hours_end
    if start is None or end is None or start == end:
        return None
    utc_now = now.astimezone(dt_timezone.utc)
    hour = utc_now.hour
    if start < end:
        quiet = start <= hour < end
    else:
        quiet = hour >= start or hour < end
    if not quiet:
        return None
    resume_at = utc_now.replace(hour=end, minute=0, second=0, microsecond=0)
    if start > end and hour >= start:
        resume_at += timedelta(days=1)
    return resume_at


def throttle_resume_at(step, now):
    """When the step may send again, if its last send is still inside ``throttle_minutes``."""
    if not step.throttle_minutes:
        return None
    last_sent = AutomationStepExecution.objects.filter(
        step=step, status=AutomationStepExecution.Status.SENT,
    ).order_by('-executed_at').values_list('executed_at', flat=True).first()
    if last_sent is None:
        return None
    allowed_at = last_sent + timedelta(minutes=step.throttle_minutes)
    return allowed_at if allowed_at > now else None


def _execute_step(run, step, dispatcher, now):
    """Send one step. Returns a StepOutcome, or DEFERRED to try again later."""
    contact = run.contact
    snapshot = snapshot_contact(contact)

    if step.condition_rules:
        rules = parse_rules(step.condition_rules)
        stats = None
        if needs_order_stats(rules):
            stats = compute_order_stats(run.tenant_id, [snapshot.email], now=now).get(snapshot.email)
        if not matches_segment_rules(snapshot, rules, stats, now=now):
            return StepOutcome(AutomationStepExecution.Status.SKIPPED, 'conditions_not_met')

    entries = build_recipient_entries(
        run.tenant_id, f'automation:{run.automation_id}', [snapshot],
        fetch_suppressions(run.tenant_id, [snapshot.email]),
    )
    if not entries:
        logger.debug(f"Run {run.pk}: contact {contact.pk} suppressed, step {step.step_order} skipped")
        return StepOutcome(AutomationStepExecution.Status.SKIPPED, 'suppressed')
    entry = entries[0]

    marketing_settings = fetch_marketing_settings(run.tenant_id)
    sender = resolve_sender_details(step.template, marketing_settings)
    try:
        assert_sender_verified(run.tenant_id, sender, resolve_require_verified_from(marketing_settings))
        message = build_message(
            tenant_id=run.tenant_id,
            email=entry.email,
            template=step.template,
            sender=sender,
            merge_context=entry.merge_context,
            custom_args={
                'tenantId': run.tenant_id,
                'automationId': run.automation_id,
                'contactId': contact.pk,
            },
        )
    except (ProviderConfigurationError, RenderError) as e:
        logger.error(f"Automation {run.automation_id} step {step.step_order} cannot send: {e}")
        return StepOutcome(AutomationStepExecution.Status.FAILED, str(e)[:255])

    if not reserve_daily_send_slot(run.tenant_id, resolve_daily_limit(marketing_settings), now=now):
        logger.info(f"Daily send limit reached for tenant {run.tenant_id}; run {run.pk} deferred")
        return DEFERRED

    try:
        result = dispatcher.send(run.tenant_id, message)
    except CircuitOpenError as e:
        # The provider was never called; the slot and the attempt are not spent
        release_daily_send_slot(run.tenant_id, now=now)
        logger.warning(f"Run {run.pk} step {step.step_order} deferred: {e}")
        return DEFERRED
    except ProviderConfigurationError as e:
        logger.error(f"Automation {run.automation_id} provider misconfigured: {e}")
        return StepOutcome(AutomationStepExecution.Status.FAILED, str(e)[:255])
    except ProviderTransportError as e:
        if e.retryable and run.retry_count + 1 < settings.MARKETING_SEND_MAX_ATTEMPTS:
            logger.warning(f"Run {run.pk} step {step.step_order} will retry: {e}")
            run.retry_count += 1
            return DEFERRED
        logger.error(f"Run {run.pk} step {step.step_order} failed: {e}")
        return StepOutcome(AutomationStepExecution.Status.FAILED, str(e)[:255])

    record_delivered(
        tenant_id=run.tenant_id,
        email=entry.email,
        provider_message_id=result.id,
        provider_name=dispatcher.provider.name,
        automation=run.automation,
        contact_id=contact.pk,
    )
    return StepOutcome(AutomationStepExecution.Status.SENT, provider_message_id=result.id)


def _finish_run(run, status, now):
    run.status = status
    run.active_key = None
    run.next_run_at = None
    run.completed_at = now
    run.save(update_fields=['status', 'active_key', 'next_run_at', 'completed_at'])


def advance_run(run, dispatcher, now=None):
    """Execute the run's current step if due, then move to the next one."""
    now = now or timezone.now()
    if not run.automation.is_enabled:
        _finish_run(run, RunStatus.CANCELLED, now)
        return run

    steps = list(run.automation.steps.select_related('template').order_by('step_order'))
    if run.current_step_index >= len(steps):
        _finish_run(run, RunStatus.COMPLETED, now)
        return run

    step = steps[run.current_step_index]
    if not AutomationStepExecution.objects.filter(run=run, step=step).exists():
        resume_at = throttle_resume_at(step, now) or quiet_hours_resume_at(step, now)
        if resume_at:
            logger.debug(f"Run {run.pk} step {step.step_order} held until {resume_at.isoformat()}")
            run.next_run_at = resume_at
            run.save(update_fields=['next_run_at'])
            return run

        outcome = _execute_step(run, step, dispatcher, now)
        if outcome is DEFERRED:
            run.next_run_at = next_retry_at(run.retry_count, now)
            run.save(update_fields=['retry_count', 'next_run_at'])
            return run
        try:
            with transaction.atomic():
                AutomationStepExecution.objects.create(
                    run=run,
                    step=step,
                    status=outcome.status,
                    detail=outcome.detail,
                    provider_message_id=outcome.provider_message_id,
                )
        except IntegrityError:
            logger.debug(f"Step {step.pk} of run {run.pk} already recorded")

    run.current_step_index += 1
    run.retry_count = 0
    run.last_advanced_at = now
    if run.current_step_index >= len(steps):
        run.save(update_fields=['current_step_index', 'retry_count', 'last_advanced_at'])
        _finish_run(run, RunStatus.COMPLETED, now)
        logger.info(f"Automation run {run.pk} completed")
        return run

    run.next_run_at = now + timedelta(minutes=steps[run.current_step_index].delay_minutes)
    run.save(update_fields=['current_step_index', 'retry_count', 'last_advanced_at', 'next_run_at'])
    return run


def _claim_run(run_id, now):
    lease = now + timedelta(minutes=settings.MARKETING_AUTOMATION_LOCK_MINUTES)
    return AutomationRun.objects.filter(
        Q(locked_until__isnull=True) | Q(locked_until__lte=now),
        pk=run_id,
        status=RunStatus.ACTIVE,
    ).update(locked_until=lease) == 1


def process_automation_steps(dispatcher=None, now=None):
    """Advance every ACTIVE run whose next step is due. Returns the number processed."""
    now = now or timezone.now()
    due = list(
        AutomationRun.objects.filter(
            Q(locked_until__isnull=True) | Q(locked_until__lte=now),
            status=RunStatus.ACTIVE,
            next_run_at__lte=now,
        ).order_by('next_run_at').values_list('id', flat=True)[:settings.MARKETING_SEND_BATCH_SIZE]
    )
    if not due:
        return 0

    dispatcher = dispatcher or Dispatcher()
    processed = 0
    for run_id in due:
        if not _claim_run(run_id, now):
            continue
        run = AutomationRun.objects.select_related('automation', 'contact').get(pk=run_id)
        try:
            advance_run(run, dispatcher, now=now)
            processed += 1
        finally:
            AutomationRun.objects.filter(pk=run_id).update(locked_until=None)
    return processed
