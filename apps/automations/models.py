from django.core.validators import MaxValueValidator
from django.db import models


class TriggerType(models.TextChoices):
    NO_PURCHASE_DAYS = 'NO_PURCHASE_DAYS', 'No purchase in N days'
    ABANDONED_CHECKOUT = 'ABANDONED_CHECKOUT', 'Abandoned checkout'
    BIRTHDAY = 'BIRTHDAY', 'Birthday'
    ANNIVERSARY = 'ANNIVERSARY', 'Anniversary'
    TAG_APPLIED = 'TAG_APPLIED', 'Tag applied'


class Automation(models.Model):
    class Meta:
        indexes = [
            models.Index(fields=['trigger_type', 'is_enabled']),
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=200)
    trigger_type = models.CharField(max_length=30, choices=TriggerType.choices)
    # e.g. {"days": 30}, {"minutes_since_start": 60}, {"tag": "vip"}
    trigger_config = models.JSONField(default=dict, blank=True)
    is_enabled = models.BooleanField(default=True)
    last_scanned_on = models.DateField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.name} ({self.trigger_type})"


class AutomationStep(models.Model):
    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['automation', 'step_order'], name='unique_automation_step_order')
        ]
        ordering = ['step_order']

    automation = models.ForeignKey(Automation, on_delete=models.CASCADE, related_name='steps')
    step_order = models.PositiveIntegerField()
    delay_minutes = models.PositiveIntegerField(default=0)
    template = models.ForeignKey('campaigns.Template', on_delete=models.PROTECT, related_name='automation_steps')
    # Segment rules the contact must match when the step comes due
    condition_rules = models.JSONField(null=True, blank=True)
    # At most one send of this step per window, across all runs
    throttle_minutes = models.PositiveIntegerField(null=True, blank=True)
    # UTC hours; a window may wrap midnight (22 -> 7)
    quiet_hours_start = models.PositiveSmallIntegerField(null=True, blank=True, validators=[MaxValueValidator(23)])
    quiet_hours_end = models.PositiveSmallIntegerField(null=True, blank=True, validators=[MaxValueValidator(23)])


class RunStatus(models.TextChoices):
    ACTIVE = 'ACTIVE', 'Active'
    COMPLETED = 'COMPLETED', 'Completed'
    CANCELLED = 'CANCELLED', 'Cancelled'


ACTIVE_KEY = 'active'


class AutomationRun(models.Model):
    """A contact's progress through one automation.

    ``active_key`` is ACTIVE_KEY while the run is ACTIVE and NULL afterwards;
    NULLs never collide in a unique index, so the constraint below allows any
    number of finished runs but only one active run per (automation, contact).
    """

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['automation', 'contact', 'active_key'],
                name='unique_active_run_per_contact'
            ),
            models.UniqueConstraint(
                fields=['automation', 'contact', 'trigger_key'],
                name='unique_run_per_trigger_key'
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'next_run_at']),
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    automation = models.ForeignKey(Automation, on_delete=models.CASCADE, related_name='runs')
    contact = models.ForeignKey('contacts.Contact', on_delete=models.CASCADE, related_name='automation_runs')
    trigger_key = models.CharField(max_length=255)
    status = models.CharField(max_length=20, choices=RunStatus.choices, default=RunStatus.ACTIVE)
    active_key = models.CharField(max_length=10, null=True, blank=True, default=ACTIVE_KEY)
    current_step_index = models.PositiveIntegerField(default=0)
    retry_count = models.PositiveIntegerField(default=0)
    last_advanced_at = models.DateTimeField()
    next_run_at = models.DateTimeField(null=True, blank=True)
    locked_until = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"Run {self.pk} of automation {self.automation_id} [{self.status}]"


class AutomationStepExecution(models.Model):
    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['run', 'step'], name='unique_step_execution_per_run')
        ]

    class Status(models.TextChoices):
        SENT = 'SENT', 'Sent'
        SKIPPED = 'SKIPPED', 'Skipped'
        FAILED = 'FAILED', 'Failed'

    run = models.ForeignKey(AutomationRun, on_delete=models.CASCADE, related_name='executions')
    step = models.ForeignKey(AutomationStep, on_delete=models.CASCADE, related_name='executions')
    status = models.CharField(max_length=20, choices=Status.choices)
    detail = models.CharField(max_length=255, blank=True, default='')
    provider_message_id = models.CharField(max_length=255, blank=True, default='')
    executed_at = models.DateTimeField(auto_now_add=True)


class CheckoutEvent(models.Model):
    """Checkout progress reported by the checkout flow; feeds ABANDONED_CHECKOUT."""

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['tenant_id', 'order_ref'], name='unique_checkout_per_order')
        ]
        indexes = [
            models.Index(fields=['tenant_id', 'status', 'created_at']),
        ]

    class Status(models.TextChoices):
        STARTED = 'STARTED', 'Started'
        COMPLETED = 'COMPLETED', 'Completed'

    tenant_id = models.CharField(max_length=64)
    order_ref = models.CharField(max_length=100)
    email = models.EmailField(blank=True, default='')
    show_id = models.CharField(max_length=64, blank=True, default='')
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.STARTED)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
