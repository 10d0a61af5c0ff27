from django.db import models
from django.core.exceptions import ValidationError
from django.utils import timezone


class Template(models.Model):
    class Meta:
        app_label = 'campaigns'
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'name'],
                name='unique_template_name_per_tenant'
            )
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=150)
    subject = models.CharField(max_length=255)
    html_body = models.TextField()
    from_name = models.CharField(max_length=100, blank=True, default='')
    from_email = models.EmailField(blank=True, default='')
    reply_to = models.EmailField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.name


class MarketingSettings(models.Model):
    """Per-tenant overrides; empty fields fall back to the MARKETING_* settings."""

    class Meta:
        app_label = 'campaigns'
        verbose_name_plural = 'marketing settings'

    tenant_id = models.CharField(max_length=64, unique=True)
    default_from_name = models.CharField(max_length=100, blank=True, default='')
    default_from_email = models.EmailField(blank=True, default='')
    default_reply_to = models.EmailField(blank=True, default='')
    require_verified_from = models.BooleanField(null=True, blank=True)
    daily_limit_override = models.PositiveIntegerField(null=True, blank=True)
    send_rate_per_sec_override = models.PositiveIntegerField(null=True, blank=True)
    intelligent_send_cap_override = models.PositiveIntegerField(null=True, blank=True)
    show_cooldown_days_override = models.PositiveIntegerField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)


class SenderDomain(models.Model):
    class Meta:
        app_label = 'campaigns'
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'domain'],
                name='unique_sender_domain_per_tenant'
            )
        ]

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        VERIFIED = 'VERIFIED', 'Verified'
        FAILED = 'FAILED', 'Failed'

    tenant_id = models.CharField(max_length=64, db_index=True)
    domain = models.CharField(max_length=255)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    verified_at = models.DateTimeField(null=True, blank=True)

    def save(self, *args, **kwargs):
        self.domain = (self.domain or '').strip().lower()
        super().save(*args, **kwargs)


class CampaignStatus(models.TextChoices):
    DRAFT = 'DRAFT', 'Draft'
    SCHEDULED = 'SCHEDULED', 'Scheduled'
    SENDING = 'SENDING', 'Sending'
    SENT = 'SENT', 'Sent'
    FAILED = 'FAILED', 'Failed'


class Campaign(models.Model):
    class Meta:
        app_label = 'campaigns'
        indexes = [
            models.Index(fields=['status', 'scheduled_at']),
            models.Index(fields=['tenant_id', 'status']),
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    name = models.CharField(max_length=200)
    status = models.CharField(max_length=20, choices=CampaignStatus.choices, default=CampaignStatus.DRAFT)
    template = models.ForeignKey(Template, on_delete=models.PROTECT, related_name='campaigns')
    segment = models.ForeignKey(
        'segments.Segment', null=True, blank=True, on_delete=models.SET_NULL, related_name='campaigns'
    )
    # Used instead of the segment's rules when set
    rules_override = models.JSONField(null=True, blank=True)
    show_id = models.CharField(max_length=64, null=True, blank=True)
    scheduled_at = models.DateTimeField(null=True, blank=True)
    send_locked_until = models.DateTimeField(null=True, blank=True)
    # Identifies the tick holding the dispatch lease
    send_lock_token = models.CharField(max_length=32, blank=True, default='')
    recipients_prepared_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True, default='')
    created_by_user_id = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name} [{self.status}]"

    def can_transition_to(self, new_status):
        """Validate status transitions"""
        valid_transitions = {
            CampaignStatus.DRAFT: [CampaignStatus.SCHEDULED],
            CampaignStatus.SCHEDULED: [CampaignStatus.SENDING],
            CampaignStatus.SENDING: [CampaignStatus.SENT, CampaignStatus.FAILED],
            CampaignStatus.SENT: [],  # Terminal state
            CampaignStatus.FAILED: [],  # Terminal state
        }
        return new_status in valid_transitions.get(self.status, [])

    def clean(self):
        if self.status == CampaignStatus.SCHEDULED and not self.scheduled_at:
            raise ValidationError("scheduled campaigns need scheduled_at")

    def save(self, *args, **kwargs):
        if self.pk:  # Updating existing
            old_instance = Campaign.objects.filter(pk=self.pk).only('status').first()
            if old_instance and old_instance.status != self.status:
                if not old_instance.can_transition_to(self.status):
                    raise ValidationError(
                        f"Cannot transition from {old_instance.status} to {self.status}"
                    )
        self.clean()
        super().save(*args, **kwargs)

    def get_rules(self):
        if self.rules_override is not None:
            return self.rules_override
        if self.segment_id:
            return self.segment.rules
        return []


class RecipientStatus(models.TextChoices):
    PENDING = 'PENDING', 'Pending'
    RETRYABLE = 'RETRYABLE', 'Retryable'
    SENT = 'SENT', 'Sent'
    FAILED = 'FAILED', 'Failed'


OPEN_RECIPIENT_STATUSES = (RecipientStatus.PENDING, RecipientStatus.RETRYABLE)


class CampaignRecipient(models.Model):
    class Meta:
        app_label = 'campaigns'
        constraints = [
            models.UniqueConstraint(
                fields=['campaign', 'contact'],
                name='unique_recipient_per_campaign'
            )
        ]
        indexes = [
            models.Index(fields=['campaign', 'status']),
            models.Index(fields=['tenant_id', 'email']),
        ]

    tenant_id = models.CharField(max_length=64)
    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, related_name='recipients')
    contact = models.ForeignKey('contacts.Contact', on_delete=models.CASCADE, related_name='campaign_recipients')
    email = models.EmailField()
    status = models.CharField(max_length=20, choices=RecipientStatus.choices, default=RecipientStatus.PENDING)
    # Snapshot taken at materialization; also records the show for cooldown checks
    merge_context = models.JSONField(default=dict, blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    retry_at = models.DateTimeField(null=True, blank=True)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    provider_message_id = models.CharField(max_length=255, blank=True, default='')
    error_text = models.TextField(blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)


class EmailEventType(models.TextChoices):
    DELIVERED = 'DELIVERED', 'Delivered'
    BOUNCE = 'BOUNCE', 'Bounce'
    COMPLAINT = 'COMPLAINT', 'Complaint'
    OPEN = 'OPEN', 'Open'
    CLICK = 'CLICK', 'Click'
    UNSUBSCRIBE = 'UNSUBSCRIBE', 'Unsubscribe'


class MarketingEmailEvent(models.Model):
    class Meta:
        app_label = 'campaigns'
        indexes = [
            models.Index(fields=['tenant_id', 'email', 'type', 'occurred_at']),
            models.Index(fields=['campaign', 'type']),
        ]

    tenant_id = models.CharField(max_length=64)
    campaign = models.ForeignKey(
        Campaign, null=True, blank=True, on_delete=models.CASCADE, related_name='events'
    )
    automation = models.ForeignKey(
        'automations.Automation', null=True, blank=True, on_delete=models.CASCADE, related_name='events'
    )
    contact = models.ForeignKey(
        'contacts.Contact', null=True, blank=True, on_delete=models.SET_NULL, related_name='email_events'
    )
    email = models.EmailField()
    type = models.CharField(max_length=20, choices=EmailEventType.choices)
    provider_message_id = models.CharField(max_length=255, blank=True, default='')
    meta = models.JSONField(default=dict, blank=True)
    occurred_at = models.DateTimeField(default=timezone.now)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.type} {self.email}"


class DailySendCounter(models.Model):
    class Meta:
        app_label = 'campaigns'
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'day'],
                name='unique_send_counter_per_day'
            )
        ]

    tenant_id = models.CharField(max_length=64)
    day = models.DateField()
    count = models.PositiveIntegerField(default=0)
