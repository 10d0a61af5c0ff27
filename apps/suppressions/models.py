from django.db import models


class SuppressionType(models.TextChoices):
    UNSUBSCRIBE = 'UNSUBSCRIBE', 'Unsubscribe'
    HARD_BOUNCE = 'HARD_BOUNCE', 'Hard bounce'
    SPAM_COMPLAINT = 'SPAM_COMPLAINT', 'Spam complaint'


# Higher wins when two suppressions meet on the same (tenant, email)
SUPPRESSION_SEVERITY = {
    SuppressionType.UNSUBSCRIBE: 1,
    SuppressionType.HARD_BOUNCE: 2,
    SuppressionType.SPAM_COMPLAINT: 3,
}

# Never cleared by a later consent change
PERMANENT_SUPPRESSION_TYPES = frozenset({SuppressionType.HARD_BOUNCE, SuppressionType.SPAM_COMPLAINT})


class Suppression(models.Model):
    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'email'],
                name='unique_suppression_per_tenant_email'
            )
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    email = models.EmailField()
    type = models.CharField(max_length=20, choices=SuppressionType.choices)
    reason = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.email} [{self.type}]"


class EmailEventReceipt(models.Model):
    """One row per provider event id so replayed webhook deliveries are ignored."""

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['provider', 'provider_event_id'],
                name='unique_provider_event_receipt'
            )
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    provider = models.CharField(max_length=50, default='sendgrid')
    provider_event_id = models.CharField(max_length=255)
    event_at = models.DateTimeField(null=True, blank=True)
    received_at = models.DateTimeField(auto_now_add=True)
