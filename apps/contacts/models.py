from django.db import models


class ConsentStatus(models.TextChoices):
    SUBSCRIBED = 'SUBSCRIBED', 'Subscribed'
    UNSUBSCRIBED = 'UNSUBSCRIBED', 'Unsubscribed'
    PENDING = 'PENDING', 'Pending'
    UNKNOWN = 'UNKNOWN', 'Unknown'


class Contact(models.Model):
    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['tenant_id', 'email'],
                name='unique_contact_email_per_tenant'
            )
        ]
        indexes = [
            models.Index(fields=['tenant_id', 'consent_status']),
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    email = models.EmailField()
    first_name = models.CharField(max_length=100, blank=True, default='')
    last_name = models.CharField(max_length=100, blank=True, default='')
    town = models.CharField(max_length=100, blank=True, default='')
    county = models.CharField(max_length=100, blank=True, default='')
    birthday = models.DateField(null=True, blank=True)
    anniversary = models.DateField(null=True, blank=True)
    consent_status = models.CharField(
        max_length=20,
        choices=ConsentStatus.choices,
        default=ConsentStatus.UNKNOWN
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def save(self, *args, **kwargs):
        # Emails are unique per tenant regardless of case
        self.email = normalize_email(self.email)
        super().save(*args, **kwargs)

    def __str__(self):
        return f"{self.email} ({self.tenant_id})"


class ContactTag(models.Model):
    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['contact', 'name'], name='unique_tag_per_contact')
        ]

    contact = models.ForeignKey(Contact, on_delete=models.CASCADE, related_name='tags')
    name = models.CharField(max_length=100)
    added_at = models.DateTimeField(auto_now_add=True)


class ContactPreference(models.Model):
    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['contact', 'topic'], name='unique_preference_per_contact')
        ]

    contact = models.ForeignKey(Contact, on_delete=models.CASCADE, related_name='preferences')
    topic = models.CharField(max_length=100)
    opted_in = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)


class Order(models.Model):
    """Paid checkout read model; written by the checkout flow, read here for OrderStats."""

    class Status(models.TextChoices):
        PENDING = 'PENDING', 'Pending'
        PAID = 'PAID', 'Paid'
        REFUNDED = 'REFUNDED', 'Refunded'

    class Meta:
        indexes = [
            models.Index(fields=['tenant_id', 'email', 'status']),
            models.Index(fields=['tenant_id', 'created_at']),
        ]

    tenant_id = models.CharField(max_length=64, db_index=True)
    email = models.EmailField()
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PAID)
    amount_pence = models.IntegerField(default=0)
    show_id = models.CharField(max_length=64, blank=True, default='')
    category = models.CharField(max_length=100, blank=True, default='')
    event_type = models.CharField(max_length=100, blank=True, default='')
    venue_id = models.CharField(max_length=64, blank=True, default='')
    town = models.CharField(max_length=100, blank=True, default='')
    county = models.CharField(max_length=100, blank=True, default='')
    created_at = models.DateTimeField()

    def save(self, *args, **kwargs):
        self.email = normalize_email(self.email)
        super().save(*args, **kwargs)


def normalize_email(email):
    return str(email or '').strip().lower()
