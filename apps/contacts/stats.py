# apps/contacts/stats.py
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, List, Optional

from django.utils import timezone

from .models import Contact, ConsentStatus, Order, normalize_email


@dataclass(frozen=True)
class ContactSnapshot:
    """Read-only view of a contact used by rule evaluation and materialization."""
    id: int
    tenant_id: str
    email: str
    first_name: str = ''
    last_name: str = ''
    town: str = ''
    county: str = ''
    consent_status: str = ConsentStatus.UNKNOWN
    tags: FrozenSet[str] = frozenset()
    preferences: FrozenSet[str] = frozenset()

    def merge_context(self):
        return {
            'first_name': self.first_name,
            'last_name': self.last_name,
            'email': self.email,
        }


@dataclass
class OrderStats:
    last_purchase: Optional[datetime] = None
    total_spent_pence: int = 0
    total_spent_90d_pence: int = 0
    purchase_count: int = 0
    purchase_count_90d: int = 0
    categories: set = field(default_factory=set)
    venues: set = field(default_factory=set)
    event_types: set = field(default_factory=set)
    towns: set = field(default_factory=set)
    counties: set = field(default_factory=set)


def snapshot_contact(contact):
    return ContactSnapshot(
        id=contact.id,
        tenant_id=contact.tenant_id,
        email=normalize_email(contact.email),
        first_name=contact.first_name,
        last_name=contact.last_name,
        town=contact.town,
        county=contact.county,
        consent_status=contact.consent_status,
        tags=frozenset(tag.name.lower() for tag in contact.tags.all()),
        preferences=frozenset(
            pref.topic.lower() for pref in contact.preferences.all() if pref.opted_in
        ),
    )


def load_contact_snapshots(tenant_id, contact_ids=None) -> List[ContactSnapshot]:
    contacts = Contact.objects.filter(tenant_id=tenant_id).prefetch_related('tags', 'preferences')
    if contact_ids is not None:
        contacts = contacts.filter(id__in=list(contact_ids))
    return [snapshot_contact(contact) for contact in contacts.order_by('id')]


def compute_order_stats(tenant_id, emails: Iterable[str], now=None) -> Dict[str, OrderStats]:
    """Aggregate paid orders per email. Emails with no paid orders are absent from the result."""
    now = now or timezone.now()
    window_start = now - timedelta(days=90)
    normalized = {normalize_email(email) for email in emails if email}
    if not normalized:
        return {}

    orders = Order.objects.filter(
        tenant_id=tenant_id,
        status=Order.Status.PAID,
        email__in=normalized,
    ).values(
        'email', 'amount_pence', 'created_at', 'category',
        'event_type', 'venue_id', 'town', 'county',
    )

    stats: Dict[str, OrderStats] = {}
    for order in orders:
        entry = stats.setdefault(order['email'], OrderStats())
        amount = int(order['amount_pence'] or 0)
        entry.total_spent_pence += amount
        entry.purchase_count += 1
        if order['created_at'] >= window_start:
            entry.total_spent_90d_pence += amount
            entry.purchase_count_90d += 1
        if entry.last_purchase is None or order['created_at'] > entry.last_purchase:
            entry.last_purchase = order['created_at']
        if order['category']:
            entry.categories.add(order['category'].lower())
        if order['event_type']:
            entry.event_types.add(order['event_type'].lower())
        if order['venue_id']:
            entry.venues.add(order['venue_id'])
        if order['town']:
            entry.towns.add(order['town'].lower())
        if order['county']:
            entry.counties.add(order['county'].lower())
    return stats

