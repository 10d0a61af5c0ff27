"""
Segment rule evaluation.

Rules are stored as JSON on segments and campaigns, e.g.
``[{"type": "HAS_TAG", "value": "vip"}, {"type": "TOTAL_SPENT_AT_LEAST", "amount": 200}]``.
They are parsed into a closed set of rule kinds and combined with AND.
A rule that cannot be parsed never matches, so a corrupt rule can only
shrink an audience.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional, Union

from django.utils import timezone

from apps.contacts.stats import compute_order_stats, load_contact_snapshots

logger = logging.getLogger(__name__)


class RuleType(str, Enum):
    HAS_TAG = 'HAS_TAG'
    NOT_TAG = 'NOT_TAG'
    HAS_PREFERENCE = 'HAS_PREFERENCE'
    LAST_PURCHASE_OLDER_THAN = 'LAST_PURCHASE_OLDER_THAN'
    NEVER_PURCHASED = 'NEVER_PURCHASED'
    TOTAL_SPENT_AT_LEAST = 'TOTAL_SPENT_AT_LEAST'
    TOTAL_SPENT_90D_AT_LEAST = 'TOTAL_SPENT_90D_AT_LEAST'
    PURCHASE_COUNT_AT_LEAST = 'PURCHASE_COUNT_AT_LEAST'
    PURCHASED_CATEGORY_CONTAINS = 'PURCHASED_CATEGORY_CONTAINS'
    ATTENDED_VENUE = 'ATTENDED_VENUE'
    PURCHASED_EVENT_TYPE = 'PURCHASED_EVENT_TYPE'
    PURCHASED_IN_TOWN = 'PURCHASED_IN_TOWN'
    PURCHASED_IN_COUNTY = 'PURCHASED_IN_COUNTY'


# Rule kinds that read OrderStats; contact-only segments skip the order query
ORDER_RULE_TYPES = frozenset({
    RuleType.LAST_PURCHASE_OLDER_THAN,
    RuleType.NEVER_PURCHASED,
    RuleType.TOTAL_SPENT_AT_LEAST,
    RuleType.TOTAL_SPENT_90D_AT_LEAST,
    RuleType.PURCHASE_COUNT_AT_LEAST,
    RuleType.PURCHASED_CATEGORY_CONTAINS,
    RuleType.ATTENDED_VENUE,
    RuleType.PURCHASED_EVENT_TYPE,
    RuleType.PURCHASED_IN_TOWN,
    RuleType.PURCHASED_IN_COUNTY,
})

_TEXT_RULES = {
    RuleType.HAS_TAG: 'value',
    RuleType.NOT_TAG: 'value',
    RuleType.HAS_PREFERENCE: 'value',
    RuleType.PURCHASED_CATEGORY_CONTAINS: 'value',
    RuleType.ATTENDED_VENUE: 'venueId',
    RuleType.PURCHASED_EVENT_TYPE: 'value',
    RuleType.PURCHASED_IN_TOWN: 'value',
    RuleType.PURCHASED_IN_COUNTY: 'value',
}

_INTEGER_RULES = {
    RuleType.LAST_PURCHASE_OLDER_THAN: 'days',
    RuleType.PURCHASE_COUNT_AT_LEAST: 'count',
}

# Amounts are configured in pounds and compared in pence
_AMOUNT_RULES = {
    RuleType.TOTAL_SPENT_AT_LEAST: 'amount',
    RuleType.TOTAL_SPENT_90D_AT_LEAST: 'amount',
}


@dataclass(frozen=True)
class SegmentRule:
    type: RuleType
    value: Optional[str] = None
    number: Optional[int] = None


@dataclass(frozen=True)
class InvalidRule:
    raw: Any
    error: str


Rule = Union[SegmentRule, InvalidRule]


def parse_rule(raw) -> Rule:
    if not isinstance(raw, dict):
        return InvalidRule(raw, 'rule is not an object')
    try:
        rule_type = RuleType(raw.get('type'))
    except ValueError:
        return InvalidRule(raw, f"unknown rule type {raw.get('type')!r}")

    if rule_type == RuleType.NEVER_PURCHASED:
        return SegmentRule(rule_type)

    if rule_type in _TEXT_RULES:
        key = _TEXT_RULES[rule_type]
        value = raw.get(key)
        if value is None and key == 'venueId':
            value = raw.get('venue_id', raw.get('value'))
        value = str(value).strip() if value is not None else ''
        if not value:
            return InvalidRule(raw, f'{key} is required')
        return SegmentRule(rule_type, value=value)

    if rule_type in _INTEGER_RULES:
        key = _INTEGER_RULES[rule_type]
        number = _parse_integer(raw.get(key))
        if number is None:
            return InvalidRule(raw, f'{key} must be a non-negative integer')
        return SegmentRule(rule_type, number=number)

    key = _AMOUNT_RULES[rule_type]
    pence = _parse_pence(raw.get(key))
    if pence is None:
        return InvalidRule(raw, f'{key} must be a non-negative amount')
    return SegmentRule(rule_type, number=pence)


def parse_rules(payload) -> List[Rule]:
    """Accepts a bare list or ``{"rules": [...]}`` / ``{"all": [...]}``."""
    if not payload:
        return []
    if isinstance(payload, dict):
        payload = payload.get('rules', payload.get('all'))
        if payload is None:
            return [InvalidRule(payload, 'rule container has no rules')]
    if not isinstance(payload, (list, tuple)):
        return [InvalidRule(payload, 'rules must be a list')]
    return [rule if isinstance(rule, (SegmentRule, InvalidRule)) else parse_rule(rule) for rule in payload]


def needs_order_stats(rules: List[Rule]) -> bool:
    return any(isinstance(rule, SegmentRule) and rule.type in ORDER_RULE_TYPES for rule in rules)


def matches_segment_rules(contact, rules, stats=None, now=None) -> bool:
    """True when every rule matches the contact and its order stats.

    ``rules`` may be parsed rules or the raw JSON payload. ``stats`` is None
    for contacts that never purchased.
    """
    now = now or timezone.now()
    for rule in parse_rules(rules):
        if isinstance(rule, InvalidRule):
            logger.debug(f"Invalid segment rule treated as non-matching: {rule.error}")
            return False
        if not _EVALUATORS[rule.type](rule, contact, stats, now):
            return False
    return True


def evaluate_segment_contacts(tenant_id, rules_payload, now=None):
    rules = parse_rules(rules_payload)
    contacts = load_contact_snapshots(tenant_id)
    stats = {}
    if contacts and needs_order_stats(rules):
        stats = compute_order_stats(tenant_id, [c.email for c in contacts], now=now)
    return [
        contact for contact in contacts
        if matches_segment_rules(contact, rules, stats.get(contact.email), now=now)
    ]


def estimate_segment(tenant_id, rules_payload):
    contacts = evaluate_segment_contacts(tenant_id, rules_payload)
    return {
        'count': len(contacts),
        'sample': [c.email for c in contacts[:20]],
    }


def _parse_integer(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if number >= 0 else None


def _parse_pence(value) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int((amount * 100).to_integral_value())


def _has_tag(rule, contact, stats, now):
    return rule.value.lower() in contact.tags


def _not_tag(rule, contact, stats, now):
    return rule.value.lower() not in contact.tags


def _has_preference(rule, contact, stats, now):
    return rule.value.lower() in contact.preferences


def _last_purchase_older_than(rule, contact, stats, now):
    if stats is None or stats.last_purchase is None:
        return True
    return stats.last_purchase < now - timedelta(days=rule.number)


def _never_purchased(rule, contact, stats, now):
    return stats is None or stats.purchase_count == 0


def _total_spent_at_least(rule, contact, stats, now):
    return stats is not None and stats.total_spent_pence >= rule.number


def _total_spent_90d_at_least(rule, contact, stats, now):
    return stats is not None and stats.total_spent_90d_pence >= rule.number


def _purchase_count_at_least(rule, contact, stats, now):
    return stats is not None and stats.purchase_count >= rule.number


def _category_contains(rule, contact, stats, now):
    if stats is None:
        return False
    needle = rule.value.lower()
    return any(needle in category for category in stats.categories)


def _attended_venue(rule, contact, stats, now):
    return stats is not None and rule.value in stats.venues


def _purchased_event_type(rule, contact, stats, now):
    return stats is not None and rule.value.lower() in stats.event_types


def _purchased_in_town(rule, contact, stats, now):
    return stats is not None and rule.value.lower() in stats.towns


def _purchased_in_county(rule, contact, stats, now):
    return stats is not None and rule.value.lower() in stats.counties


_EVALUATORS = {
    RuleType.HAS_TAG: _has_tag,
    RuleType.NOT_TAG: _not_tag,
    RuleType.HAS_PREFERENCE: _has_preference,
    RuleType.LAST_PURCHASE_OLDER_THAN: _last_purchase_older_than,
    RuleType.NEVER_PURCHASED: _never_purchased,
    RuleType.TOTAL_SPENT_AT_LEAST: _total_spent_at_least,
    RuleType.TOTAL_SPENT_90D_AT_LEAST: _total_spent_90d_at_least,
    RuleType.PURCHASE_COUNT_AT_LEAST: _purchase_count_at_least,
    RuleType.PURCHASED_CATEGORY_CONTAINS: _category_contains,
    RuleType.ATTENDED_VENUE: _attended_venue,
    RuleType.PURCHASED_EVENT_TYPE: _purchased_event_type,
    RuleType.PURCHASED_IN_TOWN: _purchased_in_town,
    RuleType.PURCHASED_IN_COUNTY: _purchased_in_county,
}
