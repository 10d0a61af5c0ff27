from datetime import timedelta

from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from apps.contacts.models import Contact, ContactTag, Order
from apps.contacts.stats import ContactSnapshot, OrderStats
from apps.segments.rules import (
    InvalidRule, RuleType, estimate_segment, evaluate_segment_contacts, matches_segment_rules,
    parse_rule, parse_rules,
)


def make_contact(**kwargs):
    defaults = {'id': 1, 'tenant_id': 'tenant_1', 'email': 'fan@example.com'}
    defaults.update(kwargs)
    return ContactSnapshot(**defaults)


class MatchesSegmentRulesTest(SimpleTestCase):
    def setUp(self):
        self.now = timezone.now()
        self.contact = make_contact(tags=frozenset({'vip'}))
        self.stats = OrderStats(
            last_purchase=self.now - timedelta(days=20),
            total_spent_pence=45000,
            purchase_count=3,
            categories={'comedy'},
            venues={'venue_1'},
        )

    def test_every_rule_true_matches(self):
        rules = [
            {'type': 'HAS_TAG', 'value': 'vip'},
            {'type': 'LAST_PURCHASE_OLDER_THAN', 'days': 7},
            {'type': 'TOTAL_SPENT_AT_LEAST', 'amount': 200},
            {'type': 'PURCHASED_CATEGORY_CONTAINS', 'value': 'comedy'},
            {'type': 'ATTENDED_VENUE', 'venueId': 'venue_1'},
        ]
        self.assertTrue(matches_segment_rules(self.contact, rules, self.stats, now=self.now))

    def test_one_false_rule_rejects(self):
        rules = [
            {'type': 'HAS_TAG', 'value': 'vip'},
            {'type': 'TOTAL_SPENT_AT_LEAST', 'amount': 451},
        ]
        self.assertFalse(matches_segment_rules(self.contact, rules, self.stats, now=self.now))

    def test_empty_rules_match_everyone(self):
        self.assertTrue(matches_segment_rules(self.contact, [], None))
        self.assertTrue(matches_segment_rules(self.contact, {'rules': []}, None))

    def test_unknown_rule_fails_closed(self):
        rules = [{'type': 'HAS_TAG', 'value': 'vip'}, {'type': 'LIKES_JAZZ'}]
        self.assertFalse(matches_segment_rules(self.contact, rules, self.stats, now=self.now))

    def test_malformed_rule_fails_closed(self):
        self.assertFalse(matches_segment_rules(self.contact, [{'type': 'TOTAL_SPENT_AT_LEAST', 'amount': 'lots'}], self.stats))
        self.assertFalse(matches_segment_rules(self.contact, ['HAS_TAG'], self.stats))
        self.assertFalse(matches_segment_rules(self.contact, {'rules': 'HAS_TAG'}, self.stats))

    def test_never_purchased_contact(self):
        self.assertTrue(matches_segment_rules(self.contact, [{'type': 'LAST_PURCHASE_OLDER_THAN', 'days': 30}], None))
        self.assertTrue(matches_segment_rules(self.contact, [{'type': 'NEVER_PURCHASED'}], None))
        self.assertFalse(matches_segment_rules(self.contact, [{'type': 'TOTAL_SPENT_AT_LEAST', 'amount': 0}], None))
        self.assertFalse(matches_segment_rules(self.contact, [{'type': 'PURCHASE_COUNT_AT_LEAST', 'count': 1}], None))

    def test_recent_purchase_is_not_older_than(self):
        rules = [{'type': 'LAST_PURCHASE_OLDER_THAN', 'days': 30}]
        self.assertFalse(matches_segment_rules(self.contact, rules, self.stats, now=self.now))

    def test_not_tag_and_preferences(self):
        contact = make_contact(tags=frozenset({'vip'}), preferences=frozenset({'comedy-news'}))
        self.assertFalse(matches_segment_rules(contact, [{'type': 'NOT_TAG', 'value': 'VIP'}], None))
        self.assertTrue(matches_segment_rules(contact, [{'type': 'HAS_PREFERENCE', 'value': 'comedy-news'}], None))

    def test_spend_amounts_are_pounds(self):
        rule = parse_rule({'type': 'TOTAL_SPENT_AT_LEAST', 'amount': '12.50'})
        self.assertEqual(rule.number, 1250)
        self.assertEqual(rule.type, RuleType.TOTAL_SPENT_AT_LEAST)

    def test_parse_rules_containers(self):
        self.assertEqual(len(parse_rules({'all': [{'type': 'NEVER_PURCHASED'}]})), 1)
        self.assertIsInstance(parse_rules({'any': []})[0], InvalidRule)
        self.assertIsInstance(parse_rule({'type': 'HAS_TAG'}), InvalidRule)
        self.assertIsInstance(parse_rule({'type': 'PURCHASE_COUNT_AT_LEAST', 'count': -1}), InvalidRule)


class EvaluateSegmentContactsTest(TestCase):
    def setUp(self):
        now = timezone.now()
        self.fan = Contact.objects.create(tenant_id='tenant_1', email='Fan@Example.com')
        ContactTag.objects.create(contact=self.fan, name='VIP')
        self.lapsed = Contact.objects.create(tenant_id='tenant_1', email='lapsed@example.com')
        Contact.objects.create(tenant_id='tenant_2', email='other@example.com')

        Order.objects.create(
            tenant_id='tenant_1', email='fan@example.com', amount_pence=30000,
            category='Stand-up Comedy', venue_id='venue_1', created_at=now - timedelta(days=20),
        )
        Order.objects.create(
            tenant_id='tenant_1', email='fan@example.com', amount_pence=15000,
            category='Comedy', venue_id='venue_2', created_at=now - timedelta(days=200),
        )
        Order.objects.create(
            tenant_id='tenant_1', email='lapsed@example.com', amount_pence=99900,
            status=Order.Status.REFUNDED, created_at=now - timedelta(days=5),
        )

    def test_rules_against_paid_orders(self):
        rules = [
            {'type': 'HAS_TAG', 'value': 'vip'},
            {'type': 'LAST_PURCHASE_OLDER_THAN', 'days': 7},
            {'type': 'TOTAL_SPENT_AT_LEAST', 'amount': 450},
            {'type': 'TOTAL_SPENT_90D_AT_LEAST', 'amount': 300},
            {'type': 'PURCHASED_CATEGORY_CONTAINS', 'value': 'comedy'},
            {'type': 'ATTENDED_VENUE', 'venueId': 'venue_1'},
        ]
        matched = evaluate_segment_contacts('tenant_1', rules)
        self.assertEqual([c.email for c in matched], ['fan@example.com'])

    def test_refunded_orders_do_not_count(self):
        matched = evaluate_segment_contacts('tenant_1', [{'type': 'NEVER_PURCHASED'}])
        self.assertEqual([c.email for c in matched], ['lapsed@example.com'])

    def test_estimate_is_tenant_scoped(self):
        estimate = estimate_segment('tenant_1', [])
        self.assertEqual(estimate['count'], 2)
        self.assertNotIn('other@example.com', estimate['sample'])
