from datetime import timedelta

from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from apps.campaigns.eligibility import (
    check_intelligent_eligibility, count_intelligent_sends_last_30d, extract_show_id,
    has_emailed_show_recently, is_intelligent_campaign,
)
from apps.campaigns.models import (
    Campaign, CampaignRecipient, EmailEventType, MarketingEmailEvent, RecipientStatus, Template,
)
from apps.contacts.models import Contact


class IntelligentNameTest(SimpleTestCase):
    def test_prefix(self):
        self.assertTrue(is_intelligent_campaign('IC: Weekend picks'))
        self.assertFalse(is_intelligent_campaign('October newsletter'))
        self.assertFalse(is_intelligent_campaign(None))

    def test_extract_show_id(self):
        self.assertEqual(extract_show_id({'showId': ' show_1 '}), 'show_1')
        self.assertEqual(extract_show_id({'show': {'id': 'show_2'}}), 'show_2')
        self.assertIsNone(extract_show_id({'first_name': 'Sam'}))
        self.assertIsNone(extract_show_id(None))


class IntelligentEligibilityTest(TestCase):
    def setUp(self):
        self.now = timezone.now()
        self.template = Template.objects.create(tenant_id='tenant_1', name='Picks', subject='Hi', html_body='Hi')
        self.intelligent = Campaign.objects.create(
            tenant_id='tenant_1', name='IC: Picks', template=self.template, show_id='show_1'
        )
        self.authored = Campaign.objects.create(tenant_id='tenant_1', name='Newsletter', template=self.template)

    def deliver(self, campaign, days_ago, email='fan@example.com'):
        MarketingEmailEvent.objects.create(
            tenant_id='tenant_1', campaign=campaign, email=email,
            type=EmailEventType.DELIVERED, occurred_at=self.now - timedelta(days=days_ago),
        )

    def test_cap_boundary(self):
        self.deliver(self.intelligent, 1)
        self.deliver(self.intelligent, 5)
        self.assertTrue(count_intelligent_sends_last_30d('tenant_1', 'fan@example.com', cap=3, now=self.now).eligible)

        self.deliver(self.intelligent, 9)
        result = count_intelligent_sends_last_30d('tenant_1', 'FAN@example.com', cap=3, now=self.now)
        self.assertFalse(result.eligible)
        self.assertEqual(result.reasons, ['intelligent_send_cap_reached:3'])

    def test_cap_ignores_authored_and_old_sends(self):
        for _ in range(3):
            self.deliver(self.authored, 1)
        self.deliver(self.intelligent, 31)
        self.assertTrue(count_intelligent_sends_last_30d('tenant_1', 'fan@example.com', cap=1, now=self.now).eligible)

    def test_zero_day_cooldown_always_passes(self):
        self.deliver(self.intelligent, 0)
        self.assertTrue(has_emailed_show_recently('tenant_1', 'fan@example.com', 'show_1', 0, now=self.now).eligible)

    def test_cooldown_boundary(self):
        self.deliver(self.intelligent, 10)
        self.assertFalse(has_emailed_show_recently('tenant_1', 'fan@example.com', 'show_1', 30, now=self.now).eligible)
        self.assertTrue(has_emailed_show_recently('tenant_1', 'fan@example.com', 'show_2', 30, now=self.now).eligible)

    def test_cooldown_expired(self):
        self.deliver(self.intelligent, 31)
        self.assertTrue(has_emailed_show_recently('tenant_1', 'fan@example.com', 'show_1', 30, now=self.now).eligible)

    def test_cooldown_reads_recipient_snapshots(self):
        contact = Contact.objects.create(tenant_id='tenant_1', email='fan@example.com')
        campaign = Campaign.objects.create(tenant_id='tenant_1', name='IC: Roundup', template=self.template)
        CampaignRecipient.objects.create(
            tenant_id='tenant_1', campaign=campaign, contact=contact, email='fan@example.com',
            status=RecipientStatus.SENT, sent_at=self.now - timedelta(days=10),
            merge_context={'showId': 'show_9'},
        )
        result = has_emailed_show_recently('tenant_1', 'fan@example.com', 'show_9', 30, now=self.now)
        self.assertFalse(result.eligible)
        self.assertEqual(result.reasons, ['intelligent_show_recently_emailed'])

    def test_missing_identifiers_fail_closed(self):
        self.assertFalse(count_intelligent_sends_last_30d('', 'fan@example.com').eligible)
        self.assertFalse(count_intelligent_sends_last_30d('tenant_1', '').eligible)
        self.assertFalse(has_emailed_show_recently('tenant_1', 'fan@example.com', '', 30).eligible)
        self.assertFalse(has_emailed_show_recently('tenant_1', None, 'show_1', 0).eligible)

    def test_combined_check(self):
        self.deliver(self.intelligent, 10)
        self.assertTrue(check_intelligent_eligibility('tenant_1', 'fan@example.com', cap=3, now=self.now).eligible)
        self.assertFalse(check_intelligent_eligibility(
            'tenant_1', 'fan@example.com', show_id='show_1', cap=3, cooldown_days=30, now=self.now
        ).eligible)

    def test_empty_show_id_skips_cooldown(self):
        self.deliver(self.intelligent, 10)
        for show_id in ('', None):
            result = check_intelligent_eligibility(
                'tenant_1', 'fan@example.com', show_id=show_id, cap=3, cooldown_days=30, now=self.now
            )
            self.assertTrue(result.eligible)
            self.assertEqual(result.reasons, [])
