from datetime import date, datetime, timedelta, timezone as dt_timezone

from django.core.cache import cache
from django.test import TestCase
from django.utils import timezone

from apps.automations.engine import (
    advance_run, enroll_contact, mark_checkout_completed, on_tag_applied, process_abandoned_checkout_automations,
    process_anniversary_automations, process_automation_steps, process_birthday_automations,
    process_no_purchase_automations, quiet_hours_resume_at, record_checkout_started,
)
from apps.automations.models import (
    Automation, AutomationRun, AutomationStep, AutomationStepExecution, RunStatus, TriggerType,
)
from apps.campaigns.models import DailySendCounter, EmailEventType, MarketingEmailEvent, SenderDomain, Template
from apps.contacts.models import Contact, ConsentStatus, ContactTag, Order
from apps.delivery.circuit_breaker import ProviderCircuitBreaker
from apps.delivery.dispatch import Dispatcher
from apps.delivery.exceptions import ProviderTransportError
from apps.delivery.providers import EmailProvider, LocmemProvider
from apps.suppressions.models import Suppression, SuppressionType


class FlakyProvider(EmailProvider):
    name = 'flaky'

    def send_email(self, message):
        raise ProviderTransportError('SendGrid timeout')


class AutomationTestCase(TestCase):
    def setUp(self):
        cache.clear()
        LocmemProvider.reset()
        self.now = timezone.now()
        self.template = Template.objects.create(
            tenant_id='tenant_1', name='Welcome', subject='Welcome {{ first_name }}', html_body='<p>Hi</p>',
            from_name='Box Office', from_email='news@example.com',
        )
        SenderDomain.objects.create(tenant_id='tenant_1', domain='example.com', status=SenderDomain.Status.VERIFIED)
        self.contact = Contact.objects.create(
            tenant_id='tenant_1', email='fan@example.com', first_name='Sam', consent_status=ConsentStatus.SUBSCRIBED
        )
        self.automation = Automation.objects.create(
            tenant_id='tenant_1', name='Welcome series', trigger_type=TriggerType.TAG_APPLIED,
            trigger_config={'tag': 'new'},
        )
        self.dispatcher = Dispatcher(provider=LocmemProvider())

    def add_step(self, order, delay_minutes=0, condition_rules=None, **extra):
        return AutomationStep.objects.create(
            automation=self.automation, step_order=order, delay_minutes=delay_minutes,
            template=self.template, condition_rules=condition_rules, **extra
        )


class EnrollContactTest(AutomationTestCase):
    def test_same_trigger_key_enrolls_once(self):
        self.assertIsNotNone(enroll_contact(self.automation, self.contact, 'tag:new', now=self.now))
        self.assertIsNone(enroll_contact(self.automation, self.contact, 'tag:new', now=self.now))
        self.assertEqual(AutomationRun.objects.count(), 1)

    def test_one_active_run_per_contact(self):
        enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        self.assertIsNone(enroll_contact(self.automation, self.contact, 'tag:other', now=self.now))

    def test_reenroll_after_completion(self):
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        advance_run(run, self.dispatcher, now=self.now)
        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertIsNone(run.active_key)

        self.assertIsNotNone(enroll_contact(self.automation, self.contact, 'tag:again', now=self.now))

    def test_first_step_delay_sets_next_run(self):
        self.add_step(0, delay_minutes=15)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        self.assertEqual(run.next_run_at, self.now + timedelta(minutes=15))
        self.assertEqual(run.current_step_index, 0)


class ProcessAutomationStepsTest(AutomationTestCase):
    def test_steps_run_in_order_then_complete(self):
        self.add_step(0)
        self.add_step(1, delay_minutes=60)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)

        self.assertEqual(process_automation_steps(dispatcher=self.dispatcher, now=self.now), 1)
        run.refresh_from_db()
        self.assertEqual(run.current_step_index, 1)
        self.assertEqual(run.next_run_at, self.now + timedelta(minutes=60))
        self.assertIsNone(run.locked_until)
        self.assertEqual(LocmemProvider.outbox[0].subject, 'Welcome Sam')
        self.assertEqual(LocmemProvider.outbox[0].custom_args['automationId'], str(self.automation.id))

        self.assertEqual(process_automation_steps(dispatcher=self.dispatcher, now=self.now), 0)

        later = self.now + timedelta(minutes=61)
        process_automation_steps(dispatcher=self.dispatcher, now=later)
        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(run.completed_at, later)
        self.assertEqual(len(LocmemProvider.outbox), 2)
        self.assertEqual(
            MarketingEmailEvent.objects.filter(automation=self.automation, type=EmailEventType.DELIVERED).count(), 2
        )

    def test_unmet_condition_skips_step(self):
        self.add_step(0, condition_rules=[{'type': 'HAS_TAG', 'value': 'vip'}])
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        process_automation_steps(dispatcher=self.dispatcher, now=self.now)

        execution = AutomationStepExecution.objects.get(run=run)
        self.assertEqual(execution.status, AutomationStepExecution.Status.SKIPPED)
        self.assertEqual(execution.detail, 'conditions_not_met')
        self.assertEqual(LocmemProvider.outbox, [])

    def test_met_condition_sends(self):
        ContactTag.objects.create(contact=self.contact, name='VIP')
        self.add_step(0, condition_rules=[{'type': 'HAS_TAG', 'value': 'vip'}])
        enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        process_automation_steps(dispatcher=self.dispatcher, now=self.now)
        self.assertEqual(len(LocmemProvider.outbox), 1)

    def test_suppressed_contact_skipped(self):
        self.add_step(0)
        Suppression.objects.create(tenant_id='tenant_1', email='fan@example.com', type=SuppressionType.HARD_BOUNCE)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        process_automation_steps(dispatcher=self.dispatcher, now=self.now)

        execution = AutomationStepExecution.objects.get(run=run)
        self.assertEqual(execution.status, AutomationStepExecution.Status.SKIPPED)
        self.assertEqual(execution.detail, 'suppressed')
        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.COMPLETED)

    def test_unverified_sender_fails_step_and_advances(self):
        SenderDomain.objects.all().delete()
        self.add_step(0)
        self.add_step(1)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        process_automation_steps(dispatcher=self.dispatcher, now=self.now)

        execution = AutomationStepExecution.objects.get(run=run)
        self.assertEqual(execution.status, AutomationStepExecution.Status.FAILED)
        run.refresh_from_db()
        self.assertEqual(run.current_step_index, 1)

    def test_transport_error_defers_step(self):
        self.add_step(0)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        process_automation_steps(dispatcher=Dispatcher(provider=FlakyProvider()), now=self.now)

        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.ACTIVE)
        self.assertEqual(run.current_step_index, 0)
        self.assertEqual(run.retry_count, 1)
        self.assertGreater(run.next_run_at, self.now)
        self.assertFalse(AutomationStepExecution.objects.exists())

    def test_open_circuit_defers_without_spending_attempt(self):
        self.add_step(0)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        dispatcher = Dispatcher(provider=FlakyProvider(), circuit_breaker=ProviderCircuitBreaker(failure_threshold=1))
        with self.assertRaises(ProviderTransportError):
            dispatcher.send('tenant_1', None)

        process_automation_steps(dispatcher=dispatcher, now=self.now)

        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.ACTIVE)
        self.assertEqual(run.retry_count, 0)
        self.assertGreater(run.next_run_at, self.now)
        self.assertFalse(AutomationStepExecution.objects.exists())
        self.assertEqual(DailySendCounter.objects.get(tenant_id='tenant_1').count, 0)

    def test_disabled_automation_cancels_run(self):
        self.add_step(0)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        Automation.objects.filter(pk=self.automation.pk).update(is_enabled=False)

        process_automation_steps(dispatcher=self.dispatcher, now=self.now)
        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.CANCELLED)
        self.assertEqual(LocmemProvider.outbox, [])


class TriggerScanTest(AutomationTestCase):
    def test_no_purchase_scan(self):
        lapsed = Contact.objects.create(tenant_id='tenant_1', email='lapsed@example.com')
        recent = Contact.objects.create(tenant_id='tenant_1', email='recent@example.com')
        Order.objects.create(tenant_id='tenant_1', email=lapsed.email, amount_pence=2000,
                             created_at=self.now - timedelta(days=40))
        Order.objects.create(tenant_id='tenant_1', email=recent.email, amount_pence=2000,
                             created_at=self.now - timedelta(days=5))
        automation = Automation.objects.create(
            tenant_id='tenant_1', name='Win back', trigger_type=TriggerType.NO_PURCHASE_DAYS,
            trigger_config={'days': 30},
        )

        self.assertEqual(process_no_purchase_automations(now=self.now), 2)
        enrolled = set(automation.runs.values_list('contact__email', flat=True))
        self.assertEqual(enrolled, {'lapsed@example.com', 'fan@example.com'})

        # Already scanned today
        AutomationRun.objects.all().delete()
        self.assertEqual(process_no_purchase_automations(now=self.now), 0)
        self.assertEqual(process_no_purchase_automations(now=self.now + timedelta(days=1)), 2)

    def test_abandoned_checkout(self):
        automation = Automation.objects.create(
            tenant_id='tenant_1', name='Abandoned', trigger_type=TriggerType.ABANDONED_CHECKOUT,
            trigger_config={'minutes_since_start': 60},
        )
        record_checkout_started('tenant_1', 'ORD-1', email='Fan@Example.com', show_id='show_1')

        self.assertEqual(process_abandoned_checkout_automations(now=self.now), 0)
        later = timezone.now() + timedelta(minutes=61)
        self.assertEqual(process_abandoned_checkout_automations(now=later), 1)
        self.assertEqual(process_abandoned_checkout_automations(now=later), 0)
        self.assertEqual(automation.runs.get().trigger_key, 'abandoned:ORD-1')

        self.assertEqual(mark_checkout_completed('tenant_1', 'ORD-1'), 1)
        self.assertEqual(automation.runs.get().status, RunStatus.CANCELLED)

    def test_completed_checkout_not_enrolled(self):
        Automation.objects.create(
            tenant_id='tenant_1', name='Abandoned', trigger_type=TriggerType.ABANDONED_CHECKOUT,
        )
        record_checkout_started('tenant_1', 'ORD-2', email='fan@example.com')
        mark_checkout_completed('tenant_1', 'ORD-2')
        later = timezone.now() + timedelta(minutes=61)
        self.assertEqual(process_abandoned_checkout_automations(now=later), 0)

    def test_birthday(self):
        today = self.now.date()
        Contact.objects.create(
            tenant_id='tenant_1', email='bday@example.com', birthday=date(2000, today.month, today.day)
        )
        automation = Automation.objects.create(
            tenant_id='tenant_1', name='Birthday', trigger_type=TriggerType.BIRTHDAY,
        )
        self.assertEqual(process_birthday_automations(now=self.now), 1)
        self.assertEqual(process_birthday_automations(now=self.now), 0)
        self.assertEqual(automation.runs.get().trigger_key, f'birthday:{today.isoformat()}')

    def test_tag_applied(self):
        any_tag = Automation.objects.create(
            tenant_id='tenant_1', name='Any tag', trigger_type=TriggerType.TAG_APPLIED,
        )
        runs = on_tag_applied(self.contact, 'NEW', now=self.now)
        self.assertEqual({run.automation_id for run in runs}, {self.automation.id, any_tag.id})

        other = Contact.objects.create(tenant_id='tenant_1', email='other@example.com')
        runs = on_tag_applied(other, 'vip', now=self.now)
        self.assertEqual([run.automation_id for run in runs], [any_tag.id])
        self.assertEqual(on_tag_applied(other, '  ', now=self.now), [])

    def test_anniversary(self):
        today = self.now.date()
        Contact.objects.create(
            tenant_id='tenant_1', email='wedding@example.com', anniversary=date(2000, today.month, today.day)
        )
        Contact.objects.create(
            tenant_id='tenant_1', email='bday@example.com', birthday=date(2000, today.month, today.day)
        )
        automation = Automation.objects.create(
            tenant_id='tenant_1', name='Anniversary', trigger_type=TriggerType.ANNIVERSARY,
        )
        self.assertEqual(process_anniversary_automations(now=self.now), 1)
        self.assertEqual(process_anniversary_automations(now=self.now), 0)
        run = automation.runs.get()
        self.assertEqual(run.contact.email, 'wedding@example.com')
        self.assertEqual(run.trigger_key, f'anniversary:{today.isoformat()}')


class QuietHoursTest(AutomationTestCase):
    def at(self, hour, minute=0, day=10):
        return datetime(2026, 3, day, hour, minute, tzinfo=dt_timezone.utc)

    def test_window_wrapping_midnight(self):
        step = AutomationStep(quiet_hours_start=22, quiet_hours_end=7)
        self.assertEqual(quiet_hours_resume_at(step, self.at(23, 30)), self.at(7, day=11))
        self.assertEqual(quiet_hours_resume_at(step, self.at(3)), self.at(7))
        self.assertIsNone(quiet_hours_resume_at(step, self.at(7)))
        self.assertIsNone(quiet_hours_resume_at(step, self.at(12)))

    def test_daytime_window(self):
        step = AutomationStep(quiet_hours_start=9, quiet_hours_end=17)
        self.assertEqual(quiet_hours_resume_at(step, self.at(10, 15)), self.at(17))
        self.assertIsNone(quiet_hours_resume_at(step, self.at(17)))
        self.assertIsNone(quiet_hours_resume_at(step, self.at(8, 59)))

    def test_unset_or_empty_window(self):
        self.assertIsNone(quiet_hours_resume_at(AutomationStep(), self.at(3)))
        self.assertIsNone(quiet_hours_resume_at(AutomationStep(quiet_hours_start=5, quiet_hours_end=5), self.at(5)))

    def test_step_held_until_window_ends(self):
        self.add_step(0, quiet_hours_start=22, quiet_hours_end=7)
        night = self.at(23, 30)
        run = enroll_contact(self.automation, self.contact, 'tag:new', now=night)

        process_automation_steps(dispatcher=self.dispatcher, now=night)
        run.refresh_from_db()
        self.assertEqual(run.next_run_at, self.at(7, day=11))
        self.assertEqual(run.current_step_index, 0)
        self.assertEqual(run.retry_count, 0)
        self.assertEqual(LocmemProvider.outbox, [])
        self.assertFalse(AutomationStepExecution.objects.exists())

        process_automation_steps(dispatcher=self.dispatcher, now=self.at(7, day=11))
        run.refresh_from_db()
        self.assertEqual(run.status, RunStatus.COMPLETED)
        self.assertEqual(len(LocmemProvider.outbox), 1)


class StepThrottleTest(AutomationTestCase):
    def test_second_send_waits_for_window(self):
        self.add_step(0, throttle_minutes=60)
        other = Contact.objects.create(
            tenant_id='tenant_1', email='alex@example.com', consent_status=ConsentStatus.SUBSCRIBED
        )
        enroll_contact(self.automation, self.contact, 'tag:new', now=self.now)
        enroll_contact(self.automation, other, 'tag:new', now=self.now)

        self.assertEqual(process_automation_steps(dispatcher=self.dispatcher, now=self.now), 2)
        self.assertEqual(len(LocmemProvider.outbox), 1)
        held = AutomationRun.objects.get(status=RunStatus.ACTIVE)
        self.assertGreaterEqual(held.next_run_at, self.now + timedelta(minutes=60))
        self.assertEqual(held.retry_count, 0)

        self.assertEqual(process_automation_steps(dispatcher=self.dispatcher, now=self.now + timedelta(minutes=30)), 0)
        self.assertEqual(len(LocmemProvider.outbox), 1)

        process_automation_steps(dispatcher=self.dispatcher, now=self.now + timedelta(hours=2))
        self.assertEqual(len(LocmemProvider.outbox), 2)
        self.assertFalse(AutomationRun.objects.filter(status=RunStatus.ACTIVE).exists())

    def test_skipped_executions_do_not_throttle(self):
        self.add_step(0, throttle_minutes=60)
        Suppression.objects.create(tenant_id='tenant_1', email='fan@example.com', type=SuppressionType.HARD_BOUNCE)
        other = Contact.objects.create(
            tenant_id='tenant_1', email='alex@example.com', consent_status=ConsentStatus.SUBSCRIBED
        )
        skipped = enroll_contact(self.automation, self.contact, 'tag:new', now=self.now - timedelta(minutes=1))
        enroll_contact(self.automation, other, 'tag:new', now=self.now)

        process_automation_steps(dispatcher=self.dispatcher, now=self.now)
        self.assertEqual(AutomationStepExecution.objects.get(run=skipped).status, AutomationStepExecution.Status.SKIPPED)
        self.assertEqual([m.to for m in LocmemProvider.outbox], ['alex@example.com'])
