import signal
import threading

from django.core.management.base import BaseCommand

from apps.campaigns.worker import MarketingWorker


class Command(BaseCommand):
    help = 'Run the marketing send worker in this process (alternative to Celery beat)'

    def add_arguments(self, parser):
        parser.add_argument('--interval', type=int, default=None,
                            help='Seconds between ticks (default MARKETING_WORKER_INTERVAL_SECONDS)')
        parser.add_argument('--once', action='store_true', help='Run a single tick and exit')

    def handle(self, *args, **options):
        worker = MarketingWorker(interval=options['interval'])

        if options['once']:
            summary = worker.run_once()
            self.stdout.write(self.style.SUCCESS(f'Tick finished: {summary}'))
            return

        if not worker.start():
            self.stdout.write(self.style.WARNING('Marketing worker is disabled or already running'))
            return

        stopped = threading.Event()

        def shutdown(signum, frame):
            stopped.set()

        signal.signal(signal.SIGINT, shutdown)
        signal.signal(signal.SIGTERM, shutdown)

        self.stdout.write(self.style.SUCCESS(f'Marketing worker running every {worker.interval}s'))
        stopped.wait()
        worker.stop()
        self.stdout.write(self.style.SUCCESS('Marketing worker stopped'))
