# videomatch/matching/management/commands/reconcile_rooms.py
import logging
import time

from django.core.management.base import BaseCommand

from videomatch.common.errors import StoreUnavailable
from videomatch.matching.reconciliation import ReconciliationService
from videomatch.matching.services import get_engine

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Reconcile recorded matches with the provider's rooms, on a fixed interval."

    def add_arguments(self, parser):
        parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
        parser.add_argument(
            "--interval",
            type=int,
            default=None,
            help="Seconds between sweeps (default: MATCHING RECONCILE_INTERVAL_SEC)",
        )

    def handle(self, *args, **options):
        service = ReconciliationService(get_engine())
        interval = options["interval"] or service.conf.RECONCILE_INTERVAL_SEC

        if options["once"]:
            self.sweep(service)
            return

        self.stdout.write(f"reconciling every {interval}s, Ctrl+C to stop")
        try:
            while True:
                try:
                    self.sweep(service)
                except StoreUnavailable as e:
                    # next tick retries
                    logger.error("reconcile sweep skipped: %s", e)
                time.sleep(interval)
        except KeyboardInterrupt:
            self.stdout.write("stopped")

    def sweep(self, service):
        report = service.reconcile_all()
        actions = {}
        for room in report.rooms:
            actions[room.action] = actions.get(room.action, 0) + 1
        summary = ", ".join(f"{k}={v}" for k, v in sorted(actions.items())) or "no matches"
        self.stdout.write(f"{summary}; dropped tickets: {len(report.dropped_tickets)}")
        return report
