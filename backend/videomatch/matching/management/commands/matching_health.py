# videomatch/matching/management/commands/matching_health.py
import json

from django.core.management.base import BaseCommand, CommandError

from videomatch.common.errors import MatchingError
from videomatch.matching.health import RESET_TARGETS, HealthSupervisor
from videomatch.matching.services import get_engine


class Command(BaseCommand):
    help = "Show the matching backend's health; optionally repair or reset it."

    def add_arguments(self, parser):
        parser.add_argument("--clear-stale-locks", action="store_true", help="Delete stale pair locks")
        parser.add_argument("--repair", action="store_true", help="Fix consistency violations")
        parser.add_argument("--reset", choices=RESET_TARGETS, help="Wipe one class of records")

    def handle(self, *args, **options):
        supervisor = HealthSupervisor(get_engine())
        try:
            if options["clear_stale_locks"]:
                cleared = supervisor.clear_stale_locks()
                self.stdout.write(f"cleared {cleared} stale locks")
            if options["repair"]:
                self._dump(supervisor.repair())
            if options["reset"]:
                self._dump(supervisor.reset(options["reset"]))
            self._dump(supervisor.snapshot())
        except MatchingError as e:
            raise CommandError(str(e)) from e

    def _dump(self, data):
        self.stdout.write(json.dumps(data, indent=2, sort_keys=True))
