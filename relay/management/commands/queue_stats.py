"""
Django management command to inspect and administer queue lanes.
"""

import json

from django.core.management.base import BaseCommand, CommandError

from relay.exceptions import InvalidRequestError
from relay.services import get_services


class Command(BaseCommand):
    help = "Show per-lane queue counts, optionally pausing or resuming a lane"

    def add_arguments(self, parser):
        parser.add_argument("lanes", nargs="*", help="Lanes to show (default: all)")
        parser.add_argument("--pause", action="store_true", help="Pause the given lanes")
        parser.add_argument("--resume", action="store_true", help="Resume the given lanes")
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

    def handle(self, *args, **options):
        queue = get_services().queue
        lanes = options["lanes"] or sorted(queue.lanes)

        if options["pause"] and options["resume"]:
            raise CommandError("Use either --pause or --resume, not both")

        try:
            for lane in lanes:
                if options["pause"]:
                    queue.pause_lane(lane)
                elif options["resume"]:
                    queue.resume_lane(lane)
            stats = [queue.stats(lane) for lane in lanes]
        except InvalidRequestError as e:
            raise CommandError(str(e))

        if options["json"]:
            self.stdout.write(json.dumps([s.to_dict() for s in stats], indent=2))
            return

        self.stdout.write("\n" + "=" * 78)
        self.stdout.write(
            f"{'Lane':<14} {'Waiting':>8} {'Delayed':>8} {'Active':>8} {'Stalled':>8} "
            f"{'Done':>8} {'Failed':>8}  State"
        )
        self.stdout.write("=" * 78)
        for s in stats:
            state = self.style.WARNING("paused") if s.paused else "running"
            self.stdout.write(
                f"{s.lane:<14} {s.waiting:>8} {s.delayed:>8} {s.active:>8} {s.stalled:>8} "
                f"{s.completed:>8} {s.failed:>8}  {state}"
            )
        self.stdout.write("=" * 78)
