"""
Django management command to list registered storage backends.
"""

import json

from django.core.management.base import BaseCommand

from relay.services import get_services


class Command(BaseCommand):
    help = "List registered storage provider backends and their capabilities"

    def add_arguments(self, parser):
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

    def handle(self, *args, **options):
        described = get_services().factory.describe()

        if options["json"]:
            self.stdout.write(json.dumps(described, indent=2))
            return

        self.stdout.write("\n" + "=" * 72)
        self.stdout.write(f"{'Type':<16} {'Name':<16} {'Auth':<8} Capabilities")
        self.stdout.write("=" * 72)

        for backend in described:
            capabilities = backend["capabilities"]
            flags = [name for name, value in capabilities.items() if value is True]
            self.stdout.write(
                f"{backend['type']:<16} {backend['name']:<16} {backend['auth_kind']:<8} "
                f"{', '.join(flags)}"
            )

        self.stdout.write("=" * 72)
        self.stdout.write(f"Total: {len(described)} backend(s)\n")
