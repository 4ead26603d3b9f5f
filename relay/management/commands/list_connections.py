"""
Django management command to list connections and their status.
"""

import json

from django.core.management.base import BaseCommand

from relay import secrets
from relay.models import Connection, ConnectionStatus


class Command(BaseCommand):
    help = "List storage connections with their status"

    def add_arguments(self, parser):
        parser.add_argument("--owner", help="Only show connections of this owner")
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

    def handle(self, *args, **options):
        connections = Connection.objects.filter(is_active=True).order_by("owner_id", "alias")
        if options["owner"]:
            connections = connections.filter(owner_id=options["owner"])

        if not connections.exists():
            self.stdout.write(self.style.WARNING("No connections found."))
            self.stdout.write("\nRun 'python manage.py add_connection' to add one")
            return

        if options["json"]:
            self._output_json(connections)
        else:
            self._output_table(connections)

    def _output_table(self, connections):
        self.stdout.write("\n" + "=" * 96)
        self.stdout.write(
            f"{'ID':<36} {'Owner':<12} {'Type':<13} {'Alias':<20} {'Status':<12}"
        )
        self.stdout.write("=" * 96)

        for connection in connections:
            if connection.status == ConnectionStatus.CONNECTED:
                status_display = self.style.SUCCESS(connection.status)
            elif connection.status == ConnectionStatus.ERROR:
                status_display = self.style.ERROR(connection.status)
            else:
                status_display = self.style.WARNING(connection.status)

            self.stdout.write(
                f"{str(connection.id):<36} {connection.owner_id:<12} {connection.provider_type:<13} "
                f"{connection.alias:<20} {status_display}"
            )
            if connection.error_message:
                self.stdout.write(f"{'':<36} {connection.error_message}")

        self.stdout.write("=" * 96)
        self.stdout.write(f"Total: {connections.count()} connection(s)\n")

    def _output_json(self, connections):
        data = []
        for connection in connections:
            data.append({
                "id": str(connection.id),
                "owner_id": connection.owner_id,
                "provider_type": connection.provider_type,
                "alias": connection.alias,
                "status": connection.status,
                "error_message": connection.error_message,
                "last_contact_at": (
                    connection.last_contact_at.isoformat() if connection.last_contact_at else None
                ),
                "has_credentials": secrets.has_credentials(connection.id),
            })

        self.stdout.write(json.dumps(data, indent=2))
