"""
Django management command to add a storage connection.
"""

import json
from pathlib import Path

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from relay.results import capture
from relay.services import get_services


class Command(BaseCommand):
    help = "Test and store a new storage connection"

    def add_arguments(self, parser):
        parser.add_argument("provider_type", help="Backend type, e.g. webdav or google_drive")
        parser.add_argument("alias", help="Human-readable name for the connection")
        parser.add_argument("--owner", required=True, help="Owning user id")
        parser.add_argument(
            "--credentials",
            help="Credential JSON, or @path to a JSON file",
        )
        parser.add_argument(
            "--config",
            help="Backend config JSON (timeouts, chunk size), or @path to a JSON file",
        )
        parser.add_argument(
            "--auth-url",
            action="store_true",
            help="Google Drive: print the OAuth authorization URL and exit",
        )
        parser.add_argument(
            "--auth-code",
            help="Google Drive: exchange this authorization code for credentials",
        )

    def handle(self, *args, **options):
        provider_type = options["provider_type"].lower()

        if options["auth_url"] or options["auth_code"]:
            if provider_type != "google_drive":
                raise CommandError("--auth-url and --auth-code only apply to google_drive")
            if not getattr(settings, "GOOGLE_CLIENT_ID", None):
                raise CommandError(
                    "Google OAuth not configured. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
                )

        if options["auth_url"]:
            self._print_auth_url()
            return

        if options["auth_code"]:
            from relay.providers.google_drive import exchange_code_for_credentials

            credentials = exchange_code_for_credentials(options["auth_code"])
            self.stdout.write(f"Authorized Google account {credentials.get('email') or 'unknown'}")
        else:
            credentials = _load_json(options["credentials"], "--credentials")

        config = _load_json(options["config"], "--config") if options["config"] else {}

        result = capture(
            get_services().connections.create_connection,
            owner_id=options["owner"],
            provider_type=provider_type,
            alias=options["alias"],
            credentials=credentials,
            config=config,
        )
        if not result.success:
            raise CommandError(f"Could not add connection ({result.error}): {result.message}")
        connection = result.data

        self.stdout.write(
            self.style.SUCCESS(f"Created connection {connection.id} ({connection.alias})")
        )

    def _print_auth_url(self):
        from relay.providers.google_drive import get_authorization_url

        auth_url, _ = get_authorization_url()

        self.stdout.write("\n" + "=" * 60)
        self.stdout.write(self.style.SUCCESS("Google Drive OAuth"))
        self.stdout.write("=" * 60)
        self.stdout.write("\n1. Open this URL in your browser:\n")
        self.stdout.write(self.style.WARNING(auth_url))
        self.stdout.write("\n2. Sign in and authorize the application")
        self.stdout.write("\n3. Copy the code from the redirect and run:")
        self.stdout.write("   manage.py add_connection google_drive <alias> --owner <id> --auth-code <code>\n")
        self.stdout.write("=" * 60)


def _load_json(value: str | None, flag: str) -> dict:
    if not value:
        raise CommandError(f"{flag} is required")
    if value.startswith("@"):
        try:
            value = Path(value[1:]).read_text()
        except OSError as e:
            raise CommandError(f"Cannot read {flag} file: {e}") from e
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise CommandError(f"{flag} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise CommandError(f"{flag} must be a JSON object")
    return data
