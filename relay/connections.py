"""
Connection management: create, test and open authenticated providers.

Credentials are validated against the backend's authentication kind, proven
by a test authentication, and then kept in the secrets file. Engines open
providers exclusively through ``ConnectionService.open_provider`` so refreshed
OAuth tokens are always written back.
"""

from __future__ import annotations

import logging

from django.db import transaction
from django.utils import timezone

from relay import secrets
from relay.exceptions import (
    ConnectionInUseError,
    ConnectionNotFoundError,
    InvalidRequestError,
)
from relay.models import Connection, ConnectionStatus
from relay.providers.base import REQUIRED_CREDENTIAL_FIELDS, StorageProvider
from relay.providers.errors import (
    AuthenticationError,
    NetworkError,
    ProviderError,
    describe_error,
)
from relay.providers.factory import ProviderFactory

logger = logging.getLogger(__name__)


class ConnectionService:
    def __init__(self, factory: ProviderFactory):
        self.factory = factory

    def validate_credentials(self, provider_type: str, credentials: dict) -> None:
        """
        Check that ``credentials`` carries every field the backend's auth kind needs.

        Raises:
            InvalidRequestError: If the provider type is unknown or fields are missing
        """
        if not self.factory.is_supported(provider_type):
            supported = ", ".join(self.factory.list_supported())
            raise InvalidRequestError(
                f"Unsupported provider type '{provider_type}'. Supported types: {supported}"
            )

        auth_kind = self.factory.create(provider_type).auth_kind
        required = REQUIRED_CREDENTIAL_FIELDS[auth_kind]
        missing = [
            name for name in required
            if credentials.get(name) is None or credentials.get(name) == ""
        ]
        if missing:
            raise InvalidRequestError(
                f"Missing {auth_kind.value} credential fields: {', '.join(missing)}"
            )

    def create_connection(
        self,
        owner_id: str,
        provider_type: str,
        alias: str,
        credentials: dict,
        config: dict | None = None,
    ) -> Connection:
        """
        Validate, test and store a new connection.

        Raises:
            InvalidRequestError: If the credential shape is wrong
            AuthenticationError: If the backend rejects the credentials
            NetworkError: If the connection test fails
        """
        if not alias or not alias.strip():
            raise InvalidRequestError("Connection alias is required")
        credentials = dict(credentials or {})
        self.validate_credentials(provider_type, credentials)

        provider = self.factory.create(provider_type, config)
        provider.authenticate(credentials)
        if not provider.test_connection():
            raise NetworkError(
                f"Could not reach {provider.display_name or provider_type}",
                provider_type=provider.provider_type,
            )

        with transaction.atomic():
            connection = Connection.objects.create(
                owner_id=owner_id,
                provider_type=provider.provider_type,
                alias=alias.strip(),
                config=dict(config or {}),
                status=ConnectionStatus.CONNECTED,
                last_contact_at=timezone.now(),
            )
            # The provider may have refreshed tokens while authenticating
            secrets.set_credentials(connection.id, provider.credentials or credentials)

        logger.info(f"Created {provider_type} connection {connection.id} ({connection.alias}) for {owner_id}")
        return connection

    def get_connection(self, connection_id, owner_id: str | None = None) -> Connection:
        connections = Connection.objects.filter(id=connection_id)
        if owner_id is not None:
            connections = connections.filter(owner_id=owner_id)
        connection = connections.first()
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        return connection

    def list_connections(self, owner_id: str, provider_type: str | None = None) -> list[Connection]:
        connections = Connection.objects.filter(owner_id=owner_id, is_active=True)
        if provider_type:
            connections = connections.filter(provider_type=provider_type.lower())
        return list(connections.order_by("alias"))

    def update_connection(
        self,
        connection_id,
        owner_id: str | None = None,
        *,
        alias: str | None = None,
        config: dict | None = None,
        credentials: dict | None = None,
    ) -> Connection:
        """Update alias/config, or replace credentials after re-validating them."""
        connection = self.get_connection(connection_id, owner_id)

        if credentials is not None:
            self.validate_credentials(connection.provider_type, credentials)
            provider = self.factory.create(connection.provider_type, config or connection.config)
            provider.authenticate(credentials)
            secrets.set_credentials(connection.id, provider.credentials or credentials)
            connection.status = ConnectionStatus.CONNECTED
            connection.error_message = ""
            connection.last_contact_at = timezone.now()

        if alias is not None:
            if not alias.strip():
                raise InvalidRequestError("Connection alias is required")
            connection.alias = alias.strip()
        if config is not None:
            connection.config = dict(config)

        connection.save()
        logger.info(f"Updated connection {connection.id}")
        return connection

    def delete_connection(self, connection_id, owner_id: str | None = None) -> None:
        """
        Delete a connection and its stored credentials.

        Raises:
            ConnectionInUseError: If any transfer or sync job references it
        """
        connection = self.get_connection(connection_id, owner_id)
        if connection.is_referenced:
            raise ConnectionInUseError(
                f"Connection {connection.alias} is used by one or more jobs"
            )
        connection.delete()
        secrets.delete_credentials(connection_id)
        logger.info(f"Deleted connection {connection_id}")

    def test_connection(self, connection_id, owner_id: str | None = None) -> bool:
        """Re-test a stored connection and record the outcome on its status."""
        connection = self.get_connection(connection_id, owner_id)
        try:
            provider = self.open_provider(connection)
        except ProviderError:
            return False

        if provider.test_connection():
            connection.mark_connected()
            return True

        connection.mark_error("Connection test failed")
        return False

    def open_provider(self, connection: Connection) -> StorageProvider:
        """
        Create and authenticate the provider behind ``connection``.

        Raises:
            AuthenticationError: If credentials are missing or rejected
            ProviderError: For any other failure while connecting
        """
        credentials = secrets.get_credentials(connection.id)
        if not credentials:
            self._record_failure(connection, "No stored credentials")
            raise AuthenticationError(
                f"No credentials stored for connection {connection.alias}",
                provider_type=connection.provider_type,
            )

        provider = self.factory.create(connection.provider_type, connection.config)
        provider.credentials_listener = lambda updated: self._store_refreshed(connection, updated)

        try:
            provider.authenticate(credentials)
        except ProviderError as e:
            self._record_failure(connection, describe_error(e))
            raise

        Connection.objects.filter(id=connection.id).update(
            status=ConnectionStatus.CONNECTED,
            error_message="",
            last_contact_at=timezone.now(),
        )
        return provider

    def _store_refreshed(self, connection: Connection, credentials: dict) -> None:
        logger.info(f"Storing refreshed credentials for connection {connection.id}")
        secrets.set_credentials(connection.id, credentials)

    @staticmethod
    def _record_failure(connection: Connection, message: str) -> None:
        logger.warning(f"Connection {connection.id} ({connection.alias}) failed: {message}")
        Connection.objects.filter(id=connection.id).update(
            status=ConnectionStatus.ERROR,
            error_message=message,
            updated_at=timezone.now(),
        )
