"""
Credential store for connections.

Credentials live in a JSON file with restricted permissions (600), keyed
by connection id, so provider secrets never reach the database or the API.
"""

from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
import threading
from pathlib import Path

from django.conf import settings

logger = logging.getLogger(__name__)

KEY_PREFIX = "connection:"

# Serializes read-modify-write cycles within a process
_lock = threading.RLock()


class SecretsError(Exception):
    """Base exception for secrets operations."""

    pass


class SecretsFileError(SecretsError):
    """Raised when secrets file operations fail."""

    pass


def _get_secrets_path() -> Path:
    return Path(settings.SECRETS_FILE)


def _key(connection_id) -> str:
    return f"{KEY_PREFIX}{connection_id}"


def _load_secrets() -> dict:
    """
    Load secrets from the secrets file.

    Returns:
        Dict of stored secrets, empty dict if file doesn't exist
    """
    path = _get_secrets_path()

    if not path.exists():
        return {}

    try:
        with open(path, "r") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in secrets file: {e}")
        raise SecretsFileError(f"Invalid secrets file format: {e}") from e
    except OSError as e:
        logger.error(f"Failed to read secrets file: {e}")
        raise SecretsFileError(f"Failed to read secrets file: {e}") from e


def _save_secrets(data: dict) -> None:
    """Write secrets atomically (temp file + rename) with 600 permissions."""
    path = _get_secrets_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=".secrets_",
            suffix=".tmp",
        )

        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, default=str)

            os.chmod(tmp_path, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_path, path)

        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    except OSError as e:
        logger.error(f"Failed to save secrets file: {e}")
        raise SecretsFileError(f"Failed to save secrets file: {e}") from e


def get_credentials(connection_id) -> dict | None:
    """
    Get the stored credentials for a connection.

    Returns:
        Credentials dict, or None if nothing is stored
    """
    with _lock:
        credentials = _load_secrets().get(_key(connection_id))
    return dict(credentials) if credentials is not None else None


def set_credentials(connection_id, credentials: dict) -> None:
    """Store (replace) the credentials for a connection."""
    with _lock:
        secrets = _load_secrets()
        secrets[_key(connection_id)] = dict(credentials)
        _save_secrets(secrets)
    logger.info(f"Saved credentials for connection {connection_id}")


def delete_credentials(connection_id) -> bool:
    """
    Delete the credentials for a connection.

    Returns:
        True if credentials were deleted, False if not found
    """
    with _lock:
        secrets = _load_secrets()
        key = _key(connection_id)
        if key not in secrets:
            return False
        del secrets[key]
        _save_secrets(secrets)
    logger.info(f"Deleted credentials for connection {connection_id}")
    return True


def has_credentials(connection_id) -> bool:
    with _lock:
        return _key(connection_id) in _load_secrets()


def list_connection_ids() -> list[str]:
    """List the ids of all connections with stored credentials."""
    with _lock:
        keys = _load_secrets().keys()
    return [k[len(KEY_PREFIX):] for k in keys if k.startswith(KEY_PREFIX)]
