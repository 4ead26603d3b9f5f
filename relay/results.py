"""
Structured results returned to callers outside the engines.

Failures carry a classification code and a message derived from it; raw
backend payloads are logged, never returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from django.utils import timezone

from relay.exceptions import RelayError
from relay.providers.errors import ProviderError, describe_error

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    error: str | None = None
    message: str = ""
    timestamp: datetime = field(default_factory=timezone.now)

    @classmethod
    def ok(cls, data: Any = None, message: str = "") -> "OperationResult":
        return cls(success=True, data=data, message=message)

    @classmethod
    def from_exception(cls, exc: Exception) -> "OperationResult":
        if isinstance(exc, ProviderError):
            error = exc.kind.value
        elif isinstance(exc, RelayError):
            error = exc.code
        else:
            error = "internal_error"
        return cls(success=False, error=error, message=describe_error(exc))

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


def capture(func: Callable[..., Any], *args, **kwargs) -> OperationResult:
    """Run ``func`` and wrap its outcome in an OperationResult."""
    try:
        return OperationResult.ok(func(*args, **kwargs))
    except (ProviderError, RelayError) as e:
        logger.warning(f"{getattr(func, '__name__', func)} failed: {e}")
        return OperationResult.from_exception(e)
    except Exception as e:
        logger.error(f"{getattr(func, '__name__', func)} failed unexpectedly: {e}", exc_info=True)
        return OperationResult.from_exception(e)
