"""
Exceptions raised by the relay engines, connection service and queue.
"""


class RelayError(Exception):
    """Base exception for relay operations."""

    code = "internal_error"
    retryable = False

    @property
    def user_message(self) -> str:
        return str(self)


class RecordNotFoundError(RelayError):
    """A job or connection does not exist or belongs to another owner."""

    code = "not_found"


class JobNotFoundError(RecordNotFoundError):
    pass


class ConnectionNotFoundError(RecordNotFoundError):
    pass


class ConflictError(RelayError):
    """The job already has an active execution."""

    code = "conflict"


class CapacityError(RelayError):
    """The engine's concurrency cap is reached; callers may retry later."""

    code = "capacity"
    retryable = True


class InvalidJobStateError(RelayError):
    """The requested transition is not allowed from the job's current status."""

    code = "invalid_state"


class InvalidRequestError(RelayError):
    """Input rejected before any job row was touched."""

    code = "invalid_request"


class ConnectionInUseError(RelayError):
    """A connection referenced by a job cannot be deleted."""

    code = "connection_in_use"
