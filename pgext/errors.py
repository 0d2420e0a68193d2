"""Errors raised by the actuator and the backing store.

The actuator never retries on its own except for optimistic concurrency
conflicts. Every other error propagates to the controller, which uses the
`retryable` flag to decide whether to re-enqueue the extension.

"""

from typing import Any, Dict, List, Optional


class ActuatorError(Exception):
    """Base class for all errors surfaced by the actuator."""

    retryable: bool = True

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ContextLookupError(ActuatorError):
    """The environment context (Gardener `Cluster`) could not be read."""


class ConfigMissingError(ActuatorError):
    """The extension does not carry a provider configuration."""

    retryable = False

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__("no provider config specified", details)


class ConfigDecodeError(ActuatorError):
    """The provider configuration is not a valid `PostgresConfig` document."""

    retryable = False


class ConfigInvalidError(ActuatorError):
    """The provider configuration failed validation.

    The `errors` attribute contains one `FieldError` per violated rule.

    """

    retryable = False

    def __init__(self, errors: List[Any]):
        self.errors = list(errors)
        msg = str.join(", ", [str(_) for _ in self.errors])
        if len(self.errors) > 1:
            msg = f"[{msg}]"
        super().__init__(msg, {"fields": [_.field for _ in self.errors]})


class ConcurrentUpdateError(ActuatorError):
    """The update kept conflicting with concurrent writers."""


class DeletionError(ActuatorError):
    """The Postgres cluster could not be deleted."""


class CancellationError(ActuatorError):
    """The pass was aborted because its deadline expired."""

    retryable = False


# ----------------------------------------------------------------------
# Backing store.
# ----------------------------------------------------------------------


class StoreError(Exception):
    """Base class for all backing store errors."""

    def __init__(self, message: str, status: int = -1):
        self.status = status
        super().__init__(message)


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    """The revision of the submitted object is stale."""
