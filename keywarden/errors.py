"""Exception taxonomy for key lifecycle operations."""

from __future__ import annotations

from typing import Any, Dict, Optional


class KeyLifecycleError(Exception):
    """Base class for all keywarden errors.

    ``context`` carries whatever the raiser knows about the run at the time
    of failure (current state, elapsed time, last successful step) so the
    operator sees the full picture instead of a bare message.
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})


class GenerationError(KeyLifecycleError):
    """Keypair generation or validation failed. Fatal, never retried."""


class ConflictError(KeyLifecycleError):
    """Optimistic-concurrency clash on a signing secret."""


class RegistryConflictError(ConflictError):
    """A kid was re-registered with different public key material."""


class PropagationError(KeyLifecycleError):
    """A new key did not become visible within the expected window."""


class OperationTimeoutError(KeyLifecycleError, TimeoutError):
    """A store or network call timed out; its outcome is unknown.

    Callers must re-query state before retrying.
    """

    def __init__(self, operation: str, timeout: float, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(f"{operation} timed out after {timeout:.1f}s", context)
        self.operation = operation
        self.timeout = timeout


class AlreadyInProgressError(KeyLifecycleError):
    """Another rotation holds a fresh rotation-in-progress marker."""


class SecretNotFoundError(KeyLifecycleError):
    """No signing secret exists for the service."""

    def __init__(self, service_id: str) -> None:
        super().__init__(f"No signing secret for service {service_id!r}")
        self.service_id = service_id


class RemovalNotPermittedError(KeyLifecycleError):
    """A public record removal was attempted without a valid proof."""


class InvalidTransitionError(KeyLifecycleError):
    """The rotation state machine received an event its state cannot accept."""


__all__ = [
    "KeyLifecycleError",
    "GenerationError",
    "ConflictError",
    "RegistryConflictError",
    "PropagationError",
    "OperationTimeoutError",
    "AlreadyInProgressError",
    "SecretNotFoundError",
    "RemovalNotPermittedError",
    "InvalidTransitionError",
]
