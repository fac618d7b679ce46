"""Taxonomía de errores del aprovisionamiento.

Por qué aquí:
- Quien llama decide según `ErrorKind` (ya existe, permiso, transitorio) en
  lugar de tratar todos los fallos igual.
- Los adaptadores traducen los errores del proveedor a estas clases; el
  orquestador solo ve esta jerarquía.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Classification used for retry decisions and run reporting."""

    VALIDATION = "validation"
    ALREADY_EXISTS = "already_exists"
    TRANSIENT = "transient"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"

    @property
    def retryable(self) -> bool:
        return self is ErrorKind.TRANSIENT


class ProvisioningError(Exception):
    """Base class. Carries the kind plus optional account/environment/step context."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        message: str,
        *,
        environment: str | None = None,
        account_id: str | None = None,
        step: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.environment = environment
        self.account_id = account_id
        self.step = step

    def with_context(
        self,
        *,
        environment: str | None = None,
        account_id: str | None = None,
        step: str | None = None,
    ) -> "ProvisioningError":
        """Fill in missing context in place and return self (for `raise ... from`)."""

        self.environment = self.environment or environment
        self.account_id = self.account_id or account_id
        self.step = self.step or step
        return self

    def context(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "account_id": self.account_id,
            "step": self.step,
        }

    def __str__(self) -> str:
        parts = [f"{key}={value}" for key, value in self.context().items() if value]
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class ValidationError(ProvisioningError, ValueError):
    """Bad input detected before any I/O."""

    kind = ErrorKind.VALIDATION

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field


class InvalidFormatError(ValidationError):
    """A value does not match the required format (project code, OU id, e-mail prefix)."""


class AlreadyExistsError(ProvisioningError):
    """The resource already exists. Normalised to success by the orchestrator."""

    kind = ErrorKind.ALREADY_EXISTS


class TransientProviderError(ProvisioningError):
    """Throttling, timeouts, 5xx. Retried with bounded backoff."""

    kind = ErrorKind.TRANSIENT


class PermissionDeniedError(ProvisioningError):
    """Credentials lack the required permission. Fatal."""

    kind = ErrorKind.PERMISSION


class NotFoundError(ProvisioningError):
    """A required parent (OU, account, repository) does not exist. Fatal."""

    kind = ErrorKind.NOT_FOUND


class ProviderError(ProvisioningError):
    """An unexpected provider error. Surfaced, never swallowed."""

    kind = ErrorKind.UNEXPECTED


class RunCancelledError(ProvisioningError):
    """The run deadline passed or cancellation was requested before a step started."""

    kind = ErrorKind.CANCELLED


class PartialFailure(Exception):
    """Raised when a run ends with accounts at divergent states.

    The idempotency record already reflects true progress; re-invoking the
    same command resumes from there.
    """

    def __init__(self, message: str, failures: list[Any]) -> None:
        super().__init__(message)
        self.failures = failures
