"""Contrato del registro de idempotencia.

Por qué Protocol:
- El orquestador solo necesita load/save; dónde vive el registro (archivo
  JSON, memoria en tests) lo decide quien lo invoca.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from core.domain.models import AccountState, Environment


class AccountRecord(BaseModel):
    account_id: str | None = None
    state: AccountState = AccountState.ABSENT
    role_arn: str | None = None
    repository_bound: bool = False


class IdempotencyRecord(BaseModel):
    """Local map from environment to provider-assigned id and last reached state."""

    project_code: str
    accounts: dict[Environment, AccountRecord] = Field(default_factory=dict)
    repository_configured: bool = False

    def account(self, environment: Environment) -> AccountRecord:
        return self.accounts.setdefault(environment, AccountRecord())


@runtime_checkable
class IdempotencyStore(Protocol):
    def load(self, project_code: str) -> IdempotencyRecord:
        """Return the stored record, or an empty one for a first run."""

        ...

    def save(self, record: IdempotencyRecord) -> None:
        ...
