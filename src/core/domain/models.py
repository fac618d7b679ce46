"""Modelos del dominio (Pydantic v2).

Por qué Pydantic en el dominio:
- Validación estricta al construir: un `ProjectConfig` que existe siempre es
  válido.
- Serialización JSON estable para el registro de idempotencia y la salida `--json`.

Nota:
- Estos modelos describen *qué* se aprovisiona, no *cómo*.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.config import ConfigDict

from core.domain.errors import ErrorKind, PartialFailure
from core.domain.validation import (
    validate_email_domain,
    validate_email_prefix,
    validate_ouid,
    validate_project_code,
    validate_vcs_name,
)


class Environment(str, Enum):
    """Deployment environments. Order matters for display only."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"

    @classmethod
    def ordered(cls) -> tuple["Environment", ...]:
        return (cls.DEV, cls.STAGING, cls.PROD)

    @property
    def upper(self) -> str:
        return self.value.upper()


class AccountState(str, Enum):
    """Per-account progress. Transitions are strictly forward."""

    ABSENT = "absent"
    CREATING = "creating"
    CREATED = "created"
    TRUST_BOOTSTRAPPED = "trust_bootstrapped"
    IDENTITY_CONFIGURED = "identity_configured"
    BILLING_CONFIGURED = "billing_configured"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    def reached(self, other: "AccountState") -> bool:
        """True when this state is `other` or further along."""

        return self.rank >= other.rank


_STATE_ORDER: tuple[AccountState, ...] = (
    AccountState.ABSENT,
    AccountState.CREATING,
    AccountState.CREATED,
    AccountState.TRUST_BOOTSTRAPPED,
    AccountState.IDENTITY_CONFIGURED,
    AccountState.BILLING_CONFIGURED,
)


class ProjectConfig(BaseModel):
    """Validated, immutable input of a provisioning run.

    Built by the CLI/config layer; the orchestrator never re-validates it.
    """

    model_config = ConfigDict(frozen=True)

    project_code: str = Field(
        ...,
        description="3-character project identifier, upper-cased on construction (e.g. 'TPA').",
    )
    email_prefix: str = Field(
        ...,
        description="E-mail local part used for plus-addressed account e-mails.",
    )
    organizational_unit_id: str = Field(
        ...,
        description="Parent OU for the new accounts (ou-xxxx-xxxxxxxx).",
    )
    vcs_org: str = Field(..., description="GitHub organization or user owning the repository.")
    vcs_repo_name: str = Field(..., description="Repository name.")
    email_domain: str = Field(
        default="gmail.com",
        description="Domain of the account e-mails.",
    )
    repo_private: bool = Field(default=True, description="Create the repository as private.")

    @model_validator(mode="before")
    @classmethod
    def _split_full_address(cls, data: Any) -> Any:
        # `user@example.com` as prefix -> prefix `user`, domain `example.com`.
        if isinstance(data, dict):
            prefix = data.get("email_prefix")
            if isinstance(prefix, str) and "@" in prefix:
                local, _, domain = prefix.strip().partition("@")
                data = {**data, "email_prefix": local}
                if domain and not data.get("email_domain"):
                    data["email_domain"] = domain
        return data

    @field_validator("project_code", mode="before")
    @classmethod
    def _normalize_code(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("project_code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        return validate_project_code(value)

    @field_validator("email_prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        return validate_email_prefix(value.strip())

    @field_validator("email_domain")
    @classmethod
    def _check_domain(cls, value: str) -> str:
        return validate_email_domain(value.strip().lower())

    @field_validator("organizational_unit_id")
    @classmethod
    def _check_ou(cls, value: str) -> str:
        return validate_ouid(value.strip())

    @field_validator("vcs_org")
    @classmethod
    def _check_org(cls, value: str) -> str:
        return validate_vcs_name("vcs_org", value.strip())

    @field_validator("vcs_repo_name")
    @classmethod
    def _check_repo(cls, value: str) -> str:
        return validate_vcs_name("vcs_repo_name", value.strip())


class Account(BaseModel):
    """One cloud account of the topology, identified by its environment."""

    environment: Environment
    name: str = Field(..., min_length=1, description="Account name, e.g. 'TPA_DEV'.")
    email: str = Field(..., min_length=3, description="Root e-mail of the account.")
    account_id: str | None = Field(
        default=None,
        description="Provider-assigned id; unknown until creation succeeds.",
    )
    state: AccountState = Field(default=AccountState.ABSENT)
    role_arn: str | None = Field(default=None, description="Deploy role assumed by CI.")


class AccountStatus(str, Enum):
    """What `describe_account` reports while an account propagates."""

    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    UNKNOWN = "unknown"


class TrustBinding(BaseModel):
    """Federated-identity trust letting CI assume a role in an account."""

    model_config = ConfigDict(frozen=True)

    account_id: str
    identity_provider_ref: str = Field(..., description="ARN of the OIDC identity provider.")
    role_ref: str = Field(..., description="ARN of the deploy role.")
    subject_pattern: str = Field(..., description="Token `sub` claim accepted by the role.")


class BudgetPolicy(BaseModel):
    """Monthly budget, staged alerts and a billing alarm for one account."""

    model_config = ConfigDict(frozen=True)

    account_id: str | None = None
    alert_threshold_amount: float = Field(default=15.0, gt=0, description="USD, billing alarm threshold.")
    budget_limit_amount: float = Field(default=25.0, gt=0, description="USD, monthly budget limit.")
    notify_address: str = Field(..., min_length=3)
    budget_name: str = Field(..., min_length=1)
    topic_name: str = Field(..., min_length=1)
    alarm_name: str = Field(..., min_length=1)
    actual_percentages: tuple[float, ...] = Field(default=(60.0, 90.0, 100.0))
    forecast_percentage: float = Field(default=100.0, gt=0)

    @model_validator(mode="after")
    def _alert_below_limit(self) -> "BudgetPolicy":
        if self.alert_threshold_amount > self.budget_limit_amount:
            raise ValueError("alert_threshold_amount must not exceed budget_limit_amount")
        return self

    def for_account(self, account_id: str) -> "BudgetPolicy":
        return self.model_copy(update={"account_id": account_id})


class SecretScope(str, Enum):
    REPOSITORY = "repository"
    ENVIRONMENT = "environment"


class BranchProtectionRules(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_reviews: int = Field(default=1, ge=0, le=6)
    required_checks: tuple[str, ...] = Field(default=("test",))
    strict_checks: bool = True
    require_linear_history: bool = False
    require_conversation_resolution: bool = True
    allow_force_pushes: bool = False
    allow_deletions: bool = False


class RepositoryPlan(BaseModel):
    """Everything the VCS side needs. Secrets are references, never credentials."""

    org: str
    repo_name: str
    private: bool = True
    branches: list[str] = Field(default_factory=lambda: ["main", "develop"])
    default_branch: str = "main"
    environments: list[Environment] = Field(default_factory=lambda: list(Environment.ordered()))
    reviewer_environments: list[Environment] = Field(default_factory=lambda: [Environment.PROD])
    protection: dict[str, BranchProtectionRules] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(
        default_factory=dict,
        description="Repository-scoped secrets (account ids per environment).",
    )
    environment_secrets: dict[Environment, dict[str, str]] = Field(
        default_factory=dict,
        description="Environment-scoped secrets (account id, role ARN).",
    )
    subject_patterns: dict[Environment, str] = Field(default_factory=dict)
    workflows: dict[str, str] = Field(
        default_factory=dict,
        description="Files under .github/workflows/, committed to the default branch.",
    )

    @property
    def full_name(self) -> str:
        return f"{self.org}/{self.repo_name}"


class StepFailure(BaseModel):
    """A failed step, reported with its kind and account context."""

    step: str
    kind: ErrorKind
    message: str
    environment: Environment | None = None
    account_id: str | None = None


class AccountResult(BaseModel):
    account: Account
    failures: list[StepFailure] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class RepositoryResult(BaseModel):
    full_name: str
    configured: bool = False
    failures: list[StepFailure] = Field(default_factory=list)


class RunResult(BaseModel):
    """Structured outcome of a run: furthest state per account plus every failure."""

    project_code: str
    accounts: dict[Environment, AccountResult] = Field(default_factory=dict)
    repository: RepositoryResult | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    dry_run: bool = False

    @property
    def failures(self) -> list[StepFailure]:
        out: list[StepFailure] = []
        for env in Environment.ordered():
            result = self.accounts.get(env)
            if result:
                out.extend(result.failures)
        if self.repository:
            out.extend(self.repository.failures)
        return out

    @property
    def ok(self) -> bool:
        return not self.failures and all(
            r.account.state is AccountState.BILLING_CONFIGURED for r in self.accounts.values()
        )

    def raise_for_failures(self) -> None:
        if self.ok:
            return
        states = ", ".join(
            f"{env.value}={self.accounts[env].account.state.value}"
            for env in Environment.ordered()
            if env in self.accounts
        )
        raise PartialFailure(f"provisioning incomplete: {states}", self.failures)
