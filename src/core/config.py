"""Configuración del Core.

Por qué aquí:
- Centraliza variables de entorno (pydantic-settings) sin contaminar la CLI.
- Permite que adaptadores (AWS/GitHub) y el orquestador lean timeouts,
  reintentos y confianza de forma consistente.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.domain.naming import (
    DEFAULT_ALERT_THRESHOLD,
    DEFAULT_BUDGET_LIMIT,
    DEPLOY_ROLE_NAME,
    OIDC_AUDIENCE,
    OIDC_ISSUER_URL,
    OIDC_THUMBPRINT,
    ORGANIZATION_ACCESS_ROLE,
)

APP_NAME = "account-bootstrap"
ENV_PREFIX = "ACCOUNT_BOOTSTRAP_"


def get_user_config_dir() -> Path:
    """Directorio de configuración por usuario (cross-platform, sin dependencias)."""

    if sys.platform.startswith("win"):
        base = Path(os.environ.get("APPDATA", str(Path.home())))
        return base / APP_NAME
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME

    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / APP_NAME
    return Path.home() / ".config" / APP_NAME


def get_user_env_file() -> Path:
    return get_user_config_dir() / ".env"


def _parse_env_lines(text: str) -> dict[str, str]:
    data: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key:
            data[key] = value
    return data


def write_user_env_vars(values: dict[str, str | None], env_path: Path | None = None) -> Path:
    """Escribe/actualiza variables en el .env global del usuario."""

    env_path = env_path or get_user_env_file()
    env_path.parent.mkdir(parents=True, exist_ok=True)

    existing: dict[str, str] = {}
    if env_path.exists():
        existing = _parse_env_lines(env_path.read_text(encoding="utf-8"))

    existing.update({k: v for k, v in values.items() if v is not None})

    lines = ["# account-bootstrap user config (.env)"]
    for key in sorted(existing.keys()):
        lines.append(f"{key}={existing[key]}")
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return env_path


class AppSettings(BaseSettings):
    """Configuración central de la aplicación.

    Por qué pydantic-settings:
    - Tipado + validación en el borde (env vars) sin ensuciar el Core con lógica.
    - Un único contrato de configuración para CLI, adaptadores y orquestador.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        extra="ignore",
        case_sensitive=False,
        # Order: project first (dev), then the user's global config.
        env_file=(".env", str(get_user_env_file())),
        env_file_encoding="utf-8",
    )

    # Cloud side
    region: str = Field(default="us-east-1", min_length=1, description="Region for bootstrap and IAM calls.")
    aws_profile: str | None = Field(default=None, description="Named profile for the management account.")
    trusting_account_id: str | None = Field(
        default=None,
        description="Account trusted by the bootstrapped deploy assets (defaults to the caller's account).",
    )
    organization_access_role: str = Field(default=ORGANIZATION_ACCESS_ROLE, min_length=1)
    deploy_role_name: str = Field(default=DEPLOY_ROLE_NAME, min_length=1)
    deploy_managed_policy_arns: list[str] = Field(
        default_factory=lambda: ["arn:aws:iam::aws:policy/AdministratorAccess"],
        description="Managed policies attached to the CI deploy role.",
    )
    oidc_issuer_url: str = Field(default=OIDC_ISSUER_URL, min_length=8)
    oidc_audience: str = Field(default=OIDC_AUDIENCE, min_length=1)
    oidc_thumbprint: str = Field(default=OIDC_THUMBPRINT, min_length=40, max_length=40)
    cdk_executable: str = Field(default="cdk", min_length=1)
    email_domain: str = Field(default="gmail.com", min_length=3, description="Domain for the derived account root e-mails.")

    # Budgets
    budget_alert_threshold: float = Field(default=DEFAULT_ALERT_THRESHOLD, gt=0)
    budget_limit: float = Field(default=DEFAULT_BUDGET_LIMIT, gt=0)
    budget_notify_address: str | None = Field(
        default=None,
        description="Where cost alerts go. Defaults to each account's root e-mail.",
    )

    # VCS side
    github_token: str | None = Field(default=None, description="Token for the GitHub REST API.")
    github_api_url: str = Field(default="https://api.github.com", min_length=8)
    http_timeout_seconds: float = Field(default=20.0, gt=0, description="Timeout per HTTP request (seconds).")
    user_agent: str = Field(default="account-bootstrap/0.1", min_length=1)

    # Orchestration
    call_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Timeout per provider call (account creation and bootstrap can be slow).",
    )
    run_deadline_seconds: float = Field(default=3600.0, gt=0, description="Overall run deadline.")
    propagation_timeout_seconds: float = Field(default=600.0, gt=0)
    propagation_poll_seconds: float = Field(default=5.0, ge=0)
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Max retries on transient failures (throttling, network).",
    )
    call_settle_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Extra wait for a timed-out call to finish; a running call is never relaunched.",
    )
    retry_base_delay_seconds: float = Field(default=1.25, ge=0)
    max_workers: int = Field(default=3, ge=1, le=3, description="Accounts processed concurrently.")
    state_file: Path = Field(
        default=Path(".aws-bootstrap") / "state.json",
        description="Idempotency record consulted on re-invocation.",
    )

    @model_validator(mode="after")
    def _alert_within_budget(self) -> "AppSettings":
        if self.budget_alert_threshold > self.budget_limit:
            raise ValueError(
                f"budget_alert_threshold ({self.budget_alert_threshold:g}) must not exceed "
                f"budget_limit ({self.budget_limit:g})"
            )
        return self
