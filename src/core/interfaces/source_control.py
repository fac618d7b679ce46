"""Source-control/CI provider contract."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from core.domain.models import BranchProtectionRules, SecretScope


@runtime_checkable
class SourceControlProvider(Protocol):
    """Contrato de repositorio, ramas, entornos, secretos y consumidor OIDC.

    Reglas de diseño:
    - Idempotente: repetir contra un repositorio ya configurado no cambia nada.
    - `set_secret` siempre cifra en el cliente antes de transmitir.
    """

    async def create_or_get_repository(self, org: str, name: str, private: bool) -> None:
        ...

    async def ensure_branch(self, org: str, repo: str, branch: str, from_branch: str) -> None:
        """Create `branch` from the head of `from_branch` when it does not exist yet."""

        ...

    async def configure_branch_protection(
        self,
        org: str,
        repo: str,
        branch: str,
        rules: BranchProtectionRules,
    ) -> None:
        ...

    async def create_environment(self, org: str, repo: str, name: str, require_reviewers: bool) -> None:
        ...

    async def set_secret(
        self,
        org: str,
        repo: str,
        scope: SecretScope,
        key: str,
        value: str,
        environment: str | None = None,
    ) -> None:
        ...

    async def register_federated_identity_consumer(
        self,
        org: str,
        repo: str,
        environment: str,
        issuer_url: str,
        subject_pattern: str,
    ) -> None:
        """VCS-side half of `CloudAccountProvider.create_federated_identity`."""

        ...

    async def commit_workflow(self, org: str, repo: str, name: str, content: str, branch: str) -> bool:
        """Write `.github/workflows/<name>` on `branch`; False when it already matches."""

        ...
