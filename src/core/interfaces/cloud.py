"""Contrato del proveedor de cuentas cloud.

Por qué Protocol:
- Define un contrato estructural (duck typing) sin herencia rígida.
- El adaptador real (Organizations/IAM/Budgets) y el mock de registro son
  intercambiables: las reglas de orquestación se prueban sin cuentas reales.

El contrato está atado a las primitivas de cuentas de un solo proveedor; es
una costura para tests, no una abstracción multi-cloud.
"""

from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from core.domain.models import AccountStatus, BudgetPolicy


@runtime_checkable
class CloudAccountProvider(Protocol):
    """Contrato de cuentas, confianza, identidad y alertas de coste.

    Reglas de diseño:
    - Todos los métodos son asíncronos porque hacen I/O de red.
    - Todos son idempotentes a nivel semántico: "ya existe" es éxito, no error.
    - Los fallos lanzan clases de `core.domain.errors`, nunca excepciones del SDK.
    """

    async def create_or_get_account(self, name: str, email: str, parent_ou_id: str) -> str:
        """Return the id of the account named `name`, creating it if missing."""

        ...

    async def describe_account(self, account_id: str) -> AccountStatus:
        """Cheap status lookup used to poll account propagation."""

        ...

    async def bootstrap_deploy_trust(self, account_id: str, region: str, trusting_account_id: str) -> None:
        """Create asset-staging resources and cross-account trust. "Already bootstrapped" is success."""

        ...

    async def create_federated_identity(
        self,
        account_id: str,
        issuer_url: str,
        audience: str,
        thumbprint: str,
    ) -> str:
        """Create the OIDC identity provider and return its reference."""

        ...

    async def create_deploy_role(
        self,
        account_id: str,
        role_name: str,
        trust_policy: str,
        managed_policy_arns: Sequence[str],
    ) -> str:
        """Upsert the deploy role (trust policy + attach-if-missing) and return its ARN."""

        ...

    async def create_budget_alert(self, account_id: str, policy: BudgetPolicy) -> None:
        """Notification channel, threshold alarm (non-fatal) and monthly budget."""

        ...
