"""Recording cloud adapter.

Fabricates deterministic 12-digit account ids (derived from the account
name, so concurrent creation order never changes them) and records every
call in an `OperationLog`. Resources persist on the instance, so two runs
against the same mock behave like two runs against the same organization.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass, field
from typing import Sequence

from adapters.mock.operations import Operation, OperationLog
from core.domain.errors import NotFoundError
from core.domain.models import AccountStatus, BudgetPolicy
from core.domain.naming import deploy_role_arn, oidc_provider_arn

MOCK_CALLER_ACCOUNT_ID = "999999999999"


@dataclass
class MockAccount:
    account_id: str
    name: str
    email: str
    parent_ou_id: str
    describes: int = 0


@dataclass
class MockRole:
    arn: str
    trust_policy: str
    policies: list[str] = field(default_factory=list)


def fabricate_account_id(name: str) -> str:
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()
    return f"{int(digest, 16) % 10**11 + 10**11:012d}"


class MockCloudAccountProvider:
    """Implements `CloudAccountProvider` in memory."""

    def __init__(
        self,
        *,
        log: OperationLog | None = None,
        pending_describes: int = 0,
        latency: float = 0.0,
    ) -> None:
        self.log = log or OperationLog()
        self._pending_describes = pending_describes
        self._latency = latency
        self.accounts: dict[str, MockAccount] = {}
        self._names_by_id: dict[str, str] = {}
        self.bootstrapped: dict[str, str] = {}
        self.identity_providers: dict[str, str] = {}
        self.roles: dict[tuple[str, str], MockRole] = {}
        self.budgets: dict[str, BudgetPolicy] = {}

    @property
    def operations(self) -> tuple[Operation, ...]:
        return self.log.operations

    def name_of(self, account_id: str) -> str:
        return self._names_by_id.get(account_id, account_id)

    async def caller_account_id(self) -> str:
        return MOCK_CALLER_ACCOUNT_ID

    async def _enter(self, operation: str, target: str | None, details: dict[str, object]) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        error = self.log.check_fault(operation, target)
        if error is not None:
            self.log.record(Operation(operation, target, details, outcome=f"error:{error.kind.value}"))
            raise error

    def _require(self, account_id: str) -> str:
        if account_id not in self._names_by_id:
            raise NotFoundError(f"account {account_id} not found", account_id=account_id)
        return self._names_by_id[account_id]

    async def create_or_get_account(self, name: str, email: str, parent_ou_id: str) -> str:
        details: dict[str, object] = {"email": email, "parent": parent_ou_id}
        await self._enter("create_or_get_account", name, details)
        existing = self.accounts.get(name)
        if existing is not None:
            self.log.record(Operation("create_or_get_account", name, details, outcome=f"reused:{existing.account_id}"))
            return existing.account_id

        account_id = fabricate_account_id(name)
        while account_id in self._names_by_id:
            account_id = f"{(int(account_id) + 1) % 10**12:012d}"
        self.accounts[name] = MockAccount(account_id, name, email, parent_ou_id)
        self._names_by_id[account_id] = name
        self.log.record(Operation("create_or_get_account", name, details, outcome=f"created:{account_id}"))
        return account_id

    async def describe_account(self, account_id: str) -> AccountStatus:
        name = self._names_by_id.get(account_id)
        await self._enter("describe_account", name, {"account_id": account_id})
        if name is None:
            self.log.record(Operation("describe_account", None, {"account_id": account_id}, outcome="unknown"))
            return AccountStatus.UNKNOWN
        account = self.accounts[name]
        account.describes += 1
        status = AccountStatus.ACTIVE if account.describes > self._pending_describes else AccountStatus.PENDING
        self.log.record(Operation("describe_account", name, {"account_id": account_id}, outcome=status.value))
        return status

    async def bootstrap_deploy_trust(self, account_id: str, region: str, trusting_account_id: str) -> None:
        trust = trusting_account_id or MOCK_CALLER_ACCOUNT_ID
        details: dict[str, object] = {"account_id": account_id, "region": region, "trust": trust}
        name = self._names_by_id.get(account_id)
        await self._enter("bootstrap_deploy_trust", name, details)
        self._require(account_id)
        outcome = "already_bootstrapped" if account_id in self.bootstrapped else "ok"
        self.bootstrapped[account_id] = trust
        self.log.record(Operation("bootstrap_deploy_trust", name, details, outcome=outcome))

    async def create_federated_identity(
        self,
        account_id: str,
        issuer_url: str,
        audience: str,
        thumbprint: str,
    ) -> str:
        details: dict[str, object] = {"account_id": account_id, "issuer": issuer_url, "audience": audience}
        name = self._names_by_id.get(account_id)
        await self._enter("create_federated_identity", name, details)
        self._require(account_id)
        arn = oidc_provider_arn(account_id, issuer_url)
        outcome = "already_exists" if account_id in self.identity_providers else "ok"
        self.identity_providers[account_id] = arn
        self.log.record(Operation("create_federated_identity", name, details, outcome=outcome))
        return arn

    async def create_deploy_role(
        self,
        account_id: str,
        role_name: str,
        trust_policy: str,
        managed_policy_arns: Sequence[str],
    ) -> str:
        details: dict[str, object] = {"account_id": account_id, "role": role_name}
        name = self._names_by_id.get(account_id)
        await self._enter("create_deploy_role", name, details)
        self._require(account_id)
        key = (account_id, role_name)
        role = self.roles.get(key)
        if role is None:
            role = MockRole(arn=deploy_role_arn(account_id, role_name), trust_policy=trust_policy)
            self.roles[key] = role
            outcome = "created"
        else:
            role.trust_policy = trust_policy
            outcome = "updated"
        for policy_arn in managed_policy_arns:
            if policy_arn not in role.policies:
                role.policies.append(policy_arn)
        self.log.record(Operation("create_deploy_role", name, details, outcome=outcome))
        return role.arn

    async def create_budget_alert(self, account_id: str, policy: BudgetPolicy) -> None:
        details: dict[str, object] = {
            "account_id": account_id,
            "budget": policy.budget_name,
            "limit": policy.budget_limit_amount,
            "alert": policy.alert_threshold_amount,
        }
        name = self._names_by_id.get(account_id)
        await self._enter("create_budget_alert", name, details)
        self._require(account_id)
        outcome = "already_exists" if account_id in self.budgets else "ok"
        self.budgets[account_id] = policy.for_account(account_id)
        self.log.record(Operation("create_budget_alert", name, details, outcome=outcome))
