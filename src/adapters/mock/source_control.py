"""Recording source-control adapter."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from adapters.mock.operations import Operation, OperationLog
from core.domain.errors import NotFoundError
from core.domain.models import BranchProtectionRules, SecretScope


@dataclass
class MockRepository:
    org: str
    name: str
    private: bool
    branches: list[str] = field(default_factory=lambda: ["main"])
    protection: dict[str, BranchProtectionRules] = field(default_factory=dict)
    environments: dict[str, bool] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    environment_secrets: dict[str, dict[str, str]] = field(default_factory=dict)
    oidc_subjects: dict[str, str] = field(default_factory=dict)
    files: dict[tuple[str, str], str] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.org}/{self.name}"


class MockSourceControlProvider:
    """Implements `SourceControlProvider` in memory.

    Secret values are stored as `sealed:<len>` to mirror that the live
    adapter never sends plain values.
    """

    def __init__(self, *, log: OperationLog | None = None, latency: float = 0.0) -> None:
        self.log = log or OperationLog()
        self._latency = latency
        self.repositories: dict[str, MockRepository] = {}

    @property
    def operations(self) -> tuple[Operation, ...]:
        return self.log.operations

    async def _enter(self, operation: str, target: str, details: dict[str, object]) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        error = self.log.check_fault(operation, target)
        if error is not None:
            self.log.record(Operation(operation, target, details, outcome=f"error:{error.kind.value}"))
            raise error

    def _repo(self, org: str, repo: str) -> MockRepository:
        found = self.repositories.get(f"{org}/{repo}")
        if found is None:
            raise NotFoundError(f"repository {org}/{repo} not found")
        return found

    async def create_or_get_repository(self, org: str, name: str, private: bool) -> None:
        full_name = f"{org}/{name}"
        details: dict[str, object] = {"private": private}
        await self._enter("create_or_get_repository", full_name, details)
        outcome = "reused" if full_name in self.repositories else "created"
        self.repositories.setdefault(full_name, MockRepository(org, name, private))
        self.log.record(Operation("create_or_get_repository", full_name, details, outcome=outcome))

    async def ensure_branch(self, org: str, repo: str, branch: str, from_branch: str) -> None:
        details: dict[str, object] = {"branch": branch, "from": from_branch}
        await self._enter("ensure_branch", f"{org}/{repo}", details)
        repository = self._repo(org, repo)
        if from_branch not in repository.branches:
            raise NotFoundError(f"branch {from_branch} not found in {org}/{repo}")
        outcome = "exists" if branch in repository.branches else "created"
        if outcome == "created":
            repository.branches.append(branch)
        self.log.record(Operation("ensure_branch", repository.full_name, details, outcome=outcome))

    async def configure_branch_protection(
        self,
        org: str,
        repo: str,
        branch: str,
        rules: BranchProtectionRules,
    ) -> None:
        details: dict[str, object] = {"branch": branch, "reviews": rules.required_reviews}
        await self._enter("configure_branch_protection", f"{org}/{repo}", details)
        repository = self._repo(org, repo)
        if branch not in repository.branches:
            raise NotFoundError(f"branch {branch} not found in {org}/{repo}")
        repository.protection[branch] = rules
        self.log.record(Operation("configure_branch_protection", repository.full_name, details))

    async def create_environment(self, org: str, repo: str, name: str, require_reviewers: bool) -> None:
        details: dict[str, object] = {"environment": name, "reviewers": require_reviewers}
        await self._enter("create_environment", f"{org}/{repo}", details)
        repository = self._repo(org, repo)
        repository.environments[name] = require_reviewers
        self.log.record(Operation("create_environment", repository.full_name, details))

    async def set_secret(
        self,
        org: str,
        repo: str,
        scope: SecretScope,
        key: str,
        value: str,
        environment: str | None = None,
    ) -> None:
        details: dict[str, object] = {"scope": scope.value, "key": key, "environment": environment}
        await self._enter("set_secret", f"{org}/{repo}", details)
        repository = self._repo(org, repo)
        sealed = f"sealed:{len(value)}"
        if scope is SecretScope.ENVIRONMENT:
            if not environment or environment not in repository.environments:
                raise NotFoundError(f"environment {environment!r} not found in {org}/{repo}")
            repository.environment_secrets.setdefault(environment, {})[key] = sealed
        else:
            repository.secrets[key] = sealed
        self.log.record(Operation("set_secret", repository.full_name, details))

    async def register_federated_identity_consumer(
        self,
        org: str,
        repo: str,
        environment: str,
        issuer_url: str,
        subject_pattern: str,
    ) -> None:
        details: dict[str, object] = {"environment": environment, "subject": subject_pattern}
        await self._enter("register_federated_identity_consumer", f"{org}/{repo}", details)
        repository = self._repo(org, repo)
        repository.oidc_subjects[environment] = subject_pattern
        self.log.record(Operation("register_federated_identity_consumer", repository.full_name, details))

    async def commit_workflow(self, org: str, repo: str, name: str, content: str, branch: str) -> bool:
        details: dict[str, object] = {"workflow": name, "branch": branch}
        await self._enter("commit_workflow", f"{org}/{repo}", details)
        repository = self._repo(org, repo)
        if branch not in repository.branches:
            raise NotFoundError(f"branch {branch} not found in {org}/{repo}")
        path = (branch, f".github/workflows/{name}")
        previous = repository.files.get(path)
        if previous == content:
            outcome = "unchanged"
        else:
            outcome = "created" if previous is None else "updated"
            repository.files[path] = content
        self.log.record(Operation("commit_workflow", repository.full_name, details, outcome=outcome))
        return outcome != "unchanged"
