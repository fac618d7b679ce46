"""Tests for the recording adapters themselves."""

from __future__ import annotations

import pytest

from adapters.mock import MockCloudAccountProvider, MockSourceControlProvider, OperationLog
from adapters.mock.cloud import fabricate_account_id
from core.domain.errors import NotFoundError, TransientProviderError
from core.domain.models import AccountStatus, BranchProtectionRules, SecretScope
from core.interfaces import CloudAccountProvider, SourceControlProvider


def test_mocks_satisfy_ports():
    assert isinstance(MockCloudAccountProvider(), CloudAccountProvider)
    assert isinstance(MockSourceControlProvider(), SourceControlProvider)


def test_fabricated_ids_are_stable_twelve_digit_strings():
    first = fabricate_account_id("TPA_DEV")
    assert first == fabricate_account_id("TPA_DEV")
    assert first != fabricate_account_id("TPA_PROD")
    assert len(first) == 12 and first.isdigit()


class TestMockCloud:
    @pytest.mark.asyncio
    async def test_create_then_reuse(self):
        cloud = MockCloudAccountProvider()
        first = await cloud.create_or_get_account("TPA_DEV", "u+tpa-dev@gmail.com", "ou-ab12-cdef3456")
        again = await cloud.create_or_get_account("TPA_DEV", "u+tpa-dev@gmail.com", "ou-ab12-cdef3456")
        assert first == again
        outcomes = [op.outcome for op in cloud.log.calls("create_or_get_account")]
        assert outcomes == [f"created:{first}", f"reused:{first}"]

    @pytest.mark.asyncio
    async def test_pending_then_active(self):
        cloud = MockCloudAccountProvider(pending_describes=1)
        account_id = await cloud.create_or_get_account("TPA_DEV", "e@x.io", "ou-ab12-cdef3456")
        assert await cloud.describe_account(account_id) is AccountStatus.PENDING
        assert await cloud.describe_account(account_id) is AccountStatus.ACTIVE
        assert await cloud.describe_account("000000000000") is AccountStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_unknown_account_is_not_found(self):
        with pytest.raises(NotFoundError):
            await MockCloudAccountProvider().bootstrap_deploy_trust("000000000000", "us-east-1", "")

    @pytest.mark.asyncio
    async def test_faults_can_be_limited(self):
        log = OperationLog()
        log.fail_on("create_or_get_account", lambda: TransientProviderError("throttled"), times=1)
        cloud = MockCloudAccountProvider(log=log)

        with pytest.raises(TransientProviderError):
            await cloud.create_or_get_account("TPA_DEV", "e@x.io", "ou-ab12-cdef3456")
        await cloud.create_or_get_account("TPA_DEV", "e@x.io", "ou-ab12-cdef3456")

        assert [op.outcome.split(":")[0] for op in log.operations] == ["error", "created"]

    @pytest.mark.asyncio
    async def test_role_update_keeps_policies_unique(self):
        cloud = MockCloudAccountProvider()
        account_id = await cloud.create_or_get_account("TPA_DEV", "e@x.io", "ou-ab12-cdef3456")
        arn = await cloud.create_deploy_role(account_id, "Deploy", "{}", ["arn:p"])
        again = await cloud.create_deploy_role(account_id, "Deploy", '{"v": 2}', ["arn:p"])
        role = cloud.roles[(account_id, "Deploy")]
        assert arn == again
        assert role.policies == ["arn:p"]
        assert role.trust_policy == '{"v": 2}'


class TestMockSourceControl:
    @pytest.mark.asyncio
    async def test_repository_lifecycle(self):
        vcs = MockSourceControlProvider()
        await vcs.create_or_get_repository("acme", "infra", True)
        await vcs.ensure_branch("acme", "infra", "develop", "main")
        await vcs.ensure_branch("acme", "infra", "develop", "main")
        await vcs.configure_branch_protection("acme", "infra", "develop", BranchProtectionRules())
        await vcs.create_environment("acme", "infra", "prod", True)
        await vcs.set_secret("acme", "infra", SecretScope.ENVIRONMENT, "AWS_ROLE_ARN", "arn", environment="prod")

        repository = vcs.repositories["acme/infra"]
        assert repository.branches == ["main", "develop"]
        assert repository.environment_secrets == {"prod": {"AWS_ROLE_ARN": "sealed:3"}}
        assert [op.outcome for op in vcs.log.calls("ensure_branch")] == ["created", "exists"]

    @pytest.mark.asyncio
    async def test_environment_secret_needs_environment(self):
        vcs = MockSourceControlProvider()
        await vcs.create_or_get_repository("acme", "infra", True)
        with pytest.raises(NotFoundError):
            await vcs.set_secret("acme", "infra", SecretScope.ENVIRONMENT, "K", "v", environment="qa")

    @pytest.mark.asyncio
    async def test_workflow_commits_report_changes(self):
        vcs = MockSourceControlProvider()
        await vcs.create_or_get_repository("acme", "infra", True)
        assert await vcs.commit_workflow("acme", "infra", "deploy.yml", "a", "main") is True
        assert await vcs.commit_workflow("acme", "infra", "deploy.yml", "a", "main") is False
        assert await vcs.commit_workflow("acme", "infra", "deploy.yml", "b", "main") is True
        with pytest.raises(NotFoundError):
            await vcs.commit_workflow("acme", "infra", "deploy.yml", "a", "develop")

        assert vcs.repositories["acme/infra"].files == {("main", ".github/workflows/deploy.yml"): "b"}
        assert [op.outcome for op in vcs.log.calls("commit_workflow")] == ["created", "unchanged", "updated"]
