"""Tests for the AWS adapter with an in-process fake of the aioboto3 session."""

from __future__ import annotations

import json
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from adapters.aws import provider as provider_module
from adapters.aws.billing import (
    BUDGET_END,
    billing_alarm,
    budget_definition,
    budget_notifications,
    start_of_month,
)
from adapters.aws.provider import AwsCloudAccountProvider
from adapters.aws.session import translate_client_error
from core.config import AppSettings
from core.domain.errors import (
    AlreadyExistsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    TransientProviderError,
)
from core.domain.models import AccountStatus, Environment
from core.domain.naming import default_budget_policy
from core.interfaces import CloudAccountProvider


def client_error(code: str, operation: str = "Op", status: int = 400) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeAws:
    """Stands in for `aioboto3.Session`: scripted responses keyed by (service, method)."""

    def __init__(self, **handlers: Callable[..., Any] | Any) -> None:
        self.handlers = {tuple(key.split(".", 1)): value for key, value in handlers.items()}
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.accounts_pages: list[list[dict[str, Any]]] = [[]]

    def names(self) -> list[str]:
        return [f"{service}.{method}" for service, method, _ in self.calls]

    @asynccontextmanager
    async def _client(self, service: str):
        yield _FakeClient(self, service)

    def client(self, service: str, **_: Any):
        return self._client(service)


class _FakePaginator:
    def __init__(self, pages: list[list[dict[str, Any]]]) -> None:
        self._pages = pages

    async def paginate(self, **_: Any):
        for page in self._pages:
            yield {"Accounts": page}


class _FakeClient:
    def __init__(self, aws: FakeAws, service: str) -> None:
        self._aws = aws
        self._service = service

    def get_paginator(self, name: str) -> _FakePaginator:
        return _FakePaginator(self._aws.accounts_pages)

    def __getattr__(self, method: str):
        async def call(**kwargs: Any) -> Any:
            self._aws.calls.append((self._service, method, kwargs))
            handler = self._aws.handlers.get((self._service, method), {})
            result = handler(**kwargs) if callable(handler) else handler
            if isinstance(result, Exception):
                raise result
            return result

        return call


CREDENTIALS = {"Credentials": {"AccessKeyId": "AKIA", "SecretAccessKey": "s", "SessionToken": "t"}}


@pytest.fixture
def aws_settings() -> AppSettings:
    return AppSettings(_env_file=None, propagation_poll_seconds=0, call_timeout_seconds=5)


def _provider(fake: FakeAws, settings: AppSettings, monkeypatch) -> AwsCloudAccountProvider:
    # Assumed-role sessions are built inside the adapter; route them to the same fake.
    monkeypatch.setattr("adapters.aws.session.aioboto3.Session", lambda **_: fake)
    return AwsCloudAccountProvider(settings, session=fake)


class TestErrorTranslation:
    @pytest.mark.parametrize(
        "code,expected",
        [
            ("EntityAlreadyExists", AlreadyExistsError),
            ("DuplicateRecordException", AlreadyExistsError),
            ("ThrottlingException", TransientProviderError),
            ("ConcurrentModificationException", TransientProviderError),
            ("AccessDenied", PermissionDeniedError),
            ("NoSuchEntity", NotFoundError),
            ("ParentNotFoundException", NotFoundError),
            ("MalformedPolicyDocument", ProviderError),
        ],
    )
    def test_codes(self, code, expected):
        assert type(translate_client_error(client_error(code), action="x")) is expected

    def test_server_errors_are_transient(self):
        error = translate_client_error(client_error("Weird", status=503), action="x")
        assert isinstance(error, TransientProviderError)

    def test_connection_errors_are_transient(self):
        error = translate_client_error(EndpointConnectionError(endpoint_url="https://iam"), action="x")
        assert isinstance(error, TransientProviderError)


class TestBillingPayloads:
    def test_budget_and_notifications(self):
        policy = default_budget_policy(Environment.DEV, project_code="TPA", notify_address="a@b.co")
        budget = budget_definition(policy, now=datetime(2024, 5, 17, 13, 5, tzinfo=timezone.utc))
        assert budget["BudgetName"] == "TPA-dev-monthly-budget"
        assert budget["BudgetLimit"] == {"Amount": "25.00", "Unit": "USD"}
        assert budget["TimePeriod"]["Start"] == datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert budget["TimePeriod"]["End"] == BUDGET_END
        assert budget["CostTypes"]["IncludeTax"] is True
        assert budget["CostTypes"]["UseBlended"] is False

        notifications = budget_notifications(policy)
        assert [(n["Notification"]["NotificationType"], n["Notification"]["Threshold"]) for n in notifications] == [
            ("ACTUAL", 60.0),
            ("ACTUAL", 90.0),
            ("ACTUAL", 100.0),
            ("FORECASTED", 100.0),
        ]
        assert notifications[0]["Subscribers"] == [{"SubscriptionType": "EMAIL", "Address": "a@b.co"}]

    def test_alarm(self):
        policy = default_budget_policy(Environment.PROD, project_code="TPA", notify_address="a@b.co")
        alarm = billing_alarm(policy, "arn:aws:sns:us-east-1:1:t")
        assert alarm["AlarmName"] == "TPA-prod-billing-alarm"
        assert alarm["MetricName"] == "EstimatedCharges"
        assert alarm["Namespace"] == "AWS/Billing"
        assert alarm["Period"] == 21600
        assert alarm["Threshold"] == 15.0
        assert alarm["TreatMissingData"] == "notBreaching"

    def test_start_of_month(self):
        assert start_of_month(datetime(2024, 2, 29, 23, 59, tzinfo=timezone.utc)).day == 1


class TestAccounts:
    def test_satisfies_port(self, aws_settings, monkeypatch):
        assert isinstance(_provider(FakeAws(), aws_settings, monkeypatch), CloudAccountProvider)

    @pytest.mark.asyncio
    async def test_existing_account_is_reused_and_moved(self, aws_settings, monkeypatch):
        fake = FakeAws(**{"organizations.list_parents": {"Parents": [{"Id": "r-root"}]}})
        fake.accounts_pages = [[{"Id": "111122223333", "Name": "TPA_DEV", "Email": "u+tpa-dev@gmail.com"}]]
        provider = _provider(fake, aws_settings, monkeypatch)

        account_id = await provider.create_or_get_account("TPA_DEV", "u+tpa-dev@gmail.com", "ou-ab12-cdef3456")

        assert account_id == "111122223333"
        assert "organizations.create_account" not in fake.names()
        [move] = [kw for s, m, kw in fake.calls if m == "move_account"]
        assert move == {
            "AccountId": "111122223333",
            "SourceParentId": "r-root",
            "DestinationParentId": "ou-ab12-cdef3456",
        }

    @pytest.mark.asyncio
    async def test_new_account_is_created_and_polled(self, aws_settings, monkeypatch):
        fake = FakeAws(
            **{
                "organizations.create_account": {"CreateAccountStatus": {"Id": "car-1", "State": "IN_PROGRESS"}},
                "organizations.describe_create_account_status": {
                    "CreateAccountStatus": {"State": "SUCCEEDED", "AccountId": "444455556666"}
                },
                "organizations.list_parents": {"Parents": [{"Id": "ou-ab12-cdef3456"}]},
            }
        )
        provider = _provider(fake, aws_settings, monkeypatch)

        account_id = await provider.create_or_get_account("TPA_DEV", "u+tpa-dev@gmail.com", "ou-ab12-cdef3456")

        assert account_id == "444455556666"
        [create] = [kw for s, m, kw in fake.calls if m == "create_account"]
        assert create["AccountName"] == "TPA_DEV"
        assert create["RoleName"] == "OrganizationAccountAccessRole"
        assert "organizations.move_account" not in fake.names()

    @pytest.mark.asyncio
    async def test_failed_creation_is_surfaced(self, aws_settings, monkeypatch):
        fake = FakeAws(
            **{
                "organizations.create_account": {"CreateAccountStatus": {"Id": "car-1"}},
                "organizations.describe_create_account_status": {
                    "CreateAccountStatus": {"State": "FAILED", "FailureReason": "ACCOUNT_LIMIT_EXCEEDED"}
                },
            }
        )
        with pytest.raises(ProviderError, match="ACCOUNT_LIMIT_EXCEEDED"):
            await _provider(fake, aws_settings, monkeypatch).create_or_get_account("TPA_DEV", "e@x.io", "ou-a-b")

    @pytest.mark.asyncio
    async def test_duplicate_not_yet_listed_is_transient(self, aws_settings, monkeypatch):
        fake = FakeAws(**{"organizations.create_account": client_error("DuplicateAccountException")})
        with pytest.raises(TransientProviderError, match="not visible"):
            await _provider(fake, aws_settings, monkeypatch).create_or_get_account(
                "TPA_DEV", "u+tpa-dev@gmail.com", "ou-ab12-cdef3456"
            )
        assert fake.names().count("organizations.create_account") == 1

    @pytest.mark.asyncio
    async def test_duplicate_resolved_by_second_listing(self, aws_settings, monkeypatch):
        fake = FakeAws(**{"organizations.list_parents": {"Parents": [{"Id": "ou-ab12-cdef3456"}]}})
        listed = {"Id": "111122223333", "Name": "TPA_DEV", "Email": "u+tpa-dev@gmail.com"}

        def duplicate(**_: Any) -> ClientError:
            fake.accounts_pages = [[listed]]
            return client_error("DuplicateAccountException")

        fake.handlers[("organizations", "create_account")] = duplicate
        account_id = await _provider(fake, aws_settings, monkeypatch).create_or_get_account(
            "TPA_DEV", "u+tpa-dev@gmail.com", "ou-ab12-cdef3456"
        )
        assert account_id == "111122223333"

    @pytest.mark.asyncio
    async def test_active_account_waits_for_assumable_role(self, aws_settings, monkeypatch):
        fake = FakeAws(
            **{
                "organizations.describe_account": {"Account": {"Status": "ACTIVE"}},
                "sts.assume_role": client_error("AccessDenied"),
            }
        )
        provider = _provider(fake, aws_settings, monkeypatch)
        assert await provider.describe_account("111122223333") is AccountStatus.PENDING

        fake.handlers[("sts", "assume_role")] = CREDENTIALS
        assert await provider.describe_account("111122223333") is AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_suspended(self, aws_settings, monkeypatch):
        fake = FakeAws(**{"organizations.describe_account": {"Account": {"Status": "SUSPENDED"}}})
        assert await _provider(fake, aws_settings, monkeypatch).describe_account("1") is AccountStatus.SUSPENDED


class TestIdentity:
    @pytest.mark.asyncio
    async def test_existing_oidc_provider_is_reused(self, aws_settings, monkeypatch):
        fake = FakeAws(
            **{
                "sts.assume_role": CREDENTIALS,
                "iam.create_open_id_connect_provider": client_error("EntityAlreadyExists"),
            }
        )
        arn = await _provider(fake, aws_settings, monkeypatch).create_federated_identity(
            "111122223333",
            "https://token.actions.githubusercontent.com",
            "sts.amazonaws.com",
            "6938fd4d98bab03faadb97b34396831e3780aea1",
        )
        assert arn == "arn:aws:iam::111122223333:oidc-provider/token.actions.githubusercontent.com"
        [assume] = [kw for s, m, kw in fake.calls if m == "assume_role"]
        assert assume["RoleArn"] == "arn:aws:iam::111122223333:role/OrganizationAccountAccessRole"

    @pytest.mark.asyncio
    async def test_existing_role_gets_trust_updated_and_missing_policies(self, aws_settings, monkeypatch):
        fake = FakeAws(
            **{
                "sts.assume_role": CREDENTIALS,
                "iam.create_role": client_error("EntityAlreadyExists"),
                "iam.get_role": {"Role": {"Arn": "arn:aws:iam::111122223333:role/Deploy"}},
                "iam.list_attached_role_policies": {"AttachedPolicies": [{"PolicyArn": "arn:a"}]},
            }
        )
        trust = json.dumps({"Version": "2012-10-17"})
        arn = await _provider(fake, aws_settings, monkeypatch).create_deploy_role(
            "111122223333", "Deploy", trust, ["arn:a", "arn:b"]
        )
        assert arn == "arn:aws:iam::111122223333:role/Deploy"
        [update] = [kw for s, m, kw in fake.calls if m == "update_assume_role_policy"]
        assert update == {"RoleName": "Deploy", "PolicyDocument": trust}
        attached = [kw["PolicyArn"] for s, m, kw in fake.calls if m == "attach_role_policy"]
        assert attached == ["arn:b"]

    def test_bootstrap_command(self, aws_settings, monkeypatch):
        command = _provider(FakeAws(), aws_settings, monkeypatch).bootstrap_command(
            "111122223333", "us-east-1", "999988887777"
        )
        assert command == [
            "cdk",
            "bootstrap",
            "aws://111122223333/us-east-1",
            "--cloudformation-execution-policies",
            "arn:aws:iam::aws:policy/AdministratorAccess",
            "--trust",
            "999988887777",
            "--trust-for-lookup",
            "999988887777",
        ]


def _stub_cdk(tmp_path: Path, output: str, exit_code: int) -> str:
    script = tmp_path / "cdk"
    script.write_text(f"#!/bin/sh\ncat <<'OUT'\n{output}\nOUT\nexit {exit_code}\n", encoding="utf-8")
    script.chmod(0o755)
    return str(script)


@pytest.mark.skipif(sys.platform.startswith("win"), reason="shell stub")
class TestBootstrap:
    @pytest.mark.asyncio
    async def test_failed_bootstrap_is_an_error_even_when_something_exists(self, tmp_path, monkeypatch):
        cdk = _stub_cdk(
            tmp_path,
            "CDKToolkit | CREATE_FAILED | AWS::S3::Bucket | StagingBucket\n"
            "cdk-hnb659fds-assets-111122223333-us-east-1 already exists",
            1,
        )
        settings = AppSettings(_env_file=None, cdk_executable=cdk, call_timeout_seconds=5)
        fake = FakeAws(**{"sts.assume_role": CREDENTIALS})
        with pytest.raises(ProviderError, match="exited with 1"):
            await _provider(fake, settings, monkeypatch).bootstrap_deploy_trust(
                "111122223333", "us-east-1", "999988887777"
            )

    @pytest.mark.asyncio
    async def test_up_to_date_bootstrap_succeeds(self, tmp_path, monkeypatch):
        cdk = _stub_cdk(tmp_path, " Environment aws://111122223333/us-east-1 bootstrapped (no changes).", 0)
        settings = AppSettings(_env_file=None, cdk_executable=cdk, call_timeout_seconds=5)
        fake = FakeAws(**{"sts.assume_role": CREDENTIALS})
        await _provider(fake, settings, monkeypatch).bootstrap_deploy_trust(
            "111122223333", "us-east-1", "999988887777"
        )
        assert fake.names() == ["sts.assume_role"]


class TestBudgets:
    @pytest.mark.asyncio
    async def test_alarm_failure_is_not_fatal_and_duplicate_budget_is_ok(self, aws_settings, monkeypatch):
        fake = FakeAws(
            **{
                "sts.assume_role": CREDENTIALS,
                "sns.create_topic": {"TopicArn": "arn:aws:sns:us-east-1:1:TPA-dev-billing-alerts"},
                "cloudwatch.put_metric_alarm": client_error("AccessDenied"),
                "budgets.create_budget": client_error("DuplicateRecordException"),
            }
        )
        policy = default_budget_policy(Environment.DEV, project_code="TPA", notify_address="a@b.co")
        await _provider(fake, aws_settings, monkeypatch).create_budget_alert("111122223333", policy)

        assert fake.names() == [
            "sts.assume_role",
            "sns.create_topic",
            "sns.subscribe",
            "cloudwatch.put_metric_alarm",
            "budgets.create_budget",
        ]

    @pytest.mark.asyncio
    async def test_budget_is_retried_once(self, aws_settings, monkeypatch):
        sleeps: list[float] = []

        async def fake_sleep(delay: float) -> None:
            sleeps.append(delay)

        monkeypatch.setattr(provider_module.asyncio, "sleep", fake_sleep)
        fake = FakeAws(
            **{
                "sts.assume_role": CREDENTIALS,
                "sns.create_topic": {"TopicArn": "arn:t"},
                "budgets.create_budget": client_error("InternalErrorException"),
            }
        )
        policy = default_budget_policy(Environment.DEV, project_code="TPA", notify_address="a@b.co")
        with pytest.raises(TransientProviderError):
            await _provider(fake, aws_settings, monkeypatch).create_budget_alert("111122223333", policy)
        assert fake.names().count("budgets.create_budget") == 2
        assert sleeps == [2]
