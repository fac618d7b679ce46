"""`CloudAccountProvider` real sobre AWS Organizations, IAM, CDK, SNS, CloudWatch y Budgets.

Por qué esta forma:
- Las llamadas de la cuenta de gestión usan una sesión aioboto3 de larga vida;
  todo lo que ocurre dentro de una cuenta miembro pasa por un rol asumido,
  limitado a una sola llamada del método.
- Los errores se traducen en el borde (`adapters.aws.session`); reintentos y
  timeouts son cosa del orquestador, no de este módulo.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Sequence

from botocore.exceptions import ClientError

from adapters.aws.billing import BILLING_REGION, billing_alarm, budget_definition, budget_notifications
from adapters.aws.session import (
    assume_role,
    assumed_role_session,
    aws_errors,
    error_code,
    management_session,
)
from core.config import AppSettings
from core.domain.errors import (
    AlreadyExistsError,
    NotFoundError,
    PermissionDeniedError,
    ProviderError,
    ProvisioningError,
    TransientProviderError,
)
from core.domain.models import AccountStatus, BudgetPolicy
from core.domain.naming import MANAGED_BY_TAG, oidc_provider_arn, organization_access_role_arn

logger = logging.getLogger(__name__)

_TAGS = [{"Key": "ManagedBy", "Value": MANAGED_BY_TAG}]


class AwsCloudAccountProvider:
    def __init__(self, settings: AppSettings | None = None, *, session: Any | None = None) -> None:
        self._settings = settings or AppSettings()
        self._session = session or management_session(
            profile=self._settings.aws_profile,
            region=self._settings.region,
        )

    @property
    def region(self) -> str:
        return self._settings.region

    def _role_arn(self, account_id: str) -> str:
        return organization_access_role_arn(account_id, self._settings.organization_access_role)

    async def caller_account_id(self) -> str:
        async with aws_errors("sts:GetCallerIdentity"):
            async with self._session.client("sts", region_name=self.region) as sts:
                identity = await sts.get_caller_identity()
        return str(identity["Account"])

    # -----------------
    # Organizations
    # -----------------

    async def _find_account(self, org: Any, name: str, email: str) -> str | None:
        paginator = org.get_paginator("list_accounts")
        async for page in paginator.paginate():
            for account in page.get("Accounts", []):
                if account.get("Name") == name or str(account.get("Email", "")).lower() == email.lower():
                    return str(account["Id"])
        return None

    async def _wait_for_creation(self, org: Any, request_id: str, name: str) -> str:
        interval = max(self._settings.propagation_poll_seconds, 1.0)
        attempts = max(int(self._settings.call_timeout_seconds // interval), 1)
        for _ in range(attempts):
            response = await org.describe_create_account_status(CreateAccountRequestId=request_id)
            status = response["CreateAccountStatus"]
            state = status.get("State")
            if state == "SUCCEEDED":
                return str(status["AccountId"])
            if state == "FAILED":
                reason = status.get("FailureReason", "unknown")
                if reason in ("EMAIL_ALREADY_EXISTS", "ACCOUNT_NAME_ALREADY_EXISTS"):
                    raise AlreadyExistsError(f"account {name}: {reason}")
                raise ProviderError(f"account creation for {name} failed: {reason}")
            await asyncio.sleep(interval)
        raise TransientProviderError(f"account creation for {name} still in progress")

    async def _ensure_parent(self, org: Any, account_id: str, parent_ou_id: str) -> None:
        parents = await org.list_parents(ChildId=account_id)
        current = parents.get("Parents", [{}])[0].get("Id")
        if current == parent_ou_id:
            return
        logger.info("Moving account %s from %s to %s", account_id, current, parent_ou_id)
        await org.move_account(
            AccountId=account_id,
            SourceParentId=current,
            DestinationParentId=parent_ou_id,
        )

    async def create_or_get_account(self, name: str, email: str, parent_ou_id: str) -> str:
        async with aws_errors("organizations:CreateAccount"):
            async with self._session.client("organizations", region_name=self.region) as org:
                account_id = await self._find_account(org, name, email)
                if account_id is None:
                    logger.info("Creating account %s <%s>", name, email)
                    try:
                        response = await org.create_account(
                            Email=email,
                            AccountName=name,
                            RoleName=self._settings.organization_access_role,
                            IamUserAccessToBilling="ALLOW",
                            Tags=_TAGS,
                        )
                        account_id = await self._wait_for_creation(
                            org, response["CreateAccountStatus"]["Id"], name
                        )
                    except (AlreadyExistsError, ClientError) as exc:
                        if isinstance(exc, ClientError) and error_code(exc) != "DuplicateAccountException":
                            raise
                        account_id = await self._find_account(org, name, email)
                        if account_id is None:
                            raise TransientProviderError(
                                f"account {name} exists but is not visible in the listing yet"
                            ) from exc
                else:
                    logger.info("Reusing account %s (%s)", name, account_id)
                await self._ensure_parent(org, account_id, parent_ou_id)
        return account_id

    async def describe_account(self, account_id: str) -> AccountStatus:
        async with aws_errors("organizations:DescribeAccount", account_id=account_id):
            async with self._session.client("organizations", region_name=self.region) as org:
                try:
                    response = await org.describe_account(AccountId=account_id)
                except ClientError as exc:
                    if error_code(exc) == "AccountNotFoundException":
                        return AccountStatus.PENDING
                    raise
        status = response["Account"].get("Status")
        if status == "ACTIVE":
            return await self._role_ready(account_id)
        if status in ("SUSPENDED", "PENDING_CLOSURE"):
            return AccountStatus.SUSPENDED
        return AccountStatus.UNKNOWN

    async def _role_ready(self, account_id: str) -> AccountStatus:
        """An ACTIVE account is usable only once its access role can be assumed."""

        try:
            await assume_role(self._session, self._role_arn(account_id), region=self.region, account_id=account_id)
        except PermissionDeniedError:
            logger.debug("Access role in %s not assumable yet", account_id)
            return AccountStatus.PENDING
        return AccountStatus.ACTIVE

    # -----------------
    # Deploy trust (cdk bootstrap)
    # -----------------

    def bootstrap_command(self, account_id: str, region: str, trusting_account_id: str) -> list[str]:
        command = [self._settings.cdk_executable, "bootstrap", f"aws://{account_id}/{region}"]
        for policy_arn in self._settings.deploy_managed_policy_arns:
            command += ["--cloudformation-execution-policies", policy_arn]
        command += ["--trust", trusting_account_id, "--trust-for-lookup", trusting_account_id]
        return command

    async def bootstrap_deploy_trust(self, account_id: str, region: str, trusting_account_id: str) -> None:
        trust = trusting_account_id or await self.caller_account_id()
        command = self.bootstrap_command(account_id, region, trust)
        async with assumed_role_session(
            self._session,
            self._role_arn(account_id),
            region=region,
            account_id=account_id,
        ) as (_, creds):
            env = {k: v for k, v in os.environ.items() if k != "AWS_PROFILE"}
            env.update(creds.as_env(region))
            logger.info("Bootstrapping %s in %s (trust %s)", account_id, region, trust)
            try:
                process = await asyncio.create_subprocess_exec(
                    *command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env=env,
                )
            except FileNotFoundError as exc:
                raise ProviderError(
                    f"'{self._settings.cdk_executable}' not found on PATH",
                    account_id=account_id,
                ) from exc
            output, _ = await process.communicate()

        text = output.decode("utf-8", errors="replace")
        if process.returncode == 0:
            # Re-bootstrapping an up-to-date account exits 0 with "no changes".
            logger.debug("cdk bootstrap output for %s:\n%s", account_id, text)
            return
        tail = "\n".join(text.strip().splitlines()[-5:])
        raise ProviderError(f"cdk bootstrap exited with {process.returncode}: {tail}", account_id=account_id)

    # -----------------
    # IAM
    # -----------------

    async def create_federated_identity(
        self,
        account_id: str,
        issuer_url: str,
        audience: str,
        thumbprint: str,
    ) -> str:
        async with assumed_role_session(
            self._session,
            self._role_arn(account_id),
            region=self.region,
            account_id=account_id,
        ) as (scoped, _):
            async with aws_errors("iam:CreateOpenIDConnectProvider", account_id=account_id):
                async with scoped.client("iam") as iam:
                    try:
                        response = await iam.create_open_id_connect_provider(
                            Url=issuer_url,
                            ClientIDList=[audience],
                            ThumbprintList=[thumbprint],
                            Tags=_TAGS,
                        )
                    except ClientError as exc:
                        if error_code(exc) == "EntityAlreadyExists":
                            logger.info("OIDC provider already present in %s", account_id)
                            return oidc_provider_arn(account_id, issuer_url)
                        raise
        return str(response["OpenIDConnectProviderArn"])

    async def create_deploy_role(
        self,
        account_id: str,
        role_name: str,
        trust_policy: str,
        managed_policy_arns: Sequence[str],
    ) -> str:
        async with assumed_role_session(
            self._session,
            self._role_arn(account_id),
            region=self.region,
            account_id=account_id,
        ) as (scoped, _):
            async with aws_errors("iam:CreateRole", account_id=account_id):
                async with scoped.client("iam") as iam:
                    try:
                        response = await iam.create_role(
                            RoleName=role_name,
                            AssumeRolePolicyDocument=trust_policy,
                            Description="CI deploy role assumed through OIDC federation",
                            MaxSessionDuration=3600,
                            Tags=_TAGS,
                        )
                        role_arn = str(response["Role"]["Arn"])
                    except ClientError as exc:
                        if error_code(exc) != "EntityAlreadyExists":
                            raise
                        logger.info("Role %s exists in %s, updating trust policy", role_name, account_id)
                        await iam.update_assume_role_policy(RoleName=role_name, PolicyDocument=trust_policy)
                        role_arn = str((await iam.get_role(RoleName=role_name))["Role"]["Arn"])

                    attached = await iam.list_attached_role_policies(RoleName=role_name)
                    present = {p["PolicyArn"] for p in attached.get("AttachedPolicies", [])}
                    for policy_arn in managed_policy_arns:
                        if policy_arn not in present:
                            await iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
        return role_arn

    # -----------------
    # Cost alerts
    # -----------------

    async def _put_alarm(self, scoped: Any, policy: BudgetPolicy, topic_arn: str, account_id: str) -> None:
        try:
            async with aws_errors("cloudwatch:PutMetricAlarm", account_id=account_id):
                async with scoped.client("cloudwatch", region_name=BILLING_REGION) as cloudwatch:
                    await cloudwatch.put_metric_alarm(**billing_alarm(policy, topic_arn))
        except ProvisioningError as exc:
            logger.warning("Billing alarm for %s not created (continuing): %s", account_id, exc)

    async def _create_budget(self, scoped: Any, policy: BudgetPolicy, account_id: str) -> None:
        async with aws_errors("budgets:CreateBudget", account_id=account_id):
            async with scoped.client("budgets", region_name=BILLING_REGION) as budgets:
                await budgets.create_budget(
                    AccountId=account_id,
                    Budget=budget_definition(policy),
                    NotificationsWithSubscribers=budget_notifications(policy),
                )

    async def create_budget_alert(self, account_id: str, policy: BudgetPolicy) -> None:
        async with assumed_role_session(
            self._session,
            self._role_arn(account_id),
            region=BILLING_REGION,
            account_id=account_id,
        ) as (scoped, _):
            async with aws_errors("sns:CreateTopic", account_id=account_id):
                async with scoped.client("sns", region_name=BILLING_REGION) as sns:
                    topic = await sns.create_topic(Name=policy.topic_name, Tags=_TAGS)
                    topic_arn = str(topic["TopicArn"])
                    await sns.subscribe(TopicArn=topic_arn, Protocol="email", Endpoint=policy.notify_address)

            await self._put_alarm(scoped, policy, topic_arn, account_id)

            try:
                await self._create_budget(scoped, policy, account_id)
            except AlreadyExistsError:
                logger.info("Budget %s already exists in %s", policy.budget_name, account_id)
            except (TransientProviderError, NotFoundError, ProviderError) as exc:
                logger.warning("Budget creation failed for %s, retrying once: %s", account_id, exc.message)
                await asyncio.sleep(2)
                try:
                    await self._create_budget(scoped, policy, account_id)
                except AlreadyExistsError:
                    logger.info("Budget %s already exists in %s", policy.budget_name, account_id)
