"""Naming and policy rules for the multi-account topology.

Pure, deterministic, no I/O: every function here can be unit-tested without
an adapter. The orchestrator calls these rules; adapters never derive names
on their own.
"""

from __future__ import annotations

import json
from typing import Iterable

from core.domain.models import (
    Account,
    AccountState,
    BranchProtectionRules,
    BudgetPolicy,
    Environment,
    ProjectConfig,
    RepositoryPlan,
)
from core.domain.validation import validate_account_id
from core.domain.workflows import render_workflows

ORGANIZATION_ACCESS_ROLE = "OrganizationAccountAccessRole"
DEPLOY_ROLE_NAME = "GitHubActionsDeployRole"

OIDC_ISSUER_URL = "https://token.actions.githubusercontent.com"
OIDC_AUDIENCE = "sts.amazonaws.com"
OIDC_THUMBPRINT = "6938fd4d98bab03faadb97b34396831e3780aea1"

DEFAULT_ALERT_THRESHOLD = 15.0
DEFAULT_BUDGET_LIMIT = 25.0

MANAGED_BY_TAG = "aws-multi-account-bootstrap"


def all_environments() -> tuple[Environment, ...]:
    return Environment.ordered()


def derive_account_name(project_code: str, environment: Environment) -> str:
    """`TPA` + dev -> `TPA_DEV`."""

    return f"{project_code}_{environment.upper}"


def derive_account_email(
    email_prefix: str,
    project_code: str,
    environment: Environment,
    domain: str = "gmail.com",
) -> str:
    """`user` + `TPA` + dev -> `user+tpa-dev@gmail.com` (plus addressing)."""

    prefix = email_prefix.split("@", 1)[0]
    return f"{prefix}+{project_code.lower()}-{environment.value.lower()}@{domain}"


def organization_access_role_name() -> str:
    return ORGANIZATION_ACCESS_ROLE


def organization_access_role_arn(account_id: str, role_name: str = ORGANIZATION_ACCESS_ROLE) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def deploy_role_arn(account_id: str, role_name: str = DEPLOY_ROLE_NAME) -> str:
    return f"arn:aws:iam::{account_id}:role/{role_name}"


def oidc_provider_arn(account_id: str, issuer_url: str = OIDC_ISSUER_URL) -> str:
    host = issuer_url.removeprefix("https://").rstrip("/")
    return f"arn:aws:iam::{account_id}:oidc-provider/{host}"


def federated_subject_pattern(org: str, repo: str, environment: Environment) -> str:
    """Token `sub` claim emitted for jobs that run in a deployment environment."""

    return f"repo:{org}/{repo}:environment:{environment.value}"


def build_trust_policy(
    *,
    account_id: str,
    subject_pattern: str,
    issuer_url: str = OIDC_ISSUER_URL,
    audience: str = OIDC_AUDIENCE,
) -> str:
    """IAM trust policy letting the federated CI identity assume the deploy role."""

    host = issuer_url.removeprefix("https://").rstrip("/")
    policy = {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": oidc_provider_arn(account_id, issuer_url)},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {f"{host}:aud": audience},
                    "StringLike": {f"{host}:sub": subject_pattern},
                },
            }
        ],
    }
    return json.dumps(policy, sort_keys=True)


def default_budget_policy(
    environment: Environment,
    *,
    project_code: str,
    notify_address: str,
    account_id: str | None = None,
    alert_threshold: float | None = None,
    budget_limit: float | None = None,
) -> BudgetPolicy:
    """Domain-default budget: alarm at $15, limit $25, staged alerts at 60/90/100%.

    The first stage is the alarm threshold expressed as a percentage of the
    limit, so overrides keep the stages coherent.
    """

    alert = DEFAULT_ALERT_THRESHOLD if alert_threshold is None else alert_threshold
    limit = DEFAULT_BUDGET_LIMIT if budget_limit is None else budget_limit
    first_stage = round(alert / limit * 100, 2) if limit else 60.0
    stages = tuple(sorted({first_stage, 90.0, 100.0}))
    env = environment.value
    return BudgetPolicy(
        account_id=account_id,
        alert_threshold_amount=alert,
        budget_limit_amount=limit,
        notify_address=notify_address,
        budget_name=f"{project_code}-{env}-monthly-budget",
        topic_name=f"{project_code}-{env}-billing-alerts",
        alarm_name=f"{project_code}-{env}-billing-alarm",
        actual_percentages=stages,
        forecast_percentage=100.0,
    )


def build_account_plan(config: ProjectConfig) -> dict[Environment, Account]:
    """The three accounts of a project, before anything is known about them."""

    return {
        env: Account(
            environment=env,
            name=derive_account_name(config.project_code, env),
            email=derive_account_email(
                config.email_prefix,
                config.project_code,
                env,
                domain=config.email_domain,
            ),
            state=AccountState.ABSENT,
        )
        for env in all_environments()
    }


def default_branch_protection() -> dict[str, BranchProtectionRules]:
    return {
        "main": BranchProtectionRules(require_linear_history=True),
        "develop": BranchProtectionRules(require_linear_history=False),
    }


def build_repository_plan(
    config: ProjectConfig,
    accounts: Iterable[Account],
    *,
    role_name: str = DEPLOY_ROLE_NAME,
    region: str = "us-east-1",
) -> RepositoryPlan:
    """Repository layout plus secret references for every account with an id."""

    secrets: dict[str, str] = {}
    environment_secrets: dict[Environment, dict[str, str]] = {}
    subjects: dict[Environment, str] = {}
    for account in accounts:
        env = account.environment
        subjects[env] = federated_subject_pattern(config.vcs_org, config.vcs_repo_name, env)
        if not account.account_id:
            continue
        account_id = validate_account_id(account.account_id)
        secrets[f"AWS_ACCOUNT_ID_{env.upper}"] = account_id
        environment_secrets[env] = {
            "AWS_ACCOUNT_ID": account_id,
            "AWS_ROLE_ARN": account.role_arn or deploy_role_arn(account_id, role_name),
        }
    return RepositoryPlan(
        org=config.vcs_org,
        repo_name=config.vcs_repo_name,
        private=config.repo_private,
        protection=default_branch_protection(),
        secrets=secrets,
        environment_secrets=environment_secrets,
        subject_patterns=subjects,
        workflows=render_workflows(config.project_code, region),
    )


def render_plan_summary(config: ProjectConfig) -> str:
    """Human-readable list of the accounts a run would create."""

    lines = [
        "Multi-Account Setup Summary",
        "===========================",
        f"Project Code: {config.project_code}",
        f"Email Prefix: {config.email_prefix}",
        f"OU ID:        {config.organizational_unit_id}",
        f"Repository:   {config.vcs_org}/{config.vcs_repo_name}",
        "",
        "Accounts to be created:",
    ]
    for account in build_account_plan(config).values():
        lines.append(f"  {account.name:<15} -> {account.email}")
    return "\n".join(lines) + "\n"
