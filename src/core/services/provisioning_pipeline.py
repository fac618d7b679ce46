"""Provisioning orchestration.

This module drives a project from nothing to a fully wired topology:
accounts -> propagation -> deploy trust -> federated CI identity ->
repository -> cost alerts. It only talks to the two ports and the
idempotency store, so the same flow runs against live adapters or the
recording mocks. Side-effects for the UI (progress, warnings) go through
`PipelineHooks`; the core never prints.

Re-invocation is the recovery path for every failure: each account's last
successful state is persisted after every transition, and a re-run resumes
from there.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from core.config import AppSettings
from core.domain.errors import ErrorKind, ProviderError, ProvisioningError, RunCancelledError
from core.domain.models import (
    Account,
    AccountResult,
    AccountState,
    AccountStatus,
    Environment,
    ProjectConfig,
    RepositoryResult,
    RunResult,
    SecretScope,
    StepFailure,
)
from core.domain.naming import (
    build_account_plan,
    build_repository_plan,
    build_trust_policy,
    default_budget_policy,
    deploy_role_arn,
    federated_subject_pattern,
    oidc_provider_arn,
)
from core.interfaces.cloud import CloudAccountProvider
from core.interfaces.source_control import SourceControlProvider
from core.interfaces.state_store import IdempotencyRecord, IdempotencyStore
from core.services.retry import RetryPolicy, Sleeper, call_with_retries, poll_until

logger = logging.getLogger(__name__)

T = TypeVar("T")

STEP_CREATE_ACCOUNT = "create_or_get_account"
STEP_PROPAGATION = "wait_for_propagation"
STEP_BOOTSTRAP = "bootstrap_deploy_trust"
STEP_IDENTITY = "create_federated_identity"
STEP_ROLE = "create_deploy_role"
STEP_REPOSITORY = "configure_repository"
STEP_REPOSITORY_BINDING = "bind_repository_environment"
STEP_BUDGET = "create_budget_alert"


@dataclass
class PipelineHooks:
    """Optional callbacks for UI layers (progress, warnings)."""

    step_started: Callable[[Environment | None, str], None] | None = None
    state_changed: Callable[[Environment, AccountState], None] | None = None
    warning: Callable[[str], None] | None = None


@dataclass
class RunContext:
    """Everything a run needs, passed explicitly instead of ambient state."""

    config: ProjectConfig
    cloud: CloudAccountProvider
    vcs: SourceControlProvider
    store: IdempotencyStore
    settings: AppSettings = field(default_factory=AppSettings)
    retry: RetryPolicy | None = None
    hooks: PipelineHooks = field(default_factory=PipelineHooks)
    cancel_event: asyncio.Event | None = None
    trusting_account_id: str | None = None
    dry_run: bool = False
    sleep: Sleeper = asyncio.sleep
    _deadline: float | None = None
    _in_flight: set[asyncio.Future[Any]] = field(default_factory=set)

    def __post_init__(self) -> None:
        if self.retry is None:
            self.retry = RetryPolicy.from_settings(self.settings)

    def start_clock(self) -> None:
        self._deadline = asyncio.get_running_loop().time() + self.settings.run_deadline_seconds

    def ensure_running(self, step: str, environment: Environment | None = None) -> None:
        """Refuse to launch a new step once cancelled or past the run deadline."""

        env = environment.value if environment else None
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelledError("run cancelled", environment=env, step=step)
        if self._deadline is not None and asyncio.get_running_loop().time() > self._deadline:
            raise RunCancelledError("run deadline exceeded", environment=env, step=step)
        if self.hooks.step_started:
            self.hooks.step_started(environment, step)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        step: str,
        environment: Environment | None = None,
        account_id: str | None = None,
        existing_ok: bool = True,
    ) -> T | None:
        self.ensure_running(step, environment)
        return await call_with_retries(
            operation,
            policy=self.retry or RetryPolicy.from_settings(self.settings),
            step=step,
            environment=environment.value if environment else None,
            account_id=account_id,
            sleep=self.sleep,
            existing_ok=existing_ok,
            in_flight=self._in_flight,
        )

    async def drain(self) -> None:
        """Wait for provider calls that outlived their timeout; none is cancelled mid-call."""

        pending = [task for task in self._in_flight if not task.done()]
        if not pending:
            return
        logger.warning("waiting for %d provider call(s) still in flight", len(pending))
        await asyncio.gather(*pending, return_exceptions=True)


class _ProgressTracker:
    """Owns the accounts and the idempotency record; the only shared mutable state."""

    def __init__(self, config: ProjectConfig, store: IdempotencyStore, hooks: PipelineHooks) -> None:
        self._store = store
        self._hooks = hooks
        self._lock = asyncio.Lock()
        self.record: IdempotencyRecord = store.load(config.project_code)
        self.accounts: dict[Environment, Account] = build_account_plan(config)
        self.failures: dict[Environment, list[StepFailure]] = {env: [] for env in self.accounts}
        self.repository_failures: list[StepFailure] = []
        for env, account in self.accounts.items():
            stored = self.record.accounts.get(env)
            if stored is None:
                continue
            account.account_id = stored.account_id
            account.role_arn = stored.role_arn
            # An interrupted creation left no id behind: resolve by name again.
            account.state = stored.state if stored.account_id else AccountState.ABSENT

    async def advance(
        self,
        environment: Environment,
        state: AccountState,
        *,
        account_id: str | None = None,
        role_arn: str | None = None,
    ) -> None:
        async with self._lock:
            account = self.accounts[environment]
            stored = self.record.account(environment)
            if account_id:
                account.account_id = stored.account_id = account_id
            if role_arn:
                account.role_arn = stored.role_arn = role_arn
            if state.rank > account.state.rank:
                account.state = stored.state = state
                logger.info("%s (%s) -> %s", account.name, account.account_id or "-", state.value)
                if self._hooks.state_changed:
                    self._hooks.state_changed(environment, state)
            self._store.save(self.record)

    async def mark_repository(self, *, configured: bool | None = None, bound: Environment | None = None) -> None:
        async with self._lock:
            if configured is not None:
                self.record.repository_configured = configured
            if bound is not None:
                self.record.account(bound).repository_bound = True
            self._store.save(self.record)

    async def fail(
        self,
        environment: Environment | None,
        step: str,
        exc: Exception,
        *,
        repository: bool = False,
    ) -> StepFailure:
        if isinstance(exc, ProvisioningError):
            exc.with_context(environment=environment.value if environment else None, step=step)
            kind = exc.kind
            message = exc.message
            account_id = exc.account_id
            step = exc.step or step
        else:
            kind = ErrorKind.UNEXPECTED
            message = f"{type(exc).__name__}: {exc}"
            account_id = None
        if environment is not None and account_id is None:
            account_id = self.accounts[environment].account_id
        failure = StepFailure(
            step=step,
            kind=kind,
            message=message,
            environment=environment,
            account_id=account_id,
        )
        async with self._lock:
            if repository or environment is None:
                self.repository_failures.append(failure)
            else:
                self.failures[environment].append(failure)
        if self._hooks.warning:
            self._hooks.warning(f"{step} failed ({kind.value}): {message}")
        return failure

    def has_failures(self) -> bool:
        return bool(self.repository_failures) or any(self.failures.values())

    def pending(self, below: AccountState) -> list[Environment]:
        """Environments whose account has not reached `below` yet."""

        return [env for env in Environment.ordered() if not self.accounts[env].state.reached(below)]


async def _for_each_account(
    ctx: RunContext,
    tracker: _ProgressTracker,
    environments: Iterable[Environment],
    step: str,
    work: Callable[[Environment], Awaitable[None]],
) -> None:
    """Run `work` per environment, bounded by `max_workers`; failures are recorded per account."""

    semaphore = asyncio.Semaphore(ctx.settings.max_workers)

    async def guarded(env: Environment) -> None:
        async with semaphore:
            try:
                await work(env)
            except ProvisioningError as exc:
                logger.error("%s failed for %s: %s", step, env.value, exc)
                await tracker.fail(env, step, exc)
            except Exception as exc:
                logger.exception("%s crashed for %s", step, env.value)
                await tracker.fail(env, step, exc)

    await asyncio.gather(*(guarded(env) for env in environments))


def _require_id(account: Account, step: str) -> str:
    if not account.account_id:
        raise ProviderError(
            f"account {account.name} has no id yet",
            environment=account.environment.value,
            step=step,
        )
    return account.account_id


async def _resolve_account(ctx: RunContext, tracker: _ProgressTracker, env: Environment) -> None:
    account = tracker.accounts[env]
    known_id = account.account_id
    if not account.state.reached(AccountState.CREATED):
        await tracker.advance(env, AccountState.CREATING)

    account_id = await ctx.call(
        lambda: ctx.cloud.create_or_get_account(account.name, account.email, ctx.config.organizational_unit_id),
        step=STEP_CREATE_ACCOUNT,
        environment=env,
        existing_ok=False,
    )
    if not account_id:
        raise ProviderError(f"provider returned no id for account {account.name}")
    if known_id and known_id != account_id:
        message = f"{account.name}: recorded id {known_id} differs from provider id {account_id}; using provider id"
        logger.warning(message)
        if ctx.hooks.warning:
            ctx.hooks.warning(message)
    await tracker.advance(env, AccountState.CREATED, account_id=account_id)


async def _wait_for_propagation(ctx: RunContext, tracker: _ProgressTracker, env: Environment) -> None:
    account = tracker.accounts[env]
    account_id = _require_id(account, STEP_PROPAGATION)
    ctx.ensure_running(STEP_PROPAGATION, env)

    async def is_active() -> bool:
        status = await ctx.call(
            lambda: ctx.cloud.describe_account(account_id),
            step=STEP_PROPAGATION,
            environment=env,
            account_id=account_id,
        )
        if status is AccountStatus.SUSPENDED:
            raise ProviderError(
                f"account {account.name} is suspended",
                environment=env.value,
                account_id=account_id,
                step=STEP_PROPAGATION,
            )
        return status is AccountStatus.ACTIVE

    await poll_until(
        is_active,
        timeout=ctx.settings.propagation_timeout_seconds,
        interval=ctx.settings.propagation_poll_seconds,
        description=f"{account.name} active",
        sleep=ctx.sleep,
    )


async def _configure_identity(ctx: RunContext, tracker: _ProgressTracker, env: Environment) -> None:
    account = tracker.accounts[env]
    account_id = _require_id(account, STEP_BOOTSTRAP)
    settings = ctx.settings

    # Trust must precede identity: the role's policies reference bootstrapped assets.
    if not account.state.reached(AccountState.TRUST_BOOTSTRAPPED):
        await ctx.call(
            lambda: ctx.cloud.bootstrap_deploy_trust(account_id, settings.region, ctx.trusting_account_id or ""),
            step=STEP_BOOTSTRAP,
            environment=env,
            account_id=account_id,
        )
        await tracker.advance(env, AccountState.TRUST_BOOTSTRAPPED)

    provider_ref = await ctx.call(
        lambda: ctx.cloud.create_federated_identity(
            account_id,
            settings.oidc_issuer_url,
            settings.oidc_audience,
            settings.oidc_thumbprint,
        ),
        step=STEP_IDENTITY,
        environment=env,
        account_id=account_id,
    )
    provider_ref = provider_ref or oidc_provider_arn(account_id, settings.oidc_issuer_url)

    subject = federated_subject_pattern(ctx.config.vcs_org, ctx.config.vcs_repo_name, env)
    trust_policy = build_trust_policy(
        account_id=account_id,
        subject_pattern=subject,
        issuer_url=settings.oidc_issuer_url,
        audience=settings.oidc_audience,
    )
    role_arn = await ctx.call(
        lambda: ctx.cloud.create_deploy_role(
            account_id,
            settings.deploy_role_name,
            trust_policy,
            settings.deploy_managed_policy_arns,
        ),
        step=STEP_ROLE,
        environment=env,
        account_id=account_id,
    )
    role_arn = role_arn or deploy_role_arn(account_id, settings.deploy_role_name)
    logger.debug("%s trust binding: provider=%s role=%s sub=%s", account.name, provider_ref, role_arn, subject)
    await tracker.advance(env, AccountState.IDENTITY_CONFIGURED, role_arn=role_arn)


async def _configure_repository(ctx: RunContext, tracker: _ProgressTracker) -> None:
    config = ctx.config
    plan = build_repository_plan(
        config,
        tracker.accounts.values(),
        role_name=ctx.settings.deploy_role_name,
        region=ctx.settings.region,
    )
    org, repo = plan.org, plan.repo_name

    await ctx.call(
        lambda: ctx.vcs.create_or_get_repository(org, repo, plan.private),
        step=STEP_REPOSITORY,
    )

    if not tracker.record.repository_configured:
        # Workflows land on the default branch before develop is cut from it.
        for name, content in plan.workflows.items():
            await ctx.call(
                lambda n=name, c=content: ctx.vcs.commit_workflow(org, repo, n, c, plan.default_branch),
                step=STEP_REPOSITORY,
            )
        for branch in plan.branches:
            if branch != plan.default_branch:
                await ctx.call(
                    lambda b=branch: ctx.vcs.ensure_branch(org, repo, b, plan.default_branch),
                    step=STEP_REPOSITORY,
                )
        for branch, rules in plan.protection.items():
            await ctx.call(
                lambda b=branch, r=rules: ctx.vcs.configure_branch_protection(org, repo, b, r),
                step=STEP_REPOSITORY,
            )
        for env in plan.environments:
            await ctx.call(
                lambda e=env: ctx.vcs.create_environment(org, repo, e.value, e in plan.reviewer_environments),
                step=STEP_REPOSITORY,
                environment=env,
            )
        await tracker.mark_repository(configured=True)

    for env in plan.environments:
        if tracker.record.account(env).repository_bound:
            continue
        env_secrets = plan.environment_secrets.get(env)
        if not env_secrets:
            continue
        repo_secret = f"AWS_ACCOUNT_ID_{env.upper}"
        await ctx.call(
            lambda: ctx.vcs.set_secret(org, repo, SecretScope.REPOSITORY, repo_secret, plan.secrets[repo_secret]),
            step=STEP_REPOSITORY_BINDING,
            environment=env,
        )
        for key, value in env_secrets.items():
            await ctx.call(
                lambda k=key, v=value: ctx.vcs.set_secret(
                    org, repo, SecretScope.ENVIRONMENT, k, v, environment=env.value
                ),
                step=STEP_REPOSITORY_BINDING,
                environment=env,
            )
        await ctx.call(
            lambda: ctx.vcs.register_federated_identity_consumer(
                org,
                repo,
                env.value,
                ctx.settings.oidc_issuer_url,
                plan.subject_patterns[env],
            ),
            step=STEP_REPOSITORY_BINDING,
            environment=env,
        )
        await tracker.mark_repository(bound=env)


async def _configure_billing(ctx: RunContext, tracker: _ProgressTracker, env: Environment) -> None:
    account = tracker.accounts[env]
    account_id = _require_id(account, STEP_BUDGET)
    settings = ctx.settings
    policy = default_budget_policy(
        env,
        project_code=ctx.config.project_code,
        notify_address=settings.budget_notify_address or account.email,
        account_id=account_id,
        alert_threshold=settings.budget_alert_threshold,
        budget_limit=settings.budget_limit,
    )
    await ctx.call(
        lambda: ctx.cloud.create_budget_alert(account_id, policy),
        step=STEP_BUDGET,
        environment=env,
        account_id=account_id,
    )
    await tracker.advance(env, AccountState.BILLING_CONFIGURED)


def _result(ctx: RunContext, tracker: _ProgressTracker, repository_done: bool) -> RunResult:
    repo_full_name = f"{ctx.config.vcs_org}/{ctx.config.vcs_repo_name}"
    return RunResult(
        project_code=ctx.config.project_code,
        accounts={
            env: AccountResult(
                account=tracker.accounts[env].model_copy(),
                failures=list(tracker.failures[env]),
            )
            for env in Environment.ordered()
        },
        repository=RepositoryResult(
            full_name=repo_full_name,
            configured=repository_done,
            failures=list(tracker.repository_failures),
        ),
        finished_at=datetime.now(timezone.utc),
        dry_run=ctx.dry_run,
    )


async def provision(ctx: RunContext) -> RunResult:
    """Run the full sequence; returns per-account final state and every failure.

    Phases are separated by barriers: a phase only starts when every account
    finished the previous one without failure. Within a phase, accounts run
    concurrently (bounded by `max_workers`); within an account, steps are
    strictly ordered. Calls that outlived their timeout are awaited before
    returning.
    """

    try:
        return await _run_phases(ctx)
    finally:
        await ctx.drain()


async def _run_phases(ctx: RunContext) -> RunResult:
    ctx.start_clock()
    tracker = _ProgressTracker(ctx.config, ctx.store, ctx.hooks)
    logger.info("provisioning %s (%d worker(s))", ctx.config.project_code, ctx.settings.max_workers)

    async def resolve(env: Environment) -> None:
        await _resolve_account(ctx, tracker, env)

    await _for_each_account(ctx, tracker, Environment.ordered(), STEP_CREATE_ACCOUNT, resolve)
    if tracker.has_failures():
        return _result(ctx, tracker, repository_done=False)

    async def propagate(env: Environment) -> None:
        await _wait_for_propagation(ctx, tracker, env)

    await _for_each_account(
        ctx,
        tracker,
        tracker.pending(AccountState.TRUST_BOOTSTRAPPED),
        STEP_PROPAGATION,
        propagate,
    )
    if tracker.has_failures():
        return _result(ctx, tracker, repository_done=False)

    async def identity(env: Environment) -> None:
        await _configure_identity(ctx, tracker, env)

    await _for_each_account(
        ctx,
        tracker,
        tracker.pending(AccountState.IDENTITY_CONFIGURED),
        STEP_IDENTITY,
        identity,
    )
    if tracker.has_failures():
        return _result(ctx, tracker, repository_done=False)

    try:
        await _configure_repository(ctx, tracker)
    except Exception as exc:
        if not isinstance(exc, ProvisioningError):
            logger.exception("repository configuration crashed")
        env = None
        if isinstance(exc, ProvisioningError) and exc.environment:
            env = Environment(exc.environment)
        await tracker.fail(env, STEP_REPOSITORY, exc, repository=True)
        return _result(ctx, tracker, repository_done=False)

    async def billing(env: Environment) -> None:
        await _configure_billing(ctx, tracker, env)

    await _for_each_account(
        ctx,
        tracker,
        tracker.pending(AccountState.BILLING_CONFIGURED),
        STEP_BUDGET,
        billing,
    )

    result = _result(ctx, tracker, repository_done=True)
    logger.info(
        "provisioning %s finished: %s",
        ctx.config.project_code,
        ", ".join(f"{env.value}={r.account.state.value}" for env, r in result.accounts.items()),
    )
    return result
