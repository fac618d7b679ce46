"""account-bootstrap CLI (typer).

Commands:
- `plan`: show the accounts and repository a run would create.
- `create`: run the provisioning sequence (live, or recording mocks with `--dry-run`).
- `status`: print the stored idempotency record.
- `doctor run`: check credentials and tools.
- `configure`: store settings in the user `.env`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from pathlib import Path
from typing import Any, Optional

import typer
from pydantic import ValidationError as PydanticValidationError
from rich.console import Console
from rich.logging import RichHandler

from adapters.aws.provider import AwsCloudAccountProvider
from adapters.github.provider import GitHubSourceControlProvider
from adapters.mock import InMemoryStateStore, MockCloudAccountProvider, MockSourceControlProvider, OperationLog
from adapters.state_store import JsonStateStore
from cli import doctor
from cli.project_config import resolve_project_config
from cli.ui_components import (
    build_failures_table,
    build_operations_panel,
    build_plan_table,
    build_result_table,
    build_state_table,
    print_banner,
)
from core.config import AppSettings
from core.domain.errors import PartialFailure, ValidationError
from core.domain.models import AccountState, Environment, ProjectConfig, RunResult
from core.domain.naming import build_account_plan, build_repository_plan, render_plan_summary
from core.services.provisioning_pipeline import PipelineHooks, RunContext, provision

app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help="Stand up dev/staging/prod accounts, CI trust and cost alerts for one project.",
)
app.add_typer(doctor.app, name="doctor")
app.command(name="configure")(doctor.configure)

_console = Console()
_err_console = Console(stderr=True)

_NOISY_LOGGERS = ("botocore", "aiobotocore", "aioboto3", "httpx", "httpcore", "urllib3")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=_err_console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if verbose else logging.WARNING)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
) -> None:
    _configure_logging(verbose)


def _project_config(
    *,
    project_code: Optional[str],
    email: Optional[str],
    ou_id: Optional[str],
    github_org: Optional[str],
    github_repo: Optional[str],
    config_file: Optional[Path],
    non_interactive: bool,
    public: bool,
    settings: AppSettings,
) -> ProjectConfig:
    config = resolve_project_config(
        args={
            "project_code": project_code,
            "email_prefix": email,
            "organizational_unit_id": ou_id,
            "vcs_org": github_org,
            "vcs_repo_name": github_repo,
        },
        config_file=config_file,
        interactive=not non_interactive,
        prompt=lambda label: typer.prompt(label),
        email_domain=settings.email_domain,
    )
    if public:
        config = config.model_copy(update={"repo_private": False})
    return config


def _fail(message: str, code: int = 2) -> typer.Exit:
    _err_console.print(f"[bold red]Error:[/bold red] {message}")
    return typer.Exit(code=code)


def _load_settings() -> AppSettings:
    try:
        return AppSettings()
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "settings"
        raise _fail(f"invalid setting {field}: {first.get('msg')}")


_PROJECT_CODE = typer.Option(None, "--project-code", "-p", help="3-character project code (e.g. TPA).")
_EMAIL = typer.Option(None, "--email", "-e", help="E-mail prefix or full address.")
_OU_ID = typer.Option(None, "--ou-id", help="Parent organizational unit id.")
_GITHUB_ORG = typer.Option(None, "--github-org", help="GitHub organization or user.")
_GITHUB_REPO = typer.Option(None, "--github-repo", help="Repository name.")
_CONFIG = typer.Option(None, "--config", "-c", help="JSON configuration file.", dir_okay=False)
_NON_INTERACTIVE = typer.Option(False, "--non-interactive", help="Never prompt; missing input is an error.")
_JSON = typer.Option(False, "--json", help="Machine-readable output.")


@app.command()
def plan(
    project_code: Optional[str] = _PROJECT_CODE,
    email: Optional[str] = _EMAIL,
    ou_id: Optional[str] = _OU_ID,
    github_org: Optional[str] = _GITHUB_ORG,
    github_repo: Optional[str] = _GITHUB_REPO,
    config_file: Optional[Path] = _CONFIG,
    non_interactive: bool = _NON_INTERACTIVE,
    json_output: bool = _JSON,
) -> None:
    """Show what `create` would provision, without touching any provider."""

    settings = _load_settings()
    try:
        config = _project_config(
            project_code=project_code,
            email=email,
            ou_id=ou_id,
            github_org=github_org,
            github_repo=github_repo,
            config_file=config_file,
            non_interactive=non_interactive or json_output,
            public=False,
            settings=settings,
        )
    except ValidationError as exc:
        raise _fail(str(exc))

    accounts = build_account_plan(config)
    if json_output:
        repository = build_repository_plan(
            config,
            accounts.values(),
            role_name=settings.deploy_role_name,
            region=settings.region,
        )
        payload = {
            "project_code": config.project_code,
            "accounts": [a.model_dump(mode="json", include={"environment", "name", "email"}) for a in accounts.values()],
            "repository": repository.model_dump(mode="json", include={"org", "repo_name", "private", "branches"}),
            "workflows": sorted(repository.workflows),
        }
        _console.print_json(json.dumps(payload))
        return

    _console.print(render_plan_summary(config))
    _console.print(build_plan_table(accounts.values()))


async def _run(ctx: RunContext) -> RunResult:
    loop = asyncio.get_running_loop()
    cancel_event = ctx.cancel_event
    if cancel_event is not None:
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    try:
        return await provision(ctx)
    finally:
        aclose = getattr(ctx.vcs, "aclose", None)
        if aclose is not None:
            await aclose()
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.remove_signal_handler(signal.SIGINT)


def _build_context(
    config: ProjectConfig,
    settings: AppSettings,
    *,
    dry_run: bool,
    json_output: bool,
) -> tuple[RunContext, OperationLog | None]:
    hooks = PipelineHooks()
    if not json_output:

        def on_state(env: Environment, state: AccountState) -> None:
            _console.print(f"  [cyan]{env.value:<8}[/cyan] -> {state.value}")

        hooks.state_changed = on_state

    if dry_run:
        log = OperationLog()
        ctx = RunContext(
            config=config,
            cloud=MockCloudAccountProvider(log=log),
            vcs=MockSourceControlProvider(log=log),
            store=InMemoryStateStore(),
            settings=settings,
            hooks=hooks,
            cancel_event=asyncio.Event(),
            trusting_account_id=settings.trusting_account_id,
            dry_run=True,
        )
        return ctx, log

    if not settings.github_token:
        raise ValidationError("github_token", "required for a live run (run `configure` or use --dry-run)")

    store = JsonStateStore(settings.state_file)
    # A foreign or corrupt record is rejected before any provider is built.
    store.load(config.project_code)
    ctx = RunContext(
        config=config,
        cloud=AwsCloudAccountProvider(settings),
        vcs=GitHubSourceControlProvider(settings),
        store=store,
        settings=settings,
        hooks=hooks,
        cancel_event=asyncio.Event(),
        trusting_account_id=settings.trusting_account_id,
    )
    return ctx, None


@app.command()
def create(
    project_code: Optional[str] = _PROJECT_CODE,
    email: Optional[str] = _EMAIL,
    ou_id: Optional[str] = _OU_ID,
    github_org: Optional[str] = _GITHUB_ORG,
    github_repo: Optional[str] = _GITHUB_REPO,
    config_file: Optional[Path] = _CONFIG,
    non_interactive: bool = _NON_INTERACTIVE,
    json_output: bool = _JSON,
    dry_run: bool = typer.Option(False, "--dry-run", help="Use recording adapters; nothing is created."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
    public: bool = typer.Option(False, "--public", help="Create the repository as public."),
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="Idempotency record location."),
) -> None:
    """Provision the accounts, CI trust, repository and cost alerts (resumable)."""

    settings = _load_settings()
    if state_file is not None:
        settings = settings.model_copy(update={"state_file": state_file})

    try:
        config = _project_config(
            project_code=project_code,
            email=email,
            ou_id=ou_id,
            github_org=github_org,
            github_repo=github_repo,
            config_file=config_file,
            non_interactive=non_interactive or json_output,
            public=public,
            settings=settings,
        )
        ctx, log = _build_context(config, settings, dry_run=dry_run, json_output=json_output)
    except ValidationError as exc:
        raise _fail(str(exc))

    if not json_output:
        print_banner(_console, dry_run=dry_run)
        _console.print(render_plan_summary(config))
        if not (yes or non_interactive or dry_run) and not typer.confirm("Proceed?", default=False):
            raise typer.Exit(code=1)

    result = asyncio.run(_run(ctx))

    if json_output:
        payload: dict[str, Any] = json.loads(result.model_dump_json())
        payload["ok"] = result.ok
        if log is not None:
            payload["operations"] = [str(op) for op in log.operations]
        _console.print_json(json.dumps(payload))
    else:
        _console.print(build_result_table(result))
        failures = build_failures_table(result)
        if failures is not None:
            _console.print(failures)
        if log is not None:
            _console.print(build_operations_panel(log.operations, title="Recorded operations"))

    try:
        result.raise_for_failures()
    except PartialFailure as exc:
        if not json_output:
            _err_console.print(f"[yellow]{exc}[/yellow]\nRe-run the same command to resume.")
        raise typer.Exit(code=1)


@app.command()
def status(
    state_file: Optional[Path] = typer.Option(None, "--state-file", help="Idempotency record location."),
    json_output: bool = _JSON,
) -> None:
    """Show the stored progress of the last run."""

    path = state_file or _load_settings().state_file
    try:
        payload = JsonStateStore(path).read_raw()
    except ValidationError as exc:
        raise _fail(str(exc))
    if payload is None:
        raise _fail(f"no state recorded at {path}", code=1)
    if json_output:
        _console.print_json(json.dumps(payload))
        return
    _console.print(build_state_table(payload))


def run() -> None:
    app()


if __name__ == "__main__":
    run()
