"""Doctor command for environment diagnostics, plus `configure`."""

from __future__ import annotations

import asyncio
import shutil

import typer
from rich.console import Console
from rich.table import Table

from adapters.aws.provider import AwsCloudAccountProvider
from adapters.http_client import build_github_client
from core.config import ENV_PREFIX, AppSettings, write_user_env_vars

app = typer.Typer(no_args_is_help=True, help="Environment diagnostics and configuration checks.")

_console = Console()


async def _check_aws(settings: AppSettings) -> tuple[bool, str]:
    try:
        account_id = await AwsCloudAccountProvider(settings).caller_account_id()
        return True, f"caller account {account_id}"
    except Exception as exc:
        return False, str(exc)


async def _check_github(settings: AppSettings) -> tuple[bool, str]:
    if not settings.github_token:
        return False, f"no token ({ENV_PREFIX}GITHUB_TOKEN)"
    try:
        async with build_github_client(settings) as client:
            response = await client.get("/user")
        if response.is_success:
            return True, f"authenticated as {response.json().get('login')}"
        return False, f"HTTP {response.status_code}"
    except Exception as exc:
        return False, str(exc)


async def _check_cdk(settings: AppSettings) -> tuple[bool, str]:
    path = shutil.which(settings.cdk_executable)
    if path is None:
        return False, f"'{settings.cdk_executable}' not on PATH (npm install -g aws-cdk)"
    try:
        process = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
    except OSError as exc:
        return False, str(exc)
    return process.returncode == 0, output.decode("utf-8", errors="replace").strip() or path


async def _run_checks(settings: AppSettings) -> list[tuple[str, bool, str]]:
    aws, github, cdk = await asyncio.gather(
        _check_aws(settings),
        _check_github(settings),
        _check_cdk(settings),
    )
    return [("AWS credentials", *aws), ("GitHub API", *github), ("CDK CLI", *cdk)]


@app.command()
def run() -> None:
    """Run baseline diagnostics and show recommended fixes."""

    settings = AppSettings()

    table = Table(title="account-bootstrap doctor")
    table.add_column("Check", style="bright_green", no_wrap=True)
    table.add_column("Status", style="white")
    table.add_column("Details", style="dim")

    table.add_row("Region", "OK", settings.region)
    table.add_row("State file", "OK", str(settings.state_file))
    table.add_row("Workers", "OK", str(settings.max_workers))

    results = asyncio.run(_run_checks(settings))
    for name, ok, detail in results:
        table.add_row(name, "OK" if ok else "FAIL", detail)

    _console.print(table)

    if not all(ok for _, ok, _ in results):
        _console.print("\n[yellow]Note:[/yellow] `--dry-run` works without any of these prerequisites.")
        raise typer.Exit(code=1)


def configure() -> None:
    """Interactive setup (stores config in the user config .env).

    No manual .env editing: answers are written where `AppSettings` reads them.
    """

    settings = AppSettings()
    token = typer.prompt("GitHub token", hide_input=True, default="", show_default=False).strip()
    profile = typer.prompt("AWS profile (blank for default chain)", default=settings.aws_profile or "").strip()
    region = typer.prompt("AWS region", default=settings.region, show_default=True).strip()
    notify = typer.prompt(
        "Budget alert e-mail (blank: each account's root e-mail)",
        default=settings.budget_notify_address or "",
    ).strip()

    if not region:
        raise typer.BadParameter("region is required")

    env_path = write_user_env_vars(
        {
            f"{ENV_PREFIX}GITHUB_TOKEN": token or None,
            f"{ENV_PREFIX}AWS_PROFILE": profile or None,
            f"{ENV_PREFIX}REGION": region,
            f"{ENV_PREFIX}BUDGET_NOTIFY_ADDRESS": notify or None,
        }
    )

    _console.print(f"[green]Saved config to:[/green] {env_path}")
