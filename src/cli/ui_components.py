"""CLI UI components (Rich).

Why separate components:
- Keeps command logic apart from visual details.
- Lets `plan`, `create` and `status` reuse the same tables.
"""

from __future__ import annotations

from typing import Any, Iterable

from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from adapters.mock.operations import Operation
from core.domain.models import Account, AccountState, Environment, RunResult

_STATE_STYLE = {
    AccountState.ABSENT: "dim",
    AccountState.CREATING: "yellow",
    AccountState.CREATED: "cyan",
    AccountState.TRUST_BOOTSTRAPPED: "cyan",
    AccountState.IDENTITY_CONFIGURED: "blue",
    AccountState.BILLING_CONFIGURED: "green",
}


def print_banner(console: Console, *, dry_run: bool = False) -> None:
    """Print the welcome banner.

    Why here:
    - Avoids circular imports (main <-> doctor).
    - Lets non-interactive modes (JSON/pipelines) skip it.
    """

    title = Text("account-bootstrap", style="bold cyan")
    subtitle = Text("dev / staging / prod accounts, CI trust and cost alerts", style="dim")
    parts: list[Any] = [title, "\n", subtitle]
    if dry_run:
        parts += ["\n", Text("DRY RUN: recording adapters, nothing is created", style="bold yellow")]
    body = Align.center(Text.assemble(*parts), vertical="middle")
    console.print(Panel(body, border_style="cyan", padding=(1, 4)))


def build_plan_table(accounts: Iterable[Account]) -> Table:
    table = Table(title="Accounts")
    table.add_column("Environment", style="cyan", no_wrap=True)
    table.add_column("Name", style="white")
    table.add_column("E-mail", style="magenta")
    for account in accounts:
        table.add_row(account.environment.value, account.name, account.email)
    return table


def build_result_table(result: RunResult) -> Table:
    table = Table(title=f"Run {result.project_code}" + (" (dry run)" if result.dry_run else ""))
    table.add_column("Environment", style="cyan", no_wrap=True)
    table.add_column("Account", style="white")
    table.add_column("Id", style="white")
    table.add_column("State")
    table.add_column("Deploy role", style="dim")
    for env in Environment.ordered():
        entry = result.accounts.get(env)
        if entry is None:
            continue
        account = entry.account
        state = Text(account.state.value, style=_STATE_STYLE.get(account.state, "white"))
        if entry.failures:
            state.append(" !", style="bold red")
        table.add_row(env.value, account.name, account.account_id or "-", state, account.role_arn or "-")
    return table


def build_failures_table(result: RunResult) -> Table | None:
    failures = result.failures
    if not failures:
        return None
    table = Table(title="Failures", title_style="bold red")
    table.add_column("Environment", style="cyan", no_wrap=True)
    table.add_column("Step", style="white")
    table.add_column("Kind", style="yellow")
    table.add_column("Message", style="red")
    for failure in failures:
        env = failure.environment.value if failure.environment else "-"
        table.add_row(env, failure.step, failure.kind.value, failure.message)
    return table


def build_state_table(payload: dict[str, Any]) -> Table:
    """Table for the stored idempotency record (`status`)."""

    table = Table(title=f"State of {payload.get('project_code', '?')}")
    table.add_column("Environment", style="cyan", no_wrap=True)
    table.add_column("Account id", style="white")
    table.add_column("State", style="white")
    table.add_column("Repository bound", style="white")
    accounts = payload.get("accounts") or {}
    for env in Environment.ordered():
        entry = accounts.get(env.value) or {}
        table.add_row(
            env.value,
            entry.get("account_id") or "-",
            entry.get("state") or AccountState.ABSENT.value,
            "yes" if entry.get("repository_bound") else "no",
        )
    table.caption = "repository configured: " + ("yes" if payload.get("repository_configured") else "no")
    return table


def build_operations_panel(operations: Iterable[Operation], *, title: str) -> Panel:
    body = Text()
    for operation in operations:
        style = "red" if operation.outcome.startswith("error") else "white"
        body.append(f"{operation}\n", style=style)
    return Panel(body, title=title, border_style="dim")
