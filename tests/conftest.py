"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from adapters.mock import InMemoryStateStore, MockCloudAccountProvider, MockSourceControlProvider, OperationLog
from core.config import AppSettings
from core.domain.models import ProjectConfig
from core.services.provisioning_pipeline import RunContext

pytest_plugins = ("pytest_asyncio",)


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    """Fast settings: no real backoff, no propagation wait, isolated state file."""

    return AppSettings(
        _env_file=None,
        retry_base_delay_seconds=0,
        propagation_poll_seconds=0,
        propagation_timeout_seconds=5,
        call_timeout_seconds=5,
        state_file=tmp_path / "state.json",
        trusting_account_id="111111111111",
    )


@pytest.fixture
def config() -> ProjectConfig:
    return ProjectConfig(
        project_code="TPA",
        email_prefix="user",
        organizational_unit_id="ou-1234-abcd5678",
        vcs_org="acme",
        vcs_repo_name="app",
    )


@pytest.fixture
def log() -> OperationLog:
    return OperationLog()


@pytest.fixture
def cloud(log: OperationLog) -> MockCloudAccountProvider:
    return MockCloudAccountProvider(log=log)


@pytest.fixture
def vcs(log: OperationLog) -> MockSourceControlProvider:
    return MockSourceControlProvider(log=log)


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_context(
    config: ProjectConfig,
    cloud: MockCloudAccountProvider,
    vcs: MockSourceControlProvider,
    store: InMemoryStateStore,
    settings: AppSettings,
    sleeps: list[float],
) -> Callable[..., RunContext]:
    """Build a fresh `RunContext` over the shared mocks (one per run)."""

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    def factory(**overrides: object) -> RunContext:
        values: dict[str, object] = {
            "config": config,
            "cloud": cloud,
            "vcs": vcs,
            "store": store,
            "settings": settings,
            "trusting_account_id": settings.trusting_account_id,
            "dry_run": True,
            "sleep": fake_sleep,
        }
        values.update(overrides)
        return RunContext(**values)  # type: ignore[arg-type]

    return factory
