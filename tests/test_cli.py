"""Tests for input resolution and the typer commands (dry-run only)."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from adapters.state_store import JsonStateStore
from cli.main import app
from cli.project_config import resolve_project_config
from core.domain.errors import ValidationError
from core.interfaces import IdempotencyRecord

ARGS_NONE = {
    "project_code": None,
    "email_prefix": None,
    "organizational_unit_id": None,
    "vcs_org": None,
    "vcs_repo_name": None,
}
FULL_ARGS = {
    "project_code": "tpa",
    "email_prefix": "user",
    "organizational_unit_id": "ou-ab12-cdef3456",
    "vcs_org": "acme",
    "vcs_repo_name": "tpa-infra",
}
CLI_ARGS = [
    "--project-code",
    "TPA",
    "--email",
    "user",
    "--ou-id",
    "ou-ab12-cdef3456",
    "--github-org",
    "acme",
    "--github-repo",
    "tpa-infra",
]


def _flat(output: str) -> str:
    return " ".join(output.split())


def _json_payload(output: str) -> dict:
    # Log records may precede the document on a mixed stream.
    lines = output.splitlines()
    return json.loads("\n".join(lines[lines.index("{") :]))


@pytest.fixture
def isolated(tmp_path: Path, monkeypatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for key in ("PROJECT_CODE", "EMAIL_PREFIX", "OU_ID", "GITHUB_ORG", "GITHUB_REPO", "GITHUB_TOKEN"):
        monkeypatch.delenv(f"ACCOUNT_BOOTSTRAP_{key}", raising=False)
    return tmp_path


class TestResolveProjectConfig:
    def test_arguments_win_over_env_and_file(self, tmp_path: Path):
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps(
                {
                    "project_code": "FIL",
                    "email_prefix": "file",
                    "ou_id": "ou-file-00000000",
                    "github": {"org": "file-org", "repo_name": "file-repo"},
                }
            ),
            encoding="utf-8",
        )
        env = {"ACCOUNT_BOOTSTRAP_PROJECT_CODE": "ENV", "ACCOUNT_BOOTSTRAP_GITHUB_ORG": "env-org"}

        config = resolve_project_config(
            args={**ARGS_NONE, "project_code": "arg"},
            env=env,
            config_file=config_file,
            interactive=False,
        )

        assert config.project_code == "ARG"
        assert config.vcs_org == "env-org"
        assert config.email_prefix == "file"
        assert config.organizational_unit_id == "ou-file-00000000"
        assert config.vcs_repo_name == "file-repo"

    def test_prompt_fills_the_rest(self):
        asked: list[str] = []

        def prompt(label: str) -> str:
            asked.append(label)
            return "tpa-infra"

        config = resolve_project_config(
            args={**FULL_ARGS, "vcs_repo_name": None},
            env={},
            interactive=True,
            prompt=prompt,
        )
        assert config.vcs_repo_name == "tpa-infra"
        assert asked == ["Repository name"]

    def test_non_interactive_missing_field(self):
        with pytest.raises(ValidationError) as excinfo:
            resolve_project_config(args={**FULL_ARGS, "organizational_unit_id": None}, env={}, interactive=False)
        assert excinfo.value.field == "organizational_unit_id"

    def test_invalid_value_becomes_domain_error(self):
        with pytest.raises(ValidationError) as excinfo:
            resolve_project_config(args={**FULL_ARGS, "project_code": "TOOLONG"}, env={}, interactive=False)
        assert excinfo.value.field == "project_code"

    def test_full_address_keeps_its_domain(self):
        config = resolve_project_config(
            args={**FULL_ARGS, "email_prefix": "ops@example.org"},
            env={},
            interactive=False,
            email_domain="gmail.com",
        )
        assert config.email_prefix == "ops"
        assert config.email_domain == "example.org"

    def test_settings_domain_applies_to_bare_prefix(self):
        config = resolve_project_config(args=FULL_ARGS, env={}, interactive=False, email_domain="corp.io")
        assert config.email_domain == "corp.io"

    def test_missing_or_broken_file(self, tmp_path: Path):
        with pytest.raises(ValidationError):
            resolve_project_config(args=FULL_ARGS, env={}, config_file=tmp_path / "nope.json")
        broken = tmp_path / "broken.json"
        broken.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError):
            resolve_project_config(args=FULL_ARGS, env={}, config_file=broken)


class TestCommands:
    def test_plan_json(self, isolated):
        result = CliRunner().invoke(app, ["plan", *CLI_ARGS, "--json"])
        assert result.exit_code == 0, result.output
        payload = _json_payload(result.stdout)
        assert [a["name"] for a in payload["accounts"]] == ["TPA_DEV", "TPA_STAGING", "TPA_PROD"]
        assert payload["accounts"][0]["email"] == "user+tpa-dev@gmail.com"
        assert payload["repository"]["branches"] == ["main", "develop"]
        assert payload["workflows"] == ["deploy.yml", "pr-validation.yml"]

    def test_dry_run_create_json(self, isolated):
        result = CliRunner().invoke(app, ["create", *CLI_ARGS, "--dry-run", "--yes", "--non-interactive", "--json"])
        assert result.exit_code == 0, result.output
        payload = _json_payload(result.stdout)
        assert payload["ok"] is True
        assert payload["dry_run"] is True
        assert {entry["account"]["state"] for entry in payload["accounts"].values()} == {"billing_configured"}
        assert any(op.startswith("create_or_get_account[TPA_DEV]") for op in payload["operations"])
        assert any(op.startswith("commit_workflow[") for op in payload["operations"])
        # The dry run leaves no idempotency record behind.
        assert not (isolated / ".aws-bootstrap" / "state.json").exists()

    def test_missing_input_is_reported(self, isolated):
        result = CliRunner().invoke(app, ["create", "--dry-run", "--non-interactive"])
        assert result.exit_code == 2

    def test_live_run_needs_a_token(self, isolated):
        result = CliRunner().invoke(app, ["create", *CLI_ARGS, "--yes", "--non-interactive"])
        assert result.exit_code == 2
        assert "github_token" in _flat(result.output)

    def test_status_without_record(self, isolated):
        result = CliRunner().invoke(app, ["status", "--state-file", str(isolated / "none.json")])
        assert result.exit_code == 1

    def test_state_of_another_project_is_rejected_before_any_call(self, isolated, monkeypatch):
        monkeypatch.setenv("ACCOUNT_BOOTSTRAP_GITHUB_TOKEN", "ghp_test")
        state = isolated / "state.json"
        JsonStateStore(state).save(IdempotencyRecord(project_code="ABC"))

        result = CliRunner().invoke(
            app, ["create", *CLI_ARGS, "--yes", "--non-interactive", "--state-file", str(state)]
        )
        assert result.exit_code == 2
        assert "belongs to project ABC, not TPA" in _flat(result.output)

    def test_corrupt_state_file(self, isolated):
        state = isolated / "state.json"
        state.write_text("{broken", encoding="utf-8")
        result = CliRunner().invoke(app, ["status", "--state-file", str(state)])
        assert result.exit_code == 2
        assert "not valid JSON" in _flat(result.output)

    def test_alert_above_budget_is_rejected_up_front(self, isolated, monkeypatch):
        monkeypatch.setenv("ACCOUNT_BOOTSTRAP_BUDGET_ALERT_THRESHOLD", "30")
        result = CliRunner().invoke(app, ["create", *CLI_ARGS, "--dry-run", "--yes", "--non-interactive"])
        assert result.exit_code == 2
        assert "budget_alert_threshold (30) must not exceed budget_limit (25)" in _flat(result.output)
