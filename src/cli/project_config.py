"""Project input resolution for the CLI.

Precedence, highest first: explicit arguments, environment variables, the JSON
configuration file, then an interactive prompt. In non-interactive mode a
field still missing after the first three sources is a validation error.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError

from core.config import ENV_PREFIX
from core.domain.errors import ValidationError
from core.domain.models import ProjectConfig

Prompt = Callable[[str], str]

# field -> (environment variable suffix, JSON path, prompt label)
FIELDS: dict[str, tuple[str, tuple[str, ...], str]] = {
    "project_code": ("PROJECT_CODE", ("project_code",), "Project code (3 characters)"),
    "email_prefix": ("EMAIL_PREFIX", ("email_prefix",), "E-mail prefix or address"),
    "organizational_unit_id": ("OU_ID", ("ou_id",), "Organizational unit id (ou-xxxx-xxxxxxxx)"),
    "vcs_org": ("GITHUB_ORG", ("github", "org"), "GitHub organization or user"),
    "vcs_repo_name": ("GITHUB_REPO", ("github", "repo_name"), "Repository name"),
}


def load_config_file(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise ValidationError("config", f"configuration file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValidationError("config", f"{path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("config", f"{path} must contain a JSON object")
    return data


def _lookup(data: Mapping[str, Any], path: tuple[str, ...]) -> str | None:
    node: Any = data
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    if node is None:
        return None
    value = str(node).strip()
    return value or None


def build_project_config(values: Mapping[str, Any]) -> ProjectConfig:
    """Construct `ProjectConfig`, surfacing the first problem as a domain `ValidationError`."""

    try:
        return ProjectConfig(**values)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "config"
        message = str(first.get("msg", "invalid value")).removeprefix("Value error, ")
        raise ValidationError(field, message) from exc


def resolve_project_config(
    *,
    args: Mapping[str, str | None],
    env: Mapping[str, str] | None = None,
    config_file: Path | None = None,
    interactive: bool = True,
    prompt: Prompt | None = None,
    email_domain: str | None = None,
) -> ProjectConfig:
    env = os.environ if env is None else env
    file_data = load_config_file(config_file)
    values: dict[str, Any] = {}
    missing: list[str] = []

    for field, (env_suffix, json_path, label) in FIELDS.items():
        value = (args.get(field) or "").strip() or None
        if value is None:
            value = (env.get(ENV_PREFIX + env_suffix) or "").strip() or None
        if value is None:
            value = _lookup(file_data, json_path)
        if value is None and interactive and prompt is not None:
            value = prompt(label).strip() or None
        if value is None:
            missing.append(field)
            continue
        values[field] = value

    if missing:
        raise ValidationError(missing[0], "is required (pass it as an option, env var or config file)")
    if email_domain and "@" not in values["email_prefix"]:
        values["email_domain"] = email_domain
    return build_project_config(values)
