"""Validation rules for project inputs.

Pure functions, no I/O. They run before any adapter is touched so bad input
never reaches a provider.
"""

from __future__ import annotations

import re

from core.domain.errors import InvalidFormatError, ValidationError

_PROJECT_CODE_RE = re.compile(r"^[A-Z0-9]{3}$")
_EMAIL_PREFIX_RE = re.compile(r"^[a-zA-Z0-9._%+-]+$")
_EMAIL_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9-]+(\.[a-zA-Z0-9-]+)+$")
_OU_ID_RE = re.compile(r"^ou-[a-z0-9]+-[a-z0-9]+$")
_ACCOUNT_ID_RE = re.compile(r"^\d{12}$")
_GITHUB_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def validate_project_code(project_code: str) -> str:
    """Exactly 3 characters, upper-case letters or digits."""

    if len(project_code) != 3:
        raise InvalidFormatError("project_code", "must be exactly 3 characters")
    if not _PROJECT_CODE_RE.match(project_code):
        raise InvalidFormatError("project_code", "must contain only uppercase letters or numbers")
    return project_code


def validate_email_prefix(email_prefix: str) -> str:
    if not email_prefix:
        raise ValidationError("email_prefix", "is required")
    if not _EMAIL_PREFIX_RE.match(email_prefix):
        raise InvalidFormatError(
            "email_prefix",
            "invalid characters (use letters, numbers, dots, underscores, percent, plus, dash)",
        )
    return email_prefix


def validate_email_domain(domain: str) -> str:
    if not _EMAIL_DOMAIN_RE.match(domain):
        raise InvalidFormatError("email_domain", f"not a valid domain: {domain!r}")
    return domain


def validate_ouid(ou_id: str) -> str:
    """Organizational unit ids look like `ou-xxxx-xxxxxxxx`."""

    if not ou_id.startswith("ou-"):
        raise InvalidFormatError("organizational_unit_id", "must start with 'ou-'")
    if not _OU_ID_RE.match(ou_id):
        raise InvalidFormatError(
            "organizational_unit_id",
            "invalid format (expected: ou-xxxx-xxxxxxxx)",
        )
    return ou_id


def validate_account_id(account_id: str) -> str:
    if not _ACCOUNT_ID_RE.match(account_id):
        raise InvalidFormatError("account_id", "must be a 12-digit number")
    return account_id


def validate_vcs_name(field: str, value: str) -> str:
    if not value:
        raise ValidationError(field, "is required")
    if not _GITHUB_NAME_RE.match(value):
        raise InvalidFormatError(field, f"invalid characters in {value!r}")
    return value


_ENVIRONMENTS = ("dev", "staging", "prod")


def validate_environment(environment: str) -> str:
    """Normalises to lower case; only dev, staging and prod are known."""

    value = (environment or "").strip().lower()
    if value not in _ENVIRONMENTS:
        raise InvalidFormatError("environment", f"unknown environment {environment!r} (expected: dev, staging, prod)")
    return value
