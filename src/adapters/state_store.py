"""Persistencia JSON del registro de idempotencia.

Por qué JSON:
- Archivo de progreso legible y fácil de comparar, junto al proyecto.
- Conserva las claves heredadas `{devAccountId, stagingAccountId, prodAccountId}`
  para que los scripts que leen archivos tipo `account-ids.json` sigan funcionando.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from core.domain.errors import ValidationError
from core.domain.models import Environment
from core.interfaces.state_store import IdempotencyRecord

logger = logging.getLogger(__name__)


def _legacy_keys(record: IdempotencyRecord) -> dict[str, str]:
    out: dict[str, str] = {}
    for env in Environment.ordered():
        stored = record.accounts.get(env)
        if stored and stored.account_id:
            out[f"{env.value}AccountId"] = stored.account_id
    return out


class JsonStateStore:
    """Stores one record per file. Writes are atomic (temp file + rename)."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self, project_code: str) -> IdempotencyRecord:
        if not self._path.exists():
            return IdempotencyRecord(project_code=project_code)

        raw = self._read_json()
        try:
            record = IdempotencyRecord.model_validate(
                {k: v for k, v in raw.items() if k in IdempotencyRecord.model_fields}
            )
        except PydanticValidationError as exc:
            raise ValidationError("state_file", f"{self._path} is not a valid state record: {exc}") from exc

        if record.project_code != project_code:
            raise ValidationError(
                "state_file",
                f"{self._path} belongs to project {record.project_code}, not {project_code}",
            )
        return record

    def save(self, record: IdempotencyRecord) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = record.model_dump(mode="json")
        payload.update(_legacy_keys(record))
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
            encoding="utf-8",
        )
        os.replace(tmp, self._path)
        logger.debug("state saved to %s", self._path)

    def read_raw(self) -> dict[str, Any] | None:
        """The stored payload as-is (for `status`), or None when nothing was saved yet."""

        if not self._path.exists():
            return None
        return self._read_json()

    def _read_json(self) -> dict[str, Any]:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError("state_file", f"{self._path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValidationError("state_file", f"{self._path} does not contain a JSON object")
        return raw
