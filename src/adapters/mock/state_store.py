"""In-memory idempotency store for dry runs and tests."""

from __future__ import annotations

from core.interfaces.state_store import IdempotencyRecord


class InMemoryStateStore:
    def __init__(self) -> None:
        self._records: dict[str, IdempotencyRecord] = {}
        self.saves = 0

    def load(self, project_code: str) -> IdempotencyRecord:
        stored = self._records.get(project_code)
        if stored is None:
            return IdempotencyRecord(project_code=project_code)
        return stored.model_copy(deep=True)

    def save(self, record: IdempotencyRecord) -> None:
        self._records[record.project_code] = record.model_copy(deep=True)
        self.saves += 1
