"""Operation log and fault injection shared by the mock adapters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from core.domain.errors import ProvisioningError


@dataclass(frozen=True)
class Operation:
    """One recorded provider call."""

    name: str
    target: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    outcome: str = "ok"

    def __str__(self) -> str:
        args = ", ".join(f"{k}={v}" for k, v in self.details.items())
        target = f"[{self.target}]" if self.target else ""
        return f"{self.name}{target}({args}) -> {self.outcome}"


@dataclass
class _Fault:
    operation: str
    target: str | None
    error: Callable[[], ProvisioningError]
    remaining: int | None


class OperationLog:
    """Thread-safe, append-only list of operations plus injectable failures."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operations: list[Operation] = []
        self._faults: list[_Fault] = []

    def record(self, operation: Operation) -> None:
        with self._lock:
            self._operations.append(operation)

    @property
    def operations(self) -> tuple[Operation, ...]:
        with self._lock:
            return tuple(self._operations)

    def names(self, target: str | None = None) -> list[str]:
        return [op.name for op in self.operations if target is None or op.target == target]

    def calls(self, name: str, target: str | None = None) -> list[Operation]:
        return [op for op in self.operations if op.name == name and (target is None or op.target == target)]

    def for_target(self, target: str) -> list[Operation]:
        return [op for op in self.operations if op.target == target]

    def clear(self) -> None:
        with self._lock:
            self._operations.clear()

    def fail_on(
        self,
        operation: str,
        error: Callable[[], ProvisioningError],
        *,
        target: str | None = None,
        times: int | None = None,
    ) -> None:
        """Make `operation` (optionally only for `target`) raise `error()`.

        `times=None` fails until `clear_faults()`; otherwise only the next `times` calls.
        """

        with self._lock:
            self._faults.append(_Fault(operation, target, error, times))

    def clear_faults(self) -> None:
        with self._lock:
            self._faults.clear()

    def check_fault(self, operation: str, target: str | None) -> ProvisioningError | None:
        with self._lock:
            for fault in self._faults:
                if fault.operation != operation:
                    continue
                if fault.target is not None and fault.target != target:
                    continue
                if fault.remaining is not None:
                    if fault.remaining <= 0:
                        continue
                    fault.remaining -= 1
                return fault.error()
        return None
