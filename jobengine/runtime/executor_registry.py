from __future__ import annotations

import threading
from typing import Iterable

from jobengine.runtime.errors import DuplicateRegistrationError, RegistryFrozenError
from jobengine.runtime.job_runner import JobExecutor


class ExecutorRegistry:
    """Job kind -> executor table, built once at startup and passed to runners by reference."""

    def __init__(self) -> None:
        self._executors: dict[str, JobExecutor] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        return self._frozen

    def register(self, kind: str, executor: JobExecutor) -> None:
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(f"Cannot register {kind!r}: executor registry is frozen.")
            existing = self._executors.get(kind)
            if existing is executor:
                return
            if existing is not None:
                raise DuplicateRegistrationError(f"An executor is already registered for kind {kind!r}.")
            self._executors[kind] = executor

    def resolve(self, kind: str) -> JobExecutor | None:
        return self._executors.get(kind)

    def registered_kinds(self) -> list[str]:
        return sorted(self._executors)

    def validate_complete(self, required_kinds: Iterable[str]) -> list[str]:
        """Return the required kinds that have no executor (empty when complete)."""
        return [k for k in required_kinds if k not in self._executors]

    def freeze(self) -> None:
        self._frozen = True
