"""In-memory migration driver that records what it is asked to do."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .util import NIL_VERSION, AtomicBool, LockedError, NotLockedError

DROP = "DROP"


@dataclass
class Config:
    """Settings of the stub driver; it has none."""


@dataclass
class Stub:
    """A driver that keeps its state in memory and logs every migration run."""

    url: str = ""
    instance: Any = None
    current_version: int = 0
    migration_sequence: list[str] = field(default_factory=list)
    last_run_migration: bytes | None = None
    is_dirty: bool = False
    config: Config | None = None
    _is_locked: AtomicBool = field(default_factory=AtomicBool, repr=False, compare=False)

    def open(self, url: str) -> "Stub":
        """Return a fresh stub driver for ``url``."""
        return Stub(url=url, current_version=NIL_VERSION, config=Config())

    def close(self) -> None:
        """Nothing to release."""

    def lock(self) -> None:
        if not self._is_locked.compare_and_swap(False, True):
            raise LockedError()

    def unlock(self) -> None:
        if not self._is_locked.compare_and_swap(True, False):
            raise NotLockedError()

    def run(self, migration) -> None:
        """Record a migration given as text, bytes or a readable file object."""
        if hasattr(migration, "read"):
            migration = migration.read()
        if isinstance(migration, str):
            migration = migration.encode("utf-8")
        data = bytes(migration)
        self.last_run_migration = data
        self.migration_sequence.append(data.decode("utf-8", errors="replace"))

    def set_version(self, version: int, dirty: bool) -> None:
        self.current_version = version
        self.is_dirty = dirty

    def version(self) -> tuple[int, bool]:
        return self.current_version, self.is_dirty

    def drop(self) -> None:
        """Forget the version and log a drop in the migration sequence."""
        self.current_version = NIL_VERSION
        self.last_run_migration = None
        self.migration_sequence.append(DROP)

    def equal_sequence(self, seq) -> bool:
        """Report whether ``seq`` matches the recorded migration sequence."""
        return list(seq) == self.migration_sequence


def with_instance(instance, config: Config | None) -> Stub:
    """Build a stub driver around an arbitrary instance object."""
    return Stub(instance=instance, current_version=NIL_VERSION, config=config)