"""Shared helpers for database drivers: errors, locking and URL handling."""

from __future__ import annotations

import threading
import zlib
from typing import Callable
from urllib.parse import parse_qsl, urlencode

NIL_VERSION = -1

_ADVISORY_LOCK_ID_SALT = 1486364155

_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


class DatabaseError(Exception):
    """A failure reported by a database driver, carrying the offending query."""

    def __init__(self, orig_err=None, err: str = "", query: str | bytes = "", line: int = 0):
        if isinstance(query, bytes):
            query = query.decode("utf-8", errors="replace")
        self.orig_err = orig_err
        self.err = err
        self.query = query
        self.line = line
        super().__init__(str(self))

    def __str__(self) -> str:
        orig = "<nil>" if self.orig_err is None else str(self.orig_err)
        if not self.err:
            return f"{orig} in line {self.line}: {self.query}"
        return f"{self.err} in line {self.line}: {self.query} (details: {orig})"


class LockedError(Exception):
    """Raised when a lock is requested that is already held."""

    def __init__(self, message: str = "can't acquire lock"):
        super().__init__(message)


class NotLockedError(Exception):
    """Raised when releasing a lock that is not held."""

    def __init__(self, message: str = "can't unlock, as not currently locked"):
        super().__init__(message)


class AtomicBool:
    """A boolean flag whose updates are atomic across threads."""

    def __init__(self, value: bool = False):
        self._value = bool(value)
        self._mutex = threading.Lock()

    def load(self) -> bool:
        with self._mutex:
            return self._value

    def store(self, value: bool) -> None:
        with self._mutex:
            self._value = bool(value)

    def compare_and_swap(self, old: bool, new: bool) -> bool:
        """Set the flag to ``new`` if it equals ``old``; report whether it did."""
        with self._mutex:
            if self._value != old:
                return False
            self._value = bool(new)
            return True


def generate_advisory_lock_id(database_name: str, *args: str) -> str:
    """Derive a numeric advisory lock id from a database name and extra names."""
    if args:
        database_name = "\x00".join([*args, database_name])
    checksum = zlib.crc32(database_name.encode("utf-8")) & 0xFFFFFFFF
    return str((checksum * _ADVISORY_LOCK_ID_SALT) & 0xFFFFFFFF)


def cas_restore_on_err(
    lock: AtomicBool,
    old: bool,
    new: bool,
    cas_err,
    func: Callable[[], object],
) -> None:
    """Swap ``lock`` from ``old`` to ``new`` and run ``func``.

    Raises ``cas_err`` if the swap fails; restores ``old`` if ``func`` raises.
    """
    if not lock.compare_and_swap(old, new):
        raise cas_err
    try:
        func()
    except BaseException:
        lock.store(old)
        raise


def parse_bool(value: str) -> bool:
    """Parse a boolean the way URL options spell it (1, t, true, 0, f, false...)."""
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f'strconv.ParseBool: parsing "{value}": invalid syntax')


def filter_custom_query(url: str) -> str:
    """Return ``url`` without query parameters whose names start with ``x-``."""
    rest, hash_mark, fragment = url.partition("#")
    base, _, query = rest.partition("?")
    pairs = [
        (key, value)
        for key, value in parse_qsl(query, keep_blank_values=True)
        if not key.startswith("x-")
    ]
    pairs.sort(key=lambda pair: pair[0])
    result = base
    if pairs:
        result += "?" + urlencode(pairs)
    if hash_mark:
        result += "#" + fragment
    return result