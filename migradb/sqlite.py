"""SQLite migration driver, serving the sqlite, sqlite3 and sqlcipher schemes."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from urllib.parse import parse_qs, quote, urlsplit

from .util import (
    NIL_VERSION,
    AtomicBool,
    DatabaseError,
    LockedError,
    NotLockedError,
    filter_custom_query,
    parse_bool,
)

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"

_SCHEME_PREFIXES = ("sqlite://", "sqlite3://", "sqlcipher://")


@dataclass
class Config:
    """Settings of a SQLite driver."""

    migrations_table: str = ""
    database_name: str = ""
    no_tx_wrap: bool = False


def _connect(dbfile: str) -> sqlite3.Connection:
    if dbfile.startswith("file:"):
        return sqlite3.connect(dbfile, uri=True, isolation_level=None)
    path, _, query = dbfile.partition("?")
    if not query:
        return sqlite3.connect(path, isolation_level=None)
    return sqlite3.connect(f"file:{quote(path)}?{query}", uri=True, isolation_level=None)


class Sqlite:
    """Applies migrations to a SQLite database and tracks its version."""

    def __init__(self, db: sqlite3.Connection | None = None, config: Config | None = None):
        self._db = db
        self.config = config if config is not None else Config()
        self._is_locked = AtomicBool(False)

    def __enter__(self) -> "Sqlite":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _ensure_version_table(self) -> None:
        self.lock()
        try:
            table = self.config.migrations_table
            self._db.executescript(
                f"CREATE TABLE IF NOT EXISTS {table} (version uint64,dirty bool);\n"
                f"CREATE UNIQUE INDEX IF NOT EXISTS version_unique ON {table} (version);\n"
            )
        finally:
            self.unlock()

    def open(self, url: str) -> "Sqlite":
        """Open the database named by ``url`` and return a driver for it."""
        parsed = urlsplit(url)
        options = parse_qs(parsed.query, keep_blank_values=True)

        migrations_table = options.get("x-migrations-table", [""])[0] or DEFAULT_MIGRATIONS_TABLE

        no_tx_wrap = False
        raw = options.get("x-no-tx-wrap", [""])[0]
        if raw:
            try:
                no_tx_wrap = parse_bool(raw)
            except ValueError as exc:
                raise ValueError(f"x-no-tx-wrap: {exc}") from exc

        dbfile = filter_custom_query(url)
        for prefix in _SCHEME_PREFIXES:
            if dbfile.startswith(prefix):
                dbfile = dbfile[len(prefix):]
                break

        db = _connect(dbfile)
        try:
            return with_instance(
                db,
                Config(
                    database_name=parsed.path,
                    migrations_table=migrations_table,
                    no_tx_wrap=no_tx_wrap,
                ),
            )
        except BaseException:
            db.close()
            raise

    def close(self) -> None:
        self._db.close()

    def drop(self) -> None:
        """Drop every table in the database, then vacuum it."""
        query = "SELECT name FROM sqlite_master WHERE type = 'table';"
        try:
            names = [row[0] for row in self._db.execute(query).fetchall() if row[0]]
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, query=query) from exc

        if not names:
            return
        for name in names:
            self._execute_query("DROP TABLE " + name)
        try:
            self._db.execute("VACUUM")
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, query="VACUUM") from exc

    def lock(self) -> None:
        if not self._is_locked.compare_and_swap(False, True):
            raise LockedError()

    def unlock(self) -> None:
        if not self._is_locked.compare_and_swap(True, False):
            raise NotLockedError()

    def run(self, migration) -> None:
        """Execute a migration given as text, bytes or a readable file object."""
        if hasattr(migration, "read"):
            migration = migration.read()
        if isinstance(migration, bytes):
            migration = migration.decode("utf-8")
        if self.config.no_tx_wrap:
            self._execute_query_no_tx(migration)
        else:
            self._execute_query(migration)

    def _rollback(self) -> None:
        if self._db.in_transaction:
            self._db.execute("ROLLBACK")

    def _execute_query(self, query: str) -> None:
        try:
            self._db.executescript(f"BEGIN;\n{query}\n;COMMIT;")
        except sqlite3.Error as exc:
            self._rollback()
            raise DatabaseError(orig_err=exc, query=query) from exc

    def _execute_query_no_tx(self, query: str) -> None:
        try:
            self._db.executescript(query)
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, query=query) from exc

    def set_version(self, version: int, dirty: bool) -> None:
        """Record ``version`` and its dirty flag as the only row of the table."""
        table = self.config.migrations_table
        if self._db.in_transaction:
            self._db.commit()
        try:
            self._db.execute("BEGIN")
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, err="transaction start failed") from exc

        query = "DELETE FROM " + table
        try:
            self._db.execute(query)
            if version >= 0 or (version == NIL_VERSION and dirty):
                query = f"INSERT INTO {table} (version, dirty) VALUES (?, ?)"
                self._db.execute(query, (version, bool(dirty)))
        except sqlite3.Error as exc:
            self._rollback()
            raise DatabaseError(orig_err=exc, query=query) from exc

        try:
            self._db.execute("COMMIT")
        except sqlite3.Error as exc:
            raise DatabaseError(orig_err=exc, err="transaction commit failed") from exc

    def version(self) -> tuple[int, bool]:
        """Return the recorded version and dirty flag, or NIL_VERSION if none."""
        query = f"SELECT version, dirty FROM {self.config.migrations_table} LIMIT 1"
        try:
            row = self._db.execute(query).fetchone()
        except sqlite3.Error:
            return NIL_VERSION, False
        if row is None:
            return NIL_VERSION, False
        return int(row[0]), bool(row[1])


def with_instance(instance: sqlite3.Connection, config: Config | None) -> Sqlite:
    """Build a driver on an open connection, creating the version table if needed."""
    if config is None:
        raise ValueError("no config")

    instance.execute("SELECT 1")

    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE

    driver = Sqlite(instance, config)
    driver._ensure_version_table()
    return driver