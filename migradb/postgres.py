"""PostgreSQL migration driver working over any DB-API connection."""

from __future__ import annotations

import contextlib
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator
from urllib.parse import parse_qs, unquote, urlsplit

from .util import (
    NIL_VERSION,
    AtomicBool,
    DatabaseError,
    LockedError,
    NotLockedError,
    cas_restore_on_err,
    filter_custom_query,
    generate_advisory_lock_id,
    parse_bool,
)

DEFAULT_MIGRATIONS_TABLE = "schema_migrations"
DEFAULT_MULTI_STATEMENT_MAX_SIZE = 10 << 20

_MULTI_STATEMENT_DELIMITER = ";"
_UNDEFINED_TABLE_CODES = frozenset({"42P01", "undefined_table"})
_QUOTED_NAME = re.compile(r'"(.*?)"')


@dataclass
class Config:
    """Settings of a PostgreSQL driver."""

    migrations_table: str = ""
    migrations_table_quoted: bool = False
    multi_statement_enabled: bool = False
    database_name: str = ""
    schema_name: str = ""
    statement_timeout: float = 0.0
    multi_statement_max_size: int = DEFAULT_MULTI_STATEMENT_MAX_SIZE
    paramstyle: str = "format"
    migrations_schema_name: str = field(default="", init=False)
    migrations_table_name: str = field(default="", init=False)


def compute_line_from_pos(s: str, pos: int) -> tuple[int, int, bool]:
    """Turn a 1-based character position into (line, column, ok)."""
    s = s.replace("\r\n", "\n")
    if pos > len(s):
        return 0, 0, False
    selected = s[:pos]
    line = selected.count("\n") + 1
    col = pos - 1 - selected.rfind("\n")
    return line, col, True


def quote_identifier(name: str) -> str:
    """Quote ``name`` as a PostgreSQL identifier."""
    name = name.split("\x00", 1)[0]
    return '"' + name.replace('"', '""') + '"'


def parse_url(url: str) -> tuple[str, Config]:
    """Split a connection URL into the DSN to connect with and driver settings."""
    parsed = urlsplit(url)
    options = parse_qs(parsed.query, keep_blank_values=True)

    def option(name: str) -> str:
        return options.get(name, [""])[0]

    migrations_table = option("x-migrations-table")
    quoted = False
    raw = option("x-migrations-table-quoted")
    if raw:
        try:
            quoted = parse_bool(raw)
        except ValueError as exc:
            raise ValueError(f"Unable to parse option x-migrations-table-quoted: {exc}") from exc
    if migrations_table and quoted and not (
        migrations_table.startswith('"') and migrations_table.endswith('"')
    ):
        raise ValueError(
            "x-migrations-table must be quoted (for instance "
            "'\"migrate\".\"schema_migrations\"') when x-migrations-table-quoted is "
            f"enabled, current value is: {migrations_table}"
        )

    timeout_ms = 0
    raw = option("x-statement-timeout")
    if raw:
        timeout_ms = int(raw)

    max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE
    raw = option("x-multi-statement-max-size")
    if raw:
        max_size = int(raw)
        if max_size <= 0:
            max_size = DEFAULT_MULTI_STATEMENT_MAX_SIZE

    multi = False
    raw = option("x-multi-statement")
    if raw:
        try:
            multi = parse_bool(raw)
        except ValueError as exc:
            raise ValueError(f"Unable to parse option x-multi-statement: {exc}") from exc

    config = Config(
        database_name=unquote(parsed.path),
        migrations_table=migrations_table,
        migrations_table_quoted=quoted,
        statement_timeout=timeout_ms / 1000.0,
        multi_statement_enabled=multi,
        multi_statement_max_size=max_size,
    )
    return filter_custom_query(url), config


def _split_statements(text: str, delimiter: str, max_size: int) -> Iterator[str]:
    """Yield statements ending with ``delimiter``, plus any trailing remainder."""
    start = 0
    while start < len(text):
        end = text.find(delimiter, start)
        end = len(text) if end < 0 else end + len(delimiter)
        statement = text[start:end]
        if len(statement.encode("utf-8")) > max_size:
            raise ValueError("statement exceeds the maximum multi-statement size")
        yield statement
        start = end


def _error_details(exc: BaseException) -> tuple[str | None, str, str]:
    """Extract (message, position, detail) from a server error, if it has them."""
    diag = getattr(exc, "diag", None)
    message = getattr(exc, "message", None)
    if message is None and diag is not None:
        message = getattr(diag, "message_primary", None)
    position = getattr(exc, "position", None)
    if position is None and diag is not None:
        position = getattr(diag, "statement_position", None)
    detail = getattr(exc, "detail", None)
    if detail is None and diag is not None:
        detail = getattr(diag, "message_detail", None)
    return message, "" if position is None else str(position), detail or ""


def _error_code(exc: BaseException) -> str:
    code = getattr(exc, "pgcode", None) or getattr(exc, "code", None)
    if code is None:
        diag = getattr(exc, "diag", None)
        code = getattr(diag, "sqlstate", None) if diag is not None else None
    return str(code) if code is not None else ""


def _as_text(migration) -> str:
    if hasattr(migration, "read"):
        migration = migration.read()
    if isinstance(migration, (bytes, bytearray)):
        migration = bytes(migration).decode("utf-8")
    return migration


class Postgres:
    """Applies migrations to a PostgreSQL database and tracks its version."""

    def __init__(
        self,
        connector: Callable[[str], object] | None = None,
        *,
        connection=None,
        config: Config | None = None,
    ):
        self._connector = connector
        self._conn = connection
        self.config = config if config is not None else Config()
        self._is_locked = AtomicBool(False)

    def __enter__(self) -> "Postgres":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _placeholder(self, index: int) -> str:
        style = self.config.paramstyle
        if style in ("format", "pyformat"):
            return "%s"
        if style == "qmark":
            return "?"
        if style == "numeric":
            return f":{index}"
        if style == "dollar":
            return f"${index}"
        raise ValueError(f"unsupported paramstyle: {style}")

    def _table(self) -> str:
        return (
            quote_identifier(self.config.migrations_schema_name)
            + "."
            + quote_identifier(self.config.migrations_table_name)
        )

    def _execute(self, query: str, params=None, fetch: str | None = None):
        with contextlib.closing(self._conn.cursor()) as cursor:
            if params is None:
                cursor.execute(query)
            else:
                cursor.execute(query, params)
            if fetch == "one":
                return cursor.fetchone()
            if fetch == "all":
                return cursor.fetchall()
            return None

    def _rollback(self) -> None:
        with contextlib.suppress(Exception):
            self._conn.rollback()

    def _autocommit(self, query: str, params=None, fetch: str | None = None):
        try:
            result = self._execute(query, params, fetch)
            self._conn.commit()
        except Exception:
            self._rollback()
            raise
        return result

    def open(self, url: str) -> "Postgres":
        """Connect to the database named by ``url`` and return a driver for it."""
        if self._connector is None:
            raise RuntimeError("no connector configured to open a PostgreSQL connection")
        dsn, config = parse_url(url)
        connection = self._connector(dsn)
        try:
            driver = with_instance(connection, config)
        except BaseException:
            with contextlib.suppress(Exception):
                connection.close()
            raise
        driver._connector = self._connector
        return driver

    def close(self) -> None:
        try:
            self._conn.close()
        except Exception as exc:
            raise RuntimeError(f"conn: {exc}") from exc

    def _lock_id(self) -> int:
        return int(
            generate_advisory_lock_id(
                self.config.database_name,
                self.config.migrations_schema_name,
                self.config.migrations_table_name,
            )
        )

    def lock(self) -> None:
        """Take a session-level advisory lock, waiting until it is granted."""

        def acquire() -> None:
            query = f"SELECT pg_advisory_lock({self._placeholder(1)})"
            try:
                self._autocommit(query, (self._lock_id(),))
            except Exception as exc:
                raise DatabaseError(orig_err=exc, err="try lock failed", query=query) from exc

        cas_restore_on_err(self._is_locked, False, True, LockedError(), acquire)

    def unlock(self) -> None:
        """Release the advisory lock taken by :meth:`lock`."""

        def release() -> None:
            query = f"SELECT pg_advisory_unlock({self._placeholder(1)})"
            try:
                self._autocommit(query, (self._lock_id(),))
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=query) from exc

        cas_restore_on_err(self._is_locked, True, False, NotLockedError(), release)

    def run(self, migration) -> None:
        """Execute a migration given as text, bytes or a readable file object."""
        text = _as_text(migration)
        if not self.config.multi_statement_enabled:
            self._run_statement(text)
            return
        for statement in _split_statements(
            text, _MULTI_STATEMENT_DELIMITER, self.config.multi_statement_max_size
        ):
            self._run_statement(statement)

    def _run_statement(self, query: str) -> None:
        if not query.strip():
            return
        timer = None
        if self.config.statement_timeout and hasattr(self._conn, "cancel"):
            timer = threading.Timer(self.config.statement_timeout, self._conn.cancel)
            timer.daemon = True
            timer.start()
        try:
            self._autocommit(query)
        except Exception as exc:
            raise self._migration_error(exc, query) from exc
        finally:
            if timer is not None:
                timer.cancel()

    @staticmethod
    def _migration_error(exc: Exception, query: str) -> DatabaseError:
        message, position, detail = _error_details(exc)
        if message is None:
            return DatabaseError(orig_err=exc, err="migration failed", query=query)
        line, col, ok = 0, 0, False
        if position.isdigit():
            line, col, ok = compute_line_from_pos(query, int(position))
        text = f"migration failed: {message}"
        if ok:
            text = f"{text} (column {col})"
        if detail:
            text = f"{text}, {detail}"
        return DatabaseError(orig_err=exc, err=text, query=query, line=line)

    def set_version(self, version: int, dirty: bool) -> None:
        """Replace the recorded version with ``version`` in one transaction."""
        query = "TRUNCATE " + self._table()
        try:
            self._execute(query)
            if version >= 0 or (version == NIL_VERSION and dirty):
                query = (
                    f"INSERT INTO {self._table()} (version, dirty) VALUES "
                    f"({self._placeholder(1)}, {self._placeholder(2)})"
                )
                self._execute(query, (version, bool(dirty)))
        except Exception as exc:
            self._rollback()
            raise DatabaseError(orig_err=exc, query=query) from exc
        try:
            self._conn.commit()
        except Exception as exc:
            raise DatabaseError(orig_err=exc, err="transaction commit failed") from exc

    def version(self) -> tuple[int, bool]:
        """Return the recorded version and dirty flag, or NIL_VERSION if none."""
        query = f"SELECT version, dirty FROM {self._table()} LIMIT 1"
        try:
            row = self._autocommit(query, fetch="one")
        except Exception as exc:
            if _error_code(exc) in _UNDEFINED_TABLE_CODES:
                return NIL_VERSION, False
            raise DatabaseError(orig_err=exc, query=query) from exc
        if row is None:
            return NIL_VERSION, False
        return int(row[0]), bool(row[1])

    def drop(self) -> None:
        """Drop every base table in the current schema."""
        query = (
            "SELECT table_name FROM information_schema.tables WHERE "
            "table_schema=(SELECT current_schema()) AND table_type='BASE TABLE'"
        )
        try:
            rows = self._autocommit(query, fetch="all")
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query) from exc

        for name in [row[0] for row in rows if row[0]]:
            query = f"DROP TABLE IF EXISTS {quote_identifier(name)} CASCADE"
            try:
                self._autocommit(query)
            except Exception as exc:
                raise DatabaseError(orig_err=exc, query=query) from exc

    def _ping(self) -> None:
        self._autocommit("SELECT 1", fetch="one")

    def _query_name(self, query: str, missing: str) -> str:
        try:
            row = self._autocommit(query, fetch="one")
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query) from exc
        name = row[0] if row else ""
        if not name:
            raise ValueError(missing)
        return name

    def _ensure_version_table(self) -> None:
        self.lock()
        try:
            self._create_version_table()
        except BaseException:
            with contextlib.suppress(Exception):
                self.unlock()
            raise
        self.unlock()

    def _create_version_table(self) -> None:
        query = (
            "SELECT COUNT(1) FROM information_schema.tables WHERE table_schema = "
            f"{self._placeholder(1)} AND table_name = {self._placeholder(2)} LIMIT 1"
        )
        params = (self.config.migrations_schema_name, self.config.migrations_table_name)
        try:
            row = self._autocommit(query, params, fetch="one")
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query) from exc
        if row is not None and int(row[0]) == 1:
            return

        query = (
            f"CREATE TABLE IF NOT EXISTS {self._table()} "
            "(version bigint not null primary key, dirty boolean not null)"
        )
        try:
            self._autocommit(query)
        except Exception as exc:
            raise DatabaseError(orig_err=exc, query=query) from exc


def with_instance(connection, config: Config | None) -> Postgres:
    """Build a driver on an open DB-API connection, creating the version table."""
    if config is None:
        raise ValueError("no config")

    driver = Postgres(connection=connection, config=config)
    driver._ping()

    if not config.database_name:
        config.database_name = driver._query_name(
            "SELECT CURRENT_DATABASE()", "no database name"
        )
    if not config.schema_name:
        config.schema_name = driver._query_name("SELECT CURRENT_SCHEMA()", "no schema")
    if not config.migrations_table:
        config.migrations_table = DEFAULT_MIGRATIONS_TABLE

    config.migrations_schema_name = config.schema_name
    config.migrations_table_name = config.migrations_table
    if config.migrations_table_quoted:
        names = _QUOTED_NAME.findall(config.migrations_table)
        if not names:
            raise ValueError(f'"{config.migrations_table}" MigrationsTable is not quoted')
        if len(names) > 2:
            raise ValueError(
                f'"{config.migrations_table}" MigrationsTable contains too many dot characters'
            )
        config.migrations_table_name = names[-1]
        if len(names) == 2:
            config.migrations_schema_name = names[0]

    driver._ensure_version_table()
    return driver