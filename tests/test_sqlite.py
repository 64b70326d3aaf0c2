import io
import sqlite3

import pytest

from migradb.sqlite import Config, Sqlite, with_instance
from migradb.util import NIL_VERSION, DatabaseError, LockedError, NotLockedError

SCHEMES = ["sqlite", "sqlite3", "sqlcipher"]


def _table_names(path):
    conn = sqlite3.connect(path)
    try:
        return sorted(row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'"))
    finally:
        conn.close()


@pytest.mark.parametrize("scheme", SCHEMES)
def test_driver_cycle(tmp_path, scheme):
    db_path = tmp_path / "sqlite.db"
    with Sqlite().open(f"{scheme}://{db_path}") as driver:
        assert driver.version() == (NIL_VERSION, False)

        driver.lock()
        with pytest.raises(LockedError):
            driver.lock()
        driver.unlock()
        with pytest.raises(NotLockedError):
            driver.unlock()

        driver.run(b"CREATE TABLE t (Qty int, Name string);")
        assert "t" in _table_names(db_path)

        driver.set_version(1, False)
        assert driver.version() == (1, False)
        driver.set_version(2, True)
        assert driver.version() == (2, True)
        driver.set_version(NIL_VERSION, True)
        assert driver.version() == (NIL_VERSION, True)
        driver.set_version(NIL_VERSION, False)
        assert driver.version() == (NIL_VERSION, False)

        driver.drop()
        assert _table_names(db_path) == []
        assert driver.version() == (NIL_VERSION, False)


def test_run_accepts_file_object(tmp_path):
    db_path = tmp_path / "sqlite.db"
    with Sqlite().open(f"sqlite://{db_path}") as driver:
        driver.run(io.StringIO("CREATE TABLE u (a int);"))
    assert "u" in _table_names(db_path)


def test_with_instance_default_table(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    config = Config()
    driver = with_instance(conn, config)
    assert config.migrations_table == "schema_migrations"
    driver.set_version(5, False)
    assert driver.version() == (5, False)
    conn.close()


def test_with_instance_requires_config(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    with pytest.raises(ValueError, match="no config"):
        with_instance(conn, None)
    conn.close()


def test_migration_table(tmp_path):
    conn = sqlite3.connect(tmp_path / "sqlite.db")
    config = Config(migrations_table="my_migration_table")
    driver = with_instance(conn, config)
    driver.run("CREATE TABLE users (id int);")
    driver.set_version(1, False)
    rows = conn.execute(f"SELECT version, dirty FROM {config.migrations_table}").fetchall()
    assert rows == [(1, 0)]
    conn.close()


def test_migrations_table_from_url(tmp_path):
    db_path = tmp_path / "sqlite.db"
    with Sqlite().open(f"sqlite://{db_path}?x-migrations-table=custom_versions") as driver:
        assert driver.config.migrations_table == "custom_versions"
    assert "custom_versions" in _table_names(db_path)


@pytest.mark.parametrize("scheme", SCHEMES)
def test_no_tx_wrap(tmp_path, scheme):
    db_path = tmp_path / "sqlite.db"
    with Sqlite().open(f"{scheme}://{db_path}?x-no-tx-wrap=true") as driver:
        assert driver.config.no_tx_wrap is True
        driver.run(b"BEGIN; CREATE TABLE t (Qty int, Name string); COMMIT;")
    assert "t" in _table_names(db_path)


def test_explicit_begin_fails_with_tx_wrap(tmp_path):
    db_path = tmp_path / "sqlite.db"
    with Sqlite().open(f"sqlite://{db_path}") as driver:
        with pytest.raises(DatabaseError):
            driver.run(b"BEGIN; CREATE TABLE t (Qty int, Name string); COMMIT;")
        assert driver.version() == (NIL_VERSION, False)
    assert "t" not in _table_names(db_path)


def test_failed_migration_is_rolled_back(tmp_path):
    db_path = tmp_path / "sqlite.db"
    with Sqlite().open(f"sqlite://{db_path}") as driver:
        with pytest.raises(DatabaseError) as info:
            driver.run("CREATE TABLE a (x int); CREATE TABLEE b (y int);")
        assert "CREATE TABLEE" in info.value.query
    assert "a" not in _table_names(db_path)


@pytest.mark.parametrize("scheme", SCHEMES)
def test_no_tx_wrap_invalid_value(tmp_path, scheme):
    db_path = tmp_path / "sqlite.db"
    with pytest.raises(ValueError) as info:
        Sqlite().open(f"{scheme}://{db_path}?x-no-tx-wrap=yeppers")
    assert "x-no-tx-wrap" in str(info.value)
    assert "invalid syntax" in str(info.value)


@pytest.mark.parametrize("scheme", ["sqlite", "sqlite3"])
def test_directory_name_contains_whitespace(tmp_path, scheme):
    directory = tmp_path / "dir with space"
    directory.mkdir()
    db_path = directory / "sqlite.db"
    with Sqlite().open(f"{scheme}://file:{db_path}") as driver:
        driver.run("CREATE TABLE t (Qty int, Name string);")
        driver.set_version(3, False)
        assert driver.version() == (3, False)
    assert db_path.exists()
    assert "t" in _table_names(db_path)