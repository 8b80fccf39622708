"""Unit tests for database schema and migrations."""

import sqlite3

import pytest

from datasette_quote_intake.migrations import current_version, list_migrations, run_migrations


def table_names(db_path) -> set[str]:
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    finally:
        conn.close()
    return {row[0] for row in rows}


def test_migrations_are_numbered_in_order():
    versions = [version for version, _ in list_migrations()]
    assert versions == sorted(versions)
    assert versions[:2] == [1, 2]


def test_fresh_database_gets_full_schema(tmp_path):
    db_path = tmp_path / "nested" / "intake.db"

    applied = run_migrations(db_path, verbose=False)

    assert applied == [version for version, _ in list_migrations()]
    assert {"quote_requests", "quotes", "kv_entries", "audit_log", "schema_migrations"} <= (
        table_names(db_path)
    )
    assert current_version(db_path) == applied[-1]


def test_migrations_are_idempotent(db_path):
    before = current_version(db_path)
    assert run_migrations(db_path, verbose=False) == []
    assert current_version(db_path) == before


def test_current_version_of_missing_database(tmp_path):
    assert current_version(tmp_path / "missing.db") == 0


def test_current_version_of_unmigrated_database(tmp_path):
    db_path = tmp_path / "plain.db"
    sqlite3.connect(db_path).close()
    assert current_version(db_path) == 0


def test_verbose_output(tmp_path, capsys):
    db_path = tmp_path / "intake.db"
    run_migrations(db_path)
    assert "Applying migration 1" in capsys.readouterr().out
    run_migrations(db_path)
    assert "Schema is up to date." in capsys.readouterr().out


@pytest.mark.parametrize(
    "column,value",
    [("status", "archived"), ("service_type", "catering"), ("locale", "de")],
)
def test_request_check_constraints(db_path, column, value):
    row = {
        "request_id": "r1",
        "created_ts": "2025-01-01T00:00:00+00:00",
        "contact_email": "a@example.nl",
        "contact_name": "Anna",
        "service_type": "website",
        "description": "Nieuwe website",
        column: value,
    }
    conn = sqlite3.connect(db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                f"INSERT INTO quote_requests ({', '.join(row)}) "
                f"VALUES ({', '.join('?' for _ in row)})",
                tuple(row.values()),
            )
    finally:
        conn.close()
