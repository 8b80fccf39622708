"""
Schema migrations for datasette-quote-intake.

Each migration is a numbered SQL file next to this module
(e.g. ``0002_kv_store.sql``) and is applied once, in version order.
Applied versions are tracked in ``schema_migrations``.
"""

import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_NAME = re.compile(r"^(\d{4})_\w+\.sql$")


def list_migrations() -> list[tuple[int, Path]]:
    """Return (version, path) pairs for every migration file, oldest first."""
    found = []
    for path in MIGRATIONS_DIR.glob("*.sql"):
        match = MIGRATION_NAME.match(path.name)
        if match:
            found.append((int(match.group(1)), path))
    return sorted(found)


def applied_versions(conn: sqlite3.Connection) -> set[int]:
    """Versions already recorded in schema_migrations."""
    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    return {row[0] for row in rows}


def run_migrations(db_path: Path, verbose: bool = True) -> list[int]:
    """
    Bring the database at ``db_path`` up to the latest schema.

    Creates the file (and parent directory) when missing. Safe to call on
    every startup. Returns the versions applied by this call.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    applied: list[int] = []
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_ts TEXT NOT NULL
            )
            """
        )
        conn.commit()

        done = applied_versions(conn)
        for version, path in list_migrations():
            if version in done:
                continue
            if verbose:
                print(f"  Applying migration {version}: {path.name}")
            conn.executescript(path.read_text())
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_ts) VALUES (?, ?)",
                (version, datetime.now(UTC).isoformat()),
            )
            conn.commit()
            applied.append(version)

        if verbose and not applied:
            print("  Schema is up to date.")
    finally:
        conn.close()

    return applied


def current_version(db_path: Path) -> int:
    """Highest applied migration version, 0 for a missing database."""
    db_path = Path(db_path)
    if not db_path.exists():
        return 0
    conn = sqlite3.connect(db_path)
    try:
        versions = applied_versions(conn)
    except sqlite3.OperationalError:
        return 0
    finally:
        conn.close()
    return max(versions, default=0)
