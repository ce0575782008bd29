import logging
import sqlite3
from typing import List, Optional, Tuple

from .config import DATABASE_FILE, DB_CONNECTION_TIMEOUT
from .db_utils import get_optimized_connection

log = logging.getLogger("Theia.Database")


class FatalStartupError(RuntimeError):
    """The database cannot be opened or its schema needs manual repair."""


# (version, up, down). Versions are applied in order and never renumbered.
MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, '''
        CREATE TABLE IF NOT EXISTS visitor_hashes (
            hash TEXT PRIMARY KEY,
            hour_bucket INTEGER NOT NULL,
            first_seen DATETIME NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_visitor_hashes_hour_bucket ON visitor_hashes (hour_bucket);
        CREATE INDEX IF NOT EXISTS idx_visitor_hashes_first_seen ON visitor_hashes (first_seen);

        CREATE TABLE IF NOT EXISTS hourly_stats (
            hour INTEGER NOT NULL,
            year_day INTEGER NOT NULL,
            year INTEGER NOT NULL,
            path TEXT NOT NULL,
            host TEXT NOT NULL,
            page_views INTEGER DEFAULT 0,
            is_static INTEGER DEFAULT 0,
            unique_visitors INTEGER DEFAULT 0,
            bot_views INTEGER DEFAULT 0,
            PRIMARY KEY (hour, year_day, year, path, host)
        );
    ''', '''
        DROP TABLE IF EXISTS hourly_stats;
        DROP INDEX IF EXISTS idx_visitor_hashes_first_seen;
        DROP INDEX IF EXISTS idx_visitor_hashes_hour_bucket;
        DROP TABLE IF EXISTS visitor_hashes;
    '''),
    (2, '''
        CREATE TABLE IF NOT EXISTS hourly_status_codes (
            hour INTEGER NOT NULL,
            year_day INTEGER NOT NULL,
            year INTEGER NOT NULL,
            path TEXT NOT NULL,
            host TEXT NOT NULL,
            status_code INTEGER NOT NULL,
            count INTEGER DEFAULT 0,
            PRIMARY KEY (hour, year_day, year, path, host, status_code)
        );

        CREATE TABLE IF NOT EXISTS hourly_referrers (
            hour INTEGER NOT NULL,
            year_day INTEGER NOT NULL,
            year INTEGER NOT NULL,
            path TEXT NOT NULL,
            host TEXT NOT NULL,
            referrer TEXT NOT NULL,
            count INTEGER DEFAULT 0,
            PRIMARY KEY (hour, year_day, year, path, host, referrer)
        );
    ''', '''
        DROP TABLE IF EXISTS hourly_referrers;
        DROP TABLE IF EXISTS hourly_status_codes;
    '''),
]

LATEST_SCHEMA_VERSION = MIGRATIONS[-1][0]


def open_database(db_path: str = None, timeout: float = DB_CONNECTION_TIMEOUT) -> sqlite3.Connection:
    """Opens the database and checks that it answers, raising FatalStartupError otherwise."""
    db_path = db_path or DATABASE_FILE
    try:
        conn = get_optimized_connection(db_path, timeout=timeout)
        conn.execute("SELECT 1").fetchone()
    except sqlite3.Error as e:
        raise FatalStartupError(f"could not connect to database '{db_path}': {e}") from e
    return conn


def _ensure_migrations_table(conn: sqlite3.Connection):
    conn.execute('CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL, dirty INTEGER NOT NULL)')
    conn.commit()


def _set_version(conn: sqlite3.Connection, version: int, dirty: bool):
    conn.execute("DELETE FROM schema_migrations")
    conn.execute("INSERT INTO schema_migrations (version, dirty) VALUES (?, ?)", (version, int(dirty)))
    conn.commit()


def get_current_version(conn: sqlite3.Connection) -> Tuple[Optional[int], bool]:
    """Returns (version, dirty). Version is None when no migration has ever run."""
    _ensure_migrations_table(conn)
    row = conn.execute("SELECT version, dirty FROM schema_migrations LIMIT 1").fetchone()
    if row is None:
        return None, False
    return row[0], bool(row[1])


def run_migrations(conn: sqlite3.Connection, migrations: List[Tuple[int, str, str]] = None) -> int:
    """
    Applies every migration newer than the recorded version and returns the resulting version.

    The version is recorded as dirty while a migration runs, so a migration that
    fails halfway leaves the database flagged for manual repair.
    """
    migrations = migrations if migrations is not None else MIGRATIONS
    version, dirty = get_current_version(conn)
    if dirty:
        raise FatalStartupError(
            f"Database schema version {version} is in a dirty state. Manual intervention required.")

    current = version or 0
    for mig_version, up_sql, _down_sql in migrations:
        if mig_version <= current:
            continue
        log.info(f"Applying schema migration {mig_version}...")
        _set_version(conn, mig_version, dirty=True)
        try:
            conn.executescript(up_sql)
        except sqlite3.Error as e:
            raise FatalStartupError(f"could not run migration {mig_version}: {e}") from e
        _set_version(conn, mig_version, dirty=False)
        current = mig_version

    return current


def migrate_down(conn: sqlite3.Connection, migrations: List[Tuple[int, str, str]] = None):
    """Reverts every applied migration, newest first."""
    migrations = migrations if migrations is not None else MIGRATIONS
    version, dirty = get_current_version(conn)
    if version is None:
        return
    if dirty:
        raise FatalStartupError(
            f"Database schema version {version} is in a dirty state. Manual intervention required.")

    for mig_version, _up_sql, down_sql in reversed(migrations):
        if mig_version > version:
            continue
        log.info(f"Reverting schema migration {mig_version}...")
        _set_version(conn, mig_version, dirty=True)
        conn.executescript(down_sql)
        remaining = [v for v, _, _ in migrations if v < mig_version]
        if remaining:
            _set_version(conn, remaining[-1], dirty=False)
        else:
            conn.execute("DELETE FROM schema_migrations")
            conn.commit()


def init_db(db_path: str = None) -> int:
    """Opens the database, brings the schema up to date and refuses to continue on a dirty schema."""
    db_path = db_path or DATABASE_FILE
    log.info(f"Connecting to database '{db_path}' and checking schema...")
    conn = open_database(db_path)
    try:
        mode = conn.execute('PRAGMA journal_mode;').fetchone()
        if mode and mode[0].lower() == 'wal':
            log.info("Database journal mode is set to WAL.")
        else:
            log.warning(f"Failed to set database journal mode to WAL. Current mode: {mode[0] if mode else 'unknown'}")

        run_migrations(conn)

        version, dirty = get_current_version(conn)
        log.info(f"Database schema version: {version} (dirty: {dirty})")
        if dirty:
            raise FatalStartupError("Database is in a dirty state. Manual intervention required.")
        return version
    finally:
        conn.close()
