"""
Aggregate store for classified visits.

Every event touches four tables: visitor_hashes (first-seen fingerprints),
hourly_stats, hourly_status_codes and hourly_referrers. Each table is written
with its own statement and commit. A failing step is logged and the event is
lost for that table only; the remaining steps still run.
"""

import contextlib
import datetime
import logging
import sqlite3
from typing import Dict

from .config import (DB_CONNECTION_TIMEOUT, DB_MAX_RETRIES, DB_RETRY_BASE_DELAY,
                     DB_RETRY_MAX_DELAY)
from .db_utils import get_optimized_connection, retry_on_db_lock
from .log_processor import VisitEvent

log = logging.getLogger("Theia.AggregationStore")

AGGREGATE_TABLES = ("hourly_stats", "hourly_status_codes", "hourly_referrers")
FIRST_SEEN_FORMAT = "%Y-%m-%d %H:%M:%S"

_db_retry = retry_on_db_lock(max_attempts=DB_MAX_RETRIES, base_delay=DB_RETRY_BASE_DELAY,
                             max_delay=DB_RETRY_MAX_DELAY)


class StoreError(Exception):
    """Base class for failures talking to the aggregate store."""


class StoreReadError(StoreError):
    """A lookup failed for a reason other than the row not existing."""


class StoreWriteError(StoreError):
    """An insert, upsert or delete failed."""


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class AggregationStore:
    """Owns all writes to the aggregate tables of one SQLite database."""

    def __init__(self, db_path: str, timeout: float = DB_CONNECTION_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_optimized_connection(self.db_path, timeout=self.timeout)

    @staticmethod
    def _describe(event: VisitEvent) -> str:
        return f"path={event.path!r} host={event.host!r} visitor={event.fingerprint[:12]}"

    # --- Reads ---

    @_db_retry
    def _fingerprint_exists(self, conn: sqlite3.Connection, fingerprint: str) -> bool:
        row = conn.execute("SELECT hash FROM visitor_hashes WHERE hash = ?", (fingerprint,)).fetchone()
        return row is not None

    @_db_retry
    def _count_hour_bucket(self, conn: sqlite3.Connection, hour: int) -> int:
        # Hour-of-day only: visitors from different days sharing an hour are counted together
        row = conn.execute("SELECT COUNT(hash) FROM visitor_hashes WHERE hour_bucket = ?", (hour,)).fetchone()
        return row[0] if row else 0

    # --- Writes ---

    @_db_retry
    def _insert_fingerprint(self, conn: sqlite3.Connection, event: VisitEvent, first_seen: datetime.datetime):
        conn.execute(
            "INSERT INTO visitor_hashes (hash, hour_bucket, first_seen) VALUES (?, ?, ?)",
            (event.fingerprint, event.hour, first_seen.strftime(FIRST_SEEN_FORMAT)))
        conn.commit()

    @_db_retry
    def _upsert_hourly_stats(self, conn: sqlite3.Connection, event: VisitEvent, unique_visitors: int):
        page_view_increment = 0 if event.is_bot else 1
        bot_view_increment = 1 if event.is_bot else 0
        conn.execute('''
            INSERT INTO hourly_stats (hour, year_day, year, path, host, page_views, is_static, unique_visitors, bot_views)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(hour, year_day, year, path, host) DO UPDATE SET
                page_views = page_views + ?,
                unique_visitors = ?,
                bot_views = bot_views + ?
        ''', (event.hour, event.year_day, event.year, event.path, event.host,
              page_view_increment, int(event.is_static), unique_visitors, bot_view_increment,
              page_view_increment, unique_visitors, bot_view_increment))
        conn.commit()

    @_db_retry
    def _upsert_status_code(self, conn: sqlite3.Connection, event: VisitEvent):
        conn.execute('''
            INSERT INTO hourly_status_codes (hour, year_day, year, path, host, status_code, count)
            VALUES (?, ?, ?, ?, ?, ?, 1)
            ON CONFLICT(hour, year_day, year, path, host, status_code) DO UPDATE SET
                count = count + 1
        ''', (event.hour, event.year_day, event.year, event.path, event.host, event.status_code))
        conn.commit()

    @_db_retry
    def _upsert_referrer(self, conn: sqlite3.Connection, event: VisitEvent):
        conn.execute('''
            INSERT INTO hourly_referrers (hour, year_day, year, path, host, referrer, count)
            VALUES (?, ?, ?, ?, ?, ?, 1)
            ON CONFLICT(hour, year_day, year, path, host, referrer) DO UPDATE SET
                count = count + 1
        ''', (event.hour, event.year_day, event.year, event.path, event.host, event.referrer))
        conn.commit()

    def lookup_fingerprint(self, conn: sqlite3.Connection, fingerprint: str) -> bool:
        try:
            return self._fingerprint_exists(conn, fingerprint)
        except sqlite3.Error as e:
            raise StoreReadError(f"could not look up visitor hash: {e}") from e

    def count_unique_visitors(self, conn: sqlite3.Connection, hour: int) -> int:
        try:
            return self._count_hour_bucket(conn, hour)
        except sqlite3.Error as e:
            raise StoreReadError(f"could not count visitors for hour {hour}: {e}") from e

    def _write(self, conn: sqlite3.Connection, table: str, step, event: VisitEvent, *args):
        try:
            step(conn, event, *args)
        except (sqlite3.Error, OverflowError) as e:
            conn.rollback()
            raise StoreWriteError(f"unable to write {table}: {e}") from e

    def _run_step(self, conn: sqlite3.Connection, table: str, step, event: VisitEvent, *args) -> bool:
        try:
            self._write(conn, table, step, event, *args)
            return True
        except StoreWriteError as e:
            log.error(f"{e} (dropped {self._describe(event)})")
            return False

    def apply(self, event: VisitEvent, now: datetime.datetime = None) -> Dict[str, bool]:
        """
        Folds one visit into the aggregate tables.

        Returns a mapping of table name to whether that table was written. A
        visitor already seen counts as written for visitor_hashes.
        """
        now = now or utc_now()
        results = {}
        with contextlib.closing(self._connect()) as conn:
            # 1. Visitor accounting
            try:
                seen = self.lookup_fingerprint(conn, event.fingerprint)
            except StoreReadError as e:
                log.error(f"{e} ({self._describe(event)})")
                seen = None

            if seen is False:
                results["visitor_hashes"] = self._run_step(
                    conn, "visitor_hashes", self._insert_fingerprint, event, now)
            else:
                results["visitor_hashes"] = seen is True

            # 2. Unique-visitor snapshot for the event's hour of day
            try:
                unique_visitors = self.count_unique_visitors(conn, event.hour)
            except StoreReadError as e:
                log.error(f"{e} ({self._describe(event)})")
                unique_visitors = 0

            # 3-5. Hourly aggregates
            results["hourly_stats"] = self._run_step(
                conn, "hourly_stats", self._upsert_hourly_stats, event, unique_visitors)
            results["hourly_status_codes"] = self._run_step(
                conn, "hourly_status_codes", self._upsert_status_code, event)
            results["hourly_referrers"] = self._run_step(
                conn, "hourly_referrers", self._upsert_referrer, event)

        log.debug(f"Applied visit {self._describe(event)} at hour {event.hour}: {results}")
        return results

    # --- Retention ---

    @_db_retry
    def _delete_aggregates(self, table: str, cutoff_year: int, cutoff_year_day: int) -> int:
        with contextlib.closing(self._connect()) as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE year < ? OR (year = ? AND year_day < ?)",
                (cutoff_year, cutoff_year, cutoff_year_day))
            conn.commit()
            return cursor.rowcount

    def delete_older_than(self, table: str, cutoff: datetime.date) -> int:
        """
        Deletes aggregate rows dated before cutoff and returns how many went.

        Rows are compared on (year, year_day) only: older year, or same year
        and smaller day-of-year.
        """
        if table not in AGGREGATE_TABLES:
            raise ValueError(f"'{table}' is not an aggregate table")
        cutoff_year_day = cutoff.timetuple().tm_yday
        try:
            return self._delete_aggregates(table, cutoff.year, cutoff_year_day)
        except sqlite3.Error as e:
            raise StoreWriteError(f"could not delete old {table} records: {e}") from e

    @_db_retry
    def _delete_fingerprints(self, cutoff_str: str) -> int:
        with contextlib.closing(self._connect()) as conn:
            cursor = conn.execute(
                "DELETE FROM visitor_hashes WHERE datetime(first_seen) < datetime(?)", (cutoff_str,))
            conn.commit()
            return cursor.rowcount

    def delete_visitor_hashes_before(self, cutoff: datetime.datetime) -> int:
        """Deletes fingerprints first seen before cutoff (a UTC timestamp)."""
        if cutoff.tzinfo is not None:
            cutoff = cutoff.astimezone(datetime.timezone.utc)
        try:
            return self._delete_fingerprints(cutoff.strftime(FIRST_SEEN_FORMAT))
        except sqlite3.Error as e:
            raise StoreWriteError(f"could not delete old visitor hash records: {e}") from e
