"""
Database Utilities

Provides retry logic and connection setup for the SQLite aggregate store.
The aggregator and the retention sweeper each open their own connection,
so WAL mode and a busy timeout are what keep them out of each other's way.
"""

import functools
import logging
import sqlite3
import time
from typing import Any, Callable

log = logging.getLogger("Theia.DbUtils")

RETRYABLE_ERROR_MARKERS = ("locked", "busy", "unable to open")


def retry_on_db_lock(max_attempts: int = 1, base_delay: float = 0.5, max_delay: float = 5.0):
    """
    Decorator to retry database operations on lock/busy errors with exponential backoff.

    With the default of a single attempt the error is raised straight away,
    leaving the caller to log and drop the write.

    Args:
        max_attempts: Maximum number of attempts, including the first one
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            delay = base_delay

            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except (sqlite3.OperationalError, sqlite3.DatabaseError) as e:
                    error_msg = str(e).lower()
                    retryable = any(marker in error_msg for marker in RETRYABLE_ERROR_MARKERS)
                    if not retryable or attempt >= max_attempts:
                        if retryable and max_attempts > 1:
                            log.error(f"Database operation failed after {max_attempts} attempts: {e}")
                        raise

                    log.warning(
                        f"Database operation failed (attempt {attempt}/{max_attempts}): {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    # Exponential backoff with jitter
                    delay = min(delay * 2 + (time.time() % 0.1), max_delay)

        return wrapper

    return decorator


def get_optimized_connection(db_path: str, timeout: float = 30.0) -> sqlite3.Connection:
    """
    Create an SQLite connection with the settings used for concurrent access.

    Args:
        db_path: Path to database file
        timeout: Busy timeout in seconds

    Returns:
        Configured SQLite connection
    """
    conn = sqlite3.connect(db_path, timeout=timeout, detect_types=0)
    cursor = conn.cursor()

    # WAL mode lets the sweeper delete while the aggregator writes (persistent setting)
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA temp_store=MEMORY;")
    cursor.execute(f"PRAGMA busy_timeout={int(timeout * 1000)};")

    log.debug(f"Created SQLite connection to {db_path} (timeout={timeout}s)")

    return conn
