import asyncio
import concurrent.futures
import datetime
import logging
import threading
from typing import AsyncIterator, Dict, Optional

from .aggregation_store import AggregationStore, StoreWriteError
from .config import (
    AGGREGATE_RETENTION_DAYS,
    DB_THREAD_POOL_SIZE,
    EVENT_QUEUE_MAX_SIZE,
    FINGERPRINT_RETENTION_DAYS,
    RETENTION_INTERVAL_HOURS,
)
from .log_processor import LineClassifier, LineParseError, tail_log_lines

log = logging.getLogger("Theia.Tasks")

# Marks the end of the event stream; everything queued before it is still applied
QUEUE_CLOSED = object()

CLEANUP_LABELS = {
    "hourly_stats": "hourly stats",
    "hourly_status_codes": "status code",
    "hourly_referrers": "referrer",
    "visitor_hashes": "visitor hash",
}


class IngestionPipeline:
    """
    One producer classifying raw lines, one consumer applying events to the store,
    and a bounded queue between them.

    The producer suspends while the queue is full, so no event is dropped. When
    the line source ends the producer closes the queue; the consumer applies
    whatever was admitted and then returns.
    """

    def __init__(self, classifier: LineClassifier, store: AggregationStore,
                 executor: Optional[concurrent.futures.Executor] = None,
                 maxsize: int = EVENT_QUEUE_MAX_SIZE):
        self.classifier = classifier
        self.store = store
        self.executor = executor
        self.queue = asyncio.Queue(maxsize=maxsize)
        self.lines_read = 0
        self.lines_skipped = 0
        self.events_applied = 0

    async def producer_task(self, lines: AsyncIterator[str]):
        log.info("Line producer task started.")
        try:
            async for line in lines:
                self.lines_read += 1
                try:
                    event = self.classifier.parse(line)
                except LineParseError as e:
                    self.lines_skipped += 1
                    log.warning(f"Skipping unparseable line ({e}): {line.strip()[:200]}")
                    continue

                if self.queue.full():
                    log.debug("Event queue is full. Pausing line processing to let the aggregator catch up.")
                await self.queue.put(event)
        finally:
            await self.queue.put(QUEUE_CLOSED)
            log.info(f"Line producer stopped after {self.lines_read} lines ({self.lines_skipped} skipped).")

    async def consumer_task(self):
        log.info("Aggregation consumer task started.")
        loop = asyncio.get_running_loop()
        while True:
            event = await self.queue.get()
            if event is QUEUE_CLOSED:
                break
            try:
                await loop.run_in_executor(self.executor, self.store.apply, event)
                self.events_applied += 1
            except Exception:
                log.error(f"Error applying visit to {event.path!r} on {event.host!r}:", exc_info=True)
        log.info(f"Aggregation consumer drained the queue after {self.events_applied} events.")

    async def run(self, lines: AsyncIterator[str]):
        """Runs producer and consumer until the line source ends and the queue is drained."""
        await asyncio.gather(self.producer_task(lines), self.consumer_task())


def sweep_retention(store: AggregationStore, now: Optional[datetime.datetime] = None,
                    aggregate_days: int = AGGREGATE_RETENTION_DAYS,
                    fingerprint_days: int = FINGERPRINT_RETENTION_DAYS) -> Dict[str, Optional[int]]:
    """
    Runs the four retention passes and returns the deleted row count per table
    (None where the pass failed). A failing pass does not stop the others.
    """
    now = now or datetime.datetime.now().astimezone()
    # Calendar cutoff for aggregates, exact timestamp cutoff for fingerprints
    aggregate_cutoff = now.date() - datetime.timedelta(days=aggregate_days)
    fingerprint_cutoff = now - datetime.timedelta(days=fingerprint_days)

    passes = [(table, store.delete_older_than, (table, aggregate_cutoff))
              for table in ("hourly_stats", "hourly_status_codes", "hourly_referrers")]
    passes.append(("visitor_hashes", store.delete_visitor_hashes_before, (fingerprint_cutoff,)))

    results = {}
    for table, delete, args in passes:
        label = CLEANUP_LABELS[table]
        try:
            deleted = delete(*args)
        except StoreWriteError as e:
            log.error(f"[RETENTION] {label.capitalize()} cleanup error: {e}")
            results[table] = None
            continue
        log.info(f"[RETENTION] Cleaned up {deleted} old {label} records")
        results[table] = deleted
    return results


async def retention_sweeper_task(store: AggregationStore, shutdown_event: asyncio.Event,
                                 executor: Optional[concurrent.futures.Executor] = None,
                                 interval_seconds: float = RETENTION_INTERVAL_HOURS * 3600):
    """Sweeps once at startup, then every interval until shutdown_event is set."""
    log.info("Retention sweeper task started.")
    loop = asyncio.get_running_loop()
    while True:
        try:
            await loop.run_in_executor(executor, sweep_retention, store)
        except Exception:
            log.error("Error in retention sweeper task:", exc_info=True)

        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
        log.info("Retention sweeper shutting down...")
        return


async def shutdown_listener_task(shutdown_event: asyncio.Event, reader_stop: threading.Event,
                                 reader_wake: Optional[threading.Event] = None):
    """Passes the shutdown signal on to the log reader thread and wakes it."""
    await shutdown_event.wait()
    log.warning("Shutdown signal received, stopping...")
    reader_stop.set()
    if reader_wake is not None:
        reader_wake.set()


async def start_background_tasks(app):
    """
    Builds the store and pipeline and starts the service tasks.

    Expects app to carry "db_path", "log_path" and an asyncio "shutdown" event.
    """
    log.info("Starting background tasks...")
    app["db_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {DB_THREAD_POOL_SIZE} workers")
    app["log_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    app["log_reader_stop"] = threading.Event()
    app["log_reader_wake"] = threading.Event()

    app["store"] = AggregationStore(app["db_path"])
    app["pipeline"] = IngestionPipeline(LineClassifier(), app["store"], executor=app["db_executor"])

    lines = tail_log_lines(app["log_path"], app["log_reader_stop"], executor=app["log_executor"],
                           wake_event=app["log_reader_wake"])
    app["tasks"] = [
        asyncio.create_task(app["pipeline"].run(lines)),
        asyncio.create_task(retention_sweeper_task(app["store"], app["shutdown"], app["db_executor"])),
        asyncio.create_task(shutdown_listener_task(app["shutdown"], app["log_reader_stop"], app["log_reader_wake"])),
    ]


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    # Tasks finish on their own once shutdown is set; nothing is cancelled mid-write
    if "tasks" in app:
        results = await asyncio.gather(*app["tasks"], return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                log.error("Background task ended with an error:", exc_info=result)
    log.info("Background tasks finished.")

    for executor_name in ["db_executor", "log_executor"]:
        if app.get(executor_name):
            app[executor_name].shutdown(wait=True)
            log.info(f"{executor_name} shut down.")
