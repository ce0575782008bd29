import argparse
import asyncio
import logging
import os
import signal
import sys

# This boilerplate allows the script to be run directly (e.g., `python theia`)
# by adding the project root to the Python path, so the absolute imports
# below resolve regardless of the execution method.
if __package__ is None or __package__ == '':
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from theia import config, database
from theia.aggregation_store import AggregationStore
from theia.log_processor import LineClassifier, iterate_lines, read_log_lines
from theia.tasks import IngestionPipeline, cleanup_background_tasks, start_background_tasks, sweep_retention

# --- Centralized Logging Configuration ---
log = logging.getLogger("Theia")


async def run_service(db_path: str, log_path: str):
    """Follows log_path until SIGINT or SIGTERM, then drains and exits."""
    loop = asyncio.get_running_loop()
    app = {"db_path": db_path, "log_path": log_path, "shutdown": asyncio.Event()}

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app["shutdown"].set)

    if not os.path.exists(log_path):
        log.warning(f"Log file does not currently exist at '{log_path}' (may be created later).")

    await start_background_tasks(app)
    log.info(f"Following '{log_path}' into '{db_path}'. Press Ctrl+C to stop.")
    await app["shutdown"].wait()
    await cleanup_background_tasks(app)


async def ingest_log_file(db_path: str, log_path: str) -> IngestionPipeline:
    """Reads a log file from start to finish through the pipeline, then sweeps once."""
    log.info(f"Starting one-shot ingestion from log file '{log_path}'.")
    store = AggregationStore(db_path)
    pipeline = IngestionPipeline(LineClassifier(), store)
    await pipeline.run(iterate_lines(read_log_lines(log_path)))
    log.info(f"Ingestion complete. Lines read: {pipeline.lines_read}. "
             f"Lines skipped: {pipeline.lines_skipped}. Events applied: {pipeline.events_applied}.")
    await asyncio.get_running_loop().run_in_executor(None, sweep_retention, store)
    return pipeline


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Theia - access log ingestion into hourly visit statistics",
        epilog="""
Examples:
  # Follow the nginx access log
  %(prog)s --log-file /var/log/nginx/access.log

  # One-time ingestion of an existing log
  %(prog)s --ingest-log /var/log/nginx/access.log.1

Environment:
  THEIA_DB_PATH, THEIA_ACCESS_LOG, THEIA_DEFAULT_HOST,
  THEIA_AGGREGATE_RETENTION_DAYS, THEIA_FINGERPRINT_RETENTION_DAYS,
  THEIA_DB_MAX_RETRIES
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument(
        '--log-file',
        metavar='PATH',
        default=config.ACCESS_LOG_PATH,
        help="SERVICE MODE: Access log to follow (default: %(default)s)."
    )
    mode_group.add_argument(
        '--ingest-log',
        metavar='PATH',
        help="INGEST MODE: Read an access log once from the start, then exit."
    )
    parser.add_argument('--db', metavar='PATH', default=config.DATABASE_FILE,
                        help="SQLite database file (default: %(default)s).")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    try:
        database.init_db(args.db)
    except database.FatalStartupError as e:
        log.critical(f"Cannot start: {e}")
        sys.exit(1)

    if args.ingest_log:
        if not os.path.exists(args.ingest_log):
            log.critical(f"Log file not found: {args.ingest_log}")
            sys.exit(1)
        asyncio.run(ingest_log_file(args.db, args.ingest_log))
        sys.exit(0)

    asyncio.run(run_service(args.db, args.log_file))


if __name__ == "__main__":
    main()
