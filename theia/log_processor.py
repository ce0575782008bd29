import asyncio
import concurrent.futures
import datetime
import hashlib
import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Iterator, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import LINE_QUEUE_MAX_SIZE, LOG_READER_POLL_SECONDS, get_default_host

log = logging.getLogger("Theia.LogProcessor")


class LineParseError(ValueError):
    """A log line matched neither access-log grammar, or one of its fields did not convert."""


@dataclass
class VisitEvent:
    timestamp: datetime.datetime
    path: str
    referrer: str
    user_agent: str
    host: str
    status_code: int
    bytes_sent: int
    fingerprint: str
    is_bot: bool
    is_static: bool

    @property
    def hour(self) -> int:
        # Hour in the offset the line was logged with
        return self.timestamp.hour

    @property
    def year_day(self) -> int:
        return self.timestamp.timetuple().tm_yday

    @property
    def year(self) -> int:
        return self.timestamp.year


BOT_PATTERNS = (
    "bot", "crawler", "spider", "scraper",
    "googlebot", "bingbot", "yandexbot", "baiduspider",
    "facebookexternalhit", "facebot", "twitterbot",
    "slackbot", "telegrambot", "whatsapp",
    "lighthouse", "gtmetrix", "pingdom",
    "headlesschrome", "phantomjs", "selenium",
    "python-requests", "curl", "wget",
    "http", "java/", "go-http-client",
)

STATIC_EXTENSIONS = (
    ".css", ".js", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg",
    ".ico", ".woff", ".woff2", ".ttf", ".eot", ".otf",
    ".mp4", ".webm", ".mp3", ".wav", ".pdf", ".zip",
    ".xml", ".txt", ".json", ".map",
)

STATIC_PATH_PREFIXES = (
    "/assets/", "/static/", "/public/",
    "/images/", "/img/", "/css/", "/js/",
    "/fonts/", "/media/", "/uploads/",
)

TIMESTAMP_FORMAT = "%d/%b/%Y:%H:%M:%S %z"

# Numeric fields must fit a signed 64-bit SQLite INTEGER
INT64_MAX = 2**63 - 1


def detect_bot(user_agent: str) -> bool:
    """True when the user agent contains any known crawler, monitor or HTTP-library token."""
    user_agent_lower = user_agent.lower()
    return any(pattern in user_agent_lower for pattern in BOT_PATTERNS)


def is_static_asset(path: str) -> bool:
    path_lower = path.lower()
    if path_lower.endswith(STATIC_EXTENSIONS):
        return True
    return any(static_path in path_lower for static_path in STATIC_PATH_PREFIXES)


def fingerprint_visitor(client_address: str, user_agent: str, today: Optional[datetime.date] = None) -> str:
    """
    Hashes address, user agent and the date the line is processed on.

    The date is the local processing date, not the date in the log line, so the
    same visitor hashes identically for one processing day only.
    """
    today = today or datetime.date.today()
    hash_input = client_address + user_agent + today.isoformat()
    return hashlib.sha256(hash_input.encode('utf-8')).hexdigest()


def _parse_int(value: str, field: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise LineParseError(f"failed to parse {field} '{value}'") from e
    if number > INT64_MAX:
        raise LineParseError(f"{field} '{value}' is out of range")
    return number


class LineClassifier:
    """Turns combined-format access log lines into VisitEvents."""

    def __init__(self, default_host: Optional[str] = None):
        self.default_host = default_host
        self.regex_with_host = re.compile(
            r'^(\S+) \S+ \S+ \[([^\]]+)\] "(\S+) (\S+) \S+" (\d+) (\d+) "([^"]*)" "([^"]*)" "([^"]*)"', re.ASCII)
        self.regex_standard = re.compile(
            r'^(\S+) \S+ \S+ \[([^\]]+)\] "(\S+) (\S+) \S+" (\d+) (\d+) "([^"]*)" "([^"]*)"', re.ASCII)

    def _match(self, line: str):
        match = self.regex_with_host.match(line)
        if match:
            return match, True
        match = self.regex_standard.match(line)
        if match:
            return match, False
        raise LineParseError("failed to parse log line")

    def parse(self, line: str, today: Optional[datetime.date] = None) -> VisitEvent:
        match, with_host = self._match(line.rstrip('\r\n'))

        client_address, timestamp_str, _method, path, status_str, bytes_str, referrer, user_agent = match.groups()[:8]
        if with_host:
            host = match.group(9)
        else:
            host = self.default_host or get_default_host()

        try:
            timestamp = datetime.datetime.strptime(timestamp_str, TIMESTAMP_FORMAT)
        except ValueError as e:
            raise LineParseError(f"failed to parse timestamp '{timestamp_str}'") from e
        status_code = _parse_int(status_str, "status code")
        bytes_sent = _parse_int(bytes_str, "bytes sent")

        return VisitEvent(
            timestamp=timestamp,
            path=path,
            referrer=referrer,
            user_agent=user_agent,
            host=host,
            status_code=status_code,
            bytes_sent=bytes_sent,
            fingerprint=fingerprint_visitor(client_address, user_agent, today),
            is_bot=detect_bot(user_agent),
            is_static=is_static_asset(path),
        )


def blocking_log_reader(log_path: str, loop: asyncio.AbstractEventLoop, aio_queue: asyncio.Queue,
                        shutdown_event: threading.Event, from_start: bool = False,
                        wake_event: Optional[threading.Event] = None):
    """
    An event-driven log follower that runs in a separate thread.
    Uses watchdog for file system notifications and falls back to polling.
    Re-opens the file on rotation (inode change) and rewinds on truncation.

    Each line is handed to the event loop with a blocking put, so this thread
    stalls instead of dropping lines when the queue is full. None is put on the
    queue when the reader stops.

    wake_event, when given, is set by whoever stops the reader so the wait for
    file changes ends at once instead of after the poll interval.
    """
    log.info(f"Starting event-driven log reader for {log_path}")
    file_changed_event = wake_event or threading.Event()
    directory = os.path.dirname(os.path.abspath(log_path))

    def hand_over(item) -> bool:
        try:
            asyncio.run_coroutine_threadsafe(aio_queue.put(item), loop).result()
            return True
        except (concurrent.futures.CancelledError, RuntimeError):
            log.warning(f"Event loop went away while handing over lines from '{log_path}'.")
            return False

    class ChangeHandler(FileSystemEventHandler):
        def on_any_event(self, event):
            file_changed_event.set()

    if not os.path.isdir(directory):
        log.error(f"Cannot watch log file: directory '{directory}' does not exist. Reader thread will exit.")
        hand_over(None)
        return

    observer = Observer()
    observer.schedule(ChangeHandler(), directory, recursive=False)
    observer.start()

    f = None
    current_inode = None
    seek_to_end = not from_start
    try:
        while not shutdown_event.is_set():
            if f is None:
                try:
                    f = open(log_path, 'r', errors='replace')
                    current_inode = os.fstat(f.fileno()).st_ino
                    log.info(f"Tailing log file '{log_path}' with inode {current_inode}")
                    if seek_to_end:
                        f.seek(0, os.SEEK_END)
                    # A re-opened (rotated) file is read from its start
                    seek_to_end = False
                except FileNotFoundError:
                    # Everything written once the file appears is new
                    seek_to_end = False
                    shutdown_event.wait(LOG_READER_POLL_SECONDS)
                    continue
                except OSError as e:
                    log.error(f"Error opening log file '{log_path}': {e}. Retrying in {LOG_READER_POLL_SECONDS}s.")
                    shutdown_event.wait(LOG_READER_POLL_SECONDS)
                    continue

            line = f.readline()
            if line:
                if not hand_over(line):
                    return
                continue

            file_changed_event.clear()
            if shutdown_event.is_set():
                break
            file_changed_event.wait(timeout=LOG_READER_POLL_SECONDS)
            if shutdown_event.is_set():
                break

            try:
                st = os.stat(log_path)
                if st.st_ino != current_inode:
                    log.warning(f"Log rotation by inode change detected for '{log_path}'. Re-opening.")
                    f.close()
                    f = None
                    continue
                if f.tell() > st.st_size:
                    log.warning(f"Log truncation detected for '{log_path}'. Seeking to start.")
                    f.seek(0)
            except FileNotFoundError:
                log.warning(f"Log file '{log_path}' disappeared. Will attempt to re-open.")
                f.close()
                f = None
    finally:
        observer.stop()
        observer.join()
        if f:
            f.close()
        log.info(f"Log reader for {log_path} has stopped.")

    hand_over(None)


async def tail_log_lines(log_path: str, shutdown_event: threading.Event, executor=None,
                         from_start: bool = False,
                         wake_event: Optional[threading.Event] = None) -> AsyncIterator[str]:
    """Yields lines appended to log_path until shutdown_event is set."""
    wake_event = wake_event or threading.Event()
    loop = asyncio.get_running_loop()
    line_queue = asyncio.Queue(maxsize=LINE_QUEUE_MAX_SIZE)
    reader = loop.run_in_executor(
        executor, blocking_log_reader, log_path, loop, line_queue, shutdown_event, from_start, wake_event)
    try:
        while True:
            line = await line_queue.get()
            if line is None:
                break
            yield line
    finally:
        shutdown_event.set()
        wake_event.set()
        # Unblock a reader thread that is waiting on a full queue
        while not line_queue.empty():
            line_queue.get_nowait()
        await reader


def read_log_lines(log_path: str) -> Iterator[str]:
    """Reads a log file once, from the start, for one-shot ingestion."""
    with open(log_path, 'r', errors='replace') as f:
        yield from f


async def iterate_lines(lines) -> AsyncIterator[str]:
    """Adapts a plain iterable of lines to the async line-source interface."""
    for line in lines:
        yield line
        await asyncio.sleep(0)
