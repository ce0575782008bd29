import os

# --- Configuration ---
# The database file path.
# This is a relative path by default, so it will be created in the current
# working directory. The service files are expected to set the working
# directory to a data location like /var/lib/theia.
# It can be overridden with the THEIA_DB_PATH environment variable.
DATABASE_FILE = os.getenv('THEIA_DB_PATH', 'theia.db')

# Access log that is followed in service mode.
ACCESS_LOG_PATH = os.getenv('THEIA_ACCESS_LOG', '/var/log/nginx/access.log')

# --- Pipeline ---
EVENT_QUEUE_MAX_SIZE = 100  # Classified events waiting for the aggregator
LINE_QUEUE_MAX_SIZE = 100  # Raw lines handed over by the reader thread
LOG_READER_POLL_SECONDS = 5.0  # Fallback poll when no filesystem event arrives

# --- Data Retention ---
AGGREGATE_RETENTION_DAYS = int(os.getenv('THEIA_AGGREGATE_RETENTION_DAYS', '60'))
FINGERPRINT_RETENTION_DAYS = int(os.getenv('THEIA_FINGERPRINT_RETENTION_DAYS', '1'))
RETENTION_INTERVAL_HOURS = 12  # How often to run the retention sweep

# --- Database Concurrency Configuration ---
DB_THREAD_POOL_SIZE = 2  # One slot for the aggregator, one for the sweeper
DB_CONNECTION_TIMEOUT = 30.0  # seconds
DB_MAX_RETRIES = int(os.getenv('THEIA_DB_MAX_RETRIES', '1'))  # 1 means a failed write is logged and dropped
DB_RETRY_BASE_DELAY = 0.5  # Base delay between retries (seconds)
DB_RETRY_MAX_DELAY = 5.0  # Maximum delay between retries (seconds)


DEFAULT_HOST_FALLBACK = 'default'


def get_default_host() -> str:
    """Host recorded for lines without a trailing virtual-host field."""
    return os.getenv('THEIA_DEFAULT_HOST') or DEFAULT_HOST_FALLBACK
