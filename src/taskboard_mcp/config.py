"""Configuration constants for the taskboard engine and server."""

import os
from pathlib import Path

# Gap between canonical positions; the first task in a column gets SPACING
SPACING = 1000

# Database configuration
DATA_DIR = Path(os.environ.get("TASKBOARD_HOME", str(Path.home() / ".taskboard")))
DB_PATH = DATA_DIR / "taskboard.db"

# How long a connection waits on a locked database before reporting busy
BUSY_TIMEOUT_MS = 5000

# Conflict retry policy
MAX_CONFLICT_RETRIES = 3
RETRY_BACKOFF_SECONDS = 0.05

# Pagination
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Largest position a caller may supply. Leaves headroom below the signed
# 64-bit INTEGER limit for later shifts and appends.
MAX_POSITION = 2**62
