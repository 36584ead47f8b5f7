"""
Configuration loader for finsync.
Reads .env file and exposes settings as module-level constants.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Resolve paths
# ---------------------------------------------------------------------------
PACKAGE_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_DIR.parent

# ---------------------------------------------------------------------------
# Load .env: check the project root first, then the working directory
# ---------------------------------------------------------------------------
for _env_path in (PROJECT_ROOT / ".env", Path.cwd() / ".env"):
    if _env_path.exists():
        load_dotenv(_env_path)
        break

DATA_DIR = Path(os.getenv("FINSYNC_DATA_DIR", str(Path.home() / ".finsync")))
DB_PATH = DATA_DIR / "finsync.db"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_PATH = DATA_DIR / "finsync.log"
LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3
LOG_LEVEL = os.getenv("FINSYNC_LOG_LEVEL", "INFO").upper()

# ---------------------------------------------------------------------------
# Primary REST API
# ---------------------------------------------------------------------------
API_URL = os.getenv("FINSYNC_API_URL", "http://localhost:3000")
API_MAX_RETRIES = int(os.getenv("FINSYNC_API_RETRIES", "3"))

# Session credentials for headless runs (the app normally supplies these
# after login)
AUTH_TOKEN = os.getenv("FINSYNC_TOKEN", "")
AUTH_USER_ID = os.getenv("FINSYNC_USER_ID", "")

# ---------------------------------------------------------------------------
# Supabase (optional secondary store)
# ---------------------------------------------------------------------------
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")
USE_SUPABASE = bool(SUPABASE_URL and SUPABASE_ANON_KEY)

# ---------------------------------------------------------------------------
# Sync Settings
# ---------------------------------------------------------------------------
SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL", "300"))  # 5 minutes
SYNC_TIMEOUT_SECONDS = int(os.getenv("SYNC_TIMEOUT", "30"))
SYNC_BACKOFF_MAX_SECONDS = int(os.getenv("SYNC_BACKOFF_MAX", "1800"))
QUEUE_MAX_ATTEMPTS = int(os.getenv("FINSYNC_QUEUE_MAX_ATTEMPTS", "5"))

# ---------------------------------------------------------------------------
# App Metadata
# ---------------------------------------------------------------------------
APP_NAME = "finsync"
APP_VERSION = "1.0.0"
