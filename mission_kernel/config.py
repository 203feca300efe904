"""
Process-level configuration for the mission kernel.
Environment mappings and defaults in one place; engine behaviour itself is
configured through the injected EngineConfig.
"""

import os

# ============================================================================
# API / App Metadata
# ============================================================================

APP_VERSION = "0.1.0"
APP_TITLE = "Mission Kernel API"
APP_DESCRIPTION = "Task ingestion, zone placement and point ledger for Mission Control"

# ============================================================================
# Storage
# ============================================================================

DATABASE_PATH = os.getenv("MISSION_DB_PATH", ":memory:")
SQLITE_BUSY_TIMEOUT_SECONDS = float(os.getenv("MISSION_DB_BUSY_TIMEOUT", "5"))

# ============================================================================
# Team
# ============================================================================

DEFAULT_TEAM_ID = os.getenv("MISSION_TEAM_ID", "default")

# ============================================================================
# External Tracker
# ============================================================================

TRACKER_BASE_URL = os.getenv("TRACKER_BASE_URL", "https://api.notion.com/v1")
TRACKER_API_TOKEN = os.getenv("TRACKER_API_TOKEN", "")
TRACKER_API_VERSION = os.getenv("TRACKER_API_VERSION", "2022-06-28")
TRACKER_TIMEOUT_SECONDS = float(os.getenv("TRACKER_TIMEOUT_SECONDS", "10"))
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")

# ============================================================================
# Logging Configuration
# ============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _parse_owner_user_ids(raw: str) -> dict:
    """Parse "alex=uuid1,milya=uuid2" into a mapping."""
    mapping = {}
    for pair in raw.split(","):
        if "=" not in pair:
            continue
        owner, user_id = pair.split("=", 1)
        if owner.strip() and user_id.strip():
            mapping[owner.strip().lower()] = user_id.strip()
    return mapping


TRACKER_OWNER_USER_IDS = _parse_owner_user_ids(os.getenv("TRACKER_OWNER_USER_IDS", ""))
