"""
Configuration for the Agent Monitor.

All values can be overridden through environment variables. Components take
these as constructor defaults so tests can pass their own values instead.
"""

import os
import logging

logger = logging.getLogger(__name__)


VERSION = '1.0.0'

# ============================================================================
# STORAGE
# ============================================================================

# DB_PATH: Set via AGENT_MONITOR_DB_PATH to control where agent state is persisted
# Example: export AGENT_MONITOR_DB_PATH=/tmp/agent-monitor/state.sqlite3
# Default: ~/.agent-monitor/state.sqlite3 so it works from any directory
def _get_default_db_path() -> str:
    """Get the default SQLite database path under the user's home directory."""
    home = os.path.expanduser('~')
    return os.path.join(home, '.agent-monitor', 'state.sqlite3')


DB_PATH = os.getenv('AGENT_MONITOR_DB_PATH', _get_default_db_path())

# ============================================================================
# LOGGING
# ============================================================================

LOG_LEVEL = os.getenv('AGENT_MONITOR_LOG_LEVEL', 'INFO').upper()
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# ============================================================================
# DETECTION
# ============================================================================

DEDUP_WINDOW_SECONDS = float(os.getenv('AGENT_MONITOR_DEDUP_WINDOW_SECONDS', '5'))
DEDUP_PURGE_THRESHOLD = int(os.getenv('AGENT_MONITOR_DEDUP_PURGE_THRESHOLD', '50'))
MAX_BUFFER_SIZE = int(os.getenv('AGENT_MONITOR_MAX_BUFFER_SIZE', str(50 * 1024)))  # characters per terminal
TOOL_RESULT_PREVIEW_CHARS = 500

# ============================================================================
# BACKGROUND POLICIES (all values in seconds)
# ============================================================================

IDLE_THRESHOLD_SECONDS = float(os.getenv('AGENT_MONITOR_IDLE_THRESHOLD_SECONDS', '30'))
ACTIVITY_CHECK_INTERVAL = float(os.getenv('AGENT_MONITOR_ACTIVITY_CHECK_INTERVAL', '10'))
STALE_CHECK_INTERVAL = float(os.getenv('AGENT_MONITOR_STALE_CHECK_INTERVAL', '60'))
STALE_AGENT_THRESHOLD_SECONDS = float(os.getenv('AGENT_MONITOR_STALE_AGENT_THRESHOLD_SECONDS', str(30 * 60)))
GARBAGE_CLEANUP_INTERVAL = float(os.getenv('AGENT_MONITOR_GARBAGE_CLEANUP_INTERVAL', str(5 * 60)))
ORPHAN_AGENT_MAX_AGE_SECONDS = float(os.getenv('AGENT_MONITOR_ORPHAN_AGENT_MAX_AGE_SECONDS', str(60 * 60)))  # live, no session
CLEANUP_INTERVAL = float(os.getenv('AGENT_MONITOR_CLEANUP_INTERVAL', str(60 * 60)))
STALE_RECORD_MAX_AGE_SECONDS = float(os.getenv('AGENT_MONITOR_STALE_RECORD_MAX_AGE_SECONDS', str(24 * 60 * 60)))
SESSION_MAP_VALIDATION_INTERVAL = float(os.getenv('AGENT_MONITOR_SESSION_MAP_VALIDATION_INTERVAL', '60'))
TERMINAL_CLEANUP_INTERVAL = float(os.getenv('AGENT_MONITOR_TERMINAL_CLEANUP_INTERVAL', '30'))

# ============================================================================
# SERVER
# ============================================================================

API_HOST = os.getenv('AGENT_MONITOR_API_HOST', '127.0.0.1')
API_PORT = int(os.getenv('AGENT_MONITOR_API_PORT', '8765'))
API_CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv('AGENT_MONITOR_CORS_ORIGINS', 'http://localhost:5173,http://localhost:3000').split(',')
    if origin.strip()
]


def configure_logging(level: str = None) -> None:
    """Configure root logging the same way for every entry point."""
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format=LOG_FORMAT
    )
    logger.debug(f"Logging configured at level {level or LOG_LEVEL}")


__all__ = [
    'VERSION',
    'DB_PATH',
    'LOG_LEVEL',
    'LOG_FORMAT',
    'DEDUP_WINDOW_SECONDS',
    'DEDUP_PURGE_THRESHOLD',
    'MAX_BUFFER_SIZE',
    'TOOL_RESULT_PREVIEW_CHARS',
    'IDLE_THRESHOLD_SECONDS',
    'ACTIVITY_CHECK_INTERVAL',
    'STALE_CHECK_INTERVAL',
    'STALE_AGENT_THRESHOLD_SECONDS',
    'GARBAGE_CLEANUP_INTERVAL',
    'ORPHAN_AGENT_MAX_AGE_SECONDS',
    'CLEANUP_INTERVAL',
    'STALE_RECORD_MAX_AGE_SECONDS',
    'SESSION_MAP_VALIDATION_INTERVAL',
    'TERMINAL_CLEANUP_INTERVAL',
    'API_HOST',
    'API_PORT',
    'API_CORS_ORIGINS',
    'configure_logging',
]
