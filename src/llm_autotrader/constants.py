import os
from pathlib import Path

# Repository paths
HERE = Path(__file__).parent.resolve()
src_dir = HERE.parent
if (src_dir / "llm_autotrader").exists() and src_dir.name == "src":
    # We are in src/llm_autotrader
    REPO_ROOT = src_dir.parent
else:
    # Fallback
    REPO_ROOT = Path(os.getcwd())

WORKSPACE_DIR = REPO_ROOT / ".workspace"
CONFIG_PATH = REPO_ROOT / "config" / "settings.yaml"

# Persisted state file names (relative to the workspace dir)
EVENT_LOG_FILE = "bot_history.json"
PENDING_ACTIONS_FILE = "pending_actions.json"
POSITION_LOCKS_FILE = "position_locks.json"
INSTRUMENT_CACHE_FILE = "instrument_cache.json"
CLOCK_OFFSET_FILE = "clock_offset.json"
TICK_LOCK_FILE = "tick.pid"
LOGS_DIRNAME = "logs"

# Event log retention
EVENT_RETENTION_DAYS = 14
EVENT_MAX_COUNT = 1000
HISTORY_SUMMARY_DAYS = 7
HISTORY_SUMMARY_TOP = 10

# Pending actions
PENDING_TTL_MINUTES = 60

# Exchange
RECV_WINDOW_MS = 20000
INSTRUMENT_TTL_SECONDS = 3600
CLOCK_OFFSET_TTL_SECONDS = 300
MAX_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 1.0
BACKOFF_MAX_SECONDS = 8.0
RETRY_AFTER_MIN_SECONDS = 1.0
RETRY_AFTER_MAX_SECONDS = 30.0
MIN_CLOSE_FRACTION = 0.05
MAX_CLOSE_FRACTION = 1.0

# Decision provider
LLM_TIMEOUT_SECONDS = 60.0
PROMPT_CHAR_BUDGET = 14000
PROMPT_FIXED_OVERHEAD = 2200
PROMPT_PER_POSITION_CHARS = 130
PROMPT_CHARS_PER_POINT = 8
MIN_PRICE_POINTS = 5
MAX_PRICE_POINTS = 30
MIN_PROPOSAL_CONFIDENCE = 60
AUTO_OPEN_MIN_CONFIDENCE = 80
DEFAULT_PROPOSAL_SIZE_USDT = 10.0
DEFAULT_AVERAGE_SIZE_USDT = 10.0
DEFAULT_PARTIAL_FRACTION = 0.5
