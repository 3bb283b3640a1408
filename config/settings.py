"""
Resilient Contract Event Listener — Central Configuration

Loads environment variables and defines all system-wide constants.
This module is the single source of truth for all configuration values.
"""

import os
from datetime import timezone
from pathlib import Path

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Load environment
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
LOG_DIR = Path(os.getenv("LOG_DIR", str(PROJECT_ROOT / "logs")))
ABI_PATH = Path(os.getenv("ABI_PATH", str(PROJECT_ROOT / "config" / "abi" / "usdt.json")))

# ---------------------------------------------------------------------------
# Timezone
# ---------------------------------------------------------------------------
UTC = timezone.utc

# ---------------------------------------------------------------------------
# Node & Contract (from .env)
# ---------------------------------------------------------------------------
RPC_URL = os.getenv("RPC_URL", "")                     # wss:// endpoint of the EVM node
CONTRACT_ADDRESS = os.getenv(
    "CONTRACT_ADDRESS", "0xdAC17F958D2ee523a2206206994597C13D831ec7"  # USDT mainnet
)
EVENT_NAME = os.getenv("EVENT_NAME", "Transfer")

# ---------------------------------------------------------------------------
# Keep-Alive
# A keep-alive interval of 0 disables health checks entirely.
# ---------------------------------------------------------------------------
DEFAULT_KEEP_ALIVE_INTERVAL_S = 60.0
DEFAULT_PONG_TIMEOUT_S = 15.0
KEEP_ALIVE_INTERVAL_S = float(os.getenv("KEEP_ALIVE_INTERVAL_S", DEFAULT_KEEP_ALIVE_INTERVAL_S))
PONG_TIMEOUT_S = float(os.getenv("PONG_TIMEOUT_S", DEFAULT_PONG_TIMEOUT_S))

# ---------------------------------------------------------------------------
# Reconnect Backoff — 1s, 2s, 4s, ... capped at 30s
# ---------------------------------------------------------------------------
DEFAULT_RECONNECT_BASE_DELAY_S = 1.0
DEFAULT_RECONNECT_MAX_DELAY_S = 30.0
RECONNECT_BACKOFF_FACTOR = 2.0
RECONNECT_JITTER = os.getenv("RECONNECT_JITTER", "false").lower() == "true"
RECONNECT_ALERT_THRESHOLD = 3  # Consecutive failures before CRITICAL alert

# ---------------------------------------------------------------------------
# Events Server
# ---------------------------------------------------------------------------
EVENTS_SERVER_HOST = os.getenv("EVENTS_SERVER_HOST", "127.0.0.1")
EVENTS_SERVER_PORT = int(os.getenv("EVENTS_SERVER_PORT", "3001"))
MAX_STORED_EVENTS = int(os.getenv("MAX_STORED_EVENTS", "10000"))
MAX_STORED_ALERTS = 200

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE_NAME = "event_listener.log"
