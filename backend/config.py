"""
Pulseboard - Central Configuration

Supports optional config.json override for user-customizable settings.
Each resilience module reads its own section through _cfg() at import time;
constructor arguments always win over these defaults.
"""
import json
import logging
import os
from pathlib import Path

logger = logging.getLogger("pulseboard.config")

# ──────────────────────────── Paths ────────────────────────────
PROJECT_ROOT = Path(__file__).parent.parent
BACKEND_DIR = Path(__file__).parent
DATA_DIR = Path(os.environ.get("PULSEBOARD_DATA_DIR", PROJECT_ROOT / "data"))
LOGS_DIR = DATA_DIR / "logs"

# Create directories
for d in [DATA_DIR, LOGS_DIR]:
    d.mkdir(parents=True, exist_ok=True)

# ──────────────────────────── User Config Override ────────────────────────────
# Load user-specific settings from config.json if it exists
_user_config = {}
_config_path = Path(os.environ.get("PULSEBOARD_CONFIG", PROJECT_ROOT / "config.json"))
if _config_path.exists():
    try:
        _user_config = json.loads(_config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {_config_path}: {e}")


def _cfg(key: str, default):
    """Get a config value, preferring user override from config.json."""
    return _user_config.get(key, default)


def _section(key: str) -> dict:
    """Get a config section as a dict (empty if missing or malformed)."""
    value = _cfg(key, {})
    return value if isinstance(value, dict) else {}


# ──────────────────────────── Server ────────────────────────────
HOST = _cfg("host", "127.0.0.1")
PORT = _cfg("port", 8770)

# ──────────────────────────── Backend-as-a-service ────────────────────────────
_backend_cfg = _section("backend")
BACKEND_URL = _backend_cfg.get("url", os.environ.get("PULSEBOARD_BACKEND_URL", ""))
BACKEND_ANON_KEY = _backend_cfg.get("anon_key", os.environ.get("PULSEBOARD_BACKEND_ANON_KEY", ""))
BACKEND_REST_PATH = _backend_cfg.get("rest_path", "/rest/v1/")
API_HEALTH_URL = _backend_cfg.get("health_url", "")

# ──────────────────────────── Upstream (quota-constrained API) ────────────────────────────
_upstream_cfg = _section("upstream")
UPSTREAM_URL = _upstream_cfg.get("url", os.environ.get("PULSEBOARD_UPSTREAM_URL", ""))
UPSTREAM_API_KEY = _upstream_cfg.get("api_key", os.environ.get("PULSEBOARD_UPSTREAM_API_KEY", ""))
UPSTREAM_TIMEOUT = _upstream_cfg.get("timeout", 30)

# ──────────────────────────── Snapshot history ────────────────────────────
SNAPSHOT_DB_PATH = DATA_DIR / "monitoring.db"
SNAPSHOT_MAX_BYTES = _cfg("snapshot_max_bytes", 50 * 1024)
