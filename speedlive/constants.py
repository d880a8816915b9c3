from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

# Repository root and bundled speedtest binary
REPO_ROOT = Path(__file__).resolve().parent.parent
BUNDLED_SPEEDTEST_BIN = REPO_ROOT / (
    "speedtest.exe" if sys.platform == "win32" else "speedtest"
)


def _default_speedtest_bin() -> str:
    # Prefer a binary shipped next to the app, otherwise rely on PATH lookup
    if BUNDLED_SPEEDTEST_BIN.exists():
        return BUNDLED_SPEEDTEST_BIN.as_posix()
    return "speedtest"


SPEEDTEST_BIN: str = os.getenv("SPEEDLIVE_SPEEDTEST_BIN") or _default_speedtest_bin()
# Ookla server id passed via `-s` (default: Djezzy Oran)
SERVER_ID: str = os.getenv("SPEEDLIVE_SERVER_ID") or os.getenv("SERVER_ID") or "71582"

# Webserver bind (NiceGUI host/port)
SERVER_HOST: str = os.getenv("SPEEDLIVE_SERVER_IP", "0.0.0.0")
SERVER_PORT: int = int(
    os.getenv("SPEEDLIVE_SERVER_PORT") or os.getenv("PORT") or "8080"
)

# SSE keep-alive comment interval and post-result reaping grace
HEARTBEAT_INTERVAL_S: float = float(os.getenv("SPEEDLIVE_HEARTBEAT_S", "15"))
STOP_GRACE_S: float = float(os.getenv("SPEEDLIVE_STOP_GRACE_S", "2"))

# Gauge scale upper bound and tick count
GAUGE_MAX_MBPS: int = 2000
GAUGE_TICK_COUNT: int = 11


def _resolve_log_level() -> int:
    s = os.getenv("SPEEDLIVE_LOG_LEVEL")
    if s:
        name = s.strip().upper()
        mapping = {
            "DEBUG": logging.DEBUG,
            "INFO": logging.INFO,
            "WARNING": logging.WARNING,
            "ERROR": logging.ERROR,
            "CRITICAL": logging.CRITICAL,
        }
        return mapping.get(name, logging.WARNING)
    else:
        return logging.WARNING


LOG_LEVEL: int = _resolve_log_level()
