"""Timestamped stdout logging shared by every component."""
from datetime import datetime

from lpmonitor.config import get_settings

LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}


def log(msg: str, level: str = "INFO"):
    if LEVELS.get(level, 20) < LEVELS.get(get_settings().log_level, 20):
        return
    ts = datetime.utcnow().strftime("%Y-%m-%d %H:%M:%S")
    print(f"[{ts}] [{level}] {msg}", flush=True)
