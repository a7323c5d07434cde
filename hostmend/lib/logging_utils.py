"""Alert log helpers for the hostmend agent."""
from __future__ import annotations

import json
import os
import socket
import time
from pathlib import Path
from typing import Any, Dict

DEFAULT_ALERT_LOG = Path("/var/log/hostmend/alerts.log")


def alerts_log_path() -> Path:
    """Return the alerts log path, honoring HOSTMEND_ALERT_LOG."""
    override = os.environ.get("HOSTMEND_ALERT_LOG")
    if override:
        return Path(override)
    return DEFAULT_ALERT_LOG


def ensure_alerts_log_dir() -> None:
    path = alerts_log_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass


def append_alert(label: str, tag: str, payload: Dict[str, Any]) -> bool:
    record = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "label": label,
        "tag": tag,
        "host": socket.gethostname(),
        "payload": payload,
    }
    ensure_alerts_log_dir()
    try:
        with alerts_log_path().open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    except OSError:
        return False
    return True
