"""Configuration loading for the hostmend agent.

Settings are layered: compiled-in defaults, then Salt pillar
``hostmend:monitor`` when a minion is available, then the YAML file named by
HOSTMEND_CONFIG, then individual environment overrides. Malformed values are
skipped so a bad override never stops the agent.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from hostmend.lib.policy import (
    DEFAULT_ESCALATE_AT,
    DEFAULT_RECLAIM_AT,
    DEFAULT_RECLAIM_COOLDOWN,
    ThresholdRule,
)

try:
    from salt.client import Caller  # type: ignore
except Exception:  # pragma: no cover - salt not installed
    Caller = None  # type: ignore

_CALLER: Caller | None = None

DEFAULT_CONFIG_FILE = Path("/etc/hostmend/monitor.yml")
DEFAULT_INTERVAL = 300.0
DEFAULT_DISK_PATH = "/"
DEFAULT_METADATA_URL = "http://169.254.169.254/latest/meta-data/instance-id"
DEFAULT_IDENTITY_TIMEOUT = 0.5
MONITOR_NAMES = ("disk", "docker", "dmesg", "containers")
SKIP_PILLAR = os.environ.get("HOSTMEND_SKIP_PILLAR", "0") in {"1", "true", "True"}


@dataclass(frozen=True)
class MonitorSettings:
    intervals: Mapping[str, float]
    disk_path: str
    rules: Mapping[str, ThresholdRule]
    kinesis_stream: Optional[str] = None
    metadata_url: str = DEFAULT_METADATA_URL
    identity_timeout: float = DEFAULT_IDENTITY_TIMEOUT

    def interval(self, name: str) -> float:
        return self.intervals.get(name, DEFAULT_INTERVAL)


def _get_caller() -> Caller | None:
    global _CALLER
    if Caller is None or SKIP_PILLAR:  # type: ignore
        return None
    if _CALLER is None:
        try:
            _CALLER = Caller()
        except Exception:
            return None
    return _CALLER


def pillar_get(path: str, default: Any = None) -> Any:
    caller = _get_caller()
    if caller is None:
        return default
    try:
        value = caller.cmd("pillar.get", path, default)
    except Exception:
        return default
    return default if value is None else value


def fire_event(tag: str, payload: Dict[str, Any]) -> bool:
    caller = _get_caller()
    if caller is None:
        return False
    try:
        caller.cmd("event.send", tag, payload)
        return True
    except Exception:
        return False


def config_file_path() -> Path:
    override = os.environ.get("HOSTMEND_CONFIG")
    if override:
        return Path(override)
    return DEFAULT_CONFIG_FILE


def load_config_file(path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or config_file_path()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError:
        return {}
    if not isinstance(data, dict):
        return {}
    monitor = data.get("monitor", data)
    return monitor if isinstance(monitor, dict) else {}


def _as_float(value: Any, default: Optional[float]) -> Optional[float]:
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def default_config() -> Dict[str, Any]:
    return {
        "interval": DEFAULT_INTERVAL,
        "intervals": {},
        "disk_path": DEFAULT_DISK_PATH,
        "reclaim_cooldown": DEFAULT_RECLAIM_COOLDOWN,
        "thresholds": {
            "disk": {"reclaim_at": DEFAULT_RECLAIM_AT, "escalate_at": DEFAULT_ESCALATE_AT},
            "docker": {"reclaim_at": DEFAULT_RECLAIM_AT, "escalate_at": None},
        },
        "metadata_url": DEFAULT_METADATA_URL,
        "identity_timeout": DEFAULT_IDENTITY_TIMEOUT,
    }


def _env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if env.get("HOSTMEND_INTERVAL"):
        overrides["interval"] = env["HOSTMEND_INTERVAL"]
    if env.get("HOSTMEND_DISK_PATH"):
        overrides["disk_path"] = env["HOSTMEND_DISK_PATH"]
    if env.get("HOSTMEND_RECLAIM_COOLDOWN"):
        overrides["reclaim_cooldown"] = env["HOSTMEND_RECLAIM_COOLDOWN"]
    if env.get("HOSTMEND_METADATA_URL"):
        overrides["metadata_url"] = env["HOSTMEND_METADATA_URL"]
    return overrides


def _build_rule(
    label: str,
    raw: Any,
    defaults: Mapping[str, Any],
    cooldown: int,
    cooldown_pinned: bool = False,
) -> ThresholdRule:
    raw = raw if isinstance(raw, Mapping) else {}
    # an explicit null disables a threshold; any other bad value keeps the default
    reclaim_at = raw.get("reclaim_at", defaults.get("reclaim_at"))
    escalate_at = raw.get("escalate_at", defaults.get("escalate_at"))
    if cooldown_pinned:
        rule_cooldown = cooldown
    else:
        rule_cooldown = max(1, _as_int(raw.get("reclaim_cooldown"), cooldown))
    return ThresholdRule(
        resource_label=label,
        reclaim_at=None if reclaim_at is None else _as_float(reclaim_at, defaults.get("reclaim_at")),
        escalate_at=None if escalate_at is None else _as_float(escalate_at, defaults.get("escalate_at")),
        reclaim_cooldown=rule_cooldown,
    )


def load_settings(env: Optional[Mapping[str, str]] = None, path: Optional[Path] = None) -> MonitorSettings:
    env = os.environ if env is None else env
    data = default_config()
    pillar = pillar_get("hostmend:monitor", {})
    if isinstance(pillar, Mapping):
        data = _merge(data, pillar)
    data = _merge(data, load_config_file(path))
    data = _merge(data, _env_overrides(env))

    interval = _as_float(data.get("interval"), DEFAULT_INTERVAL) or DEFAULT_INTERVAL
    if interval <= 0:
        interval = DEFAULT_INTERVAL
    raw_intervals = data.get("intervals") if isinstance(data.get("intervals"), Mapping) else {}
    if env.get("HOSTMEND_INTERVAL"):
        # a global env interval wins over per-monitor file entries
        raw_intervals = {}
    intervals = {}
    for name in MONITOR_NAMES:
        value = _as_float(raw_intervals.get(name), interval)
        intervals[name] = value if value and value > 0 else interval

    cooldown = max(1, _as_int(data.get("reclaim_cooldown"), DEFAULT_RECLAIM_COOLDOWN))
    # a valid env cooldown wins over per-rule entries, like HOSTMEND_INTERVAL above
    cooldown_pinned = _as_int(env.get("HOSTMEND_RECLAIM_COOLDOWN"), 0) > 0
    thresholds = data.get("thresholds") if isinstance(data.get("thresholds"), Mapping) else {}
    defaults = default_config()["thresholds"]
    rules = {
        label: _build_rule(label, thresholds.get(label), defaults[label], cooldown, cooldown_pinned)
        for label in ("disk", "docker")
    }

    return MonitorSettings(
        intervals=intervals,
        disk_path=str(data.get("disk_path") or DEFAULT_DISK_PATH),
        rules=rules,
        kinesis_stream=env.get("KINESIS") or None,
        metadata_url=str(data.get("metadata_url") or DEFAULT_METADATA_URL),
        identity_timeout=_as_float(data.get("identity_timeout"), DEFAULT_IDENTITY_TIMEOUT)
        or DEFAULT_IDENTITY_TIMEOUT,
    )
