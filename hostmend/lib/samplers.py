"""Resource samplers for the hostmend agent.

Each sampler re-reads live system state on every call and returns a fresh
``UtilizationSample``. Nothing is cached between ticks.
"""
from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from docker.errors import DockerException

GIB = 1024**3
GB = 1000**3

DATA_SPACE_AVAILABLE = "Data Space Available"
DATA_SPACE_TOTAL = "Data Space Total"
DATA_SPACE_USED = "Data Space Used"

READ_ONLY_REMOUNT = "Remounting filesystem read-only"

# docker prints sizes with go-units HumanSize, which is decimal
_SIZE_RE = re.compile(r"^\s*([0-9]+(?:\.[0-9]+)?)\s*([kmgtp]?)(i?b)?\s*$", re.IGNORECASE)
_SIZE_MULTIPLIERS = {
    "": 1,
    "k": 1000,
    "m": 1000**2,
    "g": 1000**3,
    "t": 1000**4,
    "p": 1000**5,
}
_BINARY_MULTIPLIERS = {
    "": 1,
    "k": 1024,
    "m": 1024**2,
    "g": 1024**3,
    "t": 1024**4,
    "p": 1024**5,
}


class ResourceUnavailable(RuntimeError):
    """Raised when the sampling source cannot be reached."""


class MetricUnavailable(RuntimeError):
    """Raised when the source answers but the required fields are missing."""


@dataclass(frozen=True)
class UtilizationSample:
    resource_label: str
    available: float
    total: float
    used: float
    utilization: float


@dataclass(frozen=True)
class InventorySample:
    total: int
    running: int
    stopped: int


def parse_size(expr: str) -> float:
    """Parse a human readable size such as ``10.5 GB`` or ``2 GiB`` into bytes."""
    match = _SIZE_RE.match(str(expr))
    if not match:
        raise MetricUnavailable(f"Invalid size expression: {expr!r}")
    value = float(match.group(1))
    unit = match.group(2).lower()
    suffix = (match.group(3) or "").lower()
    multipliers = _BINARY_MULTIPLIERS if suffix.startswith("i") else _SIZE_MULTIPLIERS
    return value * multipliers[unit]


def filesystem_usage(path: str, label: str = "disk") -> UtilizationSample:
    """Sample block usage for the filesystem mounted at ``path``.

    Values are reported in GiB. Utilization is ``used / (used + avail)``.
    """
    try:
        stats = os.statvfs(path)
    except OSError as exc:
        raise ResourceUnavailable(f"statfs {path}: {exc}") from exc

    total = stats.f_frsize * stats.f_blocks
    free = stats.f_frsize * stats.f_bfree

    available = free / GIB
    used = (total - free) / GIB
    if used + available <= 0:
        raise MetricUnavailable(f"statfs {path}: filesystem reports zero blocks")
    utilization = used / (used + available) * 100
    return UtilizationSample(
        resource_label=label,
        available=available,
        total=total / GIB,
        used=used,
        utilization=utilization,
    )


def driver_status_usage(status: Iterable[Sequence[str]], label: str = "docker") -> UtilizationSample:
    """Derive engine data-space usage from ``[label, value]`` driver status pairs.

    Values are reported in GB as the engine prints them. Utilization is
    ``used / total``; a missing or zero total is an error rather than 0%.
    """
    values: Dict[str, float] = {}
    for pair in status or []:
        if len(pair) < 2:
            continue
        key, raw = pair[0], pair[1]
        if key in (DATA_SPACE_AVAILABLE, DATA_SPACE_TOTAL, DATA_SPACE_USED):
            values[key] = parse_size(raw) / GB

    total = values.get(DATA_SPACE_TOTAL, 0.0)
    if total == 0:
        raise MetricUnavailable("driver status reports no data space total")
    available = values.get(DATA_SPACE_AVAILABLE, 0.0)
    used = values.get(DATA_SPACE_USED, 0.0)
    return UtilizationSample(
        resource_label=label,
        available=available,
        total=total,
        used=used,
        utilization=used / total * 100,
    )


def engine_info(client: Any) -> Dict[str, Any]:
    try:
        return client.info()
    except DockerException as exc:
        raise ResourceUnavailable(f"docker info: {exc}") from exc


def docker_usage(client: Any, label: str = "docker") -> UtilizationSample:
    info = engine_info(client)
    return driver_status_usage(info.get("DriverStatus") or [], label=label)


def container_inventory(client: Any) -> InventorySample:
    try:
        containers = client.containers.list(all=True)
    except DockerException as exc:
        raise ResourceUnavailable(f"docker ps: {exc}") from exc
    running = sum(1 for container in containers if container.status == "running")
    return InventorySample(total=len(containers), running=running, stopped=len(containers) - running)


def kernel_log_matches(pattern: str = READ_ONLY_REMOUNT, cmd: Optional[List[str]] = None) -> List[str]:
    """Return kernel ring buffer lines containing ``pattern``."""
    try:
        proc = subprocess.run(
            cmd or ["dmesg"],
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        raise ResourceUnavailable(f"dmesg: {exc}") from exc
    if proc.returncode != 0:
        raise ResourceUnavailable(f"dmesg exited {proc.returncode}: {proc.stderr.strip()}")
    return [line for line in proc.stdout.splitlines() if pattern in line]
