"""Instance identity for metric dimensions.

On EC2 the metadata API supplies the instance id. Anywhere else the agent
falls back to the local hostname written ``i-12345678`` style.
"""
from __future__ import annotations

import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Optional

from hostmend.lib.config_loader import DEFAULT_IDENTITY_TIMEOUT, DEFAULT_METADATA_URL


@dataclass(frozen=True)
class HostIdentity:
    instance_id: str
    source: str

    def __str__(self) -> str:
        return self.instance_id


def fallback_instance_id(hostname: Optional[str] = None) -> str:
    if hostname is None:
        try:
            hostname = socket.gethostname()
        except OSError:
            hostname = ""
    return f"i-{(hostname or 'hosterr')[:8]}"


def resolve_identity(
    url: str = DEFAULT_METADATA_URL,
    timeout: float = DEFAULT_IDENTITY_TIMEOUT,
    log: Optional[Callable[[str], None]] = None,
) -> HostIdentity:
    fallback = HostIdentity(fallback_instance_id(), "hostname")
    req = urllib.request.Request(url, headers={"User-Agent": "hostmend/1.0"})
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # nosec B310
            if resp.status != 200:
                if log:
                    log(f"error: metadata status {resp.status}")
                return fallback
            body = resp.read().decode("utf-8").strip()
    except (urllib.error.URLError, TimeoutError, ConnectionError, OSError, ValueError) as exc:
        if log:
            log(f"error: {exc}")
        return fallback
    if not body:
        return fallback
    return HostIdentity(body, "metadata")
