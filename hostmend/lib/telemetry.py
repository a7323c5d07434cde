"""Structured line output for hostmend monitors.

Every line goes to stdout first. When a Kinesis stream is configured the
line is also forwarded on a small worker pool; forwarding is best-effort
and its failures only ever produce another local line.
"""
from __future__ import annotations

import json
import re
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional, TextIO

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from hostmend.lib import config_loader
from hostmend.lib import logging_utils

FORWARD_WORKERS = 4
_BARE_VALUE_RE = re.compile(r"^[\w.%:/@+\-]+$")


def format_fields(**fields: Any) -> str:
    parts = []
    for key, value in fields.items():
        text = str(value)
        if not _BARE_VALUE_RE.match(text):
            text = json.dumps(text, ensure_ascii=False)
        parts.append(f"{key}={text}")
    return " ".join(parts)


def format_line(monitor: str, **fields: Any) -> str:
    """Render ``<monitor> monitor key=value ...``."""
    if not fields:
        return f"{monitor} monitor"
    return f"{monitor} monitor {format_fields(**fields)}"


class TelemetrySink:
    def __init__(
        self,
        stream: Optional[str] = None,
        client: Any = None,
        stdout: Optional[TextIO] = None,
        workers: int = FORWARD_WORKERS,
    ) -> None:
        self.stream = stream or None
        self.stdout = stdout or sys.stdout
        self.client = client
        self._executor: Optional[ThreadPoolExecutor] = None
        self._slots: Optional[threading.BoundedSemaphore] = None
        if self.stream:
            if self.client is None:
                try:
                    self.client = boto3.client("kinesis")
                except (BotoCoreError, ClientError) as exc:
                    self._write(f"error: kinesis client unavailable, forwarding disabled: {exc}")
                    self.stream = None
            if self.stream:
                workers = max(1, workers)
                # one slot per worker so a line is either sent now or dropped, never queued
                self._slots = threading.BoundedSemaphore(workers)
                self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="hostmend-forward")

    def _write(self, line: str) -> None:
        # single write call so concurrent monitors never interleave a line
        self.stdout.write(line.rstrip("\n") + "\n")
        self.stdout.flush()

    def emit(self, line: str) -> Optional[Future]:
        """Write ``line`` locally and forward it if a stream is configured.

        Returns the pending forward, if any; callers are free to ignore it.
        When every worker is busy the line is dropped rather than queued.
        """
        self._write(line)
        if self._executor is None or self._slots is None:
            return None
        if not self._slots.acquire(blocking=False):
            self._write(f"error: forward dropped {format_fields(stream=self.stream)}")
            return None
        try:
            return self._executor.submit(self._put_record, line)
        except RuntimeError:
            self._slots.release()
            raise

    def _put_record(self, line: str) -> bool:
        try:
            self.client.put_record(
                StreamName=self.stream,
                Data=f"agent: {line.rstrip()}\n".encode("utf-8"),
                PartitionKey=str(time.time_ns()),
            )
        except (BotoCoreError, ClientError) as exc:
            self._write(f"error: {exc}")
            return False
        except Exception as exc:
            self._write(f"error: kinesis forward failed: {type(exc).__name__}: {exc}")
            return False
        finally:
            self._slots.release()
        self._write(format_line("telemetry", upload="kinesis", stream=self.stream, lines=1))
        return True

    def record_event(self, label: str, tag: str, payload: Dict[str, Any]) -> None:
        """Persist an action record to the alert log and the Salt event bus."""
        logging_utils.append_alert(label, tag, payload)
        config_loader.fire_event(tag, payload)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
