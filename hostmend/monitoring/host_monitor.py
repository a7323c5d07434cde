#!/usr/bin/env python3
"""
hostmend host monitor.

Runs one thread per monitored resource (root disk, docker data space, kernel
log, container inventory). Each thread samples on its own interval, reports
a structured line, applies its threshold policy and reclaims disk space or
marks the instance unhealthy in its autoscaling group.

There is no shutdown channel: the process runs until it is terminated.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import DockerException

from hostmend.lib import config_loader
from hostmend.lib import samplers
from hostmend.lib.health import HealthReporter
from hostmend.lib.identity import resolve_identity
from hostmend.lib.policy import Action, MonitorState, PatternState, ThresholdRule, decide
from hostmend.lib.remediate import Remediator
from hostmend.lib.telemetry import TelemetrySink, format_line


class Monitor:
    """Periodic task harness; subclasses implement ``tick``."""

    name = "base"

    def __init__(self, instance: str, sink: TelemetrySink, interval: float) -> None:
        self.instance = instance
        self.sink = sink
        self.interval = interval

    def line(self, **fields: Any) -> str:
        return format_line(self.name, instance=self.instance, **fields)

    def tick(self) -> None:
        raise NotImplementedError

    def run_once(self) -> bool:
        """Run one tick, converting any failure into an error line."""
        try:
            self.tick()
        except Exception as exc:
            self.sink.emit(self.line(kind=type(exc).__name__, error=str(exc)))
            return False
        return True

    def run_forever(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self.sink.emit(self.line())
        deadline = time.monotonic()
        while True:
            deadline += self.interval
            delay = deadline - time.monotonic()
            if delay > 0:
                sleep(delay)
            else:
                # body overran its interval; drop the missed ticks
                deadline = time.monotonic()
            self.run_once()


class UtilizationMonitor(Monitor):
    def __init__(
        self,
        instance: str,
        sink: TelemetrySink,
        interval: float,
        rule: ThresholdRule,
        remediator: Remediator,
        health: HealthReporter,
    ) -> None:
        super().__init__(instance, sink, interval)
        self.rule = rule
        self.remediator = remediator
        self.health = health
        self.state = MonitorState()

    def sample(self) -> samplers.UtilizationSample:
        raise NotImplementedError

    def report(self, sample: samplers.UtilizationSample) -> None:
        self.sink.emit(
            self.line(
                utilization=f"{sample.utilization:.2f}%",
                used=f"{sample.used:.4f}G",
                available=f"{sample.available:.4f}G",
                total=f"{sample.total:.4f}G",
            )
        )

    def tick(self) -> None:
        self.state.tick()
        sample = self.sample()
        self.report(sample)
        action = decide(sample.utilization, self.rule, self.state)
        # latch before acting so a failed action is not retried next tick
        self.state.record(action)
        if action is Action.ESCALATE:
            self.sink.emit(self.line(unhealthy="true", utilization=f"{sample.utilization:.2f}%"))
            self.health.report_unhealthy(
                f"{self.rule.resource_label} utilization {sample.utilization:.2f}% "
                f">= {self.rule.escalate_at:.2f}%"
            )
        elif action is Action.RECLAIM:
            self.remediator.reclaim(self.rule.resource_label)


class DiskMonitor(UtilizationMonitor):
    name = "disk"

    def __init__(self, path: str, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.path = path

    def sample(self) -> samplers.UtilizationSample:
        return samplers.filesystem_usage(self.path, label=self.rule.resource_label)


class DockerMonitor(UtilizationMonitor):
    name = "docker"

    def __init__(self, client: Any, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.client = client

    def sample(self) -> samplers.UtilizationSample:
        if self.client is None:
            raise samplers.ResourceUnavailable("docker client unavailable")
        return samplers.docker_usage(self.client, label=self.rule.resource_label)


class DmesgMonitor(Monitor):
    name = "dmesg"

    def __init__(self, instance: str, sink: TelemetrySink, interval: float, health: HealthReporter) -> None:
        super().__init__(instance, sink, interval)
        self.health = health
        self.state = PatternState()

    def tick(self) -> None:
        matches = samplers.kernel_log_matches()
        action = self.state.decide(bool(matches))
        if not matches:
            return
        reason = matches[-1]
        self.sink.emit(self.line(unhealthy="true", msg=reason))
        if action is Action.ESCALATE:
            self.health.report_unhealthy(reason)


class ContainersMonitor(Monitor):
    name = "containers"

    def __init__(self, instance: str, sink: TelemetrySink, interval: float, client: Any) -> None:
        super().__init__(instance, sink, interval)
        self.client = client

    def tick(self) -> None:
        if self.client is None:
            raise samplers.ResourceUnavailable("docker client unavailable")
        inventory = samplers.container_inventory(self.client)
        self.sink.emit(
            self.line(total=inventory.total, running=inventory.running, stopped=inventory.stopped)
        )


def docker_client(sink: TelemetrySink) -> Optional[Any]:
    try:
        return docker.from_env()
    except DockerException as exc:
        sink.emit(f"error: docker client unavailable: {exc}")
        return None


def build_monitors(
    settings: config_loader.MonitorSettings,
    instance: str,
    sink: TelemetrySink,
    client: Any,
    health: Optional[HealthReporter] = None,
    remediator: Optional[Remediator] = None,
) -> List[Monitor]:
    health = health or HealthReporter(instance, sink)
    remediator = remediator or Remediator(sink, instance)
    return [
        ContainersMonitor(instance, sink, settings.interval("containers"), client),
        DiskMonitor(
            settings.disk_path,
            instance,
            sink,
            settings.interval("disk"),
            rule=settings.rules["disk"],
            remediator=remediator,
            health=health,
        ),
        DockerMonitor(
            client,
            instance,
            sink,
            settings.interval("docker"),
            rule=settings.rules["docker"],
            remediator=remediator,
            health=health,
        ),
        DmesgMonitor(instance, sink, settings.interval("dmesg"), health),
    ]


def start(monitors: List[Monitor]) -> Dict[str, threading.Thread]:
    threads: Dict[str, threading.Thread] = {}
    for monitor in monitors:
        thread = threading.Thread(target=monitor.run_forever, name=f"hostmend-{monitor.name}", daemon=True)
        thread.start()
        threads[monitor.name] = thread
    return threads


def main() -> None:
    settings = config_loader.load_settings()
    sink = TelemetrySink(stream=settings.kinesis_stream)
    identity = resolve_identity(settings.metadata_url, settings.identity_timeout, log=sink.emit)
    instance = identity.instance_id
    start(build_monitors(settings, instance, sink, docker_client(sink)))
    while True:
        time.sleep(60)


if __name__ == "__main__":
    main()
