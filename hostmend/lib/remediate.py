"""Disk space reclamation by pruning unused container artifacts."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from hostmend.lib import telemetry

# (label, shell command); run in order, each independent of the other
RECLAIM_COMMANDS: Tuple[Tuple[str, str], ...] = (
    ("containers", "docker container prune --force"),
    ("images", "docker image prune --all --force"),
)


class RemediationFailed(RuntimeError):
    """Raised (or recorded) when a corrective command exits non-zero."""


@dataclass
class RemediationOutcome:
    command_label: str
    command: str
    exit_error: Optional[RemediationFailed] = None
    output_lines: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_error is None


def run_shell(label: str, cmd: str) -> RemediationOutcome:
    """Run ``cmd`` through ``sh -c`` and capture combined output."""
    try:
        proc = subprocess.run(
            ["sh", "-c", cmd],
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
    except OSError as exc:
        return RemediationOutcome(label, cmd, RemediationFailed(str(exc)))
    lines = proc.stdout.splitlines()
    error = None
    if proc.returncode != 0:
        error = RemediationFailed(f"exit status {proc.returncode}")
    return RemediationOutcome(label, cmd, error, lines)


class Remediator:
    def __init__(
        self,
        sink: telemetry.TelemetrySink,
        instance: str,
        commands: Sequence[Tuple[str, str]] = RECLAIM_COMMANDS,
    ) -> None:
        self.sink = sink
        self.instance = instance
        self.commands = tuple(commands)

    def reclaim(self, resource_label: str) -> List[RemediationOutcome]:
        """Run every reclaim command; a failed step never skips the next one."""
        prefix = telemetry.format_line("remove_docker", instance=self.instance, resource=resource_label)
        outcomes: List[RemediationOutcome] = []
        for label, cmd in self.commands:
            self.sink.emit(f"{prefix} {telemetry.format_fields(cmd=cmd)}")
            outcome = run_shell(label, cmd)
            for line in outcome.output_lines:
                self.sink.emit(f"{prefix} {telemetry.format_fields(out=line)}")
            if outcome.exit_error is not None:
                self.sink.emit(f"{prefix} {telemetry.format_fields(error=str(outcome.exit_error))}")
            outcomes.append(outcome)
        self.sink.record_event(
            "RECLAIM",
            "hostmend/reclaim",
            {
                "instance": self.instance,
                "resource": resource_label,
                "results": {o.command_label: o.ok for o in outcomes},
            },
        )
        return outcomes
