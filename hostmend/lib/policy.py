"""Threshold policy for hostmend monitors.

``decide`` is pure; the monitor that owns a ``MonitorState`` is the only
caller of ``MonitorState.tick`` and ``MonitorState.record``.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

DEFAULT_RECLAIM_AT = 80.0
DEFAULT_ESCALATE_AT = 98.0
DEFAULT_RECLAIM_COOLDOWN = 12  # ticks; hourly on a 5 minute interval


class Action(Enum):
    NONE = "none"
    RECLAIM = "reclaim"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class ThresholdRule:
    resource_label: str
    reclaim_at: Optional[float] = DEFAULT_RECLAIM_AT
    escalate_at: Optional[float] = DEFAULT_ESCALATE_AT
    reclaim_cooldown: int = DEFAULT_RECLAIM_COOLDOWN


@dataclass
class MonitorState:
    # None until the first reclaim, so the first breach acts immediately
    ticks_since_reclaim: Optional[int] = None
    escalated: bool = False

    def tick(self) -> None:
        if self.ticks_since_reclaim is not None:
            self.ticks_since_reclaim += 1

    def record(self, action: Action) -> None:
        if action is Action.RECLAIM:
            self.ticks_since_reclaim = 0
        elif action is Action.ESCALATE:
            self.escalated = True

    def reclaim_ready(self, cooldown: int) -> bool:
        return self.ticks_since_reclaim is None or self.ticks_since_reclaim >= cooldown


def decide(utilization: float, rule: ThresholdRule, state: MonitorState) -> Action:
    """Map a utilization percentage to the action this tick should take.

    Escalation wins over reclaim and is terminal: once ``state.escalated``
    is set the resource never acts again in this process.
    """
    if state.escalated:
        return Action.NONE
    if rule.escalate_at is not None and utilization >= rule.escalate_at:
        return Action.ESCALATE
    if rule.reclaim_at is not None and utilization >= rule.reclaim_at:
        if state.reclaim_ready(rule.reclaim_cooldown):
            return Action.RECLAIM
    return Action.NONE


@dataclass
class PatternState:
    """Escalation latch for boolean conditions such as a kernel log match.

    The latch re-arms once the condition is no longer observed, so each
    continuous episode escalates exactly once.
    """

    episode_open: bool = False

    def decide(self, seen: bool) -> Action:
        if not seen:
            self.episode_open = False
            return Action.NONE
        if self.episode_open:
            return Action.NONE
        self.episode_open = True
        return Action.ESCALATE
