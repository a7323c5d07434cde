"""Mark this host unhealthy in its autoscaling group."""
from __future__ import annotations

from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from hostmend.lib import telemetry


class EscalationFailed(RuntimeError):
    """Raised when the fleet health API call errors."""


class HealthReporter:
    """Thin wrapper over ``autoscaling.set_instance_health``.

    Each call to ``report_unhealthy`` makes exactly one API request. Callers
    own deduplication.
    """

    def __init__(self, instance: str, sink: telemetry.TelemetrySink, client: Any = None) -> None:
        self.instance = instance
        self.sink = sink
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("autoscaling")
        return self._client

    def report_unhealthy(self, reason: str, respect_grace_period: bool = True) -> None:
        payload = {"instance": self.instance, "status": "Unhealthy", "reason": reason}
        try:
            self._get_client().set_instance_health(
                InstanceId=self.instance,
                HealthStatus="Unhealthy",
                ShouldRespectGracePeriod=respect_grace_period,
            )
        except (BotoCoreError, ClientError) as exc:
            payload["error"] = str(exc)
            self.sink.record_event("ESCALATE", "hostmend/health/failed", payload)
            raise EscalationFailed(f"set_instance_health {self.instance}: {exc}") from exc
        self.sink.record_event("ESCALATE", "hostmend/health/unhealthy", payload)
