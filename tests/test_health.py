import io
import unittest
from unittest import mock

from botocore.exceptions import ClientError

from hostmend.lib import health
from hostmend.lib.telemetry import TelemetrySink


class RecordingSink(TelemetrySink):
    def __init__(self) -> None:
        super().__init__(stdout=io.StringIO())
        self.events = []

    def record_event(self, label, tag, payload):
        self.events.append((label, tag, payload))


class HealthReporterTest(unittest.TestCase):
    def test_single_set_instance_health_call(self):
        client = mock.Mock()
        sink = RecordingSink()
        reporter = health.HealthReporter("i-0abc1234", sink, client=client)
        reporter.report_unhealthy("Remounting filesystem read-only")
        client.set_instance_health.assert_called_once_with(
            InstanceId="i-0abc1234",
            HealthStatus="Unhealthy",
            ShouldRespectGracePeriod=True,
        )
        self.assertEqual(sink.events[0][1], "hostmend/health/unhealthy")
        self.assertEqual(sink.events[0][2]["reason"], "Remounting filesystem read-only")

    def test_api_error_raises_escalation_failed(self):
        client = mock.Mock()
        client.set_instance_health.side_effect = ClientError(
            {"Error": {"Code": "ValidationError", "Message": "instance not in group"}},
            "SetInstanceHealth",
        )
        sink = RecordingSink()
        reporter = health.HealthReporter("i-dev", sink, client=client)
        with self.assertRaises(health.EscalationFailed):
            reporter.report_unhealthy("disk utilization 99.00% >= 98.00%")
        self.assertEqual(client.set_instance_health.call_count, 1)
        self.assertEqual(sink.events[0][1], "hostmend/health/failed")


if __name__ == "__main__":
    unittest.main()
