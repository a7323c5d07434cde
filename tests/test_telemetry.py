import io
import json
import os
import tempfile
import threading
import unittest
from pathlib import Path
from unittest import mock

from botocore.exceptions import ClientError

from hostmend.lib import config_loader
from hostmend.lib import telemetry


class FormatLineTest(unittest.TestCase):
    def test_bare_and_quoted_values(self):
        line = telemetry.format_line("disk", instance="i-abc", utilization="80.00%", msg="read only fs")
        self.assertEqual(line, 'disk monitor instance=i-abc utilization=80.00% msg="read only fs"')

    def test_empty_value_is_quoted(self):
        self.assertEqual(telemetry.format_fields(out=""), 'out=""')


class TelemetrySinkTest(unittest.TestCase):
    def test_stdout_only_without_stream(self):
        buf = io.StringIO()
        sink = telemetry.TelemetrySink(stdout=buf)
        self.assertIsNone(sink.emit("disk monitor instance=i-abc"))
        self.assertEqual(buf.getvalue(), "disk monitor instance=i-abc\n")

    def test_forwards_to_kinesis(self):
        buf = io.StringIO()
        client = mock.Mock()
        sink = telemetry.TelemetrySink(stream="agent-logs", client=client, stdout=buf)
        try:
            future = sink.emit("disk monitor instance=i-abc")
            self.assertTrue(future.result(timeout=5))
        finally:
            sink.close()
        kwargs = client.put_record.call_args.kwargs
        self.assertEqual(kwargs["StreamName"], "agent-logs")
        self.assertEqual(kwargs["Data"], b"agent: disk monitor instance=i-abc\n")
        self.assertTrue(kwargs["PartitionKey"].isdigit())
        lines = buf.getvalue().splitlines()
        self.assertEqual(lines[0], "disk monitor instance=i-abc")
        self.assertIn("upload=kinesis stream=agent-logs lines=1", lines[1])

    def test_forward_failure_is_logged_not_raised(self):
        buf = io.StringIO()
        client = mock.Mock()
        client.put_record.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "stream missing"}},
            "PutRecord",
        )
        sink = telemetry.TelemetrySink(stream="agent-logs", client=client, stdout=buf)
        try:
            future = sink.emit("docker monitor instance=i-abc")
            self.assertFalse(future.result(timeout=5))
        finally:
            sink.close()
        self.assertIn("error:", buf.getvalue())
        self.assertIn("stream missing", buf.getvalue())

    def test_busy_stream_drops_lines_instead_of_queueing(self):
        buf = io.StringIO()
        started = threading.Semaphore(0)
        release = threading.Event()

        def slow_put_record(**kwargs):
            started.release()
            release.wait(timeout=5)

        client = mock.Mock()
        client.put_record.side_effect = slow_put_record
        sink = telemetry.TelemetrySink(stream="agent-logs", client=client, stdout=buf, workers=2)
        try:
            futures = [sink.emit(f"disk monitor tick={n}") for n in range(10)]
            self.assertTrue(started.acquire(timeout=5))
            self.assertTrue(started.acquire(timeout=5))
            self.assertEqual(sink._executor._work_queue.qsize(), 0)
            pending = [f for f in futures if f is not None]
            self.assertEqual(len(pending), 2)
            release.set()
            self.assertTrue(all(f.result(timeout=5) for f in pending))
            self.assertTrue(sink.emit("disk monitor tick=10").result(timeout=5))
        finally:
            release.set()
            sink.close()
        self.assertEqual(buf.getvalue().count("error: forward dropped stream=agent-logs"), 8)
        self.assertEqual(client.put_record.call_count, 3)

    def test_unexpected_forward_error_is_logged(self):
        buf = io.StringIO()
        client = mock.Mock()
        client.put_record.side_effect = ValueError("bad payload")
        sink = telemetry.TelemetrySink(stream="agent-logs", client=client, stdout=buf, workers=1)
        try:
            self.assertFalse(sink.emit("docker monitor instance=i-abc").result(timeout=5))
            # the slot is released after a failure
            self.assertFalse(sink.emit("docker monitor instance=i-abc").result(timeout=5))
        finally:
            sink.close()
        self.assertIn("error: kinesis forward failed: ValueError: bad payload", buf.getvalue())
        self.assertNotIn("forward dropped", buf.getvalue())

    def test_record_event_appends_alert_log(self):
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "alerts.log"
            sink = telemetry.TelemetrySink(stdout=io.StringIO())
            with mock.patch.dict(os.environ, {"HOSTMEND_ALERT_LOG": str(log_path)}), mock.patch.object(
                config_loader, "fire_event", return_value=True
            ) as fire:
                sink.record_event("RECLAIM", "hostmend/reclaim", {"resource": "disk"})
            record = json.loads(log_path.read_text(encoding="utf-8").strip())
        self.assertEqual(record["label"], "RECLAIM")
        self.assertEqual(record["tag"], "hostmend/reclaim")
        self.assertEqual(record["payload"], {"resource": "disk"})
        fire.assert_called_once_with("hostmend/reclaim", {"resource": "disk"})


if __name__ == "__main__":
    unittest.main()
