import json
import logging
import unittest

from smartcompras import create_app
from smartcompras.config import Config
from smartcompras.db import close_db
from smartcompras.observability import (
    JsonLogFormatter,
    bind_request_id,
    observe_requisition_transition,
    observe_store_retry,
    reset_metrics_for_tests,
    set_log_request_id,
)
from tests.helpers.temp_db import TempDbSandbox


class _MetricsConfig(Config):
    TESTING = False
    DB_AUTO_INIT = False


class ObservabilityPrometheusTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="observability_metrics")
        cfg = self._temp_db.make_config(_MetricsConfig)
        self.app = create_app(cfg)
        self.client = self.app.test_client()
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        with self.app.app_context():
            close_db()
        self._temp_db.cleanup()
        reset_metrics_for_tests()

    def test_metrics_endpoint_exposes_prometheus_metrics(self) -> None:
        self.client.get("/api/unknown")
        observe_requisition_transition("expense", None, "pending")
        observe_store_retry(0.2)

        response = self.client.get("/metrics")
        self.assertEqual(response.status_code, 200)
        content_type = response.headers.get("Content-Type") or ""
        self.assertIn("text/plain", content_type)

        payload = response.get_data(as_text=True)
        self.assertIn("http_request_total", payload)
        self.assertIn("http_request_duration_ms_bucket", payload)
        self.assertIn("requisition_transition_total", payload)
        self.assertIn("notification_delivered_total", payload)
        self.assertIn("notification_failed_total", payload)
        self.assertIn("store_retry_total 1", payload)
        self.assertIn("store_unavailable_total 0", payload)
        self.assertIn('store_retry_backoff_seconds_bucket{le="0.25"} 1', payload)
        self.assertIn('from_status="none"', payload)
        self.assertIn('status="404"', payload)

    def test_log_formatter_includes_request_id_outside_request_context(self) -> None:
        set_log_request_id("worker-req-123")
        formatter = JsonLogFormatter()
        record = logging.LogRecord(
            name="smartcompras",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg="worker_log",
            args=(),
            exc_info=None,
        )
        parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed.get("request_id"), "worker-req-123")

    def test_bound_request_id_is_restored(self) -> None:
        set_log_request_id("outer")
        formatter = JsonLogFormatter()
        record = logging.LogRecord("smartcompras", logging.INFO, __file__, 1, "cli_log", (), None)
        record.requisition_id = 42
        with bind_request_id("redeliver-1"):
            parsed = json.loads(formatter.format(record))
        self.assertEqual(parsed["request_id"], "redeliver-1")
        self.assertEqual(parsed["requisition_id"], 42)
        self.assertEqual(json.loads(formatter.format(record))["request_id"], "outer")

    def test_health_counts_requests(self) -> None:
        self.client.get("/health")
        payload = self.client.get("/health").get_json() or {}
        self.assertEqual(payload["metrics"]["requests_total"], 1)
        self.assertEqual(payload["metrics"]["errors_total"], 0)


if __name__ == "__main__":
    unittest.main()
