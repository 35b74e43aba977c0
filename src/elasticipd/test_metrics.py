"""
Unit Tests for Prometheus Metrics and the Local HTTP Server

Test Coverage:
    - Failure/success recording on the outcome sink
    - /healthz, /metrics and unknown paths on the local HTTP server
"""

import unittest

import requests
from prometheus_client import CollectorRegistry

from elasticipd.metrics import PrometheusOutcomeSink, start_http_server


class TestPrometheusOutcomeSink(unittest.TestCase):
    """Test suite for PrometheusOutcomeSink."""

    def setUp(self):
        self.registry = CollectorRegistry()
        self.sink = PrometheusOutcomeSink(self.registry)

    def sample(self, name, labels=None):
        return self.registry.get_sample_value(name, labels or {})

    def test_failure_increments_critical_error_count(self):
        self.sink.record_failure("association")
        self.sink.record_failure("association")
        self.sink.record_failure("lookup")

        self.assertEqual(self.sample("elasticipd_critical_error_count_total",
                                     {"operation": "association"}), 2.0)
        self.assertEqual(self.sample("elasticipd_critical_error_count_total",
                                     {"operation": "lookup"}), 1.0)
        self.assertEqual(self.sample("elasticipd_reconciliation_total", {"outcome": "failure"}), 3.0)
        self.assertEqual(self.sample("elasticipd_consecutive_failures"), 3.0)

    def test_success_resets_consecutive_failures(self):
        self.sink.record_failure("lookup")
        self.sink.record_success()

        self.assertEqual(self.sample("elasticipd_consecutive_failures"), 0.0)
        self.assertEqual(self.sample("elasticipd_reconciliation_total", {"outcome": "success"}), 1.0)

    def test_empty_kind_is_unknown(self):
        self.sink.record_failure(None)
        self.assertEqual(self.sample("elasticipd_critical_error_count_total",
                                     {"operation": "unknown"}), 1.0)

    def test_separate_registries_do_not_collide(self):
        """Building a second sink must not raise a duplicate timeseries error."""
        other = PrometheusOutcomeSink(CollectorRegistry())
        other.record_success()
        self.assertIsNone(self.sample("elasticipd_reconciliation_total", {"outcome": "success"}))


class TestHealthServer(unittest.TestCase):
    """Test suite for the /healthz and /metrics endpoints."""

    @classmethod
    def setUpClass(cls):
        cls.registry = CollectorRegistry()
        cls.sink = PrometheusOutcomeSink(cls.registry)
        cls.server = start_http_server(0, cls.registry, host="127.0.0.1")
        cls.base_url = f"http://127.0.0.1:{cls.server.port}"

    @classmethod
    def tearDownClass(cls):
        cls.server.stop()

    def test_healthz(self):
        resp = requests.get(f"{self.base_url}/healthz", timeout=5)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.text, "ok")

    def test_metrics(self):
        self.sink.record_failure("disassociation")
        resp = requests.get(f"{self.base_url}/metrics", timeout=5)
        self.assertEqual(resp.status_code, 200)
        self.assertIn('elasticipd_critical_error_count_total{operation="disassociation"}', resp.text)

    def test_unknown_path(self):
        resp = requests.get(f"{self.base_url}/nope", timeout=5)
        self.assertEqual(resp.status_code, 404)

    def test_handler_socket_timeout(self):
        """Each connection has a socket timeout, so a stalled client cannot hold a handler thread."""
        handler_class = self.server.server.RequestHandlerClass
        self.assertEqual(handler_class.timeout, 10)


if __name__ == '__main__':
    unittest.main()
