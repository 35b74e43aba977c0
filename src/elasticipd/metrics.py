"""Prometheus metrics and the local health check server.

The reconciliation loop only ever increments counters through an OutcomeSink;
the HTTP server runs in its own daemon thread and reads them when scraped.
"""

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, generate_latest

from .config import DAEMON_NAME, resolve_logger_name

logger = logging.getLogger(resolve_logger_name())


class PrometheusOutcomeSink:
    """OutcomeSink that records cycle outcomes as Prometheus metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.critical_errors = Counter(
            "critical_error_count",
            "Counter representing the number of errors associating/disassociating the Elastic IP",
            labelnames=("operation",),
            namespace=DAEMON_NAME,
            registry=self.registry,
        )
        self.cycles = Counter(
            "reconciliation_total",
            "Reconciliation cycles by outcome (success or failure).",
            labelnames=("outcome",),
            namespace=DAEMON_NAME,
            registry=self.registry,
        )
        self.consecutive_failures = Gauge(
            "consecutive_failures",
            "Consecutive failed reconciliation cycles since the last success.",
            namespace=DAEMON_NAME,
            registry=self.registry,
        )

    def record_failure(self, kind: str) -> None:
        self.critical_errors.labels(operation=kind or "unknown").inc()
        self.cycles.labels(outcome="failure").inc()
        self.consecutive_failures.inc()

    def record_success(self) -> None:
        self.cycles.labels(outcome="success").inc()
        self.consecutive_failures.set(0)


def _make_handler(registry: CollectorRegistry):
    class HealthMetricsHandler(BaseHTTPRequestHandler):
        """Serves /healthz and /metrics."""

        # Per-connection socket timeout (seconds) for reads and writes
        timeout = 10

        def do_GET(self):
            path = self.path.split("?", 1)[0]
            if path == "/healthz":
                body = b"ok"
                self.send_response(200)
                self.send_header("Content-Type", "text/plain")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)
            elif path == "/metrics":
                output = generate_latest(registry)
                self.send_response(200)
                self.send_header("Content-Type", CONTENT_TYPE_LATEST)
                self.send_header("Content-Length", str(len(output)))
                self.end_headers()
                self.wfile.write(output)
            else:
                self.send_response(404)
                self.end_headers()

        def log_message(self, format, *args):
            logger.debug(f"http {self.address_string()} {format % args}")

    return HealthMetricsHandler


class HealthServer:
    """Local HTTP server exposing a health check and Prometheus metrics."""

    def __init__(self, port: int, registry: CollectorRegistry, host: str = "0.0.0.0"):
        self.server = ThreadingHTTPServer((host, port), _make_handler(registry))
        self.thread = threading.Thread(target=self.server.serve_forever,
                                       name="elasticipd-http", daemon=True)

    @property
    def port(self) -> int:
        return self.server.server_address[1]

    def start(self) -> "HealthServer":
        self.thread.start()
        logger.info(f"Started local http server on :{self.port} (/healthz, /metrics)")
        return self

    def stop(self) -> None:
        self.server.shutdown()
        self.server.server_close()
        logger.info("Local http server stopped")


def start_http_server(port: int, registry: CollectorRegistry, host: str = "0.0.0.0") -> HealthServer:
    return HealthServer(port, registry, host=host).start()
