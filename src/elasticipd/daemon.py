"""
Main Daemon Module for Elastic IP Reconciliation

This module implements the poll scheduler of the daemon: it drives one
reconciliation cycle per interval, keeps the consecutive failure count, and
owns the graceful shutdown transition.

Control Loop Flow:
    1. Generate correlation ID for traceability
    2. Reconcile: inspect address, resolve identity, unbind/bind as needed
    3. Update retry state and the outcome sink (Prometheus)
    4. Exit fatally once consecutive failures reach MAX_RETRIES
    5. Sleep until the next interval or a shutdown signal

Lifecycle:
    RUNNING        cycles run every poll interval, strictly one at a time; a cycle
                   that overruns the interval delays the next one
    SHUTTING_DOWN  entered when SIGTERM/SIGINT is observed between cycles; one
                   final cycle runs in release-only mode, then the daemon exits

Exit Behaviour:
    - Retry budget spent: FatalExhaustion is raised, process exits non-zero
    - Final release cycle failed: ShutdownMutationError, process exits non-zero
    - Clean shutdown: run_loop returns normally

Signal Handling:
    - SIGTERM/SIGINT set shutdown_event; the loop observes it only between
      cycles, never interrupting a cycle in flight

Usage:
    from .daemon import startup, run_loop
    from .config import Config

    cfg = Config()
    runtime = startup(cfg)
    run_loop(cfg, runtime.reconciler, runtime.sink, structured_logger=runtime.structured_logger)
"""

import sys
import time
import uuid
import signal
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

from prometheus_client import CollectorRegistry

from .config import Config, DAEMON_NAME, DAEMON_VERSION, resolve_logger_name, validate_configuration
from .errors import FatalExhaustion, ShutdownMutationError
from .models import CycleResult, Lifecycle, ReconciliationOutcome, RetryState
from .reconciler import Reconciler
from .structured_events import ActionResult, EventType, StructuredEventLogger
from . import aws as aws_mod
from . import metrics as metrics_mod

# Event used to signal graceful shutdown; set by signal handlers, checked between cycles
shutdown_event = threading.Event()

# Correlation ID format constants
CORRELATION_ID_PREFIX = "rc"
CORRELATION_ID_LENGTH = 8


def _logger() -> logging.Logger:
    return logging.getLogger(resolve_logger_name())


def signal_handler(signum: int, frame) -> None:
    """
    Signal handler for graceful daemon shutdown.

    Only sets shutdown_event; the main loop performs the release cycle once the
    cycle currently in flight (if any) has finished.
    """
    signal_names = {
        signal.SIGTERM: 'SIGTERM',
        signal.SIGINT: 'SIGINT'
    }
    signal_name = signal_names.get(signum, f'Signal-{signum}')
    _logger().info(f"Received {signal_name}, initiating graceful shutdown...")
    shutdown_event.set()


def setup_signal_handlers() -> None:
    """Register signal_handler for SIGTERM and SIGINT."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    _logger().debug("Signal handlers registered for SIGTERM and SIGINT")


def request_shutdown() -> None:
    """Programmatically request daemon shutdown, equivalent to sending SIGTERM."""
    _logger().info("Programmatic shutdown requested")
    shutdown_event.set()


def new_correlation_id() -> str:
    return f"{CORRELATION_ID_PREFIX}-{int(time.time())}-{str(uuid.uuid4())[:CORRELATION_ID_LENGTH]}"


def _reconcile(reconciler: Reconciler, shutdown_requested: bool) -> ReconciliationOutcome:
    try:
        return reconciler.reconcile(shutdown_requested=shutdown_requested)
    except Exception as e:
        # Collaborator bugs count as a failed cycle like any provider error
        _logger().exception(f"Unexpected error during reconciliation cycle: {e}")
        return ReconciliationOutcome(CycleResult.FAILED, reason=str(e), error_kind="unexpected")


def run_cycle(reconciler: Reconciler, retry: RetryState, sink=None,
              structured_logger: Optional[StructuredEventLogger] = None,
              shutdown_requested: bool = False) -> Tuple[ReconciliationOutcome, RetryState]:
    """
    Run one reconciliation cycle and fold its outcome into the retry state.

    Args:
        reconciler (Reconciler): The reconciler to invoke.
        retry (RetryState): Retry state before this cycle.
        sink: OutcomeSink receiving record_failure(kind) / record_success().
        structured_logger (StructuredEventLogger, optional): Structured event sink.
        shutdown_requested (bool): Run in release-only mode.

    Returns:
        Tuple[ReconciliationOutcome, RetryState]: The outcome and the new retry state.
    """
    logger = _logger()
    start = time.time()
    correlation_id = new_correlation_id()
    if structured_logger:
        structured_logger.set_correlation_id(correlation_id)
    logger.debug(f"Starting reconciliation cycle {correlation_id} (shutdown={shutdown_requested})")

    outcome = _reconcile(reconciler, shutdown_requested)
    retry = retry.record(outcome)

    if sink is not None:
        if outcome.failed:
            sink.record_failure(outcome.error_kind)
        else:
            sink.record_success()

    duration_ms = int((time.time() - start) * 1000)
    if outcome.failed:
        logger.warning(f"Reconciliation cycle {correlation_id} failed "
                       f"({retry.consecutive_failures}/{retry.max_failures}): {outcome.reason}")
        cycle_result = ActionResult.FAILURE
    elif outcome.result is CycleResult.UNCHANGED:
        logger.debug(f"Reconciliation cycle {correlation_id} completed, no change")
        cycle_result = ActionResult.NO_CHANGE
    else:
        logger.info(f"Reconciliation cycle {correlation_id} completed: {outcome.result.value}")
        cycle_result = ActionResult.SUCCESS

    if structured_logger:
        structured_logger.log_cycle(
            public_ip=reconciler.target_ip,
            outcome=outcome.result.value,
            result=cycle_result,
            shutdown=shutdown_requested,
            consecutive_failures=retry.consecutive_failures,
            max_failures=retry.max_failures,
            error_kind=outcome.error_kind,
            duration_ms=duration_ms,
            error_message=outcome.reason,
        )
        structured_logger.set_correlation_id(None)

    return outcome, retry


def run_shutdown_cycle(reconciler: Reconciler, sink=None,
                       structured_logger: Optional[StructuredEventLogger] = None) -> ReconciliationOutcome:
    """
    Run the single release-only cycle of a graceful shutdown.

    Raises:
        ShutdownMutationError: If the cycle fails. There is no later cycle to
            retry in, so this is always fatal.
    """
    logger = _logger()
    logger.info(f"Attempting to release Elastic IP {reconciler.target_ip} before shutdown")

    # A fresh budget of one: the final cycle is never retried
    outcome, _ = run_cycle(reconciler, RetryState(max_failures=1), sink, structured_logger,
                           shutdown_requested=True)
    if outcome.failed:
        logger.critical(f"Error shutting down gracefully, Elastic IP {reconciler.target_ip} "
                        f"may still be associated with this instance: {outcome.reason}")
        raise ShutdownMutationError("failed to release elastic ip during shutdown",
                                    public_ip=reconciler.target_ip, reason=outcome.reason,
                                    error_kind=outcome.error_kind)

    if outcome.result is CycleResult.RELEASED:
        logger.info(f"Elastic IP {reconciler.target_ip} disassociated before shutdown")
    else:
        logger.info(f"Elastic IP {reconciler.target_ip} had no association to release")
    return outcome


def run_loop(cfg: Config, reconciler: Reconciler, sink=None,
             shutdown_event: threading.Event = shutdown_event,
             structured_logger: Optional[StructuredEventLogger] = None) -> RetryState:
    """
    Main daemon control loop (the poll scheduler).

    Runs one cycle immediately, then one per cfg.poll_interval seconds, until
    shutdown_event is set. Cycles never overlap: the wait for the next tick is
    max(0, interval - cycle duration), and the shutdown event is only observed
    between cycles.

    Args:
        cfg (Config): Validated configuration (poll_interval, max_retries).
        reconciler (Reconciler): Reconciler for the configured Elastic IP.
        sink: OutcomeSink for metrics, or None.
        shutdown_event (threading.Event): Cancellation flag checked between cycles.
        structured_logger (StructuredEventLogger, optional): Structured event sink.

    Returns:
        RetryState: The retry state at the time the loop stopped.

    Raises:
        FatalExhaustion: When consecutive failures reach cfg.max_retries.
        ShutdownMutationError: When the final release cycle fails.
    """
    logger = _logger()
    interval = cfg.poll_interval
    retry = RetryState(max_failures=cfg.max_retries)
    lifecycle = Lifecycle.RUNNING

    logger.info(f"Service started, will attempt to associate Elastic IP {reconciler.target_ip} "
                f"to the current instance every {interval}s")
    logger.info(f"Allow reassociation: {reconciler.allow_reassociation}, "
                f"max consecutive failures before exit: {retry.max_failures}")

    while lifecycle is Lifecycle.RUNNING:
        if shutdown_event.is_set():
            lifecycle = Lifecycle.SHUTTING_DOWN
            continue

        loop_start = time.time()
        outcome, retry = run_cycle(reconciler, retry, sink, structured_logger)

        if retry.exhausted:
            logger.critical(f"Maximum amount of retries reached ({retry.consecutive_failures}/"
                            f"{retry.max_failures}), automatic recovery has given up, exiting")
            if structured_logger:
                structured_logger.log_event({
                    "event_type": EventType.RETRY_EXHAUSTION.value,
                    "timestamp": time.time(),
                    "result": ActionResult.FAILURE.value,
                    "component": "scheduler",
                    "operation": "retry_exhaustion",
                    "details": {
                        "public_ip": reconciler.target_ip,
                        "consecutive_failures": retry.consecutive_failures,
                        "max_failures": retry.max_failures,
                        "last_error_kind": outcome.error_kind,
                    },
                    "error_message": outcome.reason,
                })
            raise FatalExhaustion("maximum amount of retries reached",
                                  public_ip=reconciler.target_ip,
                                  consecutive_failures=retry.consecutive_failures,
                                  last_error=outcome.reason)

        loop_duration = time.time() - loop_start
        sleep_time = max(0, interval - loop_duration)
        if sleep_time == 0:
            logger.warning(f"Cycle took {loop_duration:.2f}s, longer than poll interval {interval}s")

        if shutdown_event.wait(sleep_time):
            lifecycle = Lifecycle.SHUTTING_DOWN

    logger.info(f"Received stop signal, attempting graceful shutdown (lifecycle={lifecycle.value})")
    run_shutdown_cycle(reconciler, sink, structured_logger)

    if structured_logger:
        structured_logger.log_lifecycle("shutdown", {
            "reason": "graceful_shutdown",
            "lifecycle": lifecycle.value,
            "public_ip": reconciler.target_ip,
            "consecutive_failures": retry.consecutive_failures,
        })
    logger.info("Main daemon loop exited. Cleanup completed successfully.")
    return retry


@dataclass
class Runtime:
    """Everything startup() wires together for run_loop()."""
    reconciler: Reconciler
    sink: metrics_mod.PrometheusOutcomeSink
    structured_logger: StructuredEventLogger
    http_server: Optional[metrics_mod.HealthServer] = None


def startup(cfg: Config, ec2_client=None, metadata=None) -> Runtime:
    """
    Bootstraps the daemon before the main loop starts.

    Phases:
        1. Validate configuration (exit 1 on errors)
        2. Build the EC2 client and validate credentials/region (exit 1 on failure)
        3. Register signal handlers
        4. Start the local /healthz + /metrics server (skipped when port is 0)

    Args:
        cfg (Config): Parsed configuration.
        ec2_client: Pre-built EC2 client, mainly for tests.
        metadata: Pre-built MetadataSource, mainly for tests.

    Returns:
        Runtime: Reconciler, outcome sink, structured logger and HTTP server.
    """
    logger = _logger()
    structured_logger = StructuredEventLogger(cfg.logger_name)

    logger.info(f"Starting {DAEMON_NAME} v{DAEMON_VERSION}")

    logger.info("Phase 1: Validating configuration")
    errors = validate_configuration(cfg)
    if errors:
        logger.error("Configuration validation failed:")
        for e in errors:
            logger.error(f" - {e}")
        structured_logger.log_lifecycle("config_validation", {"errors": errors},
                                        result=ActionResult.FAILURE,
                                        error_message=f"{len(errors)} configuration error(s)")
        raise SystemExit(1)

    logger.info("Phase 2: Validating AWS connectivity")
    try:
        if ec2_client is None:
            ec2_client = aws_mod.build_ec2_client(cfg.aws_region, timeout=cfg.aws_api_timeout)
        aws_mod.validate_aws_connectivity(ec2_client, cfg.aws_region)
    except Exception as e:
        logger.critical(f"Cannot start daemon without AWS connectivity: {e}")
        structured_logger.log_lifecycle("connectivity_validation", {"region": cfg.aws_region},
                                        result=ActionResult.FAILURE, error_message=str(e))
        raise SystemExit(1)

    if metadata is None:
        metadata = aws_mod.InstanceMetadataSource(ec2_client, timeout=cfg.metadata_timeout)

    reconciler = Reconciler(
        provider=aws_mod.Ec2AddressService(ec2_client),
        metadata=metadata,
        target_ip=cfg.elastic_ip,
        allow_reassociation=cfg.allow_reassociation,
        structured_logger=structured_logger,
        logger=logger,
    )

    logger.info("Phase 3: Setting up signal handlers for graceful shutdown")
    try:
        setup_signal_handlers()
    except ValueError as e:
        # signal.signal only works from the main thread
        logger.warning(f"Failed to register signal handlers: {e}")

    sink = metrics_mod.PrometheusOutcomeSink(CollectorRegistry())
    http_server = None
    if cfg.http_port:
        logger.info(f"Phase 4: Starting local http server on :{cfg.http_port}")
        try:
            http_server = metrics_mod.start_http_server(cfg.http_port, sink.registry)
        except OSError as e:
            logger.error(f"Could not start local http server on :{cfg.http_port}: {e}")

    structured_logger.log_lifecycle("startup_complete", {
        "public_ip": cfg.elastic_ip,
        "region": cfg.aws_region,
        "poll_interval_seconds": cfg.poll_interval,
        "max_retries": cfg.max_retries,
        "allow_reassociation": cfg.allow_reassociation,
        "http_port": cfg.http_port,
        "python": sys.version.split()[0],
    })
    logger.info("Daemon startup completed successfully")

    return Runtime(reconciler=reconciler, sink=sink, structured_logger=structured_logger,
                   http_server=http_server)
