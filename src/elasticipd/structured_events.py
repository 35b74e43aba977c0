import logging
import time
from typing import Dict, Any, Optional
from enum import Enum
from dataclasses import dataclass, asdict

from .config import DAEMON_NAME, DAEMON_VERSION


class EventType(Enum):
    """Standard event types for structured logging"""
    ADDRESS_INSPECTION = "address_inspection"
    ADDRESS_ASSOCIATION = "address_association"
    ADDRESS_DISASSOCIATION = "address_disassociation"
    RECONCILIATION_CYCLE = "reconciliation_cycle"
    RETRY_EXHAUSTION = "retry_exhaustion"
    DAEMON_LIFECYCLE = "daemon_lifecycle"


class ActionResult(Enum):
    """Standard action results"""
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CHANGE = "no_change"
    SKIPPED = "skipped"


@dataclass
class StructuredEvent:
    """Base structure for all structured log events"""
    event_type: str
    timestamp: float
    result: str
    component: str
    operation: str
    details: Dict[str, Any]
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    correlation_id: Optional[str] = None


class StructuredEventLogger:
    """Handles structured logging for daemon events, tagging each with service and version"""

    def __init__(self, logger_name: str, service: str = DAEMON_NAME, version: str = DAEMON_VERSION):
        self.logger = logging.getLogger(logger_name)
        self.correlation_id = None
        self.static_fields = {"service": service, "version": version}

    def set_correlation_id(self, correlation_id: Optional[str]):
        """Set correlation ID for tracking related events across a reconciliation cycle"""
        self.correlation_id = correlation_id

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        if isinstance(event, StructuredEvent):
            if self.correlation_id:
                event.correlation_id = self.correlation_id
            log_data = {"structured_event": True, **self.static_fields, **asdict(event)}
        elif isinstance(event, dict):
            log_data = {"structured_event": True, **self.static_fields, **event}
            if self.correlation_id:
                log_data["correlation_id"] = self.correlation_id
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        if isinstance(event, dict):
            result = event.get("result")
            component = event.get("component", "unknown")
            operation = event.get("operation", "unknown")
            error_message = event.get("error_message")
        else:
            result = event.result
            component = event.component
            operation = event.operation
            error_message = event.error_message

        level = logging.INFO
        if result == ActionResult.FAILURE.value:
            level = logging.ERROR
        elif result == ActionResult.NO_CHANGE.value:
            level = logging.DEBUG

        message = f"{component}.{operation}: {result}"
        if error_message:
            message += f" - {error_message}"

        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_inspection(self,
                       public_ip: str,
                       result: ActionResult,
                       allocation_id: str = None,
                       association_id: str = None,
                       bound_instance_id: str = None,
                       local_instance_id: str = None,
                       binding_state: str = None,
                       duration_ms: int = None,
                       error_message: str = None) -> None:
        """Log the outcome of describing the address and classifying it"""

        event = StructuredEvent(
            event_type=EventType.ADDRESS_INSPECTION.value,
            timestamp=time.time(),
            result=result.value,
            component="reconciler",
            operation="inspect_address",
            details={
                "public_ip": public_ip,
                "allocation_id": allocation_id,
                "association_id": association_id,
                "bound_instance_id": bound_instance_id,
                "local_instance_id": local_instance_id,
                "binding_state": binding_state,
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_disassociation(self,
                           public_ip: str,
                           association_id: str,
                           previous_instance_id: str,
                           result: ActionResult,
                           shutdown: bool = False,
                           duration_ms: int = None,
                           error_message: str = None) -> None:
        """Log an Elastic IP disassociation attempt"""

        event = StructuredEvent(
            event_type=EventType.ADDRESS_DISASSOCIATION.value,
            timestamp=time.time(),
            result=result.value,
            component="ec2",
            operation="disassociate_address",
            details={
                "public_ip": public_ip,
                "association_id": association_id,
                "previous_instance_id": previous_instance_id,
                "shutdown": shutdown,
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_association(self,
                        public_ip: str,
                        allocation_id: str,
                        result: ActionResult,
                        instance_id: str = None,
                        network_interface_id: str = None,
                        allow_reassociation: bool = True,
                        association_id: str = None,
                        duration_ms: int = None,
                        error_message: str = None) -> None:
        """Log an Elastic IP association attempt"""

        event = StructuredEvent(
            event_type=EventType.ADDRESS_ASSOCIATION.value,
            timestamp=time.time(),
            result=result.value,
            component="ec2",
            operation="associate_address",
            details={
                "public_ip": public_ip,
                "allocation_id": allocation_id,
                "instance_id": instance_id,
                "network_interface_id": network_interface_id,
                "allow_reassociation": allow_reassociation,
                "association_id": association_id,
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_cycle(self,
                  public_ip: str,
                  outcome: str,
                  result: ActionResult,
                  shutdown: bool,
                  consecutive_failures: int,
                  max_failures: int,
                  error_kind: str = None,
                  duration_ms: int = None,
                  error_message: str = None) -> None:
        """Log completion of one reconciliation cycle with retry bookkeeping"""

        event = StructuredEvent(
            event_type=EventType.RECONCILIATION_CYCLE.value,
            timestamp=time.time(),
            result=result.value,
            component="scheduler",
            operation="shutdown_cycle" if shutdown else "reconciliation_cycle",
            details={
                "public_ip": public_ip,
                "outcome": outcome,
                "error_kind": error_kind,
                "shutdown": shutdown,
                "consecutive_failures": consecutive_failures,
                "max_failures": max_failures,
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_lifecycle(self, operation: str, details: Dict[str, Any],
                      result: ActionResult = ActionResult.SUCCESS,
                      error_message: str = None) -> None:
        """Log daemon startup/shutdown milestones"""

        event = StructuredEvent(
            event_type=EventType.DAEMON_LIFECYCLE.value,
            timestamp=time.time(),
            result=result.value,
            component="daemon",
            operation=operation,
            details=details,
            error_message=error_message
        )

        self.log_event(event)
