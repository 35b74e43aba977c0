from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Tuple


@dataclass(frozen=True)
class Identity:
    """The local EC2 instance as reported by the metadata service for one cycle."""
    instance_id: str
    network_interface_ids: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Accept any sequence from callers but store an immutable, ordered tuple
        object.__setattr__(self, "network_interface_ids", tuple(self.network_interface_ids))

    def bind_target(self) -> Tuple[Optional[str], Optional[str]]:
        """
        Return (instance_id, network_interface_id) for an associate call.

        With more than one attached interface the provider cannot tell which one
        should receive the address, so the first interface is targeted; otherwise
        the instance id is used. Exactly one element of the pair is set.
        """
        if len(self.network_interface_ids) > 1:
            return None, self.network_interface_ids[0]
        return self.instance_id, None


@dataclass(frozen=True)
class Binding:
    """Snapshot of the Elastic IP's association as known to the provider."""
    allocation_id: str
    association_id: str = ""
    instance_id: str = ""
    network_interface_id: str = ""
    public_ip: str = ""

    @property
    def associated(self) -> bool:
        return bool(self.association_id)


class CycleResult(Enum):
    UNCHANGED = "unchanged"
    REBOUND = "rebound"
    RELEASED = "released"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconciliationOutcome:
    result: CycleResult
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    binding: Optional[Binding] = None
    identity: Optional[Identity] = None

    @property
    def failed(self) -> bool:
        return self.result is CycleResult.FAILED

    @classmethod
    def failure(cls, error, binding: Optional[Binding] = None,
                identity: Optional[Identity] = None) -> "ReconciliationOutcome":
        return cls(
            result=CycleResult.FAILED,
            reason=str(error),
            error_kind=getattr(error, "error_kind", "unknown"),
            binding=binding,
            identity=identity,
        )


@dataclass(frozen=True)
class RetryState:
    """Consecutive failure counter owned by the poll scheduler."""
    max_failures: int
    consecutive_failures: int = 0

    def __post_init__(self):
        if self.max_failures < 1:
            raise ValueError(f"max_failures must be at least 1, got {self.max_failures}")

    def record(self, outcome: ReconciliationOutcome) -> "RetryState":
        if outcome.failed:
            return replace(self, consecutive_failures=self.consecutive_failures + 1)
        return replace(self, consecutive_failures=0)

    @property
    def exhausted(self) -> bool:
        return self.consecutive_failures >= self.max_failures


class Lifecycle(Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
