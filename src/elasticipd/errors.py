"""
Error taxonomy for the Elastic IP reconciliation daemon.

Every failure a reconciliation cycle can hit is mapped onto one of these
exceptions at the collaborator boundary (aws.py / fakes.py). The reconciler
turns them into FAILED outcomes; only the scheduler raises the two fatal ones.

Hierarchy:
    ElasticIPError
    ├── TransientLookupError      describe/metadata call failed (retry next tick)
    │   ├── MetadataUnavailable
    │   ├── LookupFailed
    │   └── AddressNotFound
    ├── DataIntegrityError        provider record is malformed (retry next tick)
    │   └── MissingAllocation
    ├── MutationError             associate/disassociate failed (cycle aborted)
    │   ├── BindFailed
    │   └── UnbindFailed
    ├── FatalExhaustion           retry budget spent, process must exit
    └── ShutdownMutationError     release during shutdown failed, process must exit
"""

from typing import Any, Dict


class ElasticIPError(Exception):
    """Base class for all daemon errors.

    Keyword arguments are kept as ``context`` so log lines and structured
    events can carry the target IP and the ids involved.
    """

    error_kind = "unknown"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v not in (None, "")}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({ctx})"


class TransientLookupError(ElasticIPError):
    error_kind = "lookup"


class MetadataUnavailable(TransientLookupError):
    """The instance metadata service (or instance description) could not be read."""
    error_kind = "metadata"


class LookupFailed(TransientLookupError):
    """The describe-addresses call itself errored (network, auth, throttling)."""
    error_kind = "lookup"


class AddressNotFound(TransientLookupError):
    """The provider returned zero records for the address."""
    error_kind = "not_found"


class DataIntegrityError(ElasticIPError):
    error_kind = "integrity"


class MissingAllocation(DataIntegrityError):
    """Address record found but it carries no allocation id."""
    error_kind = "allocation"


class MutationError(ElasticIPError):
    error_kind = "mutation"


class BindFailed(MutationError):
    error_kind = "association"


class UnbindFailed(MutationError):
    error_kind = "disassociation"


class FatalExhaustion(ElasticIPError):
    """Raised by the scheduler once consecutive failures reach the configured maximum."""
    error_kind = "exhausted"


class ShutdownMutationError(ElasticIPError):
    """Raised when the final release cycle during shutdown does not succeed."""
    error_kind = "shutdown"
