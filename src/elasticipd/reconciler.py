"""
Reconciliation of the Elastic IP binding against the local instance identity.

One call to Reconciler.reconcile() is one cycle:

    inspect address -> resolve identity -> classify -> unbind? -> bind? -> outcome

Every provider call is made at most once per cycle. Errors from the
collaborators are logged with the target IP and the ids involved and
returned as a FAILED outcome; retrying is left to the poll scheduler.
"""

import time
import logging
from typing import Optional

from .config import resolve_logger_name
from .errors import DataIntegrityError, ElasticIPError, MutationError
from .models import Binding, CycleResult, Identity, ReconciliationOutcome
from .state import BindingState, determine_binding_state, plan_actions
from .structured_events import ActionResult, StructuredEventLogger


class IdentityResolver:
    """Asks the metadata collaborator who the local instance is; never caches."""

    def __init__(self, metadata):
        self.metadata = metadata

    def resolve(self) -> Identity:
        return self.metadata.current_identity()


class BindingInspector:
    """Reads the address's current binding from the provider collaborator."""

    def __init__(self, provider):
        self.provider = provider

    def inspect(self, target_ip: str) -> Binding:
        return self.provider.describe(target_ip)


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


class Reconciler:
    """
    Decides and applies the corrective action for one reconciliation cycle.

    Args:
        provider: ProviderAddressService (describe/bind/unbind).
        metadata: MetadataSource (current_identity).
        target_ip (str): The Elastic IP, fixed for the life of the process.
        allow_reassociation (bool): Passed to bind; lets the provider move an
            address that is still associated elsewhere.
        structured_logger (StructuredEventLogger, optional): Structured event sink.
        logger (logging.Logger, optional): Human-readable log sink.
    """

    def __init__(self, provider, metadata, target_ip: str, allow_reassociation: bool = True,
                 structured_logger: Optional[StructuredEventLogger] = None,
                 logger: Optional[logging.Logger] = None):
        self.provider = provider
        self.inspector = BindingInspector(provider)
        self.resolver = IdentityResolver(metadata)
        self.target_ip = target_ip
        self.allow_reassociation = allow_reassociation
        self.structured_logger = structured_logger
        self.logger = logger or logging.getLogger(resolve_logger_name())

    def reconcile(self, shutdown_requested: bool = False) -> ReconciliationOutcome:
        start = time.time()
        binding = None
        try:
            binding = self.inspector.inspect(self.target_ip)
            identity = self.resolver.resolve()
        except ElasticIPError as e:
            return self._inspection_failed(e, binding, start)

        state = determine_binding_state(binding, identity)
        unbind, bind = plan_actions(state, shutdown_requested)

        self.logger.debug(f"Address {self.target_ip} is {state.value} "
                          f"(allocation={binding.allocation_id}, association={binding.association_id or '-'}, "
                          f"bound_instance={binding.instance_id or '-'}, local_instance={identity.instance_id}); "
                          f"plan unbind={unbind} bind={bind} shutdown={shutdown_requested}")
        if self.structured_logger:
            self.structured_logger.log_inspection(
                public_ip=self.target_ip,
                result=ActionResult.SUCCESS if (unbind or bind) else ActionResult.NO_CHANGE,
                allocation_id=binding.allocation_id,
                association_id=binding.association_id,
                bound_instance_id=binding.instance_id,
                local_instance_id=identity.instance_id,
                binding_state=state.value,
                duration_ms=_elapsed_ms(start),
            )

        released = False
        if unbind and binding.associated:
            try:
                self._unbind(binding, shutdown_requested)
            except MutationError as e:
                return ReconciliationOutcome.failure(e, binding, identity)
            released = True

        if bind:
            try:
                self._bind(binding, identity)
            except MutationError as e:
                return ReconciliationOutcome.failure(e, binding, identity)
            return ReconciliationOutcome(CycleResult.REBOUND, binding=binding, identity=identity)

        if released:
            return ReconciliationOutcome(CycleResult.RELEASED, binding=binding, identity=identity)
        if state is BindingState.BOUND_TO_SELF and not shutdown_requested:
            self.logger.debug(f"Elastic IP {self.target_ip} already associated with "
                              f"{identity.instance_id}, skipping")
        return ReconciliationOutcome(CycleResult.UNCHANGED, binding=binding, identity=identity)

    def _inspection_failed(self, error: ElasticIPError, binding: Optional[Binding],
                           start: float) -> ReconciliationOutcome:
        level = logging.ERROR if isinstance(error, DataIntegrityError) else logging.WARNING
        stage = "getting instance details" if binding is not None else "describing elastic ip"
        self.logger.log(level, f"Error {stage} for {self.target_ip}: {error}")
        if self.structured_logger:
            self.structured_logger.log_inspection(
                public_ip=self.target_ip,
                result=ActionResult.FAILURE,
                allocation_id=binding.allocation_id if binding else None,
                association_id=binding.association_id if binding else None,
                bound_instance_id=binding.instance_id if binding else None,
                duration_ms=_elapsed_ms(start),
                error_message=str(error),
            )
        return ReconciliationOutcome.failure(error, binding)

    def _unbind(self, binding: Binding, shutdown_requested: bool) -> None:
        start = time.time()
        try:
            self.provider.unbind(binding.association_id)
        except MutationError as e:
            self.logger.error(f"Error disassociating elastic ip {self.target_ip} "
                              f"(association={binding.association_id}, "
                              f"instance={binding.instance_id or '-'}): {e}")
            if self.structured_logger:
                self.structured_logger.log_disassociation(
                    public_ip=self.target_ip,
                    association_id=binding.association_id,
                    previous_instance_id=binding.instance_id,
                    result=ActionResult.FAILURE,
                    shutdown=shutdown_requested,
                    duration_ms=_elapsed_ms(start),
                    error_message=str(e),
                )
            raise

        self.logger.info(f"Elastic IP {self.target_ip} disassociated from "
                         f"instance {binding.instance_id or '-'} (association={binding.association_id})")
        if self.structured_logger:
            self.structured_logger.log_disassociation(
                public_ip=self.target_ip,
                association_id=binding.association_id,
                previous_instance_id=binding.instance_id,
                result=ActionResult.SUCCESS,
                shutdown=shutdown_requested,
                duration_ms=_elapsed_ms(start),
            )

    def _bind(self, binding: Binding, identity: Identity) -> None:
        instance_id, interface_id = identity.bind_target()
        start = time.time()
        try:
            association_id = self.provider.bind(
                binding.allocation_id,
                instance_id=instance_id,
                network_interface_id=interface_id,
                allow_reassociation=self.allow_reassociation,
            )
        except MutationError as e:
            self.logger.error(f"Error associating elastic ip {self.target_ip} "
                              f"(allocation={binding.allocation_id}, "
                              f"target={interface_id or instance_id}): {e}")
            if self.structured_logger:
                self.structured_logger.log_association(
                    public_ip=self.target_ip,
                    allocation_id=binding.allocation_id,
                    result=ActionResult.FAILURE,
                    instance_id=instance_id,
                    network_interface_id=interface_id,
                    allow_reassociation=self.allow_reassociation,
                    duration_ms=_elapsed_ms(start),
                    error_message=str(e),
                )
            raise

        self.logger.info(f"Elastic IP {self.target_ip} associated to "
                         f"{'network interface ' + interface_id if interface_id else 'instance ' + instance_id} "
                         f"(allocation={binding.allocation_id}, association={association_id or '-'})")
        if self.structured_logger:
            self.structured_logger.log_association(
                public_ip=self.target_ip,
                allocation_id=binding.allocation_id,
                result=ActionResult.SUCCESS,
                instance_id=instance_id,
                network_interface_id=interface_id,
                allow_reassociation=self.allow_reassociation,
                association_id=association_id,
                duration_ms=_elapsed_ms(start),
            )
