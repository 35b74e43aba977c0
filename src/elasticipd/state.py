from enum import Enum
from typing import Tuple

from .models import Binding, Identity


class BindingState(Enum):
    UNBOUND = "unbound"
    BOUND_TO_SELF = "bound_to_self"
    BOUND_TO_OTHER = "bound_to_other"


def determine_binding_state(binding: Binding, identity: Identity) -> BindingState:
    """
    Classifies the Elastic IP's current binding against the local instance.

    State Mapping:
      UNBOUND:        no association id and no instance id on the address
      BOUND_TO_SELF:  the address is associated with the local instance id
      BOUND_TO_OTHER: anything else, including an association to a bare
                      network interface that is not attached to an instance

    Args:
        binding (Binding): Address snapshot from the provider for this cycle.
        identity (Identity): Local instance identity for this cycle.

    Returns:
        BindingState: The classified state. Recomputed every cycle, never stored.
    """
    if not binding.association_id and not binding.instance_id:
        return BindingState.UNBOUND
    if binding.instance_id and binding.instance_id == identity.instance_id:
        return BindingState.BOUND_TO_SELF
    return BindingState.BOUND_TO_OTHER


# Mapping of (binding state, shutdown requested) to planned actions.
# Each tuple is in the form: (unbind, bind)
# - unbind (bool): Disassociate the current association (skipped when there is none).
# - bind (bool): Associate the allocation with the local instance or interface.
STATE_ACTIONS = {
    (BindingState.BOUND_TO_SELF,  False): (False, False),  # Already ours: nothing to do
    (BindingState.BOUND_TO_SELF,  True):  (True,  False),  # Shutting down: release only
    (BindingState.BOUND_TO_OTHER, False): (True,  True),   # Drift: take it over
    (BindingState.BOUND_TO_OTHER, True):  (True,  False),  # Shutting down: release, never bind
    (BindingState.UNBOUND,        False): (False, True),   # Free: claim it
    (BindingState.UNBOUND,        True):  (False, False),  # Shutting down: nothing to release
}


def plan_actions(state: BindingState, shutdown_requested: bool) -> Tuple[bool, bool]:
    """Return the (unbind, bind) plan for a state; unknown combinations plan nothing."""
    return STATE_ACTIONS.get((state, bool(shutdown_requested)), (False, False))
