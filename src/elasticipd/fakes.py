"""
In-memory collaborators with the same contracts as aws.py.

InMemoryAddressService keeps one Elastic IP record and mutates it the way EC2
does, recording every call so tests can assert on the exact sequence of
provider operations. Failures are injected per operation by assigning an
exception to describe_error / bind_error / unbind_error.
"""

import itertools
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import AddressNotFound, BindFailed, ElasticIPError, MissingAllocation, UnbindFailed
from .models import Binding, Identity


class InMemoryAddressService:
    def __init__(self, public_ip: str, allocation_id: Optional[str] = "eipalloc-123",
                 association_id: str = "", instance_id: str = "",
                 network_interface_id: str = "", exists: bool = True,
                 interface_owners: Optional[Dict[str, str]] = None):
        self.public_ip = public_ip
        self.allocation_id = allocation_id
        self.association_id = association_id
        self.instance_id = instance_id
        self.network_interface_id = network_interface_id
        self.exists = exists
        # network interface id -> instance id it is attached to, as EC2 reports it
        self.interface_owners = dict(interface_owners or {})

        self.describe_error: Optional[ElasticIPError] = None
        self.bind_error: Optional[ElasticIPError] = None
        self.unbind_error: Optional[ElasticIPError] = None

        # ("describe", ip) / ("bind", allocation_id, target, allow) / ("unbind", association_id)
        self.calls: List[Tuple] = []
        self._association_ids = (f"eipassoc-{n}" for n in itertools.count(1000))

    @property
    def mutations(self) -> List[Tuple]:
        return [c for c in self.calls if c[0] in ("bind", "unbind")]

    def describe(self, public_ip: str) -> Binding:
        self.calls.append(("describe", public_ip))
        if self.describe_error is not None:
            raise self.describe_error
        if not self.exists or public_ip != self.public_ip:
            raise AddressNotFound("failed to find address info", public_ip=public_ip)
        if not self.allocation_id:
            raise MissingAllocation("allocation id is nil", public_ip=public_ip)
        return Binding(
            allocation_id=self.allocation_id,
            association_id=self.association_id,
            instance_id=self.instance_id,
            network_interface_id=self.network_interface_id,
            public_ip=self.public_ip,
        )

    def bind(self, allocation_id: str, *, instance_id: Optional[str] = None,
             network_interface_id: Optional[str] = None,
             allow_reassociation: bool = True) -> str:
        target = {"network_interface_id": network_interface_id} if network_interface_id \
            else {"instance_id": instance_id}
        self.calls.append(("bind", allocation_id, target, allow_reassociation))
        if self.bind_error is not None:
            raise self.bind_error
        if allocation_id != self.allocation_id:
            raise BindFailed("unknown allocation", allocation_id=allocation_id)
        if self.association_id and not allow_reassociation:
            raise BindFailed("address is already associated", allocation_id=allocation_id,
                             association_id=self.association_id)

        self.association_id = next(self._association_ids)
        self.instance_id = instance_id or self.interface_owners.get(network_interface_id, "")
        self.network_interface_id = network_interface_id or ""
        return self.association_id

    def unbind(self, association_id: str) -> None:
        self.calls.append(("unbind", association_id))
        if not association_id:
            return
        if self.unbind_error is not None:
            raise self.unbind_error
        if association_id != self.association_id:
            raise UnbindFailed("association not found", association_id=association_id)
        self.association_id = ""
        self.instance_id = ""
        self.network_interface_id = ""


class StaticMetadataSource:
    def __init__(self, instance_id: str, network_interface_ids: Sequence[str] = (),
                 error: Optional[ElasticIPError] = None):
        self.identity = Identity(instance_id, tuple(network_interface_ids))
        self.error = error
        self.calls = 0

    def current_identity(self) -> Identity:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.identity
