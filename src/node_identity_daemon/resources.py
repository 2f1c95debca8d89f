"""
Resource Model for the Node Identity Daemon

Plain dataclasses describing the local instance and the EC2 resources it
competes for. Volumes and network interfaces are rebuilt from every snapshot,
so nothing here carries identity across polls beyond the resource id.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Volume:
    """An EBS volume as reported by a single describe_volumes snapshot."""
    id: str
    node_id: Optional[str]
    attached_to: Optional[str]
    available: bool
    availability_zone: Optional[str] = None


@dataclass
class NetworkInterface:
    """An ENI as reported by a single describe_network_interfaces snapshot."""
    id: str
    node_id: Optional[str]
    attached_to: Optional[str]
    available: bool
    ip_address: Optional[str] = None
    availability_zone: Optional[str] = None
    attachment_id: Optional[str] = None


@dataclass
class Instance:
    """
    The local EC2 instance and the resources it currently considers its own.

    Attributes:
        id: EC2 instance id resolved from the metadata service.
        region: AWS region the instance runs in.
        availability_zone: Placement zone, also used to scope snapshot filters.
        tags: The instance's own tags, used to derive the filter set.
        node_id: Node identifier, empty until the first consistent pair is seen.
        volume: The held volume, or None.
        network_interface: The held network interface, or None.
    """
    id: str
    region: str
    availability_zone: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    node_id: str = ""
    volume: Optional[Volume] = None
    network_interface: Optional[NetworkInterface] = None


def first_match(resources: Iterable[T], predicate: Callable[[T], bool]) -> Optional[T]:
    """
    Return the first resource satisfying predicate, in provider order.

    EC2 does not guarantee ordering, so this is deterministic for a given
    snapshot but is not a load-balancing choice.
    """
    for resource in resources:
        if predicate(resource):
            return resource
    return None


def held_copy(resource: T, instance_id: str) -> T:
    """Copy of a just-attached resource, marked as attached to instance_id."""
    return replace(resource, attached_to=instance_id, available=False)
