from dataclasses import dataclass

from .resources import Instance


def determine_state_code(volume_attached, interface_attached):
    """
    Determines the attachment state of the local instance from which of its
    two resources (volume, network interface) are currently held.

    State Code Mapping:
      0: Neither a volume nor a network interface is attached
      1: Volume attached, network interface missing
      2: Network interface attached, volume missing
      3: Both attached

    Args:
        volume_attached (bool): Whether a volume is currently held.
        interface_attached (bool): Whether a network interface is currently held.

    Returns:
        int: A state code keying STATE_ACTIONS.
    """
    if volume_attached and interface_attached:
        return 3
    elif interface_attached:
        return 2
    elif volume_attached:
        return 1
    return 0


# Mapping of state codes to the decision-table branch the reconciler runs.
STATE_ACTIONS = {
    0: "attach_volume_then_interface",  # Volume first, never an interface alone
    1: "attach_matching_interface",     # Complete the pair from the volume side
    2: "attach_matching_volume",        # Bounded retry, then release the interface
    3: "finalize_node",                 # Resolve node id, gate the filesystem
}


@dataclass
class ReconcilerState:
    """
    Mutable state carried from one reconcile cycle to the next.

    Attributes:
        instance: The local instance with its held volume and interface.
        volume_attach_tries: Consecutive cycles with an interface held but no
            matching volume attached.
        last_state_code: State code observed by the previous cycle, or None
            before the first cycle.
    """
    instance: Instance
    volume_attach_tries: int = 0
    last_state_code: int | None = None

    @property
    def state_code(self) -> int:
        return determine_state_code(
            self.instance.volume is not None,
            self.instance.network_interface is not None,
        )
