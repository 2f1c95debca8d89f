"""
Reconciliation Core for the Node Identity Daemon

One call to Reconciler.reconcile() is one polling cycle:

    1. Snapshot candidate volumes and network interfaces (filtered by tags).
    2. Infer which volume / interface this instance holds (adopt or release).
    3. Run the decision-table branch for the resulting state code:

         Code  Volume  Interface  Branch
         0     no      no         attach a volume, then a matching interface
         1     yes     no         attach a matching interface
         2     no      yes        attach a matching volume (bounded retry),
                                  release the interface once retries run out
         3     yes     yes        nothing to attach

    4. If both are now held, resolve the node identity and gate the filesystem.

Invariants maintained across cycles:
    - At most one volume and one network interface are held.
    - A resource is adopted from a snapshot only when EC2 reports it attached
      to this instance and not available.
    - A held resource is released as soon as a snapshot reports it available.
    - The node identifier is set once, only from a held pair whose node tags
      agree, and never overwritten.
    - A network interface is never attached unless a volume is held.

All mutable state lives in the ReconcilerState passed to reconcile(); the
Reconciler itself only carries configuration and collaborators.
"""

import os
import time
import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from . import aws as aws_mod
from . import environment as env_mod
from . import filesystem as fs_mod
from . import network as net_mod
from .config import Config
from .resources import Volume, NetworkInterface, first_match, held_copy
from .state import ReconcilerState, STATE_ACTIONS
from .structured_events import StructuredEventLogger, ActionResult

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))


@dataclass
class CycleReport:
    """What a single reconcile cycle observed and did."""
    state_code: Optional[int] = None
    final_state_code: Optional[int] = None
    actions: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    volume_snapshot_ok: bool = True
    interface_snapshot_ok: bool = True
    inconsistent: bool = False
    skipped: bool = False
    readiness: Optional[net_mod.ReadinessResult] = None

    @property
    def result(self) -> ActionResult:
        if self.errors:
            return ActionResult.FAILURE
        if self.skipped:
            return ActionResult.SKIPPED
        if not self.actions:
            return ActionResult.NO_CHANGE
        return ActionResult.SUCCESS


def infer_held(held, snapshot: Sequence, instance_id: str):
    """
    Compute the new held resource for one category from a fresh snapshot.

    Scans in provider order and stops at the first adoption or release:
      - nothing held and a resource attached to instance_id and unavailable:
        adopt it;
      - the held id reported available again: release it.
    While the held resource is still attached to this instance its object is
    refreshed from the snapshot, which picks up attachment ids and addresses.

    Returns:
        tuple: (new_held, change) where change is "adopted", "released" or None.
    """
    for resource in snapshot:
        if held is None:
            if resource.attached_to == instance_id and not resource.available:
                return resource, "adopted"
        elif resource.id == held.id:
            if resource.available:
                return None, "released"
            if resource.attached_to == instance_id:
                return resource, None
            return held, None
    return held, None


class Reconciler:
    """
    Drives the attach/detach decision table for the local instance.

    Args:
        cfg (Config): Daemon configuration.
        ec2: boto3 EC2 client.
        filters (list): EC2 filter set built at startup.
        structured_logger (StructuredEventLogger, optional): Logger for structured events.
        sleep (Callable): Sleep used by the network readiness wait.
    """

    def __init__(self,
                 cfg: Config,
                 ec2,
                 filters: List[dict],
                 structured_logger: Optional[StructuredEventLogger] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.cfg = cfg
        self.ec2 = ec2
        self.filters = filters
        self.structured_logger = structured_logger
        self.sleep = sleep

    def reconcile(self, state: ReconcilerState) -> CycleReport:
        """Run one full cycle against state and return what happened."""
        report = CycleReport()
        instance = state.instance

        volumes = aws_mod.find_volumes(self.ec2, self.filters, self.cfg.node_id_tag)
        interfaces = aws_mod.find_network_interfaces(self.ec2, self.filters, self.cfg.node_id_tag)

        if volumes is None:
            report.volume_snapshot_ok = False
            report.errors.append("volume_snapshot")
            logger.warning("Volume snapshot unavailable, skipping volume reconciliation this cycle")
        else:
            self._infer_volume(state, volumes)

        if interfaces is None:
            report.interface_snapshot_ok = False
            report.errors.append("network_interface_snapshot")
            logger.warning("Network interface snapshot unavailable, "
                           "skipping network interface reconciliation this cycle")
        else:
            self._infer_network_interface(state, interfaces)

        code = state.state_code
        report.state_code = code
        if code != state.last_state_code:
            logger.info(f"Attachment state {state.last_state_code} -> {code} "
                        f"(volume={instance.volume.id if instance.volume else None}, "
                        f"network_interface={instance.network_interface.id if instance.network_interface else None})")

        if self.cfg.run_passive:
            logger.info(f"Passive mode - state {code} would run '{STATE_ACTIONS[code]}', no changes made")
            report.skipped = True
        else:
            if code == 0:
                self._attach_volume_then_interface(state, volumes, interfaces, report)
            elif code == 1:
                self._attach_matching_interface(state, interfaces, report)
            elif code == 2:
                self._attach_matching_volume(state, volumes, report)

            if state.state_code == 3:
                self._finalize_node(state, report)

        report.final_state_code = state.state_code
        state.last_state_code = report.final_state_code
        return report

    # ------------------------------------------------------------------
    # State inference
    # ------------------------------------------------------------------

    def _infer_volume(self, state: ReconcilerState, volumes: List[Volume]) -> None:
        instance = state.instance
        previous = instance.volume
        instance.volume, change = infer_held(previous, volumes, instance.id)
        if change == "adopted":
            logger.info(f"Found attached volume: {instance.volume.id} (node {instance.volume.node_id})")
            state.volume_attach_tries = 0
            self._log_state_change("volume", instance.volume.id, change, instance.id, instance.volume.node_id)
        elif change == "released":
            logger.info(f"Volume {previous.id} is available again, releasing it")
            self._log_state_change("volume", previous.id, change, instance.id, previous.node_id)

    def _infer_network_interface(self, state: ReconcilerState, interfaces: List[NetworkInterface]) -> None:
        instance = state.instance
        previous = instance.network_interface
        instance.network_interface, change = infer_held(previous, interfaces, instance.id)
        if change == "adopted":
            held = instance.network_interface
            logger.info(f"Found attached network interface: {held.id} (node {held.node_id})")
            self._log_state_change("network_interface", held.id, change, instance.id, held.node_id)
        elif change == "released":
            logger.info(f"Network interface {previous.id} is available again, releasing it")
            state.volume_attach_tries = 0
            self._log_state_change("network_interface", previous.id, change, instance.id, previous.node_id)

    def _log_state_change(self, resource_type, resource_id, change, instance_id, node_id) -> None:
        if self.structured_logger:
            self.structured_logger.log_resource_state_change(
                resource_type=resource_type,
                resource_id=resource_id,
                change=change,
                instance_id=instance_id,
                node_id=node_id
            )

    # ------------------------------------------------------------------
    # Decision table
    # ------------------------------------------------------------------

    def _attach_volume_then_interface(self, state, volumes, interfaces, report) -> None:
        """State 0: volume first; an interface only after a volume attach succeeded."""
        logger.info("Neither a volume, nor a network interface are attached.")
        if volumes is None:
            return

        volume = first_match(volumes, lambda v: v.available)
        if volume is None:
            logger.info("No available volumes found.")
            return
        if not self._attach_volume(state, volume, report):
            logger.info("No volume attached, skipping network interface attachment.")
            return

        self._attach_interface_for(state, interfaces, volume.node_id, report)

    def _attach_matching_interface(self, state, interfaces, report) -> None:
        """State 1: complete the pair from the held volume."""
        volume = state.instance.volume
        logger.info(f"Volume {volume.id} attached without a network interface")
        self._attach_interface_for(state, interfaces, volume.node_id, report)

    def _attach_matching_volume(self, state, volumes, report) -> None:
        """
        State 2: an interface is held without a volume. Look for a volume with
        the same node id; after max_volume_attach_tries consecutive cycles
        without one, detach the interface so another instance can claim it.
        """
        interface = state.instance.network_interface
        if volumes is None:
            return

        volume = first_match(
            volumes,
            lambda v: v.available and v.node_id is not None and v.node_id == interface.node_id
        )
        if volume is not None:
            logger.info(f"Found a matching volume {volume.id} with NodeID {volume.node_id}.")
            if self._attach_volume(state, volume, report):
                state.volume_attach_tries = 0
                return
        else:
            logger.info(f"No available volume matches network interface {interface.id} "
                        f"(node {interface.node_id})")

        state.volume_attach_tries += 1
        logger.info(f"Volume attach tries: {state.volume_attach_tries}/{self.cfg.max_volume_attach_tries}")
        if state.volume_attach_tries < self.cfg.max_volume_attach_tries:
            return

        logger.warning(f"Unable to attach a matching volume after "
                       f"{state.volume_attach_tries} tries, releasing network interface {interface.id}")
        if aws_mod.detach_network_interface(self.ec2, state.instance.id, interface, self.structured_logger):
            state.volume_attach_tries = 0
            report.actions.append(f"detach_network_interface:{interface.id}")
        else:
            report.errors.append(f"detach_network_interface:{interface.id}")

    def _attach_volume(self, state, volume: Volume, report: CycleReport) -> bool:
        instance = state.instance
        if aws_mod.attach_volume(self.ec2, instance.id, volume, self.cfg.block_device, self.structured_logger):
            instance.volume = held_copy(volume, instance.id)
            report.actions.append(f"attach_volume:{volume.id}")
            return True
        report.errors.append(f"attach_volume:{volume.id}")
        return False

    def _attach_interface_for(self, state, interfaces, node_id, report) -> None:
        """Attach the first available interface whose node id equals node_id, then wait for it."""
        if interfaces is None:
            return
        if not node_id:
            logger.warning(f"Volume {state.instance.volume.id} has no {self.cfg.node_id_tag} tag, "
                           f"cannot pick a network interface")
            return

        interface = first_match(interfaces, lambda n: n.available and n.node_id == node_id)
        if interface is None:
            logger.info(f"No available network interfaces found for node {node_id}.")
            return

        instance = state.instance
        attachment_id = aws_mod.attach_network_interface(
            self.ec2, instance.id, interface, self.cfg.network_device_index, self.structured_logger
        )
        if attachment_id is None:
            report.errors.append(f"attach_network_interface:{interface.id}")
            return

        held = held_copy(interface, instance.id)
        held.attachment_id = attachment_id or interface.attachment_id
        instance.network_interface = held
        report.actions.append(f"attach_network_interface:{interface.id}")

        if not interface.ip_address:
            logger.warning(f"Network interface {interface.id} has no private IP, skipping readiness wait")
            return
        report.readiness = net_mod.wait_and_setup_interface(
            interface.ip_address,
            attempts=self.cfg.readiness_attempts,
            delay=self.cfg.readiness_delay,
            sleep=self.sleep,
            structured_logger=self.structured_logger
        )

    # ------------------------------------------------------------------
    # Both attached
    # ------------------------------------------------------------------

    def _finalize_node(self, state: ReconcilerState, report: CycleReport) -> None:
        instance = state.instance
        volume, interface = instance.volume, instance.network_interface

        if volume.node_id is None or volume.node_id != interface.node_id:
            logger.warning(f"Something has gone wrong, volume {volume.id} (node {volume.node_id}) and "
                           f"network interface {interface.id} (node {interface.node_id}) node IDs do not match.")
            report.inconsistent = True
            return

        if not instance.node_id:
            self._persist_node_identity(state, volume.node_id, report)
        elif instance.node_id != volume.node_id:
            logger.warning(f"Held pair belongs to node {volume.node_id} but this instance "
                           f"already identifies as {instance.node_id}; keeping {instance.node_id}")

        self._ensure_filesystem(report)

    def _persist_node_identity(self, state: ReconcilerState, node_id: str, report: CycleReport) -> None:
        instance = state.instance
        instance.node_id = node_id
        logger.info(f"Node ID is {node_id}.")
        try:
            env_mod.write_env_file(self.cfg.env_file, instance)
        except OSError as e:
            # Left unset so the next cycle retries the write
            instance.node_id = ""
            logger.error(f"Failed to write environment file {self.cfg.env_file}: {e}")
            report.errors.append("persist_node_identity")
            if self.structured_logger:
                self.structured_logger.log_node_identity(node_id, self.cfg.env_file,
                                                         ActionResult.FAILURE, str(e))
            return

        report.actions.append(f"persist_node_identity:{node_id}")
        if self.structured_logger:
            self.structured_logger.log_node_identity(node_id, self.cfg.env_file, ActionResult.SUCCESS)

    def _ensure_filesystem(self, report: CycleReport) -> None:
        cfg = self.cfg
        device, fs_type = cfg.block_device, cfg.file_system_type

        if not (cfg.create_file_system or cfg.mount_file_system):
            return

        try:
            existing = fs_mod.filesystem_type(device)
        except fs_mod.FilesystemError as e:
            logger.error(f"Could not check {device} for a filesystem, skipping filesystem steps: {e}")
            report.errors.append("check_filesystem")
            self._log_filesystem_result("check_filesystem", str(e))
            return

        if existing is not None and existing != fs_type:
            message = f"{device} already holds a {existing} filesystem, expected {fs_type}"
            logger.error(f"{message}; refusing to format or mount it")
            report.errors.append("check_filesystem")
            self._log_filesystem_result("check_filesystem", message)
            return

        if cfg.create_file_system and existing is None:
            if self._filesystem_step("create_filesystem", report,
                                     lambda: fs_mod.create_filesystem(device, fs_type)):
                existing = fs_type

        if cfg.mount_file_system:
            if existing is None:
                logger.debug(f"No {fs_type} filesystem on {device} yet, not mounting")
            elif not fs_mod.is_mounted(device):
                self._filesystem_step("mount", report,
                                      lambda: fs_mod.mount(device, cfg.mount_point, fs_type))

    def _filesystem_step(self, operation: str, report: CycleReport, action: Callable[[], None]) -> bool:
        error_message = None
        try:
            action()
            report.actions.append(operation)
        except fs_mod.FilesystemError as e:
            error_message = str(e)
            logger.error(f"Filesystem {operation} failed on {self.cfg.block_device}: {e}")
            report.errors.append(operation)
        self._log_filesystem_result(operation, error_message)
        return error_message is None

    def _log_filesystem_result(self, operation: str, error_message: Optional[str] = None) -> None:
        cfg = self.cfg
        if self.structured_logger:
            self.structured_logger.log_filesystem_operation(
                operation=operation,
                device=cfg.block_device,
                fs_type=cfg.file_system_type,
                result=ActionResult.FAILURE if error_message else ActionResult.SUCCESS,
                mount_point=cfg.mount_point if operation == "mount" else None,
                error_message=error_message
            )
