import logging
import time
from typing import Dict, Any, Optional
from enum import Enum
from dataclasses import dataclass, asdict

class EventType(Enum):
    """Standard event types for structured logging"""
    RESOURCE_STATE_CHANGE = "resource_state_change"
    VOLUME_ATTACHMENT = "volume_attachment"
    NETWORK_INTERFACE_ATTACHMENT = "network_interface_attachment"
    NODE_IDENTITY = "node_identity"
    NETWORK_READINESS = "network_readiness"
    FILESYSTEM_OPERATION = "filesystem_operation"
    RECONCILE_CYCLE = "reconcile_cycle"
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
    """Emits structured daemon events through a standard logger as json_fields"""

    def __init__(self, logger_name: str):
        self.logger = logging.getLogger(logger_name)
        self.correlation_id = None

    def set_correlation_id(self, correlation_id: Optional[str]):
        """Set correlation ID for tracking related events across a reconcile cycle"""
        self.correlation_id = correlation_id

    def log_event(self, event) -> None:
        """Log a structured event with consistent schema"""
        if isinstance(event, StructuredEvent):
            if self.correlation_id:
                event.correlation_id = self.correlation_id
            log_data = {"structured_event": True, **asdict(event)}
            result = event.result
            component, operation = event.component, event.operation
            error_message = event.error_message
        elif isinstance(event, dict):
            log_data = {"structured_event": True, **event}
            if self.correlation_id:
                log_data["correlation_id"] = self.correlation_id
            result = event.get("result")
            component = event.get("component", "unknown")
            operation = event.get("operation", "unknown")
            error_message = event.get("error_message")
        else:
            raise TypeError(f"Event must be StructuredEvent dataclass or dict, got {type(event)}")

        level = logging.INFO
        if result == ActionResult.FAILURE.value:
            level = logging.ERROR
        elif result == ActionResult.NO_CHANGE.value:
            level = logging.DEBUG

        message = f"{component}.{operation}: {result or 'unknown'}"
        if error_message:
            message += f" - {error_message}"

        self.logger.log(level, message, extra={"json_fields": log_data})

    def log_resource_state_change(self,
                                  resource_type: str,  # "volume" or "network_interface"
                                  resource_id: str,
                                  change: str,  # "adopted" or "released"
                                  instance_id: str,
                                  node_id: Optional[str] = None) -> None:
        """Log a held resource being adopted from or released by a snapshot"""

        event = StructuredEvent(
            event_type=EventType.RESOURCE_STATE_CHANGE.value,
            timestamp=time.time(),
            result=ActionResult.SUCCESS.value,
            component="state_inference",
            operation=f"{change}_{resource_type}",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
                "instance_id": instance_id,
                "node_id": node_id,
            }
        )

        self.log_event(event)

    def log_attachment(self,
                       resource_type: str,  # "volume" or "network_interface"
                       resource_id: str,
                       instance_id: str,
                       action: str,  # "attach" or "detach"
                       result: ActionResult,
                       node_id: Optional[str] = None,
                       availability_zone: Optional[str] = None,
                       duration_ms: int = None,
                       error_message: str = None) -> None:
        """Log EC2 attach/detach calls with full context"""

        event_type = (EventType.VOLUME_ATTACHMENT if resource_type == "volume"
                      else EventType.NETWORK_INTERFACE_ATTACHMENT)
        event = StructuredEvent(
            event_type=event_type.value,
            timestamp=time.time(),
            result=result.value,
            component="ec2",
            operation=f"{action}_{resource_type}",
            details={
                "resource_id": resource_id,
                "instance_id": instance_id,
                "node_id": node_id,
                "availability_zone": availability_zone,
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_node_identity(self,
                          node_id: str,
                          env_file: str,
                          result: ActionResult,
                          error_message: str = None) -> None:
        """Log the node identifier being resolved and persisted"""

        event = StructuredEvent(
            event_type=EventType.NODE_IDENTITY.value,
            timestamp=time.time(),
            result=result.value,
            component="reconciler",
            operation="persist_node_identity",
            details={"node_id": node_id, "env_file": env_file},
            error_message=error_message
        )

        self.log_event(event)

    def log_network_readiness(self,
                              ip_address: str,
                              interface_name: Optional[str],
                              attempts: int,
                              result: ActionResult,
                              duration_ms: int = None,
                              error_message: str = None) -> None:
        """Log the outcome of a post-attach network readiness wait"""

        event = StructuredEvent(
            event_type=EventType.NETWORK_READINESS.value,
            timestamp=time.time(),
            result=result.value,
            component="network",
            operation="wait_and_setup_interface",
            details={
                "ip_address": ip_address,
                "interface_name": interface_name,
                "attempts": attempts,
            },
            duration_ms=duration_ms,
            error_message=error_message
        )

        self.log_event(event)

    def log_filesystem_operation(self,
                                 operation: str,  # "check_filesystem", "create_filesystem" or "mount"
                                 device: str,
                                 fs_type: str,
                                 result: ActionResult,
                                 mount_point: Optional[str] = None,
                                 error_message: str = None) -> None:
        """Log filesystem creation and mount side effects"""

        event = StructuredEvent(
            event_type=EventType.FILESYSTEM_OPERATION.value,
            timestamp=time.time(),
            result=result.value,
            component="filesystem",
            operation=operation,
            details={
                "device": device,
                "fs_type": fs_type,
                "mount_point": mount_point,
            },
            error_message=error_message
        )

        self.log_event(event)
