"""
Amazon EC2 Integration Module for Volume and Network Interface Pairing

This module is the daemon's only point of contact with the EC2 API. It covers
three concerns:

1. Snapshots: list candidate EBS volumes and ENIs matching the filter set and
   turn the raw API dictionaries into Volume / NetworkInterface objects.
2. Attachments: attach a volume, attach or detach a network interface.
3. Startup helpers: build the client, read the instance's own tags, build the
   filter set, and disable source/destination checking.

Error Handling Strategy:
    The reconcile loop must never crash on an API error. Every call catches
    botocore's ClientError / BotoCoreError, logs it with the AWS error code and
    reports failure through its return value (None or False). Configuration
    errors (permissions, unknown resources) are logged at ERROR, throttling and
    service-side errors at WARNING. The next polling cycle re-evaluates the
    situation from a fresh snapshot.

IAM Permissions Required:
    - ec2:DescribeVolumes, ec2:DescribeNetworkInterfaces, ec2:DescribeInstances
    - ec2:AttachVolume
    - ec2:AttachNetworkInterface, ec2:DetachNetworkInterface
    - ec2:ModifyInstanceAttribute (source/destination check)

Example Usage:
    ec2 = build_ec2_client('eu-west-1')
    filters = build_filters('tag:Cluster=', instance, 'NodeID')
    volumes = find_volumes(ec2, filters, 'NodeID')
    if volumes:
        attach_volume(ec2, instance.id, volumes[0], '/dev/xvde')
"""

import os
import logging
import time
from typing import Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .resources import Instance, NetworkInterface, Volume
from .structured_events import StructuredEventLogger, ActionResult

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))

# EC2 API configuration constants
DEFAULT_API_TIMEOUT = 30                  # Connect/read timeout for API calls (seconds)
DEFAULT_MAX_ATTEMPTS = 3                  # botocore standard-mode attempts per call

# Resource states reported by EC2
VOLUME_AVAILABLE_STATE = "available"
INTERFACE_AVAILABLE_STATUS = "available"

# Error codes that indicate configuration issues rather than transient faults
PERMANENT_ERROR_CODES = [
    "UnauthorizedOperation", "AuthFailure", "InvalidParameterValue",
    "InvalidVolume.NotFound", "InvalidNetworkInterfaceID.NotFound",
    "InvalidInstanceID.NotFound", "InvalidAttachmentID.NotFound",
]


def build_ec2_client(region: str,
                     timeout: int = DEFAULT_API_TIMEOUT,
                     max_attempts: int = DEFAULT_MAX_ATTEMPTS):
    """
    Create an EC2 client for region with explicit timeouts and standard retries.

    Credentials come from the default boto3 chain, which on an EC2 instance
    resolves to the instance profile.
    """
    logger.debug(f"Building EC2 client for region {region} "
                 f"(timeout={timeout}s, max_attempts={max_attempts})")
    return boto3.client(
        "ec2",
        region_name=region,
        config=BotoConfig(
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"max_attempts": max_attempts, "mode": "standard"},
        ),
    )


def _error_code(error: Exception) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code", "Unknown")
    return type(error).__name__


def _log_api_error(action: str, error: Exception) -> None:
    code = _error_code(error)
    if code in PERMANENT_ERROR_CODES:
        logger.error(f"Permanent EC2 error ({code}) during {action}: {error}")
    else:
        logger.warning(f"Transient EC2 error ({code}) during {action}, will retry next cycle: {error}")


def tags_to_dict(tags: Optional[List[Dict[str, str]]]) -> Dict[str, str]:
    """Convert the EC2 [{'Key': k, 'Value': v}] tag list into a plain dict."""
    return {t["Key"]: t.get("Value", "") for t in (tags or []) if "Key" in t}


def get_instance_tags(ec2, instance_id: str) -> Dict[str, str]:
    """
    Read the local instance's own tags.

    Raises:
        ClientError / BotoCoreError: The caller (startup) treats this as fatal,
            since the filter set cannot be built without the tags.
        LookupError: If EC2 does not know the instance.
    """
    response = ec2.describe_instances(InstanceIds=[instance_id])
    for reservation in response.get("Reservations", []):
        for described in reservation.get("Instances", []):
            if described.get("InstanceId") == instance_id:
                return tags_to_dict(described.get("Tags"))
    raise LookupError(f"Instance {instance_id} not found in describe_instances response")


def parse_filter_expression(expression: Optional[str]) -> List[Tuple[str, str]]:
    """
    Parse a comma-delimited filter expression into (name, value) pairs.

    Each item is "name=value", e.g. "tag-key=Env,tag:Profile=foo". The value
    may be empty for "tag:<Key>" items, meaning "same value as this
    instance's own <Key> tag".

    Raises:
        ValueError: On items without "=" or with an empty name.
    """
    pairs: List[Tuple[str, str]] = []
    if not expression or not expression.strip():
        return pairs

    for item in expression.split(","):
        item = item.strip()
        if not item:
            continue
        if "=" not in item:
            raise ValueError(f"filter '{item}' is not of the form name=value")
        name, value = item.split("=", 1)
        name, value = name.strip(), value.strip()
        if not name:
            raise ValueError(f"filter '{item}' has an empty name")
        if not value and not name.startswith("tag:"):
            raise ValueError(f"filter '{item}' has an empty value")
        pairs.append((name, value))
    return pairs


def build_filters(expression: Optional[str], instance: Instance, node_id_tag: str) -> List[Dict[str, List[str]]]:
    """
    Build the EC2 filter set used by every snapshot for the process lifetime.

    The set always restricts candidates to the instance's availability zone
    (EBS volumes and ENIs cannot cross zones) and to resources carrying the
    node id tag, unless the expression already filters on that tag.

    Raises:
        ValueError: If the expression is malformed or references an instance
            tag the instance does not carry.
    """
    filters: List[Dict[str, List[str]]] = []
    mentions_node_tag = False

    for name, value in parse_filter_expression(expression):
        if name.startswith("tag:") and not value:
            tag_key = name[len("tag:"):]
            if tag_key not in instance.tags:
                raise ValueError(f"filter '{name}=' refers to tag '{tag_key}' "
                                 f"which instance {instance.id} does not carry")
            value = instance.tags[tag_key]
        if name == f"tag:{node_id_tag}" or (name == "tag-key" and value == node_id_tag):
            mentions_node_tag = True
        filters.append({"Name": name, "Values": [value]})

    if instance.availability_zone:
        filters.append({"Name": "availability-zone", "Values": [instance.availability_zone]})
    if not mentions_node_tag:
        filters.append({"Name": "tag-key", "Values": [node_id_tag]})

    logger.debug(f"Resource filters: {filters}")
    return filters


def volume_from_description(description: Dict, node_id_tag: str) -> Volume:
    attachments = description.get("Attachments") or []
    return Volume(
        id=description["VolumeId"],
        node_id=tags_to_dict(description.get("Tags")).get(node_id_tag),
        attached_to=attachments[0].get("InstanceId") if attachments else None,
        available=description.get("State") == VOLUME_AVAILABLE_STATE,
        availability_zone=description.get("AvailabilityZone"),
    )


def network_interface_from_description(description: Dict, node_id_tag: str) -> NetworkInterface:
    attachment = description.get("Attachment") or {}
    return NetworkInterface(
        id=description["NetworkInterfaceId"],
        node_id=tags_to_dict(description.get("TagSet")).get(node_id_tag),
        attached_to=attachment.get("InstanceId"),
        available=description.get("Status") == INTERFACE_AVAILABLE_STATUS,
        ip_address=description.get("PrivateIpAddress"),
        availability_zone=description.get("AvailabilityZone"),
        attachment_id=attachment.get("AttachmentId"),
    )


def find_volumes(ec2, filters: List[Dict], node_id_tag: str) -> Optional[List[Volume]]:
    """
    Snapshot of candidate volumes in provider order.

    Returns:
        list[Volume] on success, None if the snapshot could not be taken.
    """
    try:
        volumes: List[Volume] = []
        for page in ec2.get_paginator("describe_volumes").paginate(Filters=filters):
            for description in page.get("Volumes", []):
                volumes.append(volume_from_description(description, node_id_tag))
        logger.debug(f"Found {len(volumes)} candidate volumes")
        return volumes
    except (ClientError, BotoCoreError) as e:
        _log_api_error("describe_volumes", e)
        return None


def find_network_interfaces(ec2, filters: List[Dict], node_id_tag: str) -> Optional[List[NetworkInterface]]:
    """
    Snapshot of candidate network interfaces in provider order.

    Returns:
        list[NetworkInterface] on success, None if the snapshot could not be taken.
    """
    try:
        interfaces: List[NetworkInterface] = []
        for page in ec2.get_paginator("describe_network_interfaces").paginate(Filters=filters):
            for description in page.get("NetworkInterfaces", []):
                interfaces.append(network_interface_from_description(description, node_id_tag))
        logger.debug(f"Found {len(interfaces)} candidate network interfaces")
        return interfaces
    except (ClientError, BotoCoreError) as e:
        _log_api_error("describe_network_interfaces", e)
        return None


def attach_volume(ec2,
                  instance_id: str,
                  volume: Volume,
                  device: str,
                  structured_logger: Optional[StructuredEventLogger] = None) -> bool:
    """
    Attach volume to instance_id as device.

    Returns:
        bool: True if EC2 accepted the attachment request.
    """
    start_time = time.time()
    error_message = None
    try:
        logger.info(f"Attaching volume {volume.id} (node {volume.node_id}, "
                    f"zone {volume.availability_zone}) to {instance_id} as {device}")
        ec2.attach_volume(VolumeId=volume.id, InstanceId=instance_id, Device=device)
        return True
    except (ClientError, BotoCoreError) as e:
        error_message = str(e)
        _log_api_error(f"attach_volume {volume.id}", e)
        return False
    finally:
        if structured_logger:
            structured_logger.log_attachment(
                resource_type="volume",
                resource_id=volume.id,
                instance_id=instance_id,
                action="attach",
                result=ActionResult.FAILURE if error_message else ActionResult.SUCCESS,
                node_id=volume.node_id,
                availability_zone=volume.availability_zone,
                duration_ms=int((time.time() - start_time) * 1000),
                error_message=error_message
            )


def attach_network_interface(ec2,
                             instance_id: str,
                             interface: NetworkInterface,
                             device_index: int,
                             structured_logger: Optional[StructuredEventLogger] = None) -> Optional[str]:
    """
    Attach interface to instance_id at device_index.

    Returns:
        str: The attachment id on success, None on failure.
    """
    start_time = time.time()
    error_message = None
    try:
        logger.info(f"Attaching network interface {interface.id} (node {interface.node_id}, "
                    f"ip {interface.ip_address}) to {instance_id} at device index {device_index}")
        response = ec2.attach_network_interface(
            NetworkInterfaceId=interface.id,
            InstanceId=instance_id,
            DeviceIndex=device_index,
        )
        return response.get("AttachmentId", "")
    except (ClientError, BotoCoreError) as e:
        error_message = str(e)
        _log_api_error(f"attach_network_interface {interface.id}", e)
        return None
    finally:
        if structured_logger:
            structured_logger.log_attachment(
                resource_type="network_interface",
                resource_id=interface.id,
                instance_id=instance_id,
                action="attach",
                result=ActionResult.FAILURE if error_message else ActionResult.SUCCESS,
                node_id=interface.node_id,
                availability_zone=interface.availability_zone,
                duration_ms=int((time.time() - start_time) * 1000),
                error_message=error_message
            )


def detach_network_interface(ec2,
                             instance_id: str,
                             interface: NetworkInterface,
                             structured_logger: Optional[StructuredEventLogger] = None) -> bool:
    """
    Detach a held network interface using its attachment id.

    Returns:
        bool: True if EC2 accepted the detach request.
    """
    error_message = None
    try:
        if not interface.attachment_id:
            error_message = f"network interface {interface.id} has no known attachment id"
            logger.error(f"Cannot detach: {error_message}")
            return False
        logger.info(f"Detaching network interface {interface.id} "
                    f"(attachment {interface.attachment_id}) from {instance_id}")
        ec2.detach_network_interface(AttachmentId=interface.attachment_id)
        return True
    except (ClientError, BotoCoreError) as e:
        error_message = str(e)
        _log_api_error(f"detach_network_interface {interface.id}", e)
        return False
    finally:
        if structured_logger:
            structured_logger.log_attachment(
                resource_type="network_interface",
                resource_id=interface.id,
                instance_id=instance_id,
                action="detach",
                result=ActionResult.FAILURE if error_message else ActionResult.SUCCESS,
                node_id=interface.node_id,
                availability_zone=interface.availability_zone,
                error_message=error_message
            )


def disable_source_dest_check(ec2, instance_id: str) -> bool:
    """
    Turn off source/destination checking so the instance can forward traffic
    that arrives on the secondary interface.
    """
    try:
        ec2.modify_instance_attribute(InstanceId=instance_id, SourceDestCheck={"Value": False})
        logger.info(f"Source/destination check disabled for {instance_id}")
        return True
    except (ClientError, BotoCoreError) as e:
        _log_api_error(f"modify_instance_attribute {instance_id}", e)
        return False
