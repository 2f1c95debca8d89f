"""
Main Daemon Module for the Node Identity Daemon

An EC2 instance running this daemon claims a logical node identity by pairing
itself with one EBS volume and one elastic network interface (ENI) that carry
the same node id tag. Once both are attached, the node id is written to an
environment file for other services, and the data volume can optionally be
formatted and mounted.

System Architecture:
    startup() resolves everything that stays fixed for the process lifetime:
    1. Validates configuration
    2. Resolves the instance identity from instance metadata (with retries)
    3. Builds the EC2 client and reads the instance's own tags
    4. Optionally disables source/destination checking
    5. Builds the resource filter set
    6. Registers signal handlers

    run_loop() then repeats a reconcile cycle (see reconciler.py) every
    check_interval seconds until SIGTERM/SIGINT.

Failure Policy:
    - Startup failures exit the process with status 1. A failed
      source/destination check change is logged and tolerated.
    - Cycle failures never exit: EC2 errors are logged and the next cycle
      re-reads the world. Unexpected exceptions are logged and the loop continues.

Signal Handling:
    A shutdown request is honoured between cycles. A cycle in progress,
    including an ENI readiness wait, runs to completion first.

Usage:
    from .daemon import startup, run_loop
    from .config import Config

    cfg = Config()
    reconciler, state = startup(cfg)
    run_loop(cfg, reconciler, state)
"""

import os
import sys
import time
import uuid
import signal
import logging
import threading
from typing import Any, Dict, Optional, Tuple

import requests
from botocore.exceptions import BotoCoreError, ClientError

from . import __version__
from . import aws as aws_mod
from .config import Config, validate_configuration
from .metadata import MetadataClient, resolve_instance_identity
from .reconciler import Reconciler
from .retry import exponential_backoff_retry
from .state import ReconcilerState, STATE_ACTIONS
from .structured_events import StructuredEventLogger, EventType, ActionResult

# Global event used to signal graceful shutdown across the application
shutdown_event = threading.Event()

DAEMON_NAME = "EC2 node identity daemon"
CORRELATION_ID_PREFIX = "rc"  # Reconcile cycle prefix


def _logger() -> logging.Logger:
    return logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))


def signal_handler(signum: int, frame) -> None:
    """
    Handle SIGTERM/SIGINT by setting shutdown_event.

    The main loop only checks the event between cycles, so the current cycle
    finishes before the daemon exits.
    """
    signal_names = {
        signal.SIGTERM: 'SIGTERM',
        signal.SIGINT: 'SIGINT'
    }
    signal_name = signal_names.get(signum, f'Signal-{signum}')
    _logger().info(f"Received {signal_name}, initiating graceful shutdown...")
    request_shutdown()


def setup_signal_handlers() -> None:
    """Register signal_handler for SIGTERM and SIGINT."""
    try:
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)
        _logger().debug("Signal handlers registered for SIGTERM and SIGINT")
    except (ValueError, OSError) as e:
        # signal.signal only works from the main thread
        _logger().warning(f"Failed to register signal handlers: {e}")


def startup(cfg: Config,
            metadata_client: Optional[MetadataClient] = None,
            ec2=None) -> Tuple[Reconciler, ReconcilerState]:
    """
    Validate configuration and resolve the fixed facts the reconcile loop needs.

    Args:
        cfg (Config): Daemon configuration.
        metadata_client (MetadataClient, optional): IMDS client; built from cfg when omitted.
        ec2 (optional): boto3 EC2 client; built from cfg and the resolved region when omitted.

    Returns:
        tuple: (Reconciler, ReconcilerState) ready for run_loop.

    Raises:
        SystemExit: With code 1 on any fatal startup failure.
    """
    logger = _logger()
    structured_logger = StructuredEventLogger(cfg.logger_name)

    logger.info("Daemon startup initiated - beginning validation sequence")

    # Phase 1: configuration
    logger.info("Phase 1: Validating configuration")
    errors = validate_configuration(cfg)
    if errors:
        logger.error("Configuration validation failed:")
        for error in errors:
            logger.error(f"  - {error}")
        _log_startup_failure(structured_logger, "config_validation", "; ".join(errors))
        sys.exit(1)
    logger.info("Configuration validation passed")

    # Phase 2: instance identity
    logger.info("Phase 2: Resolving instance identity from instance metadata")
    metadata_client = metadata_client or MetadataClient(timeout=cfg.metadata_timeout)
    try:
        instance = exponential_backoff_retry(
            lambda: resolve_instance_identity(metadata_client, cfg.aws_region),
            max_retries=cfg.max_retries_metadata,
            initial_delay=cfg.initial_backoff,
            max_delay=cfg.max_backoff,
            retry_on=(requests.exceptions.RequestException, ValueError)
        )
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.critical(f"Failed to get instance identity: {e}")
        _log_startup_failure(structured_logger, "instance_identity", str(e))
        sys.exit(1)

    # Phase 3: EC2 client and instance tags
    logger.info(f"Phase 3: Reading tags of {instance.id} in {instance.region}")
    if ec2 is None:
        ec2 = aws_mod.build_ec2_client(instance.region, cfg.aws_api_timeout, cfg.aws_max_attempts)
    try:
        instance.tags = aws_mod.get_instance_tags(ec2, instance.id)
    except (ClientError, BotoCoreError, LookupError) as e:
        logger.critical(f"Failed to read tags of instance {instance.id}: {e}")
        _log_startup_failure(structured_logger, "instance_tags", str(e))
        sys.exit(1)

    # Phase 4: source/destination check
    if cfg.disable_source_dest_check:
        if cfg.run_passive:
            logger.info("Passive mode - leaving source/destination check unchanged")
        elif not aws_mod.disable_source_dest_check(ec2, instance.id):
            logger.warning(f"Could not disable source/destination check on {instance.id}, continuing")

    # Phase 5: filters
    try:
        filters = aws_mod.build_filters(cfg.filters, instance, cfg.node_id_tag)
    except ValueError as e:
        logger.critical(f"Failed to build resource filters: {e}")
        _log_startup_failure(structured_logger, "filters", str(e))
        sys.exit(1)

    # Phase 6: signals
    setup_signal_handlers()

    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "startup_complete",
        "details": {
            "daemon": get_daemon_info(),
            "instance_id": instance.id,
            "region": instance.region,
            "availability_zone": instance.availability_zone,
            "filters": filters,
            "check_interval": cfg.check_interval,
            "passive_mode": cfg.run_passive,
            "block_device": cfg.block_device,
            "create_file_system": cfg.create_file_system,
            "mount_file_system": cfg.mount_file_system,
            "env_file": cfg.env_file
        }
    })

    logger.info("Daemon startup completed successfully")
    if cfg.run_passive:
        logger.warning("PASSIVE MODE ENABLED - Daemon will observe but NOT attach, detach or write anything")
        logger.warning("   To enable changes, set RUN_PASSIVE=FALSE in .env file")

    reconciler = Reconciler(cfg, ec2, filters, structured_logger)
    return reconciler, ReconcilerState(instance=instance)


def _log_startup_failure(structured_logger: StructuredEventLogger, phase: str, error_message: str) -> None:
    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.FAILURE.value,
        "component": "daemon",
        "operation": "startup",
        "details": {"phase": phase},
        "error_message": error_message
    })


def run_loop(cfg: Config, reconciler: Reconciler, state: ReconcilerState) -> None:
    """
    Run reconcile cycles every cfg.check_interval seconds until shutdown.

    Each cycle gets a correlation id of the form rc-<unix>-<uuid8> so its
    structured events can be grouped. The wait between cycles subtracts the
    cycle's own duration.
    """
    logger = _logger()
    structured_logger = reconciler.structured_logger or StructuredEventLogger(cfg.logger_name)
    started = time.time()
    cycles = 0

    logger.info(f"Starting reconcile loop (interval {cfg.check_interval}s)")

    while not shutdown_event.is_set():
        loop_start = time.time()
        correlation_id = f"{CORRELATION_ID_PREFIX}-{int(loop_start)}-{str(uuid.uuid4())[:8]}"
        structured_logger.set_correlation_id(correlation_id)
        logger.debug(f"Starting reconcile cycle {correlation_id}")

        try:
            report = reconciler.reconcile(state)
            cycles += 1
            loop_duration = time.time() - loop_start
            instance = state.instance

            structured_logger.log_event({
                "event_type": EventType.RECONCILE_CYCLE.value,
                "timestamp": time.time(),
                "result": report.result.value,
                "component": "daemon",
                "operation": "reconcile_cycle",
                "details": {
                    "state_code": report.state_code,
                    "state_action": STATE_ACTIONS.get(report.state_code),
                    "final_state_code": report.final_state_code,
                    "actions": report.actions,
                    "errors": report.errors,
                    "volume_id": instance.volume.id if instance.volume else None,
                    "network_interface_id": instance.network_interface.id if instance.network_interface else None,
                    "node_id": instance.node_id or None,
                    "volume_attach_tries": state.volume_attach_tries,
                    "inconsistent": report.inconsistent,
                    "network_ready": report.readiness.ready if report.readiness else None,
                    "passive_mode": cfg.run_passive
                },
                "duration_ms": int(loop_duration * 1000)
            })
        except Exception as e:
            loop_duration = time.time() - loop_start
            logger.exception(f"Unexpected error in reconcile cycle {correlation_id}: {e}")
            structured_logger.log_event({
                "event_type": "daemon_error",
                "timestamp": time.time(),
                "result": ActionResult.FAILURE.value,
                "component": "daemon",
                "operation": "reconcile_cycle",
                "details": {"correlation_id": correlation_id},
                "duration_ms": int(loop_duration * 1000),
                "error_message": str(e)
            })

        # The full interval, counted from the end of the cycle
        if shutdown_event.wait(cfg.check_interval):
            logger.info("Shutdown signal received during sleep, exiting main loop")
            break

    structured_logger.set_correlation_id(None)
    structured_logger.log_event({
        "event_type": EventType.DAEMON_LIFECYCLE.value,
        "timestamp": time.time(),
        "result": ActionResult.SUCCESS.value,
        "component": "daemon",
        "operation": "shutdown",
        "details": {
            "reason": "graceful_shutdown",
            "cycles": cycles,
            "final_state_code": state.last_state_code,
            "node_id": state.instance.node_id or None,
            "total_uptime_seconds": int(time.time() - started)
        }
    })
    logger.info("Main daemon loop exited.")


def get_daemon_info() -> Dict[str, Any]:
    """Version and runtime flags for monitoring and debugging."""
    return {
        "name": DAEMON_NAME,
        "version": __version__,
        "shutdown_requested": shutdown_event.is_set(),
        "correlation_id_prefix": CORRELATION_ID_PREFIX
    }


def request_shutdown() -> None:
    """
    Request daemon shutdown. Used by the signal handler and callable directly;
    the loop exits after the current cycle.
    """
    if not shutdown_event.is_set():
        _logger().debug("Shutdown requested")
    shutdown_event.set()
