"""
Network readiness for a freshly attached ENI.

After EC2 attaches a network interface the guest still has to discover it and
bring it up. wait_and_setup_interface polls until the interface carrying the
ENI's private address shows up, then switches its reverse-path filter to loose
mode so replies to traffic that entered on another interface are not dropped.
"""

import os
import time
import socket
import logging
import ipaddress
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from .structured_events import StructuredEventLogger, ActionResult

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))

RP_FILTER_PATH = "/proc/sys/net/ipv4/conf/{iface}/rp_filter"
RP_FILTER_LOOSE = 2
DEFAULT_ATTEMPTS = 5
DEFAULT_DELAY = 5.0


@dataclass
class ReadinessResult:
    """
    Best-effort outcome of a readiness wait. Exhaustion is not an error for
    the reconcile loop; callers may surface it but do not change control flow.
    """
    result: ActionResult
    ip_address: str
    interface_name: Optional[str] = None
    attempts: int = 0
    error_message: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.result == ActionResult.SUCCESS


def get_interface_name_by_ip(ip: str) -> Optional[str]:
    """
    Return the name of the local interface bound to ip, or None.

    Raises:
        ValueError: If ip is not a valid address.
        OSError: If local interfaces cannot be enumerated.
    """
    target = ipaddress.ip_address(ip)
    family = socket.AF_INET if target.version == 4 else socket.AF_INET6
    for name, addresses in psutil.net_if_addrs().items():
        for addr in addresses:
            if addr.family != family:
                continue
            try:
                # IPv6 link-local addresses carry a %scope suffix
                if ipaddress.ip_address(addr.address.split('%', 1)[0]) == target:
                    return name
            except ValueError:
                continue
    return None


def set_rp_filter(iface: str, value: int = RP_FILTER_LOOSE, path_template: str = RP_FILTER_PATH) -> None:
    """
    Write value to the interface's rp_filter sysctl.

    Raises:
        ValueError: If iface is not a plain interface name.
        OSError: If the sysctl cannot be written.
    """
    if not iface or '/' in iface or iface in ('.', '..'):
        raise ValueError(f"invalid interface name: {iface!r}")
    with open(path_template.format(iface=iface), 'w') as f:
        f.write(f"{value}\n")
    logger.info(f"Set rp_filter={value} on {iface}")


def wait_and_setup_interface(ip: str,
                             attempts: int = DEFAULT_ATTEMPTS,
                             delay: float = DEFAULT_DELAY,
                             sleep: Callable[[float], None] = time.sleep,
                             resolve: Callable[[str], Optional[str]] = get_interface_name_by_ip,
                             configure: Callable[[str], None] = set_rp_filter,
                             structured_logger: Optional[StructuredEventLogger] = None) -> ReadinessResult:
    """
    Block until the interface for ip is visible locally, then set loose
    reverse-path filtering on it.

    Each attempt sleeps delay seconds first, then resolves ip to an interface
    name. A missing name or a failed sysctl write moves on to the next
    attempt. Exhausting every attempt is logged and returned, never raised.

    Args:
        ip (str): Private address of the attached ENI.
        attempts (int): Maximum attempts (default 5).
        delay (float): Seconds to wait before each attempt (default 5).
        sleep, resolve, configure: Injectable collaborators.
        structured_logger (StructuredEventLogger, optional): Logger for structured events.

    Returns:
        ReadinessResult: SUCCESS with the interface name, or FAILURE with the
            last error seen.
    """
    start_time = time.time()
    interface_name = None
    last_error = None
    attempt = 0

    for attempt in range(1, attempts + 1):
        sleep(delay)

        try:
            interface_name = resolve(ip)
        except (OSError, ValueError) as e:
            last_error = f"failed to get interface name: {e}"
            logger.warning(f"Readiness attempt {attempt}/{attempts} for {ip}: {last_error}")
            interface_name = None
        if not interface_name:
            logger.debug(f"Readiness attempt {attempt}/{attempts}: no local interface has {ip} yet")
            continue

        try:
            configure(interface_name)
        except (OSError, ValueError) as e:
            last_error = f"failed to set rp_filter on {interface_name}: {e}"
            logger.warning(f"Readiness attempt {attempt}/{attempts} for {ip}: {last_error}")
            continue

        result = ReadinessResult(ActionResult.SUCCESS, ip, interface_name, attempt)
        break
    else:
        last_error = last_error or f"no local interface with address {ip}"
        logger.error(f"Network interface for {ip} not ready after {attempts} attempts: {last_error}")
        result = ReadinessResult(ActionResult.FAILURE, ip, interface_name, attempt, last_error)

    if structured_logger:
        structured_logger.log_network_readiness(
            ip_address=ip,
            interface_name=result.interface_name,
            attempts=result.attempts,
            result=result.result,
            duration_ms=int((time.time() - start_time) * 1000),
            error_message=result.error_message
        )
    return result
