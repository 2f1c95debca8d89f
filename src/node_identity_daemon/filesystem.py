"""
Filesystem primitives for the attached data volume.

filesystem_type raises FilesystemError when the device cannot be read, so
a failed check is never mistaken for a blank device. is_mounted answers
False for an unreadable mount table. Mutations (create_filesystem, mount)
raise FilesystemError so the caller can log and move on to the next cycle.
"""

import os
import logging
import subprocess
from typing import List, Optional

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))

MOUNTS_FILE = "/proc/mounts"
COMMAND_TIMEOUT = 300  # mkfs on a large volume can take a while
BLKID_NO_SIGNATURE = 2


class FilesystemError(Exception):
    """A filesystem command failed."""


def _run(cmd: List[str]) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, timeout=COMMAND_TIMEOUT)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise FilesystemError(f"{cmd[0]} could not be run: {e}") from e


def filesystem_type(device: str) -> Optional[str]:
    """
    Filesystem type blkid reports on device, or None for a blank device.

    Raises:
        FilesystemError: blkid could not be run or exited with anything other
            than success or "no signature found".
    """
    proc = _run(["blkid", "-s", "TYPE", "-o", "value", device])
    if proc.returncode == BLKID_NO_SIGNATURE:
        return None
    if proc.returncode != 0:
        raise FilesystemError(f"blkid {device} failed "
                              f"(exit {proc.returncode}): {proc.stderr.strip()}")
    return proc.stdout.strip() or None


def create_filesystem(device: str, fs_type: str) -> None:
    """Create an fs_type filesystem on device."""
    logger.info(f"Creating {fs_type} filesystem on {device}")
    proc = _run(["mkfs", "-t", fs_type, device])
    if proc.returncode != 0:
        raise FilesystemError(f"mkfs -t {fs_type} {device} failed "
                              f"(exit {proc.returncode}): {proc.stderr.strip()}")


def is_mounted(device: str, mounts_file: str = MOUNTS_FILE) -> bool:
    """True if device (or the node it links to) appears in the mount table."""
    target = os.path.realpath(device)
    try:
        with open(mounts_file) as f:
            for line in f:
                fields = line.split()
                if not fields:
                    continue
                source = fields[0]
                if source == device or (source.startswith('/') and os.path.realpath(source) == target):
                    return True
    except OSError as e:
        logger.warning(f"Could not read mount table {mounts_file}: {e}")
    return False


def mount(device: str, mount_point: str, fs_type: str) -> None:
    """Mount device at mount_point, creating the directory if needed."""
    try:
        os.makedirs(mount_point, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"cannot create mount point {mount_point}: {e}") from e
    logger.info(f"Mounting {device} ({fs_type}) at {mount_point}")
    proc = _run(["mount", "-t", fs_type, device, mount_point])
    if proc.returncode != 0:
        raise FilesystemError(f"mount {device} {mount_point} failed "
                              f"(exit {proc.returncode}): {proc.stderr.strip()}")
