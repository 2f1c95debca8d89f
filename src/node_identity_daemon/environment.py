import os
import logging
from dotenv import set_key

from .resources import Instance

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))


def environment_values(instance: Instance) -> dict[str, str]:
    """Key/value pairs other processes read to learn this node's identity."""
    volume = instance.volume
    interface = instance.network_interface
    return {
        "NODE_ID": instance.node_id,
        "INSTANCE_ID": instance.id,
        "REGION": instance.region,
        "VOLUME_ID": volume.id if volume else "",
        "NETWORK_INTERFACE_ID": interface.id if interface else "",
        "NETWORK_INTERFACE_IP": (interface.ip_address or "") if interface else "",
    }


def write_env_file(path: str, instance: Instance) -> None:
    """
    Record the instance's node identity in a KEY=value environment file,
    creating the file and its directory if missing. Existing unrelated keys
    are preserved.

    Raises:
        OSError: If the file cannot be written.
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    if not os.path.exists(path):
        open(path, 'a').close()

    for key, value in environment_values(instance).items():
        set_key(path, key, value, quote_mode="never")
    logger.info(f"Wrote node identity {instance.node_id} to {path}")
