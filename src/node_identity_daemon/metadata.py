"""
EC2 Instance Metadata (IMDSv2) client.

Resolves the identity of the instance the daemon runs on: instance id,
availability zone and region. Requests go through a session token as
required by IMDSv2; any HTTP or connection failure is raised to the caller,
which decides whether to retry.
"""

import os
import logging
import requests

from .resources import Instance

logger = logging.getLogger(os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON"))

METADATA_BASE = "http://169.254.169.254/latest"
TOKEN_TTL_SECONDS = 21600
DEFAULT_TIMEOUT = 2


class MetadataClient:
    """Minimal IMDSv2 reader."""

    def __init__(self, base_url: str = METADATA_BASE, timeout: float = DEFAULT_TIMEOUT,
                 session: requests.Session | None = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self._token: str | None = None

    def _fetch_token(self) -> str:
        response = self.session.put(
            f"{self.base_url}/api/token",
            headers={"X-aws-ec2-metadata-token-ttl-seconds": str(TOKEN_TTL_SECONDS)},
            timeout=self.timeout
        )
        response.raise_for_status()
        return response.text

    def get(self, path: str) -> str:
        """GET a metadata path such as 'meta-data/instance-id'."""
        if self._token is None:
            self._token = self._fetch_token()
        response = self.session.get(
            f"{self.base_url}/{path.lstrip('/')}",
            headers={"X-aws-ec2-metadata-token": self._token},
            timeout=self.timeout
        )
        if response.status_code == 401:
            # Token expired; fetch a fresh one once
            self._token = self._fetch_token()
            response = self.session.get(
                f"{self.base_url}/{path.lstrip('/')}",
                headers={"X-aws-ec2-metadata-token": self._token},
                timeout=self.timeout
            )
        response.raise_for_status()
        return response.text.strip()


def resolve_instance_identity(client: MetadataClient, region_override: str | None = None) -> Instance:
    """
    Build the local Instance from instance metadata.

    Raises:
        requests.exceptions.RequestException: If the metadata service cannot be read.
        ValueError: If the metadata service returns an empty instance id.
    """
    instance_id = client.get("meta-data/instance-id")
    if not instance_id:
        raise ValueError("instance metadata returned an empty instance id")
    availability_zone = client.get("meta-data/placement/availability-zone")
    region = region_override or client.get("meta-data/placement/region")
    logger.info(f"Resolved instance identity: {instance_id} in {availability_zone} ({region})")
    return Instance(id=instance_id, region=region, availability_zone=availability_zone)
