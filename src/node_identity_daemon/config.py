import os
import argparse
from dataclasses import dataclass
from dotenv import load_dotenv

from . import __version__
from .aws import parse_filter_expression

# Load environment variables from a .env file into the runtime environment
load_dotenv()

@dataclass
class Config:
    """
    Central configuration class that loads and stores all environment-defined
    parameters for the node identity daemon.

    All fields are populated from environment variables and type-cast as needed.
    Command-line flags (see build_arg_parser) override a subset of them.

    Attributes:
        Logging:
            - logger_name: Name the daemon logs as.
            - log_level: Log verbosity (e.g., DEBUG, INFO, WARNING).
            - log_file: Path to optional log file.
            - log_max_bytes: Log file size before rotation.
            - log_backup_count: Number of rotated backups to retain.
            - enable_structured_console: Output JSON to console for structured events.
            - enable_structured_file: Output JSON lines to a separate structured log file.
            - structured_log_file: Path to the structured JSON-lines log file.

        AWS & Identity:
            - aws_region: Region override; resolved from instance metadata when unset.
            - aws_api_timeout: botocore connect/read timeout in seconds.
            - aws_max_attempts: botocore standard-mode retry attempts per API call.
            - metadata_timeout: Instance metadata request timeout.
            - max_retries_metadata: Retries when resolving the instance identity.
            - initial_backoff / max_backoff: Exponential backoff timing for those retries.
            - disable_source_dest_check: Disable source/destination checking at startup.

        Resources:
            - filters: Filter expression, e.g. "tag-key=Env,tag:Profile=foo".
            - node_id_tag: Tag key carrying the logical node identifier.
            - network_device_index: Device index used when attaching the ENI.
            - block_device: Linux block device path the volume is attached as.
            - create_file_system / file_system_type: Create a filesystem if missing.
            - mount_file_system / mount_point: Mount the filesystem if unmounted.
            - env_file: Where the resolved node identity is written.

        Runtime Control:
            - check_interval: Seconds between reconcile cycles.
            - max_volume_attach_tries: Cycles without a matching volume before the
              held network interface is released.
            - readiness_attempts / readiness_delay: Network readiness wait bounds.
            - run_passive: When TRUE, observe and log but never attach, detach,
              persist or touch the filesystem.
    """
    # Logging
    logger_name: str = os.getenv('LOGGER_NAME', 'NODE_IDENTITY_DAEMON').upper()
    log_level: str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_file: str | None = os.getenv('LOG_FILE', '/var/log/node_identity_daemon.log')
    log_max_bytes: int = int(os.getenv('LOG_MAX_BYTES', 10 * 1024 * 1024))
    log_backup_count: int = int(os.getenv('LOG_BACKUP_COUNT', 5))
    enable_structured_console: bool = os.getenv('ENABLE_STRUCTURED_CONSOLE', 'false').lower() == 'true'
    enable_structured_file: bool = os.getenv('ENABLE_STRUCTURED_FILE', 'true').lower() == 'true'
    structured_log_file: str | None = os.getenv('STRUCTURED_LOG_FILE', '/var/log/node_identity_daemon_events.jsonl')

    # AWS and instance identity
    aws_region: str | None = os.getenv('AWS_REGION')
    aws_api_timeout: int = int(os.getenv('AWS_API_TIMEOUT', 30))
    aws_max_attempts: int = int(os.getenv('AWS_MAX_ATTEMPTS', 3))
    metadata_timeout: float = float(os.getenv('METADATA_TIMEOUT', 2))
    max_retries_metadata: int = int(os.getenv('MAX_RETRIES_METADATA', 3))
    initial_backoff: float = float(os.getenv('INITIAL_BACKOFF_SECONDS', 1.0))
    max_backoff: float = float(os.getenv('MAX_BACKOFF_SECONDS', 30.0))
    disable_source_dest_check: bool = os.getenv('DISABLE_SOURCE_DEST_CHECK', 'true').lower() == 'true'

    # Resource selection and local setup
    filters: str = os.getenv('FILTERS', '')
    node_id_tag: str = os.getenv('NODE_ID_TAG', 'NodeID')
    network_device_index: int = int(os.getenv('NETWORK_DEVICE_INDEX', 1))
    block_device: str = os.getenv('BLOCK_DEVICE', '/dev/xvde')
    create_file_system: bool = os.getenv('CREATE_FILE_SYSTEM', 'false').lower() == 'true'
    file_system_type: str = os.getenv('FILE_SYSTEM_TYPE', 'ext4')
    mount_file_system: bool = os.getenv('MOUNT_FILE_SYSTEM', 'false').lower() == 'true'
    mount_point: str = os.getenv('MOUNT_POINT', '/data')
    env_file: str = os.getenv('ENV_FILE', '/run/node-identity/environment')

    # Control loop
    check_interval: int = int(os.getenv('CHECK_INTERVAL_SECONDS', 120))
    max_volume_attach_tries: int = int(os.getenv('MAX_VOLUME_ATTACH_TRIES', 3))
    readiness_attempts: int = int(os.getenv('READINESS_ATTEMPTS', 5))
    readiness_delay: float = float(os.getenv('READINESS_DELAY_SECONDS', 5))

    # Passive mode - run daemon but skip all mutations
    run_passive: bool = os.getenv('RUN_PASSIVE', 'false').lower() == 'true'


def build_arg_parser() -> argparse.ArgumentParser:
    """
    Command-line flags of the agent. Every flag defaults to None so that only
    flags given explicitly override the environment-derived Config.
    """
    parser = argparse.ArgumentParser(
        prog='node-identity-daemon',
        description='Pair this EC2 instance with a tagged EBS volume and network interface'
    )
    parser.add_argument('--filters', default=None,
                        help="a comma-delimited list of filters. For example --filters='tag-key=Env,tag:Profile=foo'")
    parser.add_argument('--block-device', dest='block_device', default=None,
                        help='linux block device path (default /dev/xvde)')
    parser.add_argument('--create-file-system', dest='create_file_system', action='store_true', default=None,
                        help='whether to create a file system')
    parser.add_argument('--file-system-type', dest='file_system_type', default=None,
                        help='file system type (default ext4)')
    parser.add_argument('--mount-fs', dest='mount_file_system', action='store_true', default=None,
                        help='whether to mount a file system')
    parser.add_argument('--mount-point', dest='mount_point', default=None,
                        help='mount point path (default /data)')
    parser.add_argument('--env-file', dest='env_file', default=None,
                        help='environment file path (default /run/node-identity/environment)')
    parser.add_argument('--version', action='version', version=__version__,
                        help='print version and exit')
    return parser


CLI_FIELDS = ['filters', 'block_device', 'create_file_system', 'file_system_type',
              'mount_file_system', 'mount_point', 'env_file']


def apply_cli_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    """Copy explicitly given command-line flags onto cfg and return it."""
    for name in CLI_FIELDS:
        value = getattr(args, name, None)
        if value is not None:
            setattr(cfg, name, value)
    return cfg


def validate_configuration(cfg: Config) -> list[str]:
    """
    Validates the loaded configuration for completeness and correctness.

    This includes:
    - Validating numeric ranges.
    - Checking that device, mount point and environment file paths are absolute.
    - Checking the filesystem type when creation or mounting is enabled.
    - Parsing the filter expression.

    Args:
        cfg (Config): Parsed and populated configuration object.

    Returns:
        list[str]: A list of human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    numeric_ranges = {
        'check_interval': (1, 3600),
        'max_volume_attach_tries': (1, 100),
        'readiness_attempts': (1, 60),
        'readiness_delay': (0, 300),
        'aws_api_timeout': (1, 300),
        'aws_max_attempts': (1, 20),
        'metadata_timeout': (0.1, 60),
        'max_retries_metadata': (0, 10),
        'initial_backoff': (0, 60),
        'max_backoff': (0, 600),
        'network_device_index': (1, 31),
        'log_max_bytes': (1024, 1073741824),  # 1 KB to 1 GB
        'log_backup_count': (1, 100),
    }

    for name, (mn, mx) in numeric_ranges.items():
        val = getattr(cfg, name)
        if val < mn or val > mx:
            errors.append(f"{name.upper()} must be between {mn} and {mx}, got {val}")

    for name in ['block_device', 'mount_point', 'env_file']:
        val = getattr(cfg, name)
        if not val or not os.path.isabs(val):
            errors.append(f"{name.upper()} must be an absolute path, got '{val}'")

    if (cfg.create_file_system or cfg.mount_file_system) and not cfg.file_system_type.strip():
        errors.append("FILE_SYSTEM_TYPE cannot be empty when filesystem creation or mounting is enabled")

    if not cfg.node_id_tag.strip():
        errors.append("NODE_ID_TAG cannot be empty")

    try:
        parse_filter_expression(cfg.filters)
    except ValueError as e:
        errors.append(f"Invalid FILTERS expression: {e}")

    return errors
