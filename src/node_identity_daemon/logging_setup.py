import os
import json
import logging
from logging.handlers import RotatingFileHandler


def _is_structured(record) -> bool:
    return hasattr(record, 'json_fields') and record.json_fields.get('structured_event', False)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that renders structured events as a single compact JSON line and
    falls back to the regular format for everything else.
    """
    def format(self, record):
        if _is_structured(record):
            return json.dumps(record.json_fields, separators=(',', ':'), default=str)
        return super().format(record)


class StructuredJSONLinesHandler(RotatingFileHandler):
    """
    Rotating handler for the structured event file. Each record is one JSON
    object per line, so rotation never leaves a half-closed document behind.
    """
    def emit(self, record):
        msg = self.format(record)
        if msg and msg.startswith('{'):
            super().emit(record)


class StructuredFilter(logging.Filter):
    """Only lets structured events through."""
    def filter(self, record):
        return _is_structured(record)


class NonStructuredFilter(logging.Filter):
    """Only lets plain log records through."""
    def filter(self, record):
        return not _is_structured(record)


def setup_logger(name: str, level: str, log_file: str | None, max_bytes: int, backup_count: int,
                 enable_structured_console: bool = False, enable_structured_file: bool = False,
                 structured_log_file: str | None = None):
    """
    Configure the daemon logger with console, rotating file and structured
    JSON-lines outputs.

    Args:
        name (str): Logger name shared by every daemon module.
        level (str): Log level name (DEBUG, INFO, ...).
        log_file (str): Path of the human-readable rotating log, or None to disable.
        max_bytes (int): Size at which log files rotate.
        backup_count (int): Rotated files to keep.
        enable_structured_console (bool): Output JSON to console for structured events
        enable_structured_file (bool): Output JSON to a separate structured log file
        structured_log_file (str): Path to the structured JSON-lines file

    Returns:
        logging.Logger: The configured logger.
    """
    logger_name = name or os.getenv("LOGGER_NAME", "NODE_IDENTITY_DAEMON")
    logger = logging.getLogger(logger_name)
    log_level = getattr(logging, level, logging.INFO)
    logger.setLevel(log_level)

    regular_formatter = logging.Formatter('%(asctime)s %(levelname)s [%(name)s] %(message)s')
    structured_formatter = StructuredFormatter()

    ch = logging.StreamHandler()
    ch.setLevel(log_level)
    if enable_structured_console:
        ch.setFormatter(structured_formatter)
        ch.addFilter(StructuredFilter())
    else:
        ch.setFormatter(regular_formatter)
        ch.addFilter(NonStructuredFilter())
    logger.addHandler(ch)

    if enable_structured_console:
        logger.info("Console structured logging enabled (JSON output for structured events only)")

    if log_file:
        try:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)
            fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
            fh.setLevel(log_level)
            fh.setFormatter(regular_formatter)
            fh.addFilter(NonStructuredFilter())
            logger.addHandler(fh)
            logger.info(f"Regular file logging enabled: {log_file}")
        except OSError as e:
            logger.warning(f"Could not setup regular file logging at {log_file}: {e}")

    if enable_structured_file and structured_log_file:
        try:
            structured_dir = os.path.dirname(structured_log_file)
            if structured_dir:
                os.makedirs(structured_dir, exist_ok=True)
            sfh = StructuredJSONLinesHandler(structured_log_file, maxBytes=max_bytes, backupCount=backup_count)
            sfh.setLevel(log_level)
            sfh.setFormatter(structured_formatter)
            sfh.addFilter(StructuredFilter())
            logger.addHandler(sfh)
            logger.info(f"Structured JSON file logging enabled: {structured_log_file}")
        except OSError as e:
            logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    return logger
