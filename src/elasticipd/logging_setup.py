import os
import json
import logging
from logging.handlers import RotatingFileHandler

from .config import resolve_logger_name


class StructuredFormatter(logging.Formatter):
    """
    Outputs compact JSON for structured events and the regular format otherwise.
    """
    def format(self, record):
        if hasattr(record, 'json_fields') and record.json_fields.get('structured_event'):
            fields = dict(record.json_fields)
            fields.setdefault('level', record.levelname)
            return json.dumps(fields, separators=(',', ':'), default=str)
        return super().format(record)


class StructuredFilter(logging.Filter):
    """
    Filter that only allows structured log events to pass through.
    """
    def filter(self, record):
        return (hasattr(record, 'json_fields') and
                record.json_fields.get('structured_event', False))


class NonStructuredFilter(logging.Filter):
    """
    Filter that only allows non-structured log events to pass through.
    """
    def filter(self, record):
        return not (hasattr(record, 'json_fields') and
                    record.json_fields.get('structured_event', False))


def setup_logger(name: str, level: str, log_file: str | None, max_bytes: int, backup_count: int,
                 enable_structured_console: bool = False, enable_structured_file: bool = False,
                 structured_log_file: str | None = None):
    """
    Configures and returns the daemon logger.

    Console output is human-readable unless enable_structured_console is set, in
    which case only structured events are written to the console as JSON lines.
    A rotating plain-text file and a rotating JSON-lines file for structured
    events can be enabled independently.

    Calling this again replaces the handlers it installed previously.

    Args:
        name (str): The name of the logger.
        level (str): Logging level name (e.g., 'DEBUG', 'INFO', 'WARNING').
        log_file (str | None): Path to a log file. If None, file logging is skipped.
        max_bytes (int): Maximum file size in bytes before log rotation occurs.
        backup_count (int): Number of rotated log files to keep.
        enable_structured_console (bool): Output JSON to console for structured events.
        enable_structured_file (bool): Output JSON to a separate structured log file.
        structured_log_file (str | None): Path to the structured JSON-lines file.

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger_name = name or resolve_logger_name()
    logger = logging.getLogger(logger_name)
    log_level = getattr(logging, level, logging.INFO)
    logger.setLevel(log_level)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

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
            sfh = RotatingFileHandler(structured_log_file, maxBytes=max_bytes, backupCount=backup_count)
            sfh.setLevel(log_level)
            sfh.setFormatter(structured_formatter)
            sfh.addFilter(StructuredFilter())
            logger.addHandler(sfh)
            logger.info(f"Structured JSON file logging enabled: {structured_log_file}")
        except OSError as e:
            logger.warning(f"Could not setup structured file logging at {structured_log_file}: {e}")

    return logger
