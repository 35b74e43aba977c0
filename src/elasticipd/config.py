import os
import re
import math
import argparse
import ipaddress
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load environment variables from a .env file into the runtime environment
load_dotenv()

DAEMON_NAME = "elasticipd"
DAEMON_VERSION = "1.0.0"
DEFAULT_LOGGER_NAME = "ELASTICIPD"

_DURATION_PART = re.compile(r'(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)')
_DURATION_UNITS = {
    'ns': 1e-9, 'us': 1e-6, 'µs': 1e-6, 'ms': 1e-3,
    's': 1.0, 'm': 60.0, 'h': 3600.0,
}


def parse_duration(text: str) -> float:
    """
    Parse a poll interval into seconds.

    Accepts bare numbers ("30", "2.5") as seconds and Go-style duration strings
    ("30s", "1m30s", "500ms", "1h") as accepted by the --interval flag.

    Raises:
        ValueError: If the text is empty or not a recognised duration.
    """
    if text is None:
        raise ValueError("duration is empty")
    text = text.strip()
    if not text:
        raise ValueError("duration is empty")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"invalid duration: {text!r}")
        return seconds

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration: {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"invalid duration: {text!r}")
    return total


def resolve_logger_name() -> str:
    """Name of the daemon logger; every module logs through this one name."""
    return (os.getenv('LOGGER_NAME') or DEFAULT_LOGGER_NAME).upper()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


def _env_int(name: str, default: int) -> int:
    # Unparseable values fall back to the default; validate_configuration reports them.
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name, default)
    return value if value else default


@dataclass
class Config:
    """
    Central configuration for the Elastic IP daemon.

    Fields are read from the environment (and an optional .env file) when the
    Config is instantiated, then may be overridden from the command line with
    apply_cli_overrides().

    Attributes:
        Target:
            - elastic_ip: Elastic IP (IPv4) to keep associated with this instance.
            - aws_region: AWS region hosting the address and the instance.

        Reconciliation:
            - poll_interval_raw: Interval as given ("30s", "1m", "45").
            - poll_interval: Parsed interval in seconds (None when unparseable).
            - max_retries: Consecutive failed cycles before the daemon exits fatally.
            - allow_reassociation: Let EC2 move an address that is associated elsewhere.

        AWS API:
            - aws_api_timeout: Connect/read timeout for EC2 API calls.
            - metadata_timeout: Timeout for instance metadata (IMDSv2) requests.

        Health/Metrics:
            - http_port: Port for /healthz and /metrics (0 disables the server).

        Logging:
            - logger_name, log_level, log_file, log_max_bytes, log_backup_count
            - enable_structured_console: JSON structured events on the console.
            - enable_structured_file / structured_log_file: JSON-lines event file.
    """
    # Target address
    elastic_ip: str | None = field(default_factory=lambda: _env_str('ELASTIC_IP'))
    aws_region: str | None = field(
        default_factory=lambda: _env_str('AWS_REGION') or _env_str('AWS_DEFAULT_REGION'))

    # Reconciliation loop
    poll_interval_raw: str = field(default_factory=lambda: os.getenv('POLL_INTERVAL', '30s'))
    max_retries: int = field(default_factory=lambda: _env_int('MAX_RETRIES', 3))
    allow_reassociation: bool = field(default_factory=lambda: _env_bool('ALLOW_REASSOCIATION', 'true'))

    # AWS API timeouts (seconds)
    aws_api_timeout: float = field(default_factory=lambda: _env_float('AWS_API_TIMEOUT', 10.0))
    metadata_timeout: float = field(default_factory=lambda: _env_float('METADATA_TIMEOUT', 2.0))

    # Local health/metrics server
    http_port: int = field(default_factory=lambda: _env_int('HTTP_PORT', 8081))

    # Logging
    logger_name: str = field(default_factory=resolve_logger_name)
    log_level: str = field(default_factory=lambda: os.getenv('LOG_LEVEL', 'INFO').upper())
    log_file: str | None = field(default_factory=lambda: _env_str('LOG_FILE'))
    log_max_bytes: int = field(default_factory=lambda: _env_int('LOG_MAX_BYTES', 10 * 1024 * 1024))
    log_backup_count: int = field(default_factory=lambda: _env_int('LOG_BACKUP_COUNT', 5))
    enable_structured_console: bool = field(
        default_factory=lambda: _env_bool('ENABLE_STRUCTURED_CONSOLE', 'false'))
    enable_structured_file: bool = field(
        default_factory=lambda: _env_bool('ENABLE_STRUCTURED_FILE', 'false'))
    structured_log_file: str | None = field(default_factory=lambda: _env_str('STRUCTURED_LOG_FILE'))

    poll_interval: float | None = field(init=False, default=None)

    def __post_init__(self):
        self.refresh_poll_interval()

    def refresh_poll_interval(self):
        """Re-parse poll_interval_raw; leaves None on error for validation to report."""
        try:
            self.poll_interval = parse_duration(self.poll_interval_raw)
        except ValueError:
            self.poll_interval = None


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=DAEMON_NAME,
        description='Keep an AWS Elastic IP associated with the current EC2 instance'
    )
    parser.add_argument('--elastic-ip', dest='elastic_ip',
                        help='Elastic IP address to associate (ELASTIC_IP)')
    parser.add_argument('--region', dest='aws_region',
                        help='AWS region hosting the Elastic IP and EC2 instance (AWS_REGION)')
    parser.add_argument('--interval', dest='poll_interval_raw',
                        help='Attempt association every interval, e.g. 30s (POLL_INTERVAL)')
    parser.add_argument('--retries', dest='max_retries', type=int,
                        help='Maximum consecutive failed attempts before fatally exiting (MAX_RETRIES)')
    parser.add_argument('--reassoc', dest='allow_reassociation',
                        action=argparse.BooleanOptionalAction, default=None,
                        help='Allow the Elastic IP to be reassociated without failure (ALLOW_REASSOCIATION)')
    parser.add_argument('--port', dest='http_port', type=int,
                        help='Local HTTP server port, 0 to disable (HTTP_PORT)')
    parser.add_argument('--log-level', dest='log_level',
                        help='Log verbosity, e.g. DEBUG or INFO (LOG_LEVEL)')
    parser.add_argument('--version', action='version', version=f'{DAEMON_NAME} {DAEMON_VERSION}')
    return parser


def apply_cli_overrides(cfg: Config, argv: list[str] | None = None) -> Config:
    """
    Override environment-derived settings with any command line flags given.

    Args:
        cfg (Config): Configuration loaded from the environment.
        argv (list[str] | None): Arguments to parse; defaults to sys.argv[1:].

    Returns:
        Config: The same object, updated in place.
    """
    args = build_arg_parser().parse_args(argv)
    for name, value in vars(args).items():
        if value is not None:
            setattr(cfg, name, value.upper() if name == 'log_level' else value)
    cfg.refresh_poll_interval()
    return cfg


MAX_POLL_INTERVAL = 3600


def validate_configuration(cfg: Config) -> list[str]:
    """
    Validates the loaded configuration for completeness and correctness.

    This includes:
    - Presence of the target address and region.
    - IPv4 formatting of the Elastic IP.
    - Poll interval parsing and range.
    - Numeric ranges for retries, ports, timeouts and log rotation.
    - Structured log file directory creation.

    Args:
        cfg (Config): Parsed and populated configuration object.

    Returns:
        list[str]: A list of human-readable error strings. Empty list means validation passed.
    """
    errors: list[str] = []

    if not cfg.elastic_ip:
        errors.append("Missing required setting: ELASTIC_IP (--elastic-ip)")
    else:
        try:
            ipaddress.IPv4Address(cfg.elastic_ip)
        except ValueError:
            errors.append(f"Invalid ELASTIC_IP, expected an IPv4 address: {cfg.elastic_ip!r}")

    if not cfg.aws_region:
        errors.append("Missing required setting: AWS_REGION (--region)")

    if cfg.poll_interval is None:
        errors.append(f"Invalid POLL_INTERVAL: {cfg.poll_interval_raw!r}")
    elif not 0 < cfg.poll_interval <= MAX_POLL_INTERVAL:
        errors.append(f"POLL_INTERVAL must be greater than 0 and at most {MAX_POLL_INTERVAL}s, "
                      f"got {cfg.poll_interval}s")

    # Report environment values that could not be parsed; integer settings must parse with int()
    for var, parse, kind in [('MAX_RETRIES', int, 'an integer'), ('HTTP_PORT', int, 'an integer'),
                             ('LOG_MAX_BYTES', int, 'an integer'), ('LOG_BACKUP_COUNT', int, 'an integer'),
                             ('AWS_API_TIMEOUT', float, 'numeric'), ('METADATA_TIMEOUT', float, 'numeric')]:
        raw = os.getenv(var)
        if raw:
            try:
                parse(raw)
            except ValueError:
                errors.append(f"{var} must be {kind}, got '{raw}'")

    numeric_ranges = {
        'MAX_RETRIES': (cfg.max_retries, 1, 100),
        'HTTP_PORT': (cfg.http_port, 0, 65535),
        'AWS_API_TIMEOUT': (cfg.aws_api_timeout, 1, 300),
        'METADATA_TIMEOUT': (cfg.metadata_timeout, 1, 60),
        'LOG_MAX_BYTES': (cfg.log_max_bytes, 1024, 1073741824),  # 1 KB to 1 GB
        'LOG_BACKUP_COUNT': (cfg.log_backup_count, 1, 100),
    }
    for var, (val, mn, mx) in numeric_ranges.items():
        if not mn <= val <= mx:
            errors.append(f"{var} must be between {mn} and {mx}, got {val}")

    if cfg.enable_structured_file:
        if not cfg.structured_log_file:
            errors.append("ENABLE_STRUCTURED_FILE is true but STRUCTURED_LOG_FILE is not set")
        else:
            structured_log_dir = os.path.dirname(cfg.structured_log_file)
            if structured_log_dir and not os.path.exists(structured_log_dir):
                try:
                    os.makedirs(structured_log_dir, exist_ok=True)
                except OSError as e:
                    errors.append(f"Cannot create structured log directory {structured_log_dir}: {e}")

    return errors
