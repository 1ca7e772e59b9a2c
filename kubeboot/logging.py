"""Logging configuration for the kubeboot package.

One process runs one component, so the ``kubeboot`` logger gets a console
handler plus a rotating file at ``<log dir>/<component>.log``.
"""
import logging
import logging.handlers
import re
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

ROOT_LOGGER = "kubeboot"

# bootstrap tokens are <6 chars>.<16 chars>; the second half is the secret
_TOKEN_SECRET_RE = re.compile(r'\b([a-z0-9]{6})\.[a-z0-9]{16}\b')


class RedactTokenFilter(logging.Filter):
    """Mask the secret half of bootstrap tokens in every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _TOKEN_SECRET_RE.sub(r'\1.[REDACTED]', message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def redact_tokens(text: str) -> str:
    return _TOKEN_SECRET_RE.sub(r'\1.[REDACTED]', text)


def setup_logging(
    component: str,
    config: Optional[LoggingConfig] = None,
    debug: bool = False,
) -> logging.Logger:
    """Set up the package logger for a component run.

    Args:
        component: Component name, used for the log file name
        config: Logging configuration (defaults if None)
        debug: Force DEBUG level

    Returns:
        The component logger (a child of the package logger)
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if debug else getattr(logging, config.level.upper(), logging.INFO)

    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    root.propagate = False

    # Clear existing handlers
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    redact_filter = RedactTokenFilter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(redact_filter)
    root.addHandler(console_handler)

    log_file = Path(config.directory).expanduser() / f"{component}.log"
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count
        )
    except OSError as e:
        root.warning(f"⚠️  Cannot write {log_file} ({e}); logging to the terminal only")
    else:
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redact_filter)
        root.addHandler(file_handler)
        root.debug(f"Logging to file: {log_file}")

    # Disable debug logging for noisy libraries
    if not debug:
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('kubernetes').setLevel(logging.WARNING)

    return logging.getLogger(f"{ROOT_LOGGER}.{component}")
