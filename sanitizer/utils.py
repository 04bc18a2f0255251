import logging
import os
import sys
from pathlib import Path


class SanitizerError(RuntimeError):
    """Base error for sanitizer failures that must surface to the caller."""


class ConfigError(SanitizerError):
    """Raised when the config document exists but cannot be read or parsed."""


class LeaseError(SanitizerError):
    """Raised when the persistence lease cannot be obtained."""


class ExecError(SanitizerError):
    """Raised when a command cannot be prepared for real execution."""


def _home_dir() -> Path:
    raw = str(os.environ.get("SANITIZER_HOME", "")).strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home()


def sanitizer_dir() -> Path:
    raw = str(os.environ.get("SANITIZER_DIR", "")).strip()
    if raw:
        return Path(raw).expanduser()
    return _home_dir() / ".claude" / "sanitizer"


def _console_level():
    raw = str(os.environ.get("SANITIZER_LOG_LEVEL", "WARNING")).strip().upper()
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.WARNING


def setup_logging():
    """Configures logging for the sanitizer.

    Standard output carries hook responses and wrapped command output, so the
    console handler writes to standard error.
    """
    logger = logging.getLogger("Sanitizer")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # Console Handler
    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(_console_level())
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    # File Handler
    try:
        log_dir = sanitizer_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_dir / "audit.log", encoding="utf-8")
        fh.setFormatter(formatter)
        logger.addHandler(fh)
    except OSError:
        pass

    return logger

logger = setup_logging()

def audit(action, details, status="ALLOWED"):
    """Logs an action to the audit log."""
    level = logging.WARNING if status in ("ERROR", "WARNING") else logging.INFO
    logger.log(level, f"[{status}] {action}: {details}")
