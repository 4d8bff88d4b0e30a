"""
Structured Logging for MedVault

Provides a consistent logging framework with:
- Structured JSON output for production
- Human-readable console output for development
- Context propagation (owner, requester, resource, operation)
- Wallet address redaction
- Performance timing helpers

Key material, plaintext and wallet signatures are never passed to the
logger. Wallet addresses should go through redact_wallet() first.
"""

import json
import logging
import os
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Default logger name
LOGGER_NAME = "medvault"

# Environment variables
LOG_LEVEL_ENV = "MEDVAULT_LOG_LEVEL"
LOG_FORMAT_ENV = "MEDVAULT_LOG_FORMAT"
LOG_FILE_ENV = "MEDVAULT_LOG_FILE"

# Characters of a wallet address kept by redact_wallet()
WALLET_PREFIX_LENGTH = 12


class LogFormat(Enum):
    """Output format for logs."""
    CONSOLE = "console"     # Human-readable colored output
    JSON = "json"           # Structured JSON (one line per entry)
    PRETTY_JSON = "pretty"  # Indented JSON (for debugging)


class LogLevel(Enum):
    """Log levels matching Python's logging module."""
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR
    CRITICAL = logging.CRITICAL


def redact_wallet(address: Optional[str]) -> str:
    """Shorten a wallet address for log output."""
    if not address:
        return ""
    if len(address) <= WALLET_PREFIX_LENGTH:
        return address
    return address[:WALLET_PREFIX_LENGTH] + "..."


@dataclass
class LogContext:
    """
    Context information attached to log entries.

    Wallet fields are stored already redacted.
    """
    owner: Optional[str] = None
    requester: Optional[str] = None
    resource_id: Optional[str] = None
    scope: Optional[str] = None
    operation: Optional[str] = None
    trace_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert context to dictionary, excluding None values."""
        result = {}
        for name in ("owner", "requester", "resource_id", "scope", "operation", "trace_id"):
            value = getattr(self, name)
            if value:
                result[name] = value
        if self.extra:
            result.update(self.extra)
        return result

    def merge(self, other: "LogContext") -> "LogContext":
        """Merge with another context, preferring non-None values from other."""
        return LogContext(
            owner=other.owner or self.owner,
            requester=other.requester or self.requester,
            resource_id=other.resource_id or self.resource_id,
            scope=other.scope or self.scope,
            operation=other.operation or self.operation,
            trace_id=other.trace_id or self.trace_id,
            extra={**self.extra, **other.extra},
        )


# Thread-local context storage
_context_local = threading.local()


def get_current_log_context() -> LogContext:
    """Get the current logging context."""
    return getattr(_context_local, "context", LogContext())


def set_current_log_context(context: LogContext) -> None:
    """Set the current logging context."""
    _context_local.context = context


@contextmanager
def log_context(**kwargs):
    """
    Context manager for adding logging context.

    Wallet addresses passed as owner/requester are redacted.

    Usage:
        with log_context(owner=owner, operation="approve"):
            logger.info("Approving access")
    """
    for name in ("owner", "requester"):
        if kwargs.get(name):
            kwargs[name] = redact_wallet(kwargs[name])
    old_context = get_current_log_context()
    new_context = old_context.merge(LogContext(**kwargs))
    set_current_log_context(new_context)
    try:
        yield new_context
    finally:
        set_current_log_context(old_context)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line with timestamp, level, logger name,
    message, context fields and exception info (if any).
    """

    def __init__(self, pretty: bool = False):
        super().__init__()
        self.pretty = pretty

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context_dict = get_current_log_context().to_dict()
        if context_dict:
            entry["context"] = context_dict

        if hasattr(record, "extra_fields"):
            entry.update(record.extra_fields)

        if record.levelno <= logging.DEBUG:
            entry["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        if self.pretty:
            return json.dumps(entry, indent=2, default=str)
        return json.dumps(entry, separators=(",", ":"), default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S")

        level = record.levelname
        if self.use_colors and level in self.COLORS:
            level = f"{self.COLORS[level]}{level:8}{self.RESET}"
        else:
            level = f"{level:8}"

        context = get_current_log_context()
        context_parts = []
        if context.operation:
            context_parts.append(f"op={context.operation}")
        if context.owner:
            context_parts.append(f"owner={context.owner}")
        if context.requester:
            context_parts.append(f"requester={context.requester}")
        if context.resource_id:
            context_parts.append(f"resource={context.resource_id}")

        context_str = f" [{', '.join(context_parts)}]" if context_parts else ""
        output = f"{timestamp} {level} {record.getMessage()}{context_str}"

        if record.exc_info:
            output += "\n" + self.formatException(record.exc_info)

        return output


class VaultLogger:
    """
    Wrapper around Python's logging.Logger with structured logging support.

    Extra keyword arguments to the log methods become structured fields.
    """

    def __init__(self, name: str = LOGGER_NAME):
        self._logger = logging.getLogger(name)
        self._configured = False

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def configure(
        self,
        level: Union[str, LogLevel] = LogLevel.INFO,
        format: Union[str, LogFormat] = LogFormat.CONSOLE,
        log_file: Optional[Path] = None,
        propagate: bool = False,
    ) -> None:
        """
        Configure the logger.

        Args:
            level: Minimum log level
            format: Output format (console, json, pretty)
            log_file: Optional file to write logs to (always JSON)
            propagate: Whether to propagate to parent loggers
        """
        if isinstance(level, str):
            level = LogLevel[level.upper()]
        self._logger.setLevel(level.value)
        self._logger.propagate = propagate

        self._logger.handlers.clear()

        if isinstance(format, str):
            format = LogFormat(format.lower())

        if format == LogFormat.JSON:
            formatter = StructuredFormatter(pretty=False)
        elif format == LogFormat.PRETTY_JSON:
            formatter = StructuredFormatter(pretty=True)
        else:
            formatter = ConsoleFormatter()

        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(formatter)
        self._logger.addHandler(console_handler)

        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(StructuredFormatter(pretty=False))
            self._logger.addHandler(file_handler)

        self._configured = True

    def _ensure_configured(self) -> None:
        """Ensure logger is configured with defaults from the environment."""
        if not self._configured:
            level = os.environ.get(LOG_LEVEL_ENV, "WARNING")
            format_str = os.environ.get(LOG_FORMAT_ENV, "console")
            log_file = os.environ.get(LOG_FILE_ENV)

            self.configure(
                level=level,
                format=format_str,
                log_file=Path(log_file) if log_file else None,
                propagate=True,
            )

    def _log(
        self,
        level: int,
        msg: str,
        *args,
        exc_info: bool = False,
        **kwargs,
    ) -> None:
        self._ensure_configured()
        extra = {"extra_fields": kwargs} if kwargs else {}
        self._logger.log(level, msg, *args, exc_info=exc_info, extra=extra)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, exc_info: bool = False, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)

    @contextmanager
    def timed(self, operation: str, level: int = logging.DEBUG):
        """
        Context manager for timing operations.

        Usage:
            with logger.timed("ledger_write"):
                ledger.record_approval(...)
        """
        start = time.perf_counter()
        self._log(level, f"Starting: {operation}")
        try:
            yield
        finally:
            elapsed = time.perf_counter() - start
            self._log(level, f"Completed: {operation}", duration_ms=round(elapsed * 1000, 2))


# Global logger instance
_logger: Optional[VaultLogger] = None


def get_logger(name: str = LOGGER_NAME) -> VaultLogger:
    """Get the global MedVault logger, creating it if necessary."""
    global _logger
    if _logger is None:
        _logger = VaultLogger(name)
    return _logger


def configure_logging(
    level: Union[str, LogLevel] = LogLevel.INFO,
    format: Union[str, LogFormat] = LogFormat.CONSOLE,
    log_file: Optional[Path] = None,
) -> VaultLogger:
    """
    Configure the global MedVault logger.

    Example:
        from medvault.logging import configure_logging, LogLevel, LogFormat

        configure_logging(level=LogLevel.DEBUG, format=LogFormat.CONSOLE)
    """
    logger = get_logger()
    logger.configure(level=level, format=format, log_file=log_file)
    return logger


__all__ = [
    "LogFormat",
    "LogLevel",
    "LogContext",
    "VaultLogger",
    "get_logger",
    "configure_logging",
    "log_context",
    "redact_wallet",
    "get_current_log_context",
    "set_current_log_context",
]
