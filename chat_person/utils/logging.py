"""Structured logging setup for chat-person."""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import orjson
import structlog
from structlog.types import Processor

from .config import get_settings


class _TeeLoggerFactory:
    """Logger factory that writes to both stdout and a log file."""

    def __init__(self, file_path: Path) -> None:
        self._file = open(file_path, "a", buffering=1)  # line-buffered

    def __call__(self, *args: Any, **kwargs: Any) -> "_TeeLogger":
        return _TeeLogger(self._file)


class _TeeLogger:
    """Logger that writes each message to stdout and a file."""

    def __init__(self, file: Any) -> None:
        self._file = file

    def msg(self, message: str) -> None:
        print(message, flush=True)
        self._file.write(message + "\n")

    log = debug = info = warn = warning = msg
    fatal = failure = err = error = critical = msg


def setup_logging(level: str | None = None, format_type: str | None = None) -> None:
    """
    Set up structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Output format ('json' or 'text')
    """
    settings = get_settings()
    log_level = level or settings.logging.level
    log_format = format_type or settings.logging.format

    log_file = Path(settings.logging.file).expanduser()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    # Standard library logging for third-party libs (httpx, slack_bolt, discord)
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=settings.logging.max_size_mb * 1024 * 1024,
                backupCount=settings.logging.backup_count,
            ),
        ],
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        # No ANSI colors, the same stream ends up in the log file
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=False),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=_TeeLoggerFactory(log_file),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance.

    Args:
        name: Logger name (usually __name__ of the calling module)

    Returns:
        Configured structured logger
    """
    return structlog.get_logger(name)


class AuditLogger:
    """
    Separate audit log for side effects the persona performs on chat platforms.

    Always JSON lines, one object per tool execution or delivery failure.
    """

    def __init__(self, audit_file: str | Path | None = None) -> None:
        settings = get_settings()
        path = Path(audit_file or settings.logging.audit_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)

        self._logger = logging.getLogger("chat_person.audit")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False

        if not self._logger.handlers:
            handler = logging.handlers.RotatingFileHandler(
                path,
                maxBytes=settings.logging.max_size_mb * 1024 * 1024,
                backupCount=settings.logging.backup_count,
            )
            handler.setFormatter(logging.Formatter("%(message)s"))
            self._logger.addHandler(handler)

    def log(
        self,
        event: str,
        action_type: str,
        channel: str | None = None,
        details: dict[str, Any] | None = None,
        status: str = "info",
        **kwargs: Any,
    ) -> None:
        """
        Log an audit event.

        Args:
            event: Event name (e.g., "tool_executed", "delivery_failed")
            action_type: What was attempted (tool name, "send_message", ...)
            channel: Channel id the action targeted
            details: Additional event details
            status: Event status (info, warning, error)
            **kwargs: Additional fields to include
        """
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "action_type": action_type,
            "channel": channel,
            "status": status,
            "details": details or {},
            **kwargs,
        }
        self._logger.info(orjson.dumps(log_entry, default=str).decode())

    def tool_executed(self, tool: str, arguments: dict[str, Any], **kwargs: Any) -> None:
        """Log a tool call that completed."""
        self.log(
            event="tool_executed",
            action_type=tool,
            details={"arguments": arguments},
            **kwargs,
        )

    def tool_failed(self, tool: str, error: str, **kwargs: Any) -> None:
        """Log a tool call that returned an error payload."""
        self.log(
            event="tool_failed",
            action_type=tool,
            status="error",
            details={"error": error},
            **kwargs,
        )

    def delivery_failed(self, channel: str, errors: dict[str, str], **kwargs: Any) -> None:
        """Log a channel group no endpoint could deliver."""
        self.log(
            event="delivery_failed",
            action_type="send_message",
            channel=channel,
            status="error",
            details={"errors": errors},
            **kwargs,
        )


# Global audit logger instance
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
