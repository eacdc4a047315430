# consult_dispatch/infra/logging_config.py
"""
Logging for the dispatch service.

Records can carry dispatch context (which request, which candidate,
which attempt) and HTTP context (request id, route, status). JSON output
in production, a compact coloured line in development.
"""
import json
import logging
import sys
from datetime import datetime, timezone

# Extra fields copied from log records into the output, in this order
CONTEXT_FIELDS = (
    "request_id",
    "dispatch_id",
    "candidate_id",
    "attempt",
    "method",
    "route",
    "status_code",
    "duration_ms",
)

# Short labels for the console line; ids are cut to 8 chars
_CONSOLE_LABELS = {
    "dispatch_id": "dispatch",
    "candidate_id": "candidate",
    "attempt": "attempt",
    "request_id": "req",
}
_TRUNCATED = {"dispatch_id", "request_id"}


def _context(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shippers"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno,
        }
        log_data.update(_context(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """`[time] LEVEL logger [dispatch=... candidate=...] - message`"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        parts = []
        for name, label in _CONSOLE_LABELS.items():
            if hasattr(record, name):
                value = str(getattr(record, name))
                parts.append(f"{label}={value[:8] if name in _TRUNCATED else value}")
        context = f" [{' '.join(parts)}]" if parts else ""

        line = f"{color}{timestamp} {record.levelname:8}{self.RESET} {record.name}{context} - {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Route all logging to stdout with the dispatch formatters.

    Args:
        level: Log level name
        use_json: JSON lines instead of the console format (production)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    # uvicorn's access log duplicates RequestContextMiddleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    # google-auth logs every token refresh at DEBUG/INFO
    logging.getLogger("google.auth").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps every record with dispatch context.

        LogContext(logger, dispatch_id=rid, candidate_id=cid).info("Call accepted")

    None values are left out so they do not show up as "None" in output.
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = {k: v for k, v in context.items() if v is not None}

    def _log(self, level: int, msg: str, *args, **kwargs):
        extra = {**kwargs.pop("extra", {}), **self.context}
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._log(logging.ERROR, msg, *args, **kwargs)


def mask_token(token: str | None) -> str:
    """Mask a push token for logging.

    Example: ``mask_token("dGVzdC10b2tlbi0xMjM0")`` → ``"dGVz***34"``
    """
    if not token:
        return "<none>"
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}***{token[-2:]}"
