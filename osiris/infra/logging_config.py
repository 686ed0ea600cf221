# osiris/infra/logging_config.py
"""
Logging setup.

Records may carry ``job_id``, ``lead_id``, ``member_id``, ``request_id``
(via ``extra=`` or ``LogContext``) and ``phone``; phones are always masked
before they reach a handler's output.
"""
import json
import logging
import sys
from datetime import datetime, timezone

_CONTEXT_FIELDS = ("request_id", "job_id", "lead_id", "member_id")

_CONSOLE_LABELS = {"request_id": "req", "job_id": "job", "lead_id": "lead", "member_id": "member"}

# Third-party loggers and the level they are held at
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "aiohttp.access": logging.WARNING,
    "stripe": logging.WARNING,
}


def mask_phone(phone: str | None) -> str:
    """Mask a phone number for logging.

    Example: ``mask_phone("+15125550123")`` → ``"+151****23"``
    """
    if not phone:
        return ""
    phone = str(phone)
    if len(phone) <= 6:
        return "****"
    return phone[:4] + "****" + phone[-2:]


def _record_context(record: logging.LogRecord) -> dict:
    context = {field: getattr(record, field) for field in _CONTEXT_FIELDS if hasattr(record, field)}
    if hasattr(record, "phone"):
        context["phone"] = mask_phone(record.phone)
    return context


class JSONFormatter(logging.Formatter):
    """One JSON object per line (production)"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
            **_record_context(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Coloured single-line output (development)"""

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
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        tags = " ".join(
            f"{_CONSOLE_LABELS.get(key, key)}={value}" for key, value in _record_context(record).items()
        )
        line = f"{color}{stamp} {record.levelname:<8}{self.RESET} {record.name}"
        if tags:
            line += f" [{tags}]"
        line += f": {record.getMessage()}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Route every logger to stdout.

    Args:
        level: Log level name
        use_json: JSON lines instead of the coloured console format
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    logging.getLogger(__name__).info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """
    Logger wrapper that stamps the same ids on every record.

        log = LogContext(logger, job_id=job.id)
        log.info("Offer sent")
    """

    def __init__(self, logger: logging.Logger, **context):
        unknown = set(context) - set(_CONTEXT_FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context fields: {sorted(unknown)}")
        self.logger = logger
        self.context = {k: v for k, v in context.items() if v is not None}

    def bind(self, **context) -> "LogContext":
        return LogContext(self.logger, **{**self.context, **context})

    def log(self, level: int, msg: str, *args, **kwargs) -> None:
        extra = {**kwargs.pop("extra", {}), **self.context}
        self.logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)
