import json
import logging
import uuid
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict, Optional


REQUEST_ID: ContextVar[str] = ContextVar("request_id", default="")

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, message, request_id and context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": record.created,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = REQUEST_ID.get()
        if request_id:
            entry["request_id"] = request_id
        context = getattr(record, "context", None)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def configure_logging(level: str = "info", log_file: Optional[str] = None) -> None:
    handlers: list = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    formatter = JsonLineFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=_LEVELS.get(level, logging.INFO),
        handlers=handlers,
        force=True,
    )


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def log_event(
    logger: logging.Logger,
    event: str,
    level: int = logging.INFO,
    exc_info: bool = False,
    **context: Any,
) -> None:
    logger.log(level, event, extra={"context": context}, exc_info=exc_info)
