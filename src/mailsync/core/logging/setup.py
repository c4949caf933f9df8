from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] [%(account_id)s] %(name)s: %(message)s"
JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(correlation_id)s %(account_id)s %(message)s"

_SECRET_PATTERNS = [
    re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(r"((?:access_token|refresh_token|client_secret|token)=)[^&\s'\"]+"),
    re.compile(r"(['\"](?:access_token|refresh_token|client_secret)['\"]\s*:\s*['\"])[^'\"]+"),
]
REDACTED = "***"


def redact(text: str) -> str:
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda match: match.group(1) + REDACTED, text)
    return text


class CorrelationIdFilter(logging.Filter):
    """Stamps every record with the run's correlation id and an account id placeholder."""

    def __init__(self, correlation_id: str):
        super().__init__()
        self._correlation_id = correlation_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = self._correlation_id
        if not hasattr(record, "account_id"):
            record.account_id = "-"
        return True


class SecretRedactionFilter(logging.Filter):
    """Masks OAuth tokens and client secrets in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def _attach(
    handler: logging.Handler,
    formatter: logging.Formatter,
    filters: Iterable[logging.Filter],
) -> logging.Handler:
    handler.setFormatter(formatter)
    for item in filters:
        handler.addFilter(item)
    return handler


def configure_logging(
    log_dir: Path,
    correlation_id: str,
    level: int = logging.INFO,
    *,
    console: bool = True,
) -> None:
    """Console, daily text file and daily JSON-lines file, all on the root logger."""
    log_dir.mkdir(parents=True, exist_ok=True)
    utc_day = datetime.now(timezone.utc).strftime("%Y-%m-%d")

    filters = [CorrelationIdFilter(correlation_id), SecretRedactionFilter()]
    text_formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    json_formatter = jsonlogger.JsonFormatter(fmt=JSON_FORMAT)

    text_path = log_dir / f"mailsync-{utc_day}.log"
    json_path = log_dir / f"mailsync-{utc_day}.jsonl"
    handlers = [
        _attach(logging.FileHandler(text_path, encoding="utf-8"), text_formatter, filters),
        _attach(logging.FileHandler(json_path, encoding="utf-8"), json_formatter, filters),
    ]
    if console:
        handlers.insert(0, _attach(logging.StreamHandler(), text_formatter, filters))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        root.addHandler(handler)

    # urllib3 logs full request URLs, including the revoke token query parameter
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str, correlation_id: str, **context: Any) -> logging.LoggerAdapter:
    """Adapter carrying the correlation id plus fixed fields such as ``account_id``."""
    return logging.LoggerAdapter(logging.getLogger(name), extra={"correlation_id": correlation_id, **context})
