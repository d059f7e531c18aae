from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, TextIO

ROOT_LOGGER = "batchhost"
# Text produced by user code (handler stderr/log messages, setup and cleanup scripts).
OUTPUT_LOGGERS = ("batchhost.handler", "batchhost.scripts")

_installed: list[logging.Handler] = []


def get_logger(name: str = ROOT_LOGGER, *, slot: int | None = None) -> logging.Logger:
    if slot is not None:
        name = f"{name}.slot{slot}"
    return logging.getLogger(name)


class JsonLineFormatter(logging.Formatter):
    """
    One JSON object per record. Records written by ``log_event`` keep their
    fields; plain text records are wrapped as ``{"event": "output" | "log"}``.
    """

    def format(self, record: logging.LogRecord) -> str:
        text = record.getMessage()
        payload: dict[str, Any] | None = None
        if text.startswith("{"):
            try:
                decoded = json.loads(text)
            except ValueError:
                decoded = None
            if isinstance(decoded, dict):
                payload = decoded
        if payload is None:
            payload = {"event": "output" if is_output_logger(record.name) else "log", "message": text}

        payload.setdefault("logger", record.name)
        payload.setdefault("level", record.levelname.lower())
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, sort_keys=True, default=str)


def is_output_logger(name: str) -> bool:
    return any(name == prefix or name.startswith(f"{prefix}.") for prefix in OUTPUT_LOGGERS)


def _level(value: str) -> int:
    return getattr(logging, value.strip().upper(), logging.INFO)


def configure_logging(
    *,
    level: str = "info",
    format_name: str = "json",
    stream: TextIO | None = None,
    log_dir: Path | None = None,
    filename: str = "batchhost.log",
    output_level: str | None = None,
) -> None:
    """
    Attach handlers to the ``batchhost`` logger. Calling it again replaces
    the handlers installed by the previous call.

    ``output_level`` sets a separate threshold for handler and script output.
    """
    reset_logging()

    if format_name == "json":
        formatter: logging.Formatter = JsonLineFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)-7s %(name)s %(message)s")

    handlers: list[logging.Handler] = []
    if stream is not None:
        handlers.append(logging.StreamHandler(stream))
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / filename, encoding="utf-8"))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(_level(level))
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        _installed.append(handler)

    for name in OUTPUT_LOGGERS:
        logging.getLogger(name).setLevel(_level(output_level) if output_level else logging.NOTSET)


def reset_logging() -> None:
    """Remove the handlers installed by configure_logging and restore levels."""
    logger = logging.getLogger(ROOT_LOGGER)
    while _installed:
        handler = _installed.pop()
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)
    for name in OUTPUT_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, sort_keys=True, default=str))
