"""Central logging configuration.

Console output is for people; the rotating file under ``<state>/logs`` is JSON
lines so a job can be traced by ``job_id`` after the fact.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path

from markdesk.config import LOGS_DIR_NAME
from markdesk.core.paths import get_app_state_dir

LOG_FILE_NAME = "markdesk.log"
_TRUTHY = {"1", "true", "yes"}
_EXTRA_KEYS = ("event", "job_id", "stage", "channel", "command", "status")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: dict[str, object] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds"),  # noqa: UP017
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update({key: getattr(record, key) for key in _EXTRA_KEYS if hasattr(record, key)})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def _resolve_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _console_handler(json_logs: bool) -> logging.Handler:
    # stderr keeps stdout clean for the CLI's JSON output.
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(
        _JsonFormatter()
        if json_logs
        else logging.Formatter(fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s", datefmt="%H:%M:%S")
    )
    return handler


def _file_handler(state_dir: Path | None) -> logging.Handler | None:
    try:
        logs_dir = (state_dir or get_app_state_dir()) / LOGS_DIR_NAME
        logs_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            logs_dir / LOG_FILE_NAME,
            maxBytes=2 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
    except OSError:
        return None
    handler.setFormatter(_JsonFormatter())
    return handler


def setup_logging(
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
    log_to_file: bool | None = None,
    state_dir: Path | None = None,
) -> None:
    """Configure root logging.

    - level: name or int; defaults to env LOG_LEVEL, then INFO.
    - json_logs: JSON console output; defaults to env LOG_JSON.
    - log_to_file: JSON-lines file in ``<state_dir>/logs``; defaults to env LOG_FILE (on).
    """

    if json_logs is None:
        json_logs = _env_flag("LOG_JSON", "0")
    if log_to_file is None:
        log_to_file = _env_flag("LOG_FILE", "1")

    handlers = [_console_handler(json_logs)]
    if log_to_file:
        file_handler = _file_handler(state_dir)
        if file_handler is not None:
            handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers.clear()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(_resolve_level(level))
