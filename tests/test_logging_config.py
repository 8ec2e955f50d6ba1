from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from markdesk.core.observability.logging_config import LOG_FILE_NAME, setup_logging


@pytest.fixture()
def root_logger(monkeypatch: pytest.MonkeyPatch) -> logging.Logger:
    root = logging.getLogger()
    monkeypatch.setattr(root, "handlers", list(root.handlers))
    monkeypatch.setattr(root, "level", root.level)
    return root


def test_file_log_is_json_lines_with_job_extras(root_logger: logging.Logger, tmp_path: Path) -> None:
    setup_logging(level="debug", json_logs=False, log_to_file=True, state_dir=tmp_path)
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 2

    logging.getLogger("markdesk.test").info("Stage done", extra={"job_id": "job_1", "stage": "scanning"})
    for handler in root_logger.handlers:
        handler.flush()
    root_logger.handlers[1].close()

    lines = (tmp_path / "logs" / LOG_FILE_NAME).read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["msg"] == "Stage done"
    assert record["job_id"] == "job_1"
    assert record["stage"] == "scanning"
    assert "channel" not in record


def test_env_controls_level_and_file_output(
    root_logger: logging.Logger, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setenv("LOG_FILE", "0")
    setup_logging(state_dir=tmp_path)
    assert root_logger.level == logging.WARNING
    assert len(root_logger.handlers) == 1
    assert not (tmp_path / "logs").exists()

    monkeypatch.setenv("LOG_LEVEL", "chatty")
    setup_logging(state_dir=tmp_path)
    assert root_logger.level == logging.INFO
