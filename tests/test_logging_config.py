"""Tests for logging configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from cava_art.logging_utils import LOG_FILE_NAME, setup_logging


def _flush_root_handlers() -> None:
    for handler in logging.getLogger().handlers:
        flush = getattr(handler, "flush", None)
        if callable(flush):
            flush()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    yield root
    for handler in root.handlers:
        if handler not in original_handlers:
            handler.close()
    root.handlers.clear()
    for handler in original_handlers:
        root.addHandler(handler)
    root.setLevel(original_level)


def _records(path: Path) -> list[dict]:
    return [
        json.loads(line)
        for line in path.read_text(encoding="utf-8").splitlines()
        if line.strip()
    ]


def test_setup_logging_default_path_writes_json_lines(
    tmp_path, restore_root_logger
) -> None:
    log_path = setup_logging(log_dir=tmp_path, level="INFO")
    logging.getLogger("cava_art.test").info("default-log-path")
    _flush_root_handlers()

    assert log_path == tmp_path / LOG_FILE_NAME
    [record] = _records(log_path)
    assert record["message"] == "default-log-path"
    assert record["level"] == "INFO"
    assert record["logger"] == "cava_art.test"
    assert record["timestamp"].endswith("Z")


def test_setup_logging_custom_file_respects_level(
    tmp_path, restore_root_logger
) -> None:
    custom_path = tmp_path / "custom" / "sync.log"
    setup_logging(log_dir=tmp_path, level="WARNING", log_file=custom_path)
    logger = logging.getLogger("cava_art.test")
    logger.info("hidden")
    logger.warning("shown")
    _flush_root_handlers()

    assert [record["message"] for record in _records(custom_path)] == ["shown"]


def test_extra_fields_land_in_context(tmp_path, restore_root_logger) -> None:
    log_path = setup_logging(log_dir=tmp_path, level="DEBUG")
    logging.getLogger("cava_art.test").info(
        "Wrote palette",
        extra={"colors": ("#000000", "#ffffff"), "config_path": tmp_path / "cfg"},
    )
    _flush_root_handlers()

    [record] = _records(log_path)
    assert record["context"] == {
        "colors": ["#000000", "#ffffff"],
        "config_path": str(tmp_path / "cfg"),
    }


def test_exceptions_are_serialized(tmp_path, restore_root_logger) -> None:
    log_path = setup_logging(log_dir=tmp_path, level="INFO")
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        logging.getLogger("cava_art.test").exception("cycle failed")
    _flush_root_handlers()

    [record] = _records(log_path)
    assert "RuntimeError: boom" in record["exception"]
    assert "context" not in record
