"""Tests for logging setup and run-context fields."""

import io
import json
import logging

import pytest

from price_tracker.logging_config import QueueJsonFormatter, get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _capture(name):
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(QueueJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    logger = logging.getLogger(name)
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return stream


def test_run_context_emitted_as_fields():
    stream = _capture("tests.logging.context")
    log = get_logger("tests.logging.context", processor_id="cron-1", run_id="cron-1:ab12")

    log.warning("Listing 7 check failed")

    record = json.loads(stream.getvalue())
    assert record["processor_id"] == "cron-1"
    assert record["run_id"] == "cron-1:ab12"
    assert record["level"] == "WARNING"
    assert record["message"] == "Listing 7 check failed"
    assert record["source"].startswith("test_logging_config.py:")


def test_records_without_context_have_no_context_fields():
    stream = _capture("tests.logging.plain")
    logging.getLogger("tests.logging.plain").info("hello")

    record = json.loads(stream.getvalue())
    assert "run_id" not in record
    assert "processor_id" not in record


def test_call_extra_merges_with_bound_context():
    stream = _capture("tests.logging.extra")
    log = get_logger("tests.logging.extra", run_id="r1")

    log.info("claimed", extra={"claimed": 3})

    record = json.loads(stream.getvalue())
    assert record["run_id"] == "r1"
    assert record["claimed"] == 3


def test_no_log_files_without_log_dir(restore_root_logger, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    root = setup_logging(log_dir="", json_output=False)

    assert len(root.handlers) == 1
    assert not any(isinstance(h, logging.FileHandler) for h in root.handlers)
    assert not (tmp_path / "logs").exists()


def test_log_dir_adds_json_files(restore_root_logger, tmp_path):
    log_dir = tmp_path / "logs"
    root = setup_logging(log_dir=log_dir, json_output=True)

    files = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
    assert len(files) == 2
    assert all(isinstance(h.formatter, QueueJsonFormatter) for h in root.handlers)

    get_logger("tests.logging.files", run_id="r2").error("boom")
    for handler in files:
        handler.flush()

    error_line = json.loads((log_dir / "error.log").read_text().strip())
    assert error_line["run_id"] == "r2"
    assert (log_dir / "app.log").read_text().strip()
