"""Tests for structured logging."""

import json
import logging

from mapwatch.logging_config import CustomJsonFormatter, get_logger, setup_logging


def _record(**extra):
    record = logging.LogRecord(
        name="mapwatch.match.service",
        level=logging.WARNING,
        pathname="/app/mapwatch/match/service.py",
        lineno=42,
        msg="Matching run rejected",
        args=(),
        exc_info=None,
        func="run",
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_fields():
    formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")

    data = json.loads(formatter.format(_record(run_id="ab12")))

    assert data["message"] == "Matching run rejected"
    assert data["level"] == "WARNING"
    assert data["logger"] == "mapwatch.match.service"
    assert data["source"] == "service.py:42"
    assert data["function"] == "run"
    assert data["service"] == "mapwatch"
    assert data["run_id"] == "ab12"
    assert data["timestamp"].endswith("+00:00")


def test_get_logger_adds_context(caplog):
    log = get_logger("mapwatch.test", run_id="ab12")

    with caplog.at_level(logging.INFO, logger="mapwatch.test"):
        log.info("Starting matching run")

    assert caplog.records[-1].run_id == "ab12"


def test_setup_logging_writes_json_file(tmp_path):
    level = logging.getLogger().level
    root = setup_logging(base_dir=tmp_path)
    try:
        logging.getLogger("mapwatch.test").error("Error storing product kb-1")
        for handler in root.handlers:
            handler.flush()

        lines = (tmp_path / "logs" / "app.log").read_text().splitlines()
        assert json.loads(lines[-1])["message"] == "Error storing product kb-1"
        assert (tmp_path / "logs" / "error.log").read_text().strip()
    finally:
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)
        root.setLevel(level)
