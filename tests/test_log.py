import json
import logging

import pytest
from rich.console import Console

from otsentinel.log import LEVELS, LOG_FILE_NAME, TRACE, JSONLineFormatter, LoggingSetupError, parse_level, setup_logging


@pytest.fixture
def package_logger():
    logger = logging.getLogger("otsentinel")
    saved = (logger.level, logger.propagate, list(logger.handlers))
    yield logger
    for h in list(logger.handlers):
        if h not in saved[2]:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(saved[0])
    logger.propagate = saved[1]


@pytest.mark.parametrize(
    "name, level",
    [("TRACE", TRACE), ("debug", logging.DEBUG), ("WARN", logging.WARNING), ("FATAL", logging.CRITICAL)],
)
def test_parse_level(name, level):
    assert parse_level(name) == level


def test_parse_level_rejects_unknown():
    with pytest.raises(ValueError):
        parse_level("VERBOSE")


def test_trace_level_is_registered():
    assert logging.getLevelName(TRACE) == "TRACE"
    assert LEVELS["TRACE"] < logging.DEBUG


def test_json_line_formatter_merges_event():
    record = logging.LogRecord("otsentinel.events", logging.WARNING, __file__, 1, "port %d", (502,), None)
    record.event = {"port": 502, "kind": "Connected", "peer": "10.0.0.7:40000"}
    payload = json.loads(JSONLineFormatter().format(record))
    assert payload["level"] == "WARNING"
    assert payload["message"] == "port 502"
    assert payload["kind"] == "Connected"
    assert payload["peer"] == "10.0.0.7:40000"


def test_setup_logging_writes_json_file(tmp_path, package_logger):
    console = Console(file=open(tmp_path / "console.txt", "w"), force_terminal=False)
    logger = setup_logging("DEBUG", tmp_path / "logs", console=console)
    logging.getLogger("otsentinel.events").warning("detected", extra={"event": {"port": 2004, "kind": "Connected"}})
    for h in logger.handlers:
        h.flush()
    lines = (tmp_path / "logs" / LOG_FILE_NAME).read_text(encoding="utf-8").splitlines()
    entry = json.loads(lines[-1])
    assert entry["message"] == "detected"
    assert entry["port"] == 2004
    console.file.close()


def test_setup_logging_is_idempotent(tmp_path, package_logger):
    setup_logging("INFO", tmp_path)
    setup_logging("ERROR", tmp_path)
    assert package_logger.level == logging.ERROR
    assert len(package_logger.handlers) == 2


def test_json_line_timestamp_comes_from_record():
    record = logging.LogRecord("otsentinel", logging.INFO, __file__, 1, "hello", (), None)
    record.created = 1772366400.25
    payload = json.loads(JSONLineFormatter().format(record))
    assert payload["ts"] == "2026-03-01T12:00:00.250000+00:00"


def test_unusable_log_dir_raises_logging_setup_error(tmp_path, package_logger):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    with pytest.raises(LoggingSetupError, match="cannot create log directory"):
        setup_logging("INFO", blocker / "logs")
    assert issubclass(LoggingSetupError, RuntimeError)
