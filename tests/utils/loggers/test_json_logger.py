import json
import logging
import os
import sys
from unittest.mock import MagicMock

from utils.loggers.json_logger import JsonLogger, determine_log_path, get_logger, log_json


def make_record(msg="hello", **extra):
    record = logging.LogRecord("markov_chain", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_format_basic_fields():
    data = json.loads(JsonLogger().format(make_record()))
    assert data["level"] == "INFO"
    assert data["logger"] == "markov_chain"
    assert data["message"] == "hello"
    assert "timestamp" in data
    assert "metrics" not in data


def test_format_structured_fields():
    record = make_record(metrics={"tokens": 9}, operation="markov_build", collection="book")
    data = json.loads(JsonLogger().format(record))
    assert data["metrics"] == {"tokens": 9}
    assert data["operation"] == "markov_build"
    assert data["collection"] == "book"


def test_format_unserializable_metrics():
    record = make_record(msg="città", metrics={"starters": {" the"}})
    output = JsonLogger().format(record)
    assert "città" in output
    assert json.loads(output)["metrics"]["starters"] == str({" the"})


def test_format_exception():
    try:
        raise ValueError("Prefix too short")
    except ValueError:
        record = make_record()
        record.exc_info = sys.exc_info()

    data = json.loads(JsonLogger().format(record))
    assert data["exception"]["type"] == "ValueError"
    assert data["exception"]["message"] == "Prefix too short"


def test_get_logger_clears_handlers():
    logger = get_logger("test_json_logger_clear")
    logger = get_logger("test_json_logger_clear")
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0].formatter, JsonLogger)


def test_get_logger_keeps_existing_handlers():
    first = get_logger("test_json_logger_keep")
    second = get_logger("test_json_logger_keep", clear_existing=False)
    assert first is second
    assert len(second.handlers) == 1


def test_get_logger_writes_file(tmp_path):
    log_path = tmp_path / "nested" / "run.log"
    logger = get_logger("test_json_logger_file", log_file=str(log_path))
    logger.info("Chain saved", extra={"metrics": {"saved": 3}})
    for handler in logger.handlers:
        handler.flush()

    line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
    assert json.loads(line)["metrics"] == {"saved": 3}

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def test_determine_log_path_auto():
    path = determine_log_path("auto")
    assert os.path.basename(path).startswith("markovianomatic_")
    assert os.path.basename(os.path.dirname(path)) == "logs"


def test_log_json():
    logger = MagicMock()
    log_json(logger, "Training finished", {"tokens": 4})
    logger.info.assert_called_once_with("Training finished", extra={"metrics": {"tokens": 4}})

    log_json(logger, "plain")
    logger.info.assert_called_with("plain")


def test_format_thread_name():
    data = json.loads(JsonLogger().format(make_record()))
    assert data["thread"] == "MainThread"


def test_format_skips_empty_context():
    data = json.loads(JsonLogger().format(make_record(collection=None)))
    assert "collection" not in data


def test_log_json_collection():
    logger = MagicMock()
    log_json(logger, "Training finished", {"tokens": 4}, collection="book")
    logger.info.assert_called_once_with(
        "Training finished", extra={"metrics": {"tokens": 4}, "collection": "book"})
