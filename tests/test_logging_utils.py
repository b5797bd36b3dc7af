import json
import logging
import sys

from vertexkoppler.config import LoggingConfig
from vertexkoppler.logging_utils import JsonLogFormatter, setup_logging


def test_setup_logging_forces_noisy_third_party_loggers_to_configured_level() -> None:
    noisy = logging.getLogger("httpcore.http11")
    noisy.setLevel(logging.DEBUG)
    noisy.addHandler(logging.StreamHandler())
    noisy.propagate = False

    setup_logging(LoggingConfig(level="INFO", json=False))

    assert logging.getLogger().level == logging.INFO
    assert noisy.level == logging.INFO
    assert noisy.handlers == []
    assert noisy.propagate is True


def test_debug_flag_overrides_configured_level() -> None:
    setup_logging(LoggingConfig(level="WARNING"), debug=True)

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("uvicorn").level == logging.DEBUG

    setup_logging(LoggingConfig(level="INFO"))


def test_log_file_receives_json_lines(tmp_path) -> None:
    log_file = tmp_path / "logs" / "agent.log"
    setup_logging(LoggingConfig(level="INFO", json=True), log_file=log_file, truncate=True)

    logging.getLogger("vertexkoppler.test").info("hello trace=%s", "req-1")
    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    record = json.loads(lines[-1])
    assert record["level"] == "INFO"
    assert record["logger"] == "vertexkoppler.test"
    assert record["message"] == "hello trace=req-1"

    setup_logging(LoggingConfig(level="INFO"))


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("bad")
    except RuntimeError:
        record = logging.getLogger("x").makeRecord("x", logging.ERROR, __file__, 1, "failed", (), None)
        record.exc_info = sys.exc_info()

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "failed"
    assert "RuntimeError: bad" in payload["exc_info"]
