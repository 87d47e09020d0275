"""Tests for structured logging infrastructure."""

import io
import json
import logging
from datetime import datetime

import pytest

from freeway_mcp.logging_config import (
    StructuredFormatter,
    StructuredLogger,
    correlation_id_var,
    configure_logging,
)
from freeway_mcp.tools.session import _session_create, _session_info

from conftest import make_cid


def capture(name: str, level: int = logging.DEBUG) -> tuple[StructuredLogger, io.StringIO]:
    """StructuredLogger writing JSON lines to a buffer."""
    log_stream = io.StringIO()
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(StructuredFormatter())

    test_logger = StructuredLogger(name)
    test_logger.logger.setLevel(level)
    test_logger.logger.handlers.clear()
    test_logger.logger.addHandler(handler)
    return test_logger, log_stream


def lines(log_stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in log_stream.getvalue().splitlines()]


@pytest.fixture
def restore_package_logger():
    package_logger = logging.getLogger("freeway_mcp")
    handlers, level = list(package_logger.handlers), package_logger.level
    yield package_logger
    for handler in package_logger.handlers:
        if handler not in handlers:
            handler.close()
    package_logger.handlers[:] = handlers
    package_logger.setLevel(level)


def test_structured_formatter_basic():
    """Test that StructuredFormatter emits valid JSON."""
    log_stream = io.StringIO()
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(StructuredFormatter())

    logger = logging.getLogger("test_basic")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)

    logger.info("Test message")

    log_data = json.loads(log_stream.getvalue().strip())
    assert log_data["level"] == "INFO"
    assert log_data["logger"] == "test_basic"
    assert log_data["message"] == "Test message"

    # ISO 8601 with Z suffix
    assert log_data["timestamp"].endswith("Z")
    datetime.fromisoformat(log_data["timestamp"].rstrip("Z"))


def test_structured_formatter_with_correlation_id():
    """Test that correlation IDs are included when set."""
    test_logger, log_stream = capture("test_correlation")

    correlation_id_var.set("test-correlation-123")
    try:
        test_logger.info("Test with correlation")
    finally:
        correlation_id_var.set(None)
    test_logger.info("Test without correlation")

    with_id, without_id = lines(log_stream)
    assert with_id["correlation_id"] == "test-correlation-123"
    assert "correlation_id" not in without_id


def test_structured_fields_and_cid():
    """CID objects are logged as their string form."""
    test_logger, log_stream = capture("test_fields")
    cid = make_cid(b"logged block")

    test_logger.error(
        "Block fetch failed",
        session_id="session-error",
        operation="freeway.block.get",
        cid=cid,
        duration_ms=100,
        url="https://origin.test/a.car",
    )

    (log_data,) = lines(log_stream)
    assert log_data["level"] == "ERROR"
    assert log_data["session_id"] == "session-error"
    assert log_data["operation"] == "freeway.block.get"
    assert log_data["cid"] == str(cid)
    assert log_data["duration_ms"] == 100
    assert log_data["extra"] == {"url": "https://origin.test/a.car"}


def test_level_filtering():
    test_logger, log_stream = capture("test_level", logging.WARNING)

    test_logger.debug("hidden")
    test_logger.info("hidden")
    test_logger.warning("shown")

    assert [line["message"] for line in lines(log_stream)] == ["shown"]


def test_structured_formatter_with_exception():
    """Test that exceptions are formatted correctly."""
    log_stream = io.StringIO()
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(StructuredFormatter())

    logger = logging.getLogger("test_exception")
    logger.setLevel(logging.ERROR)
    logger.addHandler(handler)

    try:
        raise ValueError("Test error")
    except ValueError:
        logger.exception("Error occurred")

    log_data = json.loads(log_stream.getvalue().strip())
    assert log_data["message"] == "Error occurred"
    assert "ValueError: Test error" in log_data["exc_info"]


def test_configure_logging_structured(restore_package_logger):
    configure_logging(log_level="INFO", structured=True)

    assert restore_package_logger.level == logging.INFO
    assert isinstance(restore_package_logger.handlers[0].formatter, StructuredFormatter)


def test_configure_logging_human_readable(restore_package_logger):
    configure_logging(log_level="DEBUG", structured=False)

    handler = restore_package_logger.handlers[0]
    assert restore_package_logger.level == logging.DEBUG
    assert not isinstance(handler.formatter, StructuredFormatter)


def test_configure_logging_with_file(tmp_path, restore_package_logger):
    """Test configure_logging writes to log file."""
    log_file = tmp_path / "test.log"
    configure_logging(log_level="INFO", structured=True, log_file=str(log_file))

    logging.getLogger("freeway_mcp.file_test").info("Test file logging")
    for handler in restore_package_logger.handlers:
        handler.flush()

    log_data = json.loads(log_file.read_text().strip())
    assert log_data["message"] == "Test file logging"


@pytest.mark.asyncio
async def test_tool_call_logging(server, caplog):
    """Tool calls log start and completion, then clear the correlation ID."""
    session = await _session_create(server, name="traced")

    with caplog.at_level(logging.INFO, logger="freeway_mcp"):
        await _session_info(server, session_id=session["session_id"])

    records = [r for r in caplog.records if getattr(r, "operation", None) == "freeway.session.info"]
    assert [r.getMessage() for r in records] == [
        "Starting freeway.session.info",
        "Completed freeway.session.info",
    ]
    assert all(r.session_id == session["session_id"] for r in records)
    assert correlation_id_var.get() is None
