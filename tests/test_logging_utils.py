"""Tests for structured logging utilities."""

import io
import json
import logging
import sys

import pytest

from reducer_sync.logging_utils import (
    ChannelLoggerAdapter,
    StructuredJsonFormatter,
    configure_structured_logging,
    get_sync_logger,
)


def _record(msg: str = "hello %s", args: tuple = ("world",), **extra) -> logging.LogRecord:
    record = logging.LogRecord("reducer_sync.machine", logging.INFO, __file__, 1, msg, args, None)
    record.__dict__.update(extra)
    return record


class TestStructuredJsonFormatter:
    def test_standard_fields(self):
        output = json.loads(StructuredJsonFormatter().format(_record()))

        assert output["level"] == "INFO"
        assert output["logger"] == "reducer_sync.machine"
        assert output["message"] == "hello world"
        assert "timestamp" in output

    def test_extra_fields_included(self):
        output = json.loads(StructuredJsonFormatter().format(_record(channel="comments", ts=42)))

        assert output["channel"] == "comments"
        assert output["ts"] == 42

    def test_unserializable_extra_stringified(self):
        output = json.loads(StructuredJsonFormatter().format(_record(value={1, 2})))

        assert isinstance(output["value"], str)

    def test_exception_included(self):
        try:
            raise RuntimeError("reducer failed")
        except RuntimeError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "oops", (), exc_info=sys.exc_info()
            )

        output = json.loads(StructuredJsonFormatter().format(record))

        assert "reducer failed" in output["exception"]


class TestConfigureStructuredLogging:
    def test_single_json_handler(self):
        logger = configure_structured_logging(logging.DEBUG, "reducer_sync.test_config")
        configure_structured_logging(logging.DEBUG, "reducer_sync.test_config")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
        assert logger.level == logging.DEBUG
        logger.handlers.clear()

    def test_static_fields_on_every_line(self):
        stream = io.StringIO()
        logger = configure_structured_logging(
            logging.INFO, "reducer_sync.test_static", stream=stream, static_fields={"device": "d1"}
        )
        logger.propagate = False

        logger.info("one")
        logger.info("two")
        logger.handlers.clear()

        lines = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert [(line["device"], line["message"]) for line in lines] == [("d1", "one"), ("d1", "two")]


class TestChannelLoggerAdapter:
    def test_prefix_and_extra(self, caplog: pytest.LogCaptureFixture):
        log = ChannelLoggerAdapter(get_sync_logger("machine"), {"channel": "comments"})

        with caplog.at_level(logging.INFO, logger="reducer_sync.machine"):
            log.info("settled at ts=%d", 7)

        [record] = caplog.records
        assert record.name == "reducer_sync.machine"
        assert record.getMessage() == "[comments] settled at ts=7"
        assert record.channel == "comments"
