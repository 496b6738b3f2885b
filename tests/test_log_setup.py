"""
Tests for request-id stamping on log records.
"""

import logging

import pytest

import log_setup
import studio_core


def _record():
    return logging.LogRecord("studio_core", logging.INFO, __file__, 1, "hello", None, None)


class TestRequestIdFilter:

    def test_outside_a_request(self):
        record = _record()
        assert log_setup.RequestIdFilter().filter(record) is True
        assert record.request_id == log_setup.NO_REQUEST

    def test_inside_a_request(self):
        with log_setup.request_context("abc123"):
            record = _record()
            log_setup.RequestIdFilter().filter(record)
            assert log_setup.current_request_id() == "abc123"
        assert record.request_id == "abc123"
        assert log_setup.current_request_id() == log_setup.NO_REQUEST

    def test_context_is_reset_on_error(self):
        with pytest.raises(RuntimeError):
            with log_setup.request_context("abc123"):
                raise RuntimeError("boom")
        assert log_setup.current_request_id() == log_setup.NO_REQUEST

    def test_pipeline_logs_carry_the_request_id(self, fake_vendors, caplog):
        caplog.handler.addFilter(log_setup.RequestIdFilter())
        caplog.set_level(logging.INFO, logger="studio_core")
        result = studio_core.StudioPipeline(
            "Mug", b"img", keys={"openai": "sk-o"},
        ).run()

        stamped = [r for r in caplog.records if r.name == "studio_core" and r.levelno == logging.INFO]
        assert stamped
        assert all(r.request_id == result["request_id"] for r in stamped)
