"""
Tests for src/utils/logging.py - JSON formatter, correlation ids, masking.
"""
import json
import logging
import sys

from src.utils.logging import (
    StructuredJsonFormatter,
    configure_structured_logging,
    correlation_id_ctx,
    generate_correlation_id,
    mask_email,
)


def _record(msg="hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("src.services.ingestion", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestMaskEmail:
    def test_masks_local_part(self):
        assert mask_email("jane.doe@example.com") == "ja***@example.com"

    def test_missing_or_invalid(self):
        assert mask_email(None) == "***"
        assert mask_email("not-an-email") == "***"


class TestStructuredJsonFormatter:
    def test_basic_fields(self):
        token = correlation_id_ctx.set("cid-123")
        try:
            entry = json.loads(StructuredJsonFormatter().format(_record()))
        finally:
            correlation_id_ctx.reset(token)
        assert entry["level"] == "INFO"
        assert entry["module"] == "src.services.ingestion"
        assert entry["message"] == "hello"
        assert entry["correlation_id"] == "cid-123"
        assert entry["timestamp"].endswith("+00:00")

    def test_extra_fields_lifted(self):
        entry = json.loads(StructuredJsonFormatter().format(
            _record(provider="hotmart", transaction_id="HP1", webhook_log_id="abc")
        ))
        assert entry["provider"] == "hotmart"
        assert entry["transaction_id"] == "HP1"
        assert entry["webhook_log_id"] == "abc"
        assert "channel" not in entry

    def test_email_extra_is_masked(self):
        entry = json.loads(StructuredJsonFormatter().format(_record(email="buyer@example.com")))
        assert entry["email"] == "bu***@example.com"

    def test_exception_included(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        entry = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]


class TestConfigure:
    def test_replaces_root_handlers(self):
        root = logging.getLogger()
        saved = (list(root.handlers), root.level)
        try:
            configure_structured_logging("debug")
            assert root.level == logging.DEBUG
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, StructuredJsonFormatter)
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])


def test_generated_correlation_id_is_hex():
    cid = generate_correlation_id()
    assert len(cid) == 32
    int(cid, 16)
