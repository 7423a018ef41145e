"""
Tests for scanagents.core.logging_config.
"""

import json
import logging
import os
import sys
from unittest.mock import patch

from scanagents.core.config import Settings
from scanagents.core.logging_config import JSONFormatter, configure_logging


def _record(msg: str, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="scanagents.test",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    def test_fields(self):
        line = JSONFormatter().format(_record("Run 1 failed"))
        entry = json.loads(line)
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "scanagents.test"
        assert entry["message"] == "Run 1 failed"
        assert "exception" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record("failed", exc_info=sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestConfigureLogging:
    def test_production_uses_json(self):
        saved = list(logging.root.handlers)
        try:
            with patch.dict(os.environ, {"JWT_SECRET": "a" * 32}):
                settings = Settings(environment="production")
            configure_logging(settings, "debug")
            assert isinstance(logging.root.handlers[0].formatter, JSONFormatter)
            assert logging.root.level == logging.DEBUG
        finally:
            logging.root.handlers = saved
            logging.root.setLevel(logging.WARNING)

    def test_quiets_sqlalchemy(self):
        configure_logging(Settings(environment="development"))
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
