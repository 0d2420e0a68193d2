import json
import logging
import sys

import pgext.logstreams


class TestJSONFormatter:
    def make_record(self, msg: str, args) -> logging.LogRecord:
        return logging.LogRecord("app", logging.INFO, __file__, 1, msg, args, None)

    def test_structured_context(self):
        record = self.make_record("creating cluster", ({"namespace": "shoot-a"},))
        data = json.loads(pgext.logstreams.JSONFormatter().format(record))
        assert data["message"] == "creating cluster"
        assert data["severity"] == "INFO"
        assert data["logger"] == "app"
        assert data["namespace"] == "shoot-a"
        assert "timestamp" in data

    def test_context_never_overrides_fields(self):
        record = self.make_record("foo", ({"severity": "bogus", "x": 1},))
        data = json.loads(pgext.logstreams.JSONFormatter().format(record))
        assert data["severity"] == "INFO"
        assert data["x"] == 1

    def test_printf_style(self):
        record = self.make_record("%s items", (3,))
        data = json.loads(pgext.logstreams.JSONFormatter().format(record))
        assert data["message"] == "3 items"

    def test_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "app", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )
        data = json.loads(pgext.logstreams.JSONFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


def test_setup():
    pgext.logstreams.setup("warning")
    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, pgext.logstreams.JSONFormatter)
    assert logging.getLogger("httpx").level == logging.WARNING

    # Restore the log level for all other tests.
    pgext.logstreams.setup("DEBUG")
