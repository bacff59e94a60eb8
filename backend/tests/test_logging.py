"""Tests for log formatting and setup."""

import json
import logging

import pytest

from sessiongate.core.logging import DevFormatter, JSONFormatter, setup_logging


def _record(msg="Route gate redirect", **extra) -> logging.LogRecord:
    record = logging.LogRecord("sessiongate.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logging():
    handlers, level = list(logging.root.handlers), logging.root.level
    yield
    logging.root.handlers = handlers
    logging.root.setLevel(level)


class TestJSONFormatter:
    def test_context_fields_become_keys(self):
        line = JSONFormatter().format(
            _record(path="/notes", reason="no credential", location="/login?redirect=%2Fnotes")
        )

        entry = json.loads(line)
        assert entry["message"] == "Route gate redirect"
        assert entry["path"] == "/notes"
        assert entry["reason"] == "no credential"
        assert entry["location"] == "/login?redirect=%2Fnotes"
        assert "subject" not in entry

    def test_newlines_in_values_stay_on_one_line(self):
        line = JSONFormatter().format(_record(msg="bad\nvalue", path='/a"b'))

        assert "\n" not in line
        assert json.loads(line)["path"] == '/a"b'


class TestDevFormatter:
    def test_appends_context(self):
        line = DevFormatter().format(_record(msg="Revoked 2 session(s)", subject="alice-uid"))

        assert line.endswith("Revoked 2 session(s) | subject=alice-uid")

    def test_no_context_no_suffix(self):
        assert DevFormatter().format(_record(msg="plain")).endswith("| plain")


class TestSetupLogging:
    @pytest.mark.parametrize(
        "format_type, formatter", [("structured", JSONFormatter), ("dev", DevFormatter)]
    )
    def test_format_selects_formatter(self, restore_root_logging, format_type, formatter):
        setup_logging(level="WARNING", format_type=format_type)

        assert len(logging.root.handlers) == 1
        assert isinstance(logging.root.handlers[0].formatter, formatter)
        assert logging.root.level == logging.WARNING

    def test_sql_echo_only_in_debug(self, restore_root_logging):
        setup_logging(level="DEBUG", format_type="dev")
        assert logging.getLogger("sqlalchemy.engine").level == logging.DEBUG

        setup_logging(level="INFO", format_type="dev")
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
