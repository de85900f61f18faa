"""Unit tests for the logging configuration module."""

import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import MagicMock, patch

import pytest
import structlog

from containers_up.logging import EventLogger, get_logger, setup_logging


@pytest.fixture(autouse=True)
def _reset_root_logger():
    """Reset root logger state before and after each test."""
    original_handlers = logging.root.handlers[:]
    original_level = logging.root.level
    logging.root.handlers.clear()
    logging.root.setLevel(logging.WARNING)
    yield
    logging.root.handlers.clear()
    logging.root.handlers.extend(original_handlers)
    logging.root.setLevel(original_level)


def _mock_settings(level: str = "INFO", development: bool = False, **extra) -> MagicMock:
    settings = MagicMock()
    settings.log_level = level
    settings.log_to_file = False
    settings.is_development = development
    for key, value in extra.items():
        setattr(settings, key, value)
    return settings


class TestSetupLogging:
    """Tests for setup_logging function."""

    @pytest.mark.parametrize(
        ("level", "expected"),
        [("DEBUG", logging.DEBUG), ("warning", logging.WARNING), ("NONEXISTENT", logging.INFO)],
    )
    def test_basic_config_level(self, level, expected):
        with patch("containers_up.logging.get_settings", return_value=_mock_settings(level)):
            with patch("containers_up.logging.logging.basicConfig") as mock_basic:
                setup_logging()

        mock_basic.assert_called_once_with(format="%(message)s", level=expected, handlers=[])

    def test_adds_console_handler(self):
        with patch("containers_up.logging.get_settings", return_value=_mock_settings()):
            setup_logging()

        stream_handlers = [h for h in logging.root.handlers if type(h) is logging.StreamHandler]
        assert len(stream_handlers) == 1

    def test_file_handler_when_enabled(self, tmp_path):
        settings = _mock_settings(log_to_file=True, log_file_path=str(tmp_path / "logs" / "a.log"))

        with patch("containers_up.logging.get_settings", return_value=settings):
            setup_logging()

        file_handlers = [h for h in logging.root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert (tmp_path / "logs").is_dir()
        for handler in file_handlers:
            handler.close()

    def test_quietens_http_libraries(self):
        with patch("containers_up.logging.get_settings", return_value=_mock_settings("DEBUG")):
            setup_logging()

        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("aiohttp.access").level == logging.WARNING


class TestGetLogger:
    """Tests for get_logger function."""

    def test_returns_structlog_logger(self):
        logger = get_logger("containers_up.test")
        assert hasattr(logger, "info")
        assert hasattr(logger, "bind")

    def test_bound_context_is_kept(self):
        structlog.reset_defaults()
        with structlog.testing.capture_logs() as captured:
            get_logger("containers_up.test").bind(host="prod").info("scan_started")

        assert captured == [{"host": "prod", "event": "scan_started", "log_level": "info"}]


class TestEventLogger:
    """Tests for the per-event capturing logger."""

    def test_captures_lines_with_fields(self):
        events = EventLogger("github-webhook prod /web")
        events.info("job_opened", job_id=3, title="Bump a")
        events.warning("slow")

        entries = events.drain(host_id=1, job_id=3)

        assert [e.msg for e in entries] == ["job_opened job_id=3 title=Bump a", "slow"]
        assert [e.level for e in entries] == [logging.INFO, logging.WARNING]
        assert all(e.event == "github-webhook prod /web" for e in entries)
        assert all(e.host_id == 1 and e.job_id == 3 for e in entries)

    def test_drain_empties_buffer(self):
        events = EventLogger("squash prod")
        events.debug("x")
        assert len(events) == 1

        events.drain(host_id=1)

        assert len(events) == 0
        assert events.drain(host_id=1) == []

    def test_entries_keep_order_and_time(self):
        events = EventLogger("t")
        for i in range(3):
            events.info("step", n=i)

        entries = events.drain(host_id=1)

        assert [e.msg for e in entries] == ["step n=0", "step n=1", "step n=2"]
        assert entries[0].time <= entries[1].time <= entries[2].time

    def test_exception_records_error_text(self):
        events = EventLogger("t")
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            events.exception("restart_failed", folder="/web")

        (entry,) = events.drain(host_id=1)
        assert entry.level == logging.ERROR
        assert entry.msg == "restart_failed folder=/web error=boom"

    def test_exception_without_message_uses_type_name(self):
        events = EventLogger("t")
        try:
            raise TimeoutError()
        except TimeoutError:
            events.exception("failed")

        (entry,) = events.drain(host_id=1)
        assert entry.msg == "failed error=TimeoutError"
