"""Tests for farmflow.utils.logging_factory module."""
import logging

import pytest
from rich.logging import RichHandler

from farmflow.utils.logging_factory import PACKAGE_LOGGER, LoggingFactory, get_logger


@pytest.fixture(autouse=True)
def reset_factory():
    LoggingFactory.reset()
    yield
    LoggingFactory.reset()


class TestLoggingFactory:
    def test_file_output(self, tmp_path):
        log_file = tmp_path / "logs" / "farmflow.log"
        LoggingFactory.initialize(log_file=log_file, level="DEBUG", console=False)

        get_logger("farmflow.sync.manager").debug("Queued price-lookup for client device-1")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert "farmflow.sync.manager - DEBUG - Queued price-lookup" in content

    def test_level_applies_to_package_logger(self):
        LoggingFactory.initialize(level="warning", console=False)
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self):
        LoggingFactory.initialize(level="chatty", console=False)
        assert logging.getLogger(PACKAGE_LOGGER).level == logging.INFO

    def test_console_handler_is_rich(self):
        LoggingFactory.initialize()
        assert any(isinstance(h, RichHandler) for h in logging.getLogger().handlers)

    def test_initialize_once(self, tmp_path):
        LoggingFactory.initialize(log_file=tmp_path / "a.log", console=False)
        LoggingFactory.initialize(log_file=tmp_path / "b.log", console=False)

        assert LoggingFactory._log_file == tmp_path / "a.log"
        assert not (tmp_path / "b.log").exists()

    def test_reset_removes_installed_handlers(self, tmp_path):
        LoggingFactory.initialize(log_file=tmp_path / "a.log", console=False)
        installed = list(LoggingFactory._handlers)
        LoggingFactory.reset()

        root_handlers = logging.getLogger().handlers
        assert all(handler not in root_handlers for handler in installed)
        assert LoggingFactory._initialized is False

    def test_get_logger_auto_initializes(self):
        logger = LoggingFactory.get_logger("farmflow.cli")

        assert logger.name == "farmflow.cli"
        assert LoggingFactory._initialized is True
