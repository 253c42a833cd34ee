"""Unit tests for the logging helper."""

import io
import logging

import pytest
from rich.console import Console

from kube_stash.helpers.logging import ROOT_LOGGER_NAME, get_logger, log_manager


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    log_manager.configure(level="INFO")


@pytest.mark.unit
class TestLogging:

    def test_get_logger_is_below_package_root(self):
        assert get_logger("kube_stash.cores.gateway").name == "kube_stash.cores.gateway"
        assert get_logger("tests").name == f"{ROOT_LOGGER_NAME}.tests"

    def test_unknown_level(self):
        with pytest.raises(ValueError, match="Unknown log level"):
            log_manager.configure(level="CHATTY")

    def test_file_handler_writes_formatted_lines(self, tmp_path):
        log_file = tmp_path / "logs" / "kube-stash.log"
        log_manager.configure(level="DEBUG", log_file=log_file, console=Console(file=io.StringIO()))

        get_logger("kube_stash.test").debug("captured alpha", extra={"target": "alpha"})
        for handler in logging.getLogger(ROOT_LOGGER_NAME).handlers:
            handler.flush()

        content = log_file.read_text()
        assert "DEBUG" in content
        assert "captured alpha" in content

    def test_level_filters_console(self):
        buffer = io.StringIO()
        log_manager.configure(level="WARNING", console=Console(file=buffer, width=200))

        get_logger("kube_stash.test").info("hidden")
        get_logger("kube_stash.test").warning("shown")

        assert "shown" in buffer.getvalue()
        assert "hidden" not in buffer.getvalue()

    def test_reconfigure_replaces_handlers(self):
        log_manager.configure(level="INFO")
        log_manager.configure(level="INFO")
        assert len(logging.getLogger(ROOT_LOGGER_NAME).handlers) == 1
