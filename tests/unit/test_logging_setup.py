"""
Unit tests for logging setup.
"""

import logging
import tempfile
from pathlib import Path

from kestrel.utils.logging_setup import setup_logging, get_logger


class TestLogging:
    """Test logger configuration."""

    def teardown_method(self):
        logger = logging.getLogger("kestrel")
        for handler in logger.handlers:
            handler.close()
        logger.handlers.clear()

    def test_get_logger_namespacing(self):
        assert get_logger("kestrel.core.search").name == "kestrel.core.search"
        assert get_logger("plugins.demo").name == "kestrel.plugins.demo"

    def test_setup_logging_writes_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = Path(temp_dir) / "logs" / "kestrel.log"

            setup_logging("DEBUG", log_file=log_file, console_output=False)
            get_logger("kestrel.tests").debug("hello from the test")
            for handler in logging.getLogger("kestrel").handlers:
                handler.flush()

            assert logging.getLogger("kestrel").level == logging.DEBUG
            assert "hello from the test" in log_file.read_text(encoding="utf-8")
            self.teardown_method()
