"""
Tests for logging setup.
"""

import logging

from csvferry.utils.logging import _parse_level, get_logger, setup_logging, setup_logging_from_config


class TestParseLevel:
    def test_names_and_ints(self):
        assert _parse_level("debug") == logging.DEBUG
        assert _parse_level(logging.WARNING) == logging.WARNING

    def test_invalid_defaults_to_info(self):
        assert _parse_level("chatty") == logging.INFO


class TestSetupLogging:
    def teardown_method(self):
        setup_logging(console_enabled=False)

    def test_console_and_file(self, tmp_path):
        log_file = tmp_path / "logs" / "csvferry.log"
        logger = setup_logging(level="DEBUG", log_file=log_file, use_rich=False)
        assert logger.name == "csvferry"
        assert len(logger.handlers) == 2

        get_logger("csvferry.test").info("hello from a child logger")
        assert "hello from a child logger" in log_file.read_text()
        assert "[INFO    ] csvferry.test" in log_file.read_text()

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging(use_rich=False)
        logger = setup_logging(use_rich=False)
        assert len(logger.handlers) == 1

    def test_from_config(self, tmp_path):
        logger = setup_logging_from_config(
            {"logging": {"level": "WARNING", "file": "out.log", "console_type": "plain"}}, base_dir=tmp_path
        )
        assert logger.level == logging.WARNING
        assert any(isinstance(h, logging.FileHandler) for h in logger.handlers)
        assert (tmp_path / "out.log").exists()
