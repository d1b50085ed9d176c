"""
Tests for logging_config module.
"""

import logging

import pytest

from src.infra.logging_config import LOGGER_NAME, DailyRotatingFileHandler, setup_logging


@pytest.fixture
def package_logger():
    """Restore the package logger after each test."""
    logger = logging.getLogger(LOGGER_NAME)
    original = (logger.level, logger.propagate, list(logger.handlers))
    logger.handlers.clear()

    yield logger

    for handler in logger.handlers:
        handler.close()
    logger.setLevel(original[0])
    logger.propagate = original[1]
    logger.handlers[:] = original[2]


class TestDailyRotatingFileHandler:
    """Tests for DailyRotatingFileHandler class."""

    def test_handler_creates_log_directory(self, tmp_path):
        """Test that handler creates log directory if it doesn't exist."""
        log_dir = tmp_path / "new_logs"
        assert not log_dir.exists()

        handler = DailyRotatingFileHandler(log_dir=str(log_dir))
        assert log_dir.exists()
        handler.close()

    def test_handler_creates_log_file(self, tmp_path):
        """Test that handler creates a log file with correct naming."""
        handler = DailyRotatingFileHandler(log_dir=str(tmp_path))

        log_files = list(tmp_path.glob("shopify_queue_*.log"))
        assert len(log_files) == 1

        # shopify_queue_YYYYMMDD_HHMMSS.log
        parts = log_files[0].stem.split("_")
        assert len(parts[2]) == 8
        assert len(parts[3]) == 6
        handler.close()

    def test_handler_emits_record(self, tmp_path):
        """Test that handler writes log records to file."""
        handler = DailyRotatingFileHandler(log_dir=str(tmp_path))
        handler.setFormatter(logging.Formatter('%(message)s'))

        record = logging.LogRecord(
            name="src.queueing.worker_pool",
            level=logging.INFO,
            pathname="",
            lineno=0,
            msg="Job event: completed",
            args=(),
            exc_info=None
        )
        handler.emit(record)
        handler.close()

        log_files = list(tmp_path.glob("shopify_queue_*.log"))
        assert len(log_files) == 1
        assert "Job event: completed" in log_files[0].read_text()


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self, package_logger):
        logger = setup_logging("INFO")

        assert logger is package_logger
        assert logger.name == "src"

    def test_sets_correct_log_level(self, package_logger):
        logger = setup_logging("DEBUG")
        assert logger.level == logging.DEBUG

        logger = setup_logging("WARNING")
        assert logger.level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, package_logger):
        assert setup_logging("LOUD").level == logging.INFO

    def test_console_only_without_log_dir(self, package_logger, monkeypatch):
        monkeypatch.delenv("LOG_DIR", raising=False)

        logger = setup_logging("INFO")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0], logging.FileHandler)

    def test_file_handler_with_log_dir(self, package_logger, tmp_path):
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        assert any(isinstance(h, DailyRotatingFileHandler) for h in logger.handlers)
        assert list(tmp_path.glob("shopify_queue_*.log"))

    def test_log_dir_from_environment(self, package_logger, tmp_path, monkeypatch):
        monkeypatch.setenv("LOG_DIR", str(tmp_path / "env_logs"))

        setup_logging("INFO")

        assert (tmp_path / "env_logs").exists()

    def test_repeated_setup_does_not_duplicate_handlers(self, package_logger, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))
        logger = setup_logging("INFO", log_dir=str(tmp_path))

        assert len(logger.handlers) == 2

    def test_prevents_propagation(self, package_logger):
        """Test that logger propagation is disabled."""
        logger = setup_logging("INFO")
        assert logger.propagate is False

    def test_module_loggers_reach_package_handlers(self, package_logger, tmp_path):
        setup_logging("INFO", log_dir=str(tmp_path))

        logging.getLogger("src.webhooks.ingestion").info("Webhook queued")

        for handler in package_logger.handlers:
            handler.flush()
        (log_file,) = tmp_path.glob("shopify_queue_*.log")
        assert "src.webhooks.ingestion - INFO - Webhook queued" in log_file.read_text()
