"""Tests for logging helpers."""

import logging

import pytest

from cloud_backup.utils.logging import LOGGER_NAME, TaskLogger, TimedOperation, get_logger, setup_logging


class TestLoggingHelpers:
    """Tests for setup_logging, TaskLogger and TimedOperation."""

    def test_setup_logging_writes_file(self, tmp_path):
        log_file = tmp_path / "logs" / "backup_service.log"

        logger = setup_logging(log_file=log_file, log_to_console=False)
        get_logger("tests").info("written to file")
        for handler in logger.handlers:
            handler.flush()

        assert "written to file" in log_file.read_text()
        setup_logging(log_file=None, log_to_console=False)

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging(log_to_console=True)
        logger = setup_logging(log_to_console=True)

        assert len(logger.handlers) == 1
        setup_logging(log_file=None, log_to_console=False)

    def test_task_logger_prefix(self, caplog):
        log = TaskLogger(logging.getLogger(f"{LOGGER_NAME}.tests"), "t-1", provider="s3")

        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            log.info("uploading")

        assert "[task_id=t-1 | provider=s3] uploading" in caplog.text

    def test_timed_operation(self, caplog):
        logger = logging.getLogger(f"{LOGGER_NAME}.tests")

        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with TimedOperation(logger, "upload") as op:
                pass

        assert op.duration is not None
        assert "Starting upload" in caplog.text
        assert "Completed upload" in caplog.text

    def test_timed_operation_failure(self, caplog):
        logger = logging.getLogger(f"{LOGGER_NAME}.tests")

        with caplog.at_level(logging.INFO, logger=LOGGER_NAME):
            with pytest.raises(RuntimeError):
                with TimedOperation(logger, "compression"):
                    raise RuntimeError("disk full")

        assert "Failed compression" in caplog.text
        assert "disk full" in caplog.text
