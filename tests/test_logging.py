"""Tests for logging setup."""

import logging
from logging.handlers import RotatingFileHandler

from maestro.logging_config import LOGGER_NAME, setup_logging


def test_console_handler_and_level():
    logger = setup_logging("DEBUG")
    assert logger.name == LOGGER_NAME
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)


def test_repeated_setup_adjusts_level_without_duplicates():
    setup_logging("INFO")
    logger = setup_logging("ERROR")
    assert len(logger.handlers) == 1
    assert logger.handlers[0].level == logging.ERROR


def test_file_handler(tmp_path):
    logger = setup_logging("WARNING", str(tmp_path / "logs"))
    file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].level == logging.DEBUG
    assert (tmp_path / "logs").is_dir()


def test_env_level(monkeypatch):
    monkeypatch.setenv("MAESTRO_LOG_LEVEL", "error")
    assert setup_logging().level == logging.ERROR


def test_unknown_level_falls_back_to_info():
    assert setup_logging("LOUD").level == logging.INFO
