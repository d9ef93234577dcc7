"""Tests for logging setup."""
import logging

from loguru import logger

from src.utils.logging import setup_logging


class TestSetupLogging:

    def test_creates_log_file_and_routes_stdlib(self, tmp_path):
        try:
            setup_logging("DEBUG", log_dir=str(tmp_path))
            logging.getLogger("telegram.ext").info("stdlib record")
            logger.complete()

            log_file = tmp_path / "alerts.log"
            assert log_file.exists()
            assert "stdlib record" in log_file.read_text(encoding="utf-8")
        finally:
            logger.remove()

    def test_httpx_capped_at_warning(self, tmp_path):
        try:
            setup_logging("DEBUG", log_dir=str(tmp_path))
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            logger.remove()
