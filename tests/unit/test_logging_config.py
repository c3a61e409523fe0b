"""Unit tests for configure_logging."""

import logging
import logging.handlers

import pytest

from healthcheck.logging_config import AUDIT_LOGGERS, configure_logging


@pytest.fixture
def restore_logging():
    """Drop handlers installed by configure_logging so later tests log as before."""
    names = ("",) + AUDIT_LOGGERS
    before = {name: (set(logging.getLogger(name).handlers), logging.getLogger(name).level) for name in names}
    yield
    for name, (handlers, level) in before.items():
        target = logging.getLogger(name)
        for handler in list(target.handlers):
            if handler not in handlers:
                target.removeHandler(handler)
                handler.close()
        target.setLevel(level)


@pytest.mark.unit
class TestConfigureLogging:

    def test_rotating_runtime_and_audit_files(self, tmp_path, restore_logging):
        log_dir = tmp_path / "logs"

        configure_logging("debug", log_dir, retention_days=3)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        files = [h for h in root.handlers if isinstance(h, logging.handlers.TimedRotatingFileHandler)]
        assert [h.baseFilename for h in files] == [str(log_dir / "controller-runtime.log")]
        assert files[0].backupCount == 3

        audit = logging.getLogger("healthcheck.session_manager")
        assert [h.baseFilename for h in audit.handlers] == [str(log_dir / "screening-sessions.log")]
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_audit_records_reach_session_file(self, tmp_path, restore_logging):
        configure_logging("INFO", tmp_path)

        logging.getLogger("healthcheck.submission").info("Submission accepted (HTTP 200)")
        for handler in logging.getLogger("healthcheck.submission").handlers:
            handler.flush()

        content = (tmp_path / "screening-sessions.log").read_text(encoding="utf-8")
        assert "healthcheck.submission | Submission accepted (HTTP 200)" in content
