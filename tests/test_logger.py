from __future__ import annotations

import logging

from history.config import settings
from history.services.logger import QUIET_LOGGERS, configure_logging, logger


def test_file_sink_writes_under_log_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "log_dir", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "noisy_log_level", "ERROR")

    configure_logging()
    logger.debug("written to file only")
    logger.remove()

    files = list((tmp_path / "logs").glob("history_*.log"))
    assert len(files) == 1
    assert "written to file only" in files[0].read_text()
    assert logging.getLogger(QUIET_LOGGERS[0]).level == logging.ERROR

    monkeypatch.undo()
    configure_logging()


def test_file_sink_can_be_disabled(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "log_dir", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "log_file_enabled", False)

    configure_logging()

    assert not (tmp_path / "logs").exists()

    monkeypatch.undo()
    configure_logging()
