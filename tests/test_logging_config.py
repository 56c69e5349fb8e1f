from __future__ import annotations

import logging
from pathlib import Path

from freebie_agent.logging_config import configure_logging


def test_secrets_are_redacted_in_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "agent.log"
    configure_logging(level="DEBUG", file_path=str(log_file), redact=["hunter2", "SG.key", ""])
    try:
        log = logging.getLogger("freebie_agent.test")
        log.info("typing password %s", "hunter2")
        log.warning("SMTP auth failed with key SG.key for user apikey")
        for handler in logging.getLogger().handlers:
            handler.flush()
    finally:
        configure_logging(level="INFO")

    text = log_file.read_text(encoding="utf-8")
    assert "hunter2" not in text
    assert "SG.key" not in text
    assert "typing password ***" in text
    assert "user apikey" in text


def test_noisy_loggers_are_quieted() -> None:
    configure_logging(level="DEBUG")
    assert logging.getLogger("playwright").level >= logging.WARNING
