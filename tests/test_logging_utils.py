import json
import logging
from pathlib import Path

from repo_host.core.config import LogConfig
from repo_host.core.logging_utils import log_event, safe_log, setup_rotating_logger


def test_rotating_loggers_are_isolated(tmp_path: Path):
    log_a = tmp_path / "a.log"
    log_b = tmp_path / "b.log"
    cfg_a = LogConfig(path=log_a, max_bytes=80, backup_count=1)
    cfg_b = LogConfig(path=log_b, max_bytes=40, backup_count=2)

    logger_a = setup_rotating_logger("host:a", cfg_a)
    logger_b = setup_rotating_logger("host:b", cfg_b)

    logger_a.info("first")
    logger_b.info("second")

    assert log_a.exists()
    assert log_b.exists()
    assert logger_a.handlers[0] is not logger_b.handlers[0]

    # Rotation should be contained per logger
    for _ in range(10):
        logger_b.info("x" * 20)
    logger_b.handlers[0].flush()
    assert (tmp_path / "b.log.1").exists()

    # Reusing the same name reuses the same handler
    same_logger = setup_rotating_logger("host:a", cfg_a)
    assert same_logger is logger_a
    assert len(same_logger.handlers) == 1


def test_log_event_writes_one_json_line(tmp_path: Path):
    log_path = tmp_path / "events.log"
    logger = setup_rotating_logger(
        "host:events", LogConfig(path=log_path, max_bytes=100_000, backup_count=1)
    )
    log_event(
        logger,
        logging.WARNING,
        "supervisor.process.failed",
        project="my-app",
        port=3001,
        exc=RuntimeError("boom"),
    )
    logger.handlers[0].flush()
    line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
    payload = json.loads(line.split("] ", 1)[1])
    assert payload == {
        "event": "supervisor.process.failed",
        "project": "my-app",
        "port": 3001,
        "error": "boom",
        "error_type": "RuntimeError",
    }


def test_log_event_skips_disabled_levels(tmp_path: Path):
    log_path = tmp_path / "quiet.log"
    logger = setup_rotating_logger(
        "host:quiet", LogConfig(path=log_path, max_bytes=100_000, backup_count=1)
    )
    log_event(logger, logging.DEBUG, "supervisor.process.output", line="hidden")
    logger.handlers[0].flush()
    assert "hidden" not in log_path.read_text(encoding="utf-8")


def test_safe_log_tolerates_bad_format_args(tmp_path: Path):
    log_path = tmp_path / "safe.log"
    logger = setup_rotating_logger(
        "host:safe", LogConfig(path=log_path, max_bytes=100_000, backup_count=1)
    )
    safe_log(logger, logging.INFO, "value %d", "not-a-number")
    safe_log(logger, logging.INFO, "failed", exc=ValueError("bad"))
    logger.handlers[0].flush()
    text = log_path.read_text(encoding="utf-8")
    assert "value %d not-a-number" in text
    assert "failed: bad" in text


def test_same_name_with_new_path_switches_file(tmp_path: Path):
    first = tmp_path / "first.log"
    second = tmp_path / "nested" / "second.log"
    logger = setup_rotating_logger(
        "host:moved", LogConfig(path=first, max_bytes=100_000, backup_count=1)
    )
    logger.info("before move")
    moved = setup_rotating_logger(
        "host:moved", LogConfig(path=second, max_bytes=100_000, backup_count=1)
    )
    moved.info("after move")
    moved.handlers[0].flush()

    assert moved is logger
    assert len(moved.handlers) == 1
    assert "after move" not in first.read_text(encoding="utf-8")
    assert "after move" in second.read_text(encoding="utf-8")


def test_log_event_without_event_formatter_keeps_event_name(caplog):
    logger = logging.getLogger("host:plain")
    with caplog.at_level(logging.INFO, logger="host:plain"):
        log_event(logger, logging.INFO, "registry.record.saved", project="site")
    record = caplog.records[-1]
    assert record.getMessage() == "registry.record.saved"
    assert record.event_fields == {"event": "registry.record.saved", "project": "site"}
