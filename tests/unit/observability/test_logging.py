"""Session log file: record shape, secret scrubbing, correlation ids and queue draining."""

from __future__ import annotations

import json
import logging
import logging.handlers
import threading
from dataclasses import replace
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
import structlog

from notebook_runtime.observability.logging import (
    LoggingConfig,
    correlation_scope,
    get_correlation_context,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path


@pytest.fixture(autouse=True)
def _stop_session() -> Iterator[None]:
    yield
    shutdown_logging()


def _session(tmp_path: Path, session_id: str, **overrides: object) -> tuple[logging.Logger, Path]:
    name = f"notebook_runtime.tests.{uuid4().hex}"
    config = replace(
        LoggingConfig(session_id=session_id, base_log_dir=tmp_path, logger_name=name),
        log_to_stderr=False,
        **overrides,  # type: ignore[arg-type]
    )
    handle = setup_structured_logging(config)
    return logging.getLogger(name), handle.log_path


def _records(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_record_shape_scrubs_secrets_and_lifts_correlation_ids(tmp_path: Path) -> None:
    logger, log_path = _session(tmp_path, "sess-scrub")

    with correlation_scope(project_id="proj-1", cell_id="cell-9"):
        logger.info(
            "pip install via index token=tok-FAKE with api_key=sk-FAKE123456789012345",
            extra={"index": {"password": "hunter2", "url": "https://pypi.org/simple"}},
        )
    shutdown_logging()

    (record,) = _records(log_path)
    assert record["session_id"] == "sess-scrub"
    assert record["project_id"] == "proj-1"
    assert record["cell_id"] == "cell-9"
    assert record["level"] == "INFO"
    assert str(record["timestamp"]).endswith("Z")
    assert record["fields"] == {
        "index": {"password": "***REDACTED***", "url": "https://pypi.org/simple"}
    }
    raw = log_path.read_text(encoding="utf-8")
    for secret in ("tok-FAKE", "sk-FAKE", "hunter2"):
        assert secret not in raw


def test_exception_text_is_recorded(tmp_path: Path) -> None:
    logger, log_path = _session(tmp_path, "sess-exc")

    try:
        raise RuntimeError("sandbox create failed")
    except RuntimeError:
        logger.exception("ensure_failed")
    shutdown_logging()

    (record,) = _records(log_path)
    assert record["message"] == "ensure_failed"
    assert "RuntimeError: sandbox create failed" in str(record["exception"])


def test_correlation_scopes_nest_and_unwind() -> None:
    with correlation_scope(project_id="outer"):
        with correlation_scope(project_id="inner", execution_id="exec-1"):
            assert get_correlation_context() == {"project_id": "inner", "execution_id": "exec-1"}
        with correlation_scope(project_id=None):
            assert get_correlation_context() == {}
        assert get_correlation_context() == {"project_id": "outer"}
    assert get_correlation_context() == {}


def test_structlog_events_share_the_session_file(tmp_path: Path) -> None:
    setup_logging(
        {"log_level": "INFO", "log_format": "json", "log_dir": str(tmp_path)},
        session_id="sess-structlog",
        log_to_stderr=False,
    )

    log = structlog.get_logger("notebook_runtime.sandbox.test")
    with correlation_scope(project_id="proj-2"):
        log.info("sandbox_created", sandbox_name="nbrt-exec-abcdefgh", cell_id="cell-1")
    log.debug("below_threshold")
    shutdown_logging()

    (record,) = _records(tmp_path / "sess-structlog" / "runtime.jsonl")
    assert record["message"] == "sandbox_created"
    assert record["logger"] == "notebook_runtime.sandbox.test"
    assert record["project_id"] == "proj-2"
    assert record["cell_id"] == "cell-1"
    assert record["fields"] == {"sandbox_name": "nbrt-exec-abcdefgh"}


def test_concurrent_cells_keep_their_own_correlation(tmp_path: Path) -> None:
    logger, log_path = _session(tmp_path, "sess-threads")
    cells, runs = 6, 50

    def run_cell(index: int) -> None:
        with correlation_scope(cell_id=f"cell-{index}"):
            for attempt in range(runs):
                logger.info(
                    f"cell={index} run={attempt} secret=s3cr3t-{index}",
                    extra={"auth_token": f"tok-{index}-{attempt}"},
                )

    workers = [threading.Thread(target=run_cell, args=(i,)) for i in range(cells)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()
    shutdown_logging()

    records = _records(log_path)
    assert len(records) == cells * runs
    for record in records:
        assert str(record["message"]).startswith(f"cell={str(record['cell_id'])[5:]} ")
        assert "s3cr3t" not in json.dumps(record)
        assert record["fields"] == {"auth_token": "***REDACTED***"}


def test_shutdown_drains_queue_and_is_idempotent(tmp_path: Path) -> None:
    logger, log_path = _session(tmp_path, "sess-drain", queue_size=10_000)
    assert any(isinstance(h, logging.handlers.QueueHandler) for h in logger.handlers)

    for index in range(300):
        logger.info("output chunk %s", index)
    handle_logger_handlers = list(logger.handlers)
    shutdown_logging()
    shutdown_logging()

    assert len(_records(log_path)) == 300
    assert not set(handle_logger_handlers) & set(logger.handlers)


@pytest.mark.parametrize(
    "config",
    [
        LoggingConfig(session_id="  "),
        LoggingConfig(session_id="s", queue_size=0),
        LoggingConfig(session_id="s", log_filename="../x.jsonl"),
        LoggingConfig(session_id="s", level="CHATTY"),
    ],
)
def test_bad_session_settings_raise_value_error(config: LoggingConfig, tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        setup_structured_logging(replace(config, base_log_dir=tmp_path, log_to_stderr=False))
