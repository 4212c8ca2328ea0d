"""Tests for loguru setup and the reconcile log context."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator

import pytest
from loguru import logger

from gastown.operator.log import OPERATOR_CONTEXT, reconcile_context, setup_logging


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    logger.remove()
    logger.configure(extra={})
    logger.add(sys.stderr)
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def records() -> list[dict]:
    captured: list[dict] = []
    setup_logging("DEBUG")
    logger.add(lambda message: captured.append(message.record), level="DEBUG")
    return captured


def test_stdlib_records_reach_loguru(records: list[dict]) -> None:
    logging.getLogger("gastown.operator.manager").warning("[%s] %s: giving up", "polecat", "Polecat/default/toast")

    record = records[-1]
    assert record["message"] == "[polecat] Polecat/default/toast: giving up"
    assert record["level"].name == "WARNING"
    assert record["extra"]["controller"] == OPERATOR_CONTEXT
    assert record["extra"]["stdlib"] == "gastown.operator.manager"


def test_reconcile_context_tags_records(records: list[dict]) -> None:
    with reconcile_context("polecat", "Polecat/default/toast"):
        logger.info("Reconciling")
        logging.getLogger("gastown.operator.manager").info("from stdlib")

    logger.info("after")

    inside = [r for r in records if r["message"] in ("Reconciling", "from stdlib")]
    assert len(inside) == 2
    assert all(r["extra"]["controller"] == "polecat" for r in inside)
    assert all(r["extra"]["resource"] == "Polecat/default/toast" for r in inside)
    assert records[-1]["extra"] == {"controller": OPERATOR_CONTEXT, "resource": "-"}


def test_noisy_loggers_are_quieted(records: list[dict]) -> None:
    logging.getLogger("uvicorn.access").info("GET /healthz 200")
    logging.getLogger("httpx").info("HTTP Request: GET /metrics")

    assert not any("GET" in r["message"] for r in records)
    assert logging.getLogger("uvicorn.access").level == logging.WARNING


def test_json_output(capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging("INFO", json=True)
    with reconcile_context("refinery", "Refinery/gastown-system/demo-refinery"):
        logger.info("merged {}", "toast")

    lines = [json.loads(line) for line in capsys.readouterr().err.splitlines()]
    record = lines[-1]["record"]
    assert record["message"] == "merged toast"
    assert record["extra"]["controller"] == "refinery"
    assert record["extra"]["resource"] == "Refinery/gastown-system/demo-refinery"
