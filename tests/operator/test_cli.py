"""Tests for the ``gastown`` command line."""

from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from gastown.cli import main
from tests.factories import make_worker


def _write_worker(tmp_path: Path, **kwargs) -> Path:
    path = tmp_path / "polecat.json"
    path.write_text(json.dumps(make_worker(**kwargs).to_wire()))
    return path


def test_render_pod(tmp_path: Path) -> None:
    path = _write_worker(tmp_path, kubernetes=True)

    result = CliRunner().invoke(main, ["render-pod", str(path)])

    assert result.exit_code == 0, result.output
    pod = json.loads(result.output)
    assert pod["kind"] == "Pod"
    assert pod["metadata"]["name"] == "polecat-toast"


def test_render_pod_requires_kubernetes_spec(tmp_path: Path) -> None:
    path = _write_worker(tmp_path)

    result = CliRunner().invoke(main, ["render-pod", str(path)])

    assert result.exit_code == 1
    assert "kubernetes spec is required" in result.output


def test_render_pod_invalid_manifest(tmp_path: Path) -> None:
    path = tmp_path / "polecat.json"
    path.write_text(json.dumps({"kind": "Polecat", "metadata": {"name": "toast"}, "spec": {}}))

    result = CliRunner().invoke(main, ["render-pod", str(path)])

    assert result.exit_code == 1
    assert "rig" in result.output


def test_check_test_command() -> None:
    result = CliRunner().invoke(main, ["check-test-command", "make test"])

    assert result.exit_code == 0
    assert result.output.strip() == "ok"


def test_check_test_command_rejects_chaining() -> None:
    result = CliRunner().invoke(main, ["check-test-command", "make test; rm -rf /"])

    assert result.exit_code == 1
    assert "dangerous" in result.output
