"""Async wrapper around the ``gt`` CLI.

The operator shells out to ``gt`` instead of reimplementing its rig,
polecat and convoy operations, so it behaves exactly as a human running
the same commands.  Each call:

- runs with ``GT_TOWN_ROOT`` set and a bounded timeout;
- goes through the optional circuit breaker (fails fast when open);
- records ``gastown_gt_cli_*`` metrics;
- reports tool availability to the health checker.

Timeouts and an open breaker raise transient errors.  A non-zero exit
raises the external-tool error carrying stderr.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Sequence
from typing import Any, TypeVar

from loguru import logger
from pydantic import BaseModel, TypeAdapter, ValidationError

from gastown.operator import errors
from gastown.operator.gt.breaker import CircuitBreaker
from gastown.operator.gt.types import (
    ConvoyStatus,
    PolecatInfo,
    PolecatStatus,
    RigStatus,
)
from gastown.operator.health import HealthChecker
from gastown.operator.metrics import ToolCallTimer
from gastown.operator.settings import GastownSettings

DEFAULT_TIMEOUT = 60.0

M = TypeVar("M", bound=BaseModel)


class GTClient:
    def __init__(
        self,
        *,
        gt_path: str = "gt",
        town_root: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        breaker: CircuitBreaker | None = None,
        health: HealthChecker | None = None,
    ) -> None:
        self.gt_path = gt_path
        self.town_root = os.path.expanduser(town_root) if town_root else ""
        self.timeout = timeout if timeout > 0 else DEFAULT_TIMEOUT
        self.breaker = breaker
        self.health = health

    @classmethod
    def from_settings(cls, settings: GastownSettings, health: HealthChecker | None = None) -> GTClient:
        return cls(
            gt_path=settings.gt_path,
            town_root=settings.town_root,
            timeout=settings.gt_timeout,
            breaker=CircuitBreaker() if settings.gt_circuit_breaker else None,
            health=health,
        )

    # -- Execution -------------------------------------------------------------

    def _report(self, healthy: bool) -> None:
        if self.health is not None:
            self.health.set_tool_healthy(healthy)

    def _failed(self) -> None:
        if self.breaker is not None:
            self.breaker.record_failure()

    async def run(self, *args: str) -> str:
        """Run ``gt *args`` and return stdout."""
        command = " ".join(args)
        if self.breaker is not None and not self.breaker.allow_request():
            raise errors.transient(errors.new("circuit breaker is open"), "gt CLI circuit breaker is open, failing fast")

        timer = ToolCallTimer(_metric_label(args))
        env = {**os.environ, "GT_TOWN_ROOT": self.town_root}
        logger.debug("gt {}", command)

        try:
            proc = await asyncio.create_subprocess_exec(
                self.gt_path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            timer.record_error()
            self._failed()
            self._report(False)
            raise errors.tool_error(exc, command) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError as exc:
            timer.record_error()
            self._failed()
            self._report(False)
            msg = f"gt {command}: command timed out after {self.timeout:g}s"
            raise errors.transient(exc, msg) from exc
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        # The tool answered, even if it refused the command
        self._report(True)
        if proc.returncode != 0:
            timer.record_error()
            self._failed()
            detail = stderr.decode(errors="replace").strip()
            cause = RuntimeError(f"exit status {proc.returncode}: {detail}")
            raise errors.tool_error(cause, command)

        timer.record_success()
        if self.breaker is not None:
            self.breaker.record_success()
        return stdout.decode(errors="replace")

    async def _run_json(self, adapter: TypeAdapter[Any], *args: str) -> Any:
        output = await self.run(*args, "--json")
        try:
            return adapter.validate_json(output)
        except ValidationError as exc:
            msg = f"parse gt output for {' '.join(args)}"
            raise errors.wrap(exc, msg) from exc

    async def _model(self, model: type[M], *args: str) -> M:
        return await self._run_json(TypeAdapter(model), *args)

    async def _models(self, model: type[M], *args: str) -> list[M]:
        result = await self._run_json(TypeAdapter(list[model] | None), *args)  # type: ignore[valid-type]
        return result or []

    # -- Rigs ------------------------------------------------------------------

    async def rig_status(self, name: str) -> RigStatus:
        return await self._model(RigStatus, "rig", "status", name)

    # -- Polecats --------------------------------------------------------------

    async def sling(self, bead_id: str, rig: str) -> None:
        """Dispatch ``bead_id`` to a polecat in ``rig`` (creating one if needed)."""
        await self.run("sling", bead_id, rig)

    async def polecat_list(self, rig: str) -> list[PolecatInfo]:
        return await self._models(PolecatInfo, "polecat", "list", "--rig", rig)

    async def polecat_status(self, rig: str, name: str) -> PolecatStatus:
        return await self._model(PolecatStatus, "polecat", "status", f"{rig}/{name}")

    async def polecat_nuke(self, rig: str, name: str, *, force: bool = False) -> None:
        args = ["polecat", "nuke", f"{rig}/{name}"]
        if force:
            args.append("--force")
        await self.run(*args)

    async def polecat_reset(self, rig: str, name: str) -> None:
        await self.run("polecat", "reset", f"{rig}/{name}")

    async def polecat_exists(self, rig: str, name: str) -> bool:
        return any(p.name == name for p in await self.polecat_list(rig))

    # -- Convoys ---------------------------------------------------------------

    async def convoy_create(self, description: str, bead_ids: Sequence[str]) -> str:
        """Create a convoy and return its id (gt prints it on stdout)."""
        output = await self.run("convoy", "create", description, *bead_ids)
        return output.strip()

    async def convoy_status(self, convoy_id: str) -> ConvoyStatus:
        return await self._model(ConvoyStatus, "convoy", "status", convoy_id)

    # -- Mail ------------------------------------------------------------------

    async def mail_send(self, address: str, subject: str, message: str) -> None:
        await self.run("mail", "send", address, "-s", subject, "-m", message)


_GROUPS = frozenset({"rig", "polecat", "convoy", "mail"})


def _metric_label(args: Sequence[str]) -> str:
    """``polecat status rig/name --json`` -> ``polecat status``; ``sling b r`` -> ``sling``."""
    if not args:
        return "unknown"
    if args[0] in _GROUPS and len(args) > 1 and not args[1].startswith("-"):
        return f"{args[0]} {args[1]}"
    return args[0]
