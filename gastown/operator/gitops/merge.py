"""Merge workflow for one worker branch.

Steps: fetch, update the target, check out the source (falling back to
``origin/<source>``), rebase onto the target, run the validation command,
merge by strategy, push, delete the source branch.

Outcomes are values, not exceptions: a failed rebase is ``CONFLICT``, a
failed validation command is ``TESTS_FAILED``.  Any other git failure is
``FAILED`` and carries the error text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from gastown.operator import errors
from gastown.operator.gitops.client import GitCommandError
from gastown.operator.models.enums import ConflictResolution, MergeStrategy

if TYPE_CHECKING:
    from gastown.operator.gitops.client import GitClient

# -- Test command validation ---------------------------------------------------

ALLOWED_TEST_COMMANDS = tuple(
    re.compile(pattern)
    for pattern in (
        r"^make(\s+[a-zA-Z0-9_-]+)*$",
        r"^go\s+(test|build|vet)(\s|$)",
        r"^npm\s+(test|run\s+test)(\s|$)",
        r"^yarn\s+(test|run\s+test)(\s|$)",
        r"^pytest(\s|$)",
        r"^cargo\s+(test|build)(\s|$)",
        r"^mvn\s+(test|verify)(\s|$)",
        r"^gradle\s+(test|build)(\s|$)",
        r"^\./gradlew\s+(test|build)(\s|$)",
        r"^\./mvnw\s+(test|verify)(\s|$)",
        r"^bazel\s+(test|build)(\s|$)",
    )
)

DANGEROUS_PATTERNS = (";", "&&", "||", "|", "$", "`", ">", "<", "\n", "\r", "'", '"', "\\")


def validate_test_command(command: str | None) -> None:
    """Raise a validation error unless ``command`` is empty or allowlisted."""
    if not command:
        return
    for pattern in DANGEROUS_PATTERNS:
        if pattern in command:
            msg = f"test command contains potentially dangerous character: {pattern!r}"
            raise errors.validation(msg)

    command = command.strip()
    if any(pattern.match(command) for pattern in ALLOWED_TEST_COMMANDS):
        return
    msg = (
        f"test command {command!r} does not match any allowed pattern; allowed: "
        "make, go test, npm test, yarn test, pytest, cargo test, mvn test, gradle test, "
        "./gradlew, ./mvnw, bazel test"
    )
    raise errors.validation(msg)


# -- Workflow ------------------------------------------------------------------


class MergeOutcome(StrEnum):
    MERGED = "Merged"
    CONFLICT = "Conflict"
    TESTS_FAILED = "TestsFailed"
    FAILED = "MergeFailed"


@dataclass(frozen=True)
class MergeOptions:
    source_branch: str
    target_branch: str = "main"
    test_command: str | None = None
    strategy: MergeStrategy = MergeStrategy.REBASE
    conflict_resolution: ConflictResolution = ConflictResolution.MANUAL
    delete_source_branch: bool = True


@dataclass(frozen=True)
class MergeResult:
    outcome: MergeOutcome
    merged_commit: str | None = None
    error: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.outcome == MergeOutcome.MERGED


def _resolution_option(resolution: ConflictResolution) -> str | None:
    if resolution == ConflictResolution.THEIRS:
        return "theirs"
    if resolution == ConflictResolution.OURS:
        return "ours"
    return None


async def _rebase(client: GitClient, opts: MergeOptions) -> str | None:
    """Rebase the checked-out source onto the target.  Returns an error text on conflict."""
    try:
        await client.rebase(opts.target_branch)
    except GitCommandError as exc:
        await _abort_rebase(client)
        option = _resolution_option(opts.conflict_resolution)
        if option is None:
            return f"rebase failed: {exc}"
        logger.info("Rebase of {} conflicted; retrying with -X {}", opts.source_branch, option)
        try:
            await client.rebase(opts.target_branch, strategy_option=option)
        except GitCommandError as retry_exc:
            await _abort_rebase(client)
            return f"rebase with -X {option} failed: {retry_exc}"
    return None


async def _abort_rebase(client: GitClient) -> None:
    try:
        await client.abort_rebase()
    except GitCommandError as exc:
        logger.debug("rebase --abort: {}", exc)


async def _merge_into_target(client: GitClient, opts: MergeOptions) -> None:
    source, target = opts.source_branch, opts.target_branch
    if opts.strategy == MergeStrategy.MERGE:
        await client.merge_no_ff(source, f"Merge branch '{source}' into {target}")
    elif opts.strategy == MergeStrategy.SQUASH:
        await client.merge_squash(source, f"Squash merge branch '{source}' into {target}")
    else:
        await client.merge_ff_only(source)


async def merge_branch(client: GitClient, opts: MergeOptions) -> MergeResult:
    try:
        validate_test_command(opts.test_command)
    except errors.GastownError as exc:
        return MergeResult(MergeOutcome.TESTS_FAILED, error=str(exc))

    try:
        await client.fetch()
        await client.checkout(opts.target_branch)
        await client.pull()

        try:
            await client.checkout(opts.source_branch)
        except GitCommandError:
            await client.checkout(f"origin/{opts.source_branch}")
            await client.checkout(opts.source_branch, create=True)
    except GitCommandError as exc:
        return MergeResult(MergeOutcome.FAILED, error=f"prepare failed: {exc}")

    conflict = await _rebase(client, opts)
    if conflict is not None:
        return MergeResult(MergeOutcome.CONFLICT, error=conflict)

    if opts.test_command:
        try:
            await client.run_tests(opts.test_command)
        except GitCommandError as exc:
            return MergeResult(MergeOutcome.TESTS_FAILED, error=f"tests failed: {exc}")

    try:
        await client.checkout(opts.target_branch)
        await _merge_into_target(client, opts)
        await client.push(opts.target_branch)
        sha = await client.commit_sha()
    except GitCommandError as exc:
        return MergeResult(MergeOutcome.FAILED, error=f"merge failed: {exc}")

    warnings: list[str] = []
    if opts.delete_source_branch:
        # The merge already landed; branch cleanup is best effort
        try:
            await client.delete_remote_branch(opts.source_branch)
        except GitCommandError as exc:
            warnings.append(f"failed to delete remote branch: {exc}")
        try:
            await client.delete_local_branch(opts.source_branch)
        except GitCommandError as exc:
            warnings.append(f"failed to delete local branch: {exc}")

    return MergeResult(MergeOutcome.MERGED, merged_commit=sha, warnings=tuple(warnings))
