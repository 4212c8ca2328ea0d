"""Async git client used by the merge queue.

Runs ``git`` in a working directory with an optional SSH identity.  SSH
connections are pinned to pre-verified host keys
(``StrictHostKeyChecking=yes`` against a generated ``known_hosts`` file);
there is no trust-on-first-use path.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
import tempfile
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING

from anyio import to_thread
from loguru import logger

if TYPE_CHECKING:
    from gastown.operator.gitops.merge import MergeOptions, MergeResult

GIT_TIMEOUT = 300.0
TEST_TIMEOUT = 1800.0


class GitCommandError(RuntimeError):
    """A git (or test) command exited non-zero."""

    def __init__(self, args: list[str], returncode: int | None, stderr: str) -> None:
        self.command = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{shlex.join(args)} failed (exit {returncode}): {stderr.strip()}")


class GitClient:
    def __init__(
        self,
        repo_dir: str | Path,
        git_url: str,
        *,
        ssh_key_path: str | None = None,
        known_hosts: list[str] | None = None,
    ) -> None:
        self.repo_dir = Path(repo_dir)
        self.git_url = git_url
        self.ssh_key_path = ssh_key_path
        self.known_hosts = known_hosts or []
        self._known_hosts_path: str | None = None

    # -- SSH -------------------------------------------------------------------

    async def _ssh_command(self) -> str | None:
        """Build ``GIT_SSH_COMMAND``, or None when there is neither a key nor pinned hosts."""
        if not self.ssh_key_path and not self.known_hosts:
            return None
        parts = ["ssh"]
        if self.ssh_key_path:
            parts += ["-i", shlex.quote(self.ssh_key_path)]
        if self._known_hosts_path is None:
            content = "".join(f"{line}\n" for line in self.known_hosts)
            self._known_hosts_path = await to_thread.run_sync(partial(_write_temp, "git-known-hosts-", content, 0o644))
        known_hosts_file = shlex.quote(self._known_hosts_path)
        parts += ["-o", "StrictHostKeyChecking=yes", "-o", f"UserKnownHostsFile={known_hosts_file}"]
        return " ".join(parts)

    async def close(self) -> None:
        """Remove temporary files created by the client."""
        if self._known_hosts_path is not None:
            await to_thread.run_sync(partial(_remove, self._known_hosts_path))
            self._known_hosts_path = None

    async def __aenter__(self) -> GitClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- Execution -------------------------------------------------------------

    async def _exec(self, args: list[str], *, cwd: Path | None, timeout: float) -> str:
        env = dict(os.environ)
        ssh_command = await self._ssh_command()
        if ssh_command:
            env["GIT_SSH_COMMAND"] = ssh_command

        logger.debug("exec: {} (cwd={})", shlex.join(args), cwd)
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as exc:
            raise GitCommandError(args, None, f"timed out after {timeout:g}s") from exc
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            raise GitCommandError(args, proc.returncode, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace").strip()

    async def run_git(self, *args: str) -> str:
        return await self._exec(["git", *args], cwd=self.repo_dir, timeout=GIT_TIMEOUT)

    # -- Operations ------------------------------------------------------------

    async def clone(self) -> None:
        await to_thread.run_sync(partial(self.repo_dir.parent.mkdir, parents=True, exist_ok=True))
        await self._exec(["git", "clone", self.git_url, str(self.repo_dir)], cwd=None, timeout=GIT_TIMEOUT)

    async def fetch(self) -> None:
        await self.run_git("fetch", "--all", "--prune")

    async def checkout(self, ref: str, *, create: bool = False) -> None:
        if create:
            await self.run_git("checkout", "-b", ref)
        else:
            await self.run_git("checkout", ref)

    async def pull(self) -> None:
        await self.run_git("pull", "--ff-only")

    async def rebase(self, onto: str, *, strategy_option: str | None = None) -> None:
        args = ["rebase"]
        if strategy_option:
            args += ["-X", strategy_option]
        await self.run_git(*args, onto)

    async def abort_rebase(self) -> None:
        await self.run_git("rebase", "--abort")

    async def merge_ff_only(self, branch: str) -> None:
        await self.run_git("merge", "--ff-only", branch)

    async def merge_no_ff(self, branch: str, message: str) -> None:
        await self.run_git("merge", "--no-ff", "-m", message, branch)

    async def merge_squash(self, branch: str, message: str) -> None:
        await self.run_git("merge", "--squash", branch)
        await self.run_git("commit", "-m", message)

    async def push(self, branch: str) -> None:
        await self.run_git("push", "origin", branch)

    async def delete_remote_branch(self, branch: str) -> None:
        await self.run_git("push", "origin", "--delete", branch)

    async def delete_local_branch(self, branch: str) -> None:
        await self.run_git("branch", "-D", branch)

    async def commit_sha(self) -> str:
        return await self.run_git("rev-parse", "HEAD")

    async def is_clean(self) -> bool:
        return await self.run_git("status", "--porcelain") == ""

    async def run_tests(self, command: str) -> None:
        """Run a validated test command in the repository, without a shell."""
        await self._exec(shlex.split(command), cwd=self.repo_dir, timeout=TEST_TIMEOUT)

    async def merge_branch(self, opts: MergeOptions) -> MergeResult:
        from gastown.operator.gitops.merge import merge_branch

        return await merge_branch(self, opts)


# -- Sync helpers (run in thread pool) -----------------------------------------


def _write_temp(prefix: str, content: str | bytes, mode: int) -> str:
    fd, path = tempfile.mkstemp(prefix=prefix)
    data = content.encode() if isinstance(content, str) else content
    try:
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), mode)
            f.write(data)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(path)
        raise
    return path


def _remove(path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(path)


async def write_ssh_key(key: bytes) -> str:
    """Write ``key`` to a 0600 temp file and return its path."""
    return await to_thread.run_sync(partial(_write_temp, "git-ssh-key-", key, 0o600))


async def remove_file(path: str) -> None:
    await to_thread.run_sync(partial(_remove, path))
