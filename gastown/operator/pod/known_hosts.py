"""SSH host-key selection for worker git access.

Host keys are resolved in Python so the generated scripts never run
``ssh-keyscan`` (trust-on-first-use).  Sources, in order:

1. the operator-supplied list (``GASTOWN_SSH_KNOWN_HOSTS``, OpenSSH format);
2. the built-in table of published keys for well-known hosts.

A host found in neither source resolves to ``None`` and the caller must
refuse to connect.
"""

from __future__ import annotations

import re

# Published host keys (ed25519 + ecdsa) for the common git hosts.
BUILTIN_KNOWN_HOSTS: dict[str, tuple[str, ...]] = {
    "github.com": (
        "github.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl",
        "github.com ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBEmKSENjQEezOmxkZMy7opKgwFB9nkt5YRrYMjNuG5N87uRgg6CLrbo5wAdT/y6v0mKV0U2w0WZ2YB/++Tpockg=",
    ),
    "gitlab.com": (
        "gitlab.com ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIAfuCHKVTjquxvt6CM6tdG4SLp1Btn/nOeHHE5UOzRdf",
        "gitlab.com ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBFSMqzJeV9rUzU4kWitGjeR4PWSa29SPqJ1fVkhtj3Hw9xjLVXVYrU9QlYWrOLXBpQ6KWjbjTDTdDkoohFzgbEY=",
    ),
    "bitbucket.org": (
        "bitbucket.org ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIIazEu89wgQZ4bqs3d63QSMzYVa0MuJ2e2gKTKqu+UUO",
        "bitbucket.org ecdsa-sha2-nistp256 AAAAE2VjZHNhLXNoYTItbmlzdHAyNTYAAAAIbmlzdHAyNTYAAABBBPIQmuzMBuKdWeF4+a2sjSSpBK0iqitSQ+5BM9KhpexuGt20JpTVM7u5BDZngncgrqDMbWdxMWWOGtZ9UgbqgZE=",
    ),
}

_SCP_URL = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?!//)")
_SSH_URL = re.compile(r"^ssh://(?:[^@/]+@)?(?P<host>\[[^\]]+\]|[^:/]+)(?::(?P<port>\d+))?/")


def is_ssh_url(url: str) -> bool:
    return git_host(url) is not None


def git_host(url: str) -> str | None:
    """Host of an SSH git URL, or ``None`` for non-SSH URLs.

    Handles ``git@host:org/repo.git`` and ``ssh://user@host[:port]/org/repo``.
    A non-default port yields ``[host]:port`` as OpenSSH records it.
    """
    match = _SSH_URL.match(url)
    if match:
        host = match.group("host").strip("[]")
        port = match.group("port")
        return f"[{host}]:{port}" if port and port != "22" else host
    if url.startswith(("http://", "https://", "file://", "/")):
        return None
    match = _SCP_URL.match(url)
    if match:
        return match.group("host")
    return None


def parse_known_hosts(text: str | None) -> dict[str, list[str]]:
    """Index OpenSSH ``known_hosts`` content by host.

    Hashed entries (``|1|...``) cannot be matched by name and are skipped.
    """
    index: dict[str, list[str]] = {}
    if not text:
        return index
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 3 or parts[0].startswith("|"):
            continue
        keytype, key = parts[1], parts[2]
        for host in parts[0].split(","):
            index.setdefault(host, []).append(f"{host} {keytype} {key}")
    return index


def resolve_known_hosts(host: str, operator_known_hosts: str | None = None) -> list[str] | None:
    """Return the ``known_hosts`` lines to trust for ``host``, or ``None`` if unknown."""
    operator = parse_known_hosts(operator_known_hosts)
    if host in operator:
        return operator[host]
    builtin = BUILTIN_KNOWN_HOSTS.get(host)
    if builtin is not None:
        return list(builtin)
    return None
