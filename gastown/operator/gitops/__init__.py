"""Git operations for the merge queue."""

from gastown.operator.gitops.client import GitClient, GitCommandError
from gastown.operator.gitops.merge import (
    MergeOptions,
    MergeOutcome,
    MergeResult,
    merge_branch,
    validate_test_command,
)

__all__ = [
    "GitClient",
    "GitCommandError",
    "MergeOptions",
    "MergeOutcome",
    "MergeResult",
    "merge_branch",
    "validate_test_command",
]
