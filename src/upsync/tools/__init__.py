"""Git, process, lock and pull request integrations used by a sync pass."""

from .github import GitHubClient, OpenPullRequest, find_conflicting_pull_requests
from .lock import sync_lock
from .patch import ApplyOutcome, ApplyStrategy, PatchApplier, RejectedFragment
from .process import ProcessResult, run_process
from .vcs import CommitInfo, GitCheckpoint, GitRepository

__all__ = [
    "ApplyOutcome",
    "ApplyStrategy",
    "CommitInfo",
    "GitCheckpoint",
    "GitHubClient",
    "GitRepository",
    "OpenPullRequest",
    "PatchApplier",
    "ProcessResult",
    "RejectedFragment",
    "find_conflicting_pull_requests",
    "run_process",
    "sync_lock",
]
