"""Minimal git helpers.

Enough of ``git`` to read upstream history and to prepare branches
downstream. Checkpoints let a failed patch attempt be undone.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

from ..errors import ErrorKind, SyncError
from .process import ProcessResult, run_process

_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"


@dataclass(frozen=True, slots=True)
class CommitInfo:
    """One upstream commit."""

    sha: str
    author: str
    date: str
    message: str

    @property
    def short_sha(self) -> str:
        return self.sha[:7]

    @property
    def subject(self) -> str:
        return self.message.strip().splitlines()[0] if self.message.strip() else ""


@dataclass(slots=True)
class GitCheckpoint:
    """Working tree state to return to after a failed attempt.

    Rolling back resets tracked files to ``head`` and deletes untracked
    files that were not present when the checkpoint was taken.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    baseline_untracked: tuple[str, ...]
    created_at: float

    def rollback(self) -> None:
        self.repo.restore_checkpoint(self)


class GitRepository:
    """A working tree driven through the ``git`` executable."""

    def __init__(self, root: Path | str, *, timeout: float | None = None) -> None:
        self.root = Path(root).resolve()
        self.timeout = timeout
        if not (self.root / ".git").exists():
            raise SyncError(
                f"Not a git repository: {self.root}",
                kind=ErrorKind.GIT,
                details={"path": self.root},
            )

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True, errors: str = "replace") -> ProcessResult:
        result = run_process(["git", *args], cwd=self.root, timeout=self.timeout, errors=errors)
        if check and not result.ok:
            raise SyncError(
                f"git {' '.join(args)} failed: {result.message}",
                kind=ErrorKind.GIT,
                details={
                    "args": list(args),
                    "returncode": result.returncode,
                    "stderr": result.stderr.strip(),
                },
            )
        return result

    def git(self, *args: str, check: bool = True) -> ProcessResult:
        """Run ``git *args`` in the repository root."""

        return self._run_git(list(args), check=check)

    # ---------------------------------------------------------------- history
    def current_branch(self) -> str | None:
        """Name of the checked-out branch; ``None`` on a detached ``HEAD``."""

        result = self._run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def current_head(self) -> str | None:
        return self.rev_parse("HEAD")

    def rev_parse(self, ref: str) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def fetch(self, remote: str = "origin", branch: str | None = None) -> None:
        args = ["fetch", remote]
        if branch:
            args.append(branch)
        self._run_git(args)

    def log_range(self, since: str | None, until: str) -> List[CommitInfo]:
        """Commits in ``since..until``, oldest first.

        Without ``since`` only the commit ``until`` points at is returned.
        """

        fmt = _FIELD_SEP.join(["%H", "%an", "%aI", "%B"]) + _RECORD_SEP
        args = ["log", f"--format={fmt}"]
        if since:
            args.extend(["--reverse", f"{since}..{until}"])
        else:
            args.extend(["-1", until])
        result = self._run_git(args)
        commits: List[CommitInfo] = []
        for record in result.stdout.split(_RECORD_SEP):
            record = record.strip("\n")
            if not record:
                continue
            sha, author, date, message = (record.split(_FIELD_SEP, 3) + ["", "", ""])[:4]
            commits.append(CommitInfo(sha=sha.strip(), author=author, date=date, message=message.strip()))
        return commits

    def diff_refs(self, base: str, head: str, *paths: str) -> str:
        """Unified diff between two refs, optionally limited to ``paths``."""

        args = ["diff", "--no-color", "--no-ext-diff", base, head]
        if paths:
            args.extend(["--", *paths])
        return self._run_git(args).stdout

    def commit_diff(self, sha: str) -> str:
        """Unified diff introduced by ``sha`` (root commits included)."""

        return self._run_git(["show", "--format=", "--no-color", "--no-ext-diff", sha]).stdout

    def show(self, ref: str, path: str, *, errors: str = "replace") -> str | None:
        """Content of ``path`` at ``ref``; ``None`` when it does not exist there.

        ``errors="surrogateescape"`` keeps non UTF-8 bytes so the text can be
        written back unchanged.
        """

        result = self._run_git(["show", f"{ref}:{path}"], check=False, errors=errors)
        if not result.ok:
            return None
        return result.stdout

    # -------------------------------------------------------------- branches
    def checkout(self, branch: str) -> None:
        self._run_git(["checkout", branch])

    def create_branch(self, name: str, start: str | None = None) -> None:
        """Create ``name`` (from ``start`` when given) and switch to it."""

        args = ["checkout", "-b", name]
        if start:
            args.append(start)
        self._run_git(args)

    def delete_branch(self, name: str, *, force: bool = True) -> None:
        self._run_git(["branch", "-D" if force else "-d", name])

    def fast_forward(self, branch: str, target: str) -> None:
        """Move ``branch`` forward to ``target``; refuses non fast-forward updates."""

        previous = self.current_branch()
        if previous != branch:
            self.checkout(branch)
        try:
            self._run_git(["merge", "--ff-only", target])
        finally:
            if previous and previous != branch:
                self.checkout(previous)

    # ----------------------------------------------------------------- commit
    def add_all(self) -> None:
        self._run_git(["add", "--all"])

    def commit(self, message: str) -> str | None:
        """Stage everything and commit it.

        Returns the new commit SHA, or ``None`` when nothing was staged.
        """

        self.add_all()
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.ok:
            return None
        self._run_git(["commit", "-m", message])
        return self.current_head()

    def push(self, remote: str, branch: str, *, set_upstream: bool = False) -> None:
        args = ["push", "-u", remote, branch] if set_upstream else ["push", remote, branch]
        self._run_git(args)

    def apply(self, patch_path: Path | str, *flags: str) -> ProcessResult:
        """Run ``git apply`` with ``flags``; the caller inspects the result."""

        return self._run_git(["apply", *flags, str(patch_path)], check=False)

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, Path]]:
        """``(status, path)`` pairs from porcelain status; untracked files are listed one by one."""

        result = self._run_git(["status", "--porcelain", "-z", "--untracked-files=all"])
        entries: List[tuple[str, Path]] = []
        tokens = iter(result.stdout.split("\0"))
        for token in tokens:
            if not token:
                continue
            status = token[:2]
            entries.append((status.strip() or status, Path(token[3:])))
            if status[0] in {"R", "C"}:
                # rename and copy entries carry their source as the next token
                next(tokens, None)
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Sorted paths that differ from ``HEAD``."""

        changed = {
            path
            for status, path in self.status_entries()
            if include_untracked or status != "??"
        }
        return sorted(changed, key=Path.as_posix)

    def untracked_files(self) -> List[Path]:
        return [path for status, path in self.status_entries() if status == "??"]

    def is_clean(self) -> bool:
        return not self.working_tree_changes()

    def ensure_clean(self) -> None:
        changes = self.working_tree_changes()
        if changes:
            raise SyncError(
                "Working tree has pending changes.",
                kind=ErrorKind.GIT,
                details={"paths": changes[:20], "root": self.root},
            )

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Remember ``HEAD`` and the untracked files present right now."""

        head = self.current_head()
        untracked = sorted(path.as_posix() for path in self.untracked_files())
        return GitCheckpoint(
            repo=self,
            label=label or head or "working-tree",
            head=head,
            baseline_untracked=tuple(untracked),
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Return the working tree and index to ``checkpoint``."""

        if checkpoint.repo is not self:
            raise SyncError("Checkpoint belongs to a different repository.", kind=ErrorKind.GIT)

        source = ["--source", checkpoint.head] if checkpoint.head else []
        self._run_git(["restore", "--staged", "--worktree", *source, "--", "."])

        keep = set(checkpoint.baseline_untracked)
        for path in self.untracked_files():
            if path.as_posix() not in keep:
                (self.root / path).unlink(missing_ok=True)


__all__ = ["CommitInfo", "GitCheckpoint", "GitRepository"]
