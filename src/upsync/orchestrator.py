"""Commit-by-commit synchronization from the upstream repository into pull requests downstream."""

from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

from .budget import FileBudgeter, FileSnapshot
from .config import SyncConfig
from .conflicts import ConflictResolver, DirectSync, DirectSyncResult
from .diff import ChangeOperation, FileChange, destination_paths, parse_diff
from .errors import ErrorKind, SyncError
from .models.anthropic import AnthropicClient
from .synthesis import PatchSynthesizer
from .telemetry import emit_event
from .tools.github import GitHubClient, find_conflicting_pull_requests
from .tools.lock import sync_lock
from .tools.patch import ApplyOutcome, PatchApplier
from .tools.vcs import CommitInfo, GitRepository

LOGGER = logging.getLogger(__name__)

_SCP_URL_RE = re.compile(r"^git@(?P<host>[^:]+):(?P<path>.+)$")


class CommitStatus(str, Enum):
    OPENED = "opened"
    PUSHED = "pushed"
    EMPTY = "empty"
    NOOP = "noop"
    DRY_RUN = "dry-run"
    FAILED = "failed"


@dataclass(slots=True)
class CommitResult:
    """What happened to one upstream commit."""

    commit: CommitInfo
    status: CommitStatus
    branch: Optional[str] = None
    title: Optional[str] = None
    pr_url: Optional[str] = None
    files: List[str] = field(default_factory=list)
    outcome: Optional[ApplyOutcome] = None
    direct_results: List[DirectSyncResult] = field(default_factory=list)
    used_fallback: bool = False
    error: Optional[SyncError] = None


@dataclass(slots=True)
class SyncRunResult:
    """Summary of one pass; earlier successes are kept when a later commit fails."""

    commits: List[CommitResult] = field(default_factory=list)
    halted: bool = False
    halt_reason: Optional[str] = None
    conflicting_pull_requests: Dict[int, List[str]] = field(default_factory=dict)
    last_processed: Optional[str] = None

    @property
    def processed(self) -> List[CommitResult]:
        return [result for result in self.commits if result.status != CommitStatus.FAILED]

    @property
    def failed(self) -> Optional[CommitResult]:
        for result in self.commits:
            if result.status == CommitStatus.FAILED:
                return result
        return None


def web_url(repo_url: str) -> str:
    """Normalise a clone URL to its browsable https form."""
    url = repo_url.strip()
    match = _SCP_URL_RE.match(url)
    if match:
        url = f"https://{match.group('host')}/{match.group('path')}"
    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url


def commit_url(repo_url: str, sha: str) -> str:
    """Link to ``sha`` on GitHub, GitLab or Bitbucket; empty when ``repo_url`` is unset."""
    if not repo_url:
        return ""
    base = web_url(repo_url)
    if "gitlab" in base:
        return f"{base}/-/commit/{sha}"
    if "bitbucket" in base:
        return f"{base}/commits/{sha}"
    return f"{base}/commit/{sha}"


def read_snapshots(
    changes: Mapping[str, FileChange],
    upstream: GitRepository,
    ref: str,
    downstream_root: Path,
) -> Dict[str, FileSnapshot]:
    """Both sides of every text file in ``changes``; binary files are left out."""
    snapshots: Dict[str, FileSnapshot] = {}
    for path, change in changes.items():
        if change.binary:
            continue
        upstream_content = None if change.operation is ChangeOperation.DELETED else upstream.show(ref, path)
        local = downstream_root / path
        if not local.is_file() and change.operation is ChangeOperation.RENAMED:
            local = downstream_root / change.source_path
        downstream_content = local.read_text(encoding="utf-8", errors="replace") if local.is_file() else None
        snapshots[path] = FileSnapshot(
            path=path,
            operation=change.operation,
            upstream=upstream_content,
            downstream=downstream_content,
        )
    return snapshots


def build_description(
    description: str,
    commit: CommitInfo,
    *,
    upstream_url: str = "",
    outcome: Optional[ApplyOutcome] = None,
    used_fallback: bool = False,
) -> str:
    """Pull request body: generated description plus commit link and apply details."""
    link = commit_url(upstream_url, commit.sha)
    reference = f"[`{commit.short_sha}`]({link})" if link else f"`{commit.short_sha}`"
    lines = [description.strip(), "", "---", "", "### Upstream commit", f"- {reference} {commit.subject}"]
    if used_fallback:
        lines.extend(["", "_The generated patch was unusable; the upstream diff was applied as-is._"])
    if outcome is not None:
        lines.extend(["", f"Applied with strategy `{outcome.strategy_used.value}`."])
        if outcome.partially_applied:
            lines.extend(["", "### Rejected fragments", "These hunks could not be applied:"])
            for fragment in outcome.rejected_fragments:
                lines.extend(["", f"**{fragment.path}**", "```diff", fragment.preview.rstrip(), "```"])
    return "\n".join(lines).strip() + "\n"


class UpstreamSync:
    """Drive one synchronization pass.

    Commits are processed oldest first. The first failure halts the pass;
    commits before it keep their branches and pull requests.
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        repo_a: GitRepository,
        repo_b: GitRepository,
        budgeter: Optional[FileBudgeter] = None,
        synthesizer: Optional[PatchSynthesizer] = None,
        github: Optional[GitHubClient] = None,
        resolver: Optional[ConflictResolver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.repo_a = repo_a
        self.repo_b = repo_b
        self.budgeter = budgeter or FileBudgeter(config.budget)
        self.synthesizer = synthesizer
        self.github = github
        self.resolver = resolver or ConflictResolver(clock)
        self.applier = PatchApplier(
            repo_b,
            config.paths.failed_patches,
            preview_chars=config.sync.reject_preview_chars,
            clock=clock,
        )
        self._clock = clock

    @classmethod
    def from_config(cls, config: SyncConfig, *, env: Mapping[str, str] | None = None) -> "UpstreamSync":
        """Wire real collaborators from ``config`` and credentials in ``env``."""
        environment = os.environ if env is None else env
        repo_a = GitRepository(config.repo_a.path)
        repo_b = GitRepository(config.repo_b.path)
        budgeter = FileBudgeter(config.budget)

        synthesizer = None
        if config.synthesis.enabled:
            client = AnthropicClient(
                api_key=environment.get(config.synthesis.api_key_env),
                base_url=config.synthesis.base_url,
                model=config.synthesis.model,
                max_tokens=config.synthesis.max_tokens,
                timeout=config.synthesis.timeout,
                max_retries=config.synthesis.max_retries,
                retry_base_delay=config.synthesis.retry_base_delay,
            )
            synthesizer = PatchSynthesizer(
                client,
                budgeter,
                min_patch_lines=config.sync.min_patch_lines,
                deadline=config.synthesis.deadline,
            )

        github = None
        token = environment.get(config.github.token_env)
        if config.github.owner and config.github.repo and (token or not config.sync.dry_run):
            github = GitHubClient(
                owner=config.github.owner,
                repo=config.github.repo,
                token=token,
                api_url=config.github.api_url,
            )

        return cls(
            config,
            repo_a=repo_a,
            repo_b=repo_b,
            budgeter=budgeter,
            synthesizer=synthesizer,
            github=github,
        )

    # --------------------------------------------------------------------- run
    def run(self, *, since: str | None = None, use_ai: bool | None = None) -> SyncRunResult:
        """Process every upstream commit not yet seen, under the single-flight lock."""
        with sync_lock(self.config.paths.lock_file):
            return self._run(since=since, use_ai=self.config.synthesis.enabled if use_ai is None else use_ai)

    def pending_range(self, since: str | None = None) -> tuple[str, str]:
        """Refs bounding the upstream commits not yet synchronized."""
        upstream = self.config.repo_a
        return since or upstream.branch, f"{upstream.remote}/{upstream.branch}"

    def pending_commits(self, since: str | None = None) -> List[CommitInfo]:
        upstream = self.config.repo_a
        self.repo_a.fetch(upstream.remote, upstream.branch)
        return self.repo_a.log_range(*self.pending_range(since))

    def _require_synthesizer(self) -> PatchSynthesizer:
        if self.synthesizer is None:
            raise SyncError(
                "Patch synthesis requested but no completion client is configured.",
                kind=ErrorKind.CONFIG,
            )
        return self.synthesizer

    def _run(self, *, since: str | None, use_ai: bool) -> SyncRunResult:
        if use_ai:
            self._require_synthesizer()

        result = SyncRunResult()
        commits = self.pending_commits(since)
        if not commits:
            LOGGER.info("No new upstream commits")
            return result
        LOGGER.info("Found %d upstream commit(s) to process", len(commits))

        if self.config.sync.check_open_pull_requests and self.github is not None:
            conflicts = self._open_pull_request_conflicts(self.github, *self.pending_range(since))
            if conflicts:
                numbers = ", ".join(f"#{number}" for number in sorted(conflicts))
                result.halted = True
                result.halt_reason = f"Open pull requests touch the same files: {numbers}"
                result.conflicting_pull_requests = conflicts
                LOGGER.warning(result.halt_reason)
                emit_event("sync_halted", reason="open_pull_requests", conflicts=conflicts)
                return result

        for commit in commits:
            emit_event("sync_commit_started", sha=commit.sha, subject=commit.subject)
            try:
                commit_result = self.process_commit(commit, use_ai=use_ai)
            except SyncError as error:
                LOGGER.error("Commit %s failed: %s", commit.short_sha, error)
                emit_event("sync_commit_failed", sha=commit.sha, error=error.to_dict())
                result.commits.append(CommitResult(commit=commit, status=CommitStatus.FAILED, error=error))
                result.halted = True
                result.halt_reason = f"{commit.short_sha}: {error}"
                break
            result.commits.append(commit_result)
            result.last_processed = commit.sha
            emit_event(
                "sync_commit_finished",
                sha=commit.sha,
                status=commit_result.status,
                pr_url=commit_result.pr_url,
            )

        if result.last_processed and not self.config.sync.dry_run:
            self.repo_a.fast_forward(self.config.repo_a.branch, result.last_processed)
            LOGGER.info("Advanced %s to %s", self.config.repo_a.branch, result.last_processed[:7])
        return result

    def _open_pull_request_conflicts(self, github: GitHubClient, base: str, head: str) -> Dict[int, List[str]]:
        paths = destination_paths(self.repo_a.diff_refs(base, head))
        return find_conflicting_pull_requests(paths, github.list_open_pull_requests())

    # ------------------------------------------------------------------ commit
    def branch_name(self, commit: CommitInfo) -> str:
        return f"{self.config.sync.branch_prefix}-{commit.short_sha}-{int(self._clock() * 1000)}"

    def process_commit(self, commit: CommitInfo, *, use_ai: bool) -> CommitResult:
        diff_text = self.repo_a.commit_diff(commit.sha)
        changes = parse_diff(diff_text)
        if not changes:
            LOGGER.info("Commit %s has no file changes; skipping", commit.short_sha)
            return CommitResult(commit=commit, status=CommitStatus.EMPTY)

        base = self.config.repo_b.branch
        self.repo_b.ensure_clean()
        self.repo_b.checkout(base)
        if use_ai:
            return self._synthesized(self._require_synthesizer(), commit, changes, diff_text, base)
        return self._direct(commit, changes, base)

    def _synthesized(
        self,
        synthesizer: PatchSynthesizer,
        commit: CommitInfo,
        changes: Mapping[str, FileChange],
        diff_text: str,
        base: str,
    ) -> CommitResult:
        snapshots = read_snapshots(changes, self.repo_a, commit.sha, self.repo_b.root)
        budgeted = self.budgeter.select(snapshots, diff_text)
        patch = synthesizer.synthesize(
            budgeted,
            fallback_diff=diff_text,
            upstream_url=self.config.repo_a.url,
            downstream_url=self.config.repo_b.url,
            commit_messages=[commit.message],
        )
        if self.config.sync.dry_run:
            LOGGER.info("Dry run: would apply %d-char patch titled %r", len(patch.patch_text), patch.title)
            return CommitResult(
                commit=commit,
                status=CommitStatus.DRY_RUN,
                title=patch.title,
                files=list(budgeted.selected),
                used_fallback=patch.used_fallback,
            )

        branch = self.branch_name(commit)
        self.repo_b.create_branch(branch)
        try:
            outcome = self.applier.apply(patch.patch_text)
        except SyncError:
            self._abandon(branch, base)
            raise
        if outcome.is_noop:
            LOGGER.info("Patch for %s changed nothing; dropping %s", commit.short_sha, branch)
            self._abandon(branch, base)
            return CommitResult(commit=commit, status=CommitStatus.NOOP, title=patch.title, outcome=outcome)

        body = build_description(
            patch.description,
            commit,
            upstream_url=self.config.repo_a.url,
            outcome=outcome,
            used_fallback=patch.used_fallback,
        )
        return self._publish(
            commit,
            branch,
            base,
            title=patch.title,
            message=f"AI Merge: {patch.title}",
            body=body,
            files=list(outcome.changed_paths),
            outcome=outcome,
            used_fallback=patch.used_fallback,
        )

    def _direct(self, commit: CommitInfo, changes: Mapping[str, FileChange], base: str) -> CommitResult:
        options = self.config.sync
        selected = [change for path, change in changes.items() if options.should_process(path)]
        if not selected:
            LOGGER.info("Commit %s: every file filtered out", commit.short_sha)
            return CommitResult(commit=commit, status=CommitStatus.NOOP)

        writer = DirectSync(
            self.repo_b.root,
            self.resolver,
            options.conflict_strategy,
            dry_run=options.dry_run,
        )
        branch = None
        checkpoint = None
        if not options.dry_run:
            branch = self.branch_name(commit)
            self.repo_b.create_branch(branch)
            checkpoint = self.repo_b.create_checkpoint(f"direct-{commit.short_sha}")

        results: List[DirectSyncResult] = []
        try:
            for change in selected:
                if change.binary:
                    LOGGER.warning("Skipping binary file %s", change.path)
                    continue
                incoming = None
                if change.operation is not ChangeOperation.DELETED:
                    incoming = self.repo_a.show(commit.sha, change.path, errors="surrogateescape")
                results.append(writer.apply_change(change, incoming))
        except SyncError:
            if checkpoint is not None and branch is not None:
                checkpoint.rollback()
                self._abandon(branch, base)
            raise

        if branch is None:
            return CommitResult(commit=commit, status=CommitStatus.DRY_RUN, direct_results=results)
        if self.repo_b.is_clean():
            self._abandon(branch, base)
            return CommitResult(commit=commit, status=CommitStatus.NOOP, direct_results=results)

        link = commit_url(self.config.repo_a.url, commit.sha)
        reference = f"`{commit.short_sha}` ({link})" if link else f"`{commit.short_sha}`"
        body_lines = [f"Direct sync of upstream commit {reference}."]
        body_lines.extend(f"- `{item.path}`: {item.action}" for item in results)
        return self._publish(
            commit,
            branch,
            base,
            title=commit.subject or f"Sync {commit.short_sha}",
            message=commit.message or f"Sync {commit.short_sha}",
            body="\n".join(body_lines) + "\n",
            files=[item.path for item in results],
            direct_results=results,
        )

    def _publish(
        self,
        commit: CommitInfo,
        branch: str,
        base: str,
        *,
        title: str,
        message: str,
        body: str,
        files: List[str],
        outcome: Optional[ApplyOutcome] = None,
        direct_results: Optional[List[DirectSyncResult]] = None,
        used_fallback: bool = False,
    ) -> CommitResult:
        try:
            sha = self.repo_b.commit(message)
            if sha is None:
                self._abandon(branch, base)
                return CommitResult(commit=commit, status=CommitStatus.NOOP, title=title, outcome=outcome)
            remote = self.config.repo_b.remote
            self.repo_b.push(remote, branch, set_upstream=True)
            pr_url = None
            if self.github is not None:
                pr_url = self.github.create_pull_request(title=title, body=body, head=branch, base=base)
                LOGGER.info("Opened %s for %s", pr_url, commit.short_sha)
        finally:
            if self.repo_b.current_branch() == branch:
                self.repo_b.checkout(base)

        return CommitResult(
            commit=commit,
            status=CommitStatus.OPENED if pr_url else CommitStatus.PUSHED,
            branch=branch,
            title=title,
            pr_url=pr_url,
            files=files,
            outcome=outcome,
            direct_results=list(direct_results or []),
            used_fallback=used_fallback,
        )

    def _abandon(self, branch: str, base: str) -> None:
        self.repo_b.checkout(base)
        self.repo_b.delete_branch(branch)


__all__ = [
    "CommitResult",
    "CommitStatus",
    "SyncRunResult",
    "UpstreamSync",
    "build_description",
    "commit_url",
    "read_snapshots",
    "web_url",
]
