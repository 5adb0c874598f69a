"""Apply unified diffs through a cascade of increasingly lenient ``git apply`` modes."""

from __future__ import annotations

import os
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from ..errors import ErrorKind, SyncError
from ..telemetry import emit_event
from .vcs import GitRepository

REJECT_SUFFIX = ".rej"
FAILED_PATCH_SUFFIX = ".error.patch"


class ApplyStrategy(str, Enum):
    """Apply modes, tried in declaration order."""

    THREE_WAY = "three-way"
    REJECT_TOLERANT = "reject-tolerant"
    WHITESPACE_FIX = "whitespace-fix"
    PLAIN = "plain"


_STRATEGY_FLAGS: Dict[ApplyStrategy, Tuple[str, ...]] = {
    ApplyStrategy.THREE_WAY: ("--3way", "--ignore-whitespace"),
    ApplyStrategy.REJECT_TOLERANT: ("--reject", "--ignore-whitespace"),
    ApplyStrategy.WHITESPACE_FIX: ("--ignore-whitespace", "--whitespace=fix"),
    ApplyStrategy.PLAIN: (),
}


@dataclass(frozen=True, slots=True)
class RejectedFragment:
    """A hunk group ``git apply --reject`` could not place."""

    path: str
    reject_path: str
    preview: str


@dataclass(frozen=True, slots=True)
class StrategyAttempt:
    strategy: ApplyStrategy
    returncode: int
    stderr: str


@dataclass(slots=True)
class ApplyOutcome:
    """Result of :meth:`PatchApplier.apply`."""

    strategy_used: ApplyStrategy
    partially_applied: bool = False
    rejected_fragments: Tuple[RejectedFragment, ...] = ()
    changed_paths: Tuple[str, ...] = ()
    attempts: Tuple[StrategyAttempt, ...] = field(default_factory=tuple)

    @property
    def is_noop(self) -> bool:
        return not self.changed_paths


class PatchApplier:
    """Apply patch text to a repository working tree.

    Each failed strategy rolls the tree back to a checkpoint taken before the
    first attempt, so later strategies always start from the same state.
    ``--reject`` is judged by whether files changed rather than by its exit
    status, since it exits non-zero whenever any hunk is rejected.
    """

    def __init__(
        self,
        repo: GitRepository,
        failed_patch_dir: Path | str | None = None,
        *,
        preview_chars: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.repo = repo
        self.failed_patch_dir = Path(failed_patch_dir) if failed_patch_dir is not None else None
        self.preview_chars = preview_chars
        self._clock = clock

    # ---------------------------------------------------------------- rejects
    def _reject_files(self) -> List[Path]:
        found: List[Path] = []
        for directory, dirnames, filenames in os.walk(self.repo.root):
            dirnames[:] = [name for name in dirnames if name != ".git"]
            for name in filenames:
                if name.endswith(REJECT_SUFFIX):
                    found.append(Path(directory) / name)
        return sorted(found)

    def _remove_reject_files(self) -> None:
        for reject in self._reject_files():
            reject.unlink(missing_ok=True)

    def _collect_rejects(self) -> List[RejectedFragment]:
        fragments: List[RejectedFragment] = []
        for reject in self._reject_files():
            relative = reject.relative_to(self.repo.root).as_posix()
            try:
                content = reject.read_text(encoding="utf-8", errors="replace")
            except OSError:
                content = ""
            fragments.append(
                RejectedFragment(
                    path=relative[: -len(REJECT_SUFFIX)],
                    reject_path=relative,
                    preview=content[: self.preview_chars],
                )
            )
        return fragments

    def _changed_paths(self, baseline: set[Path]) -> Tuple[str, ...]:
        return tuple(
            path.as_posix()
            for path in self.repo.working_tree_changes()
            if path not in baseline and not path.name.endswith(REJECT_SUFFIX)
        )

    def save_failed_patch(self, patch_text: str) -> Path | None:
        """Keep a copy of a patch that could not be applied, for manual review."""
        if self.failed_patch_dir is None:
            return None
        self.failed_patch_dir.mkdir(parents=True, exist_ok=True)
        target = self.failed_patch_dir / f"patch-{int(self._clock() * 1000)}{FAILED_PATCH_SUFFIX}"
        target.write_text(patch_text, encoding="utf-8")
        return target

    # ------------------------------------------------------------------ apply
    def apply(self, patch_text: str) -> ApplyOutcome:
        """Apply ``patch_text``; raise ``SyncError(kind=PATCH_APPLY)`` when every strategy fails."""
        if not patch_text.strip():
            raise SyncError("Refusing to apply an empty patch.", kind=ErrorKind.PATCH_APPLY)
        text = patch_text if patch_text.endswith("\n") else patch_text + "\n"

        self._remove_reject_files()
        checkpoint = self.repo.create_checkpoint("before-apply")
        baseline = set(self.repo.working_tree_changes())

        with tempfile.NamedTemporaryFile("w", encoding="utf-8", suffix=".patch", delete=False) as handle:
            handle.write(text)
            temp_path = Path(handle.name)

        attempts: List[StrategyAttempt] = []
        last_rejects: List[RejectedFragment] = []
        emit_event("patch_apply_started", repo=self.repo.root, patch_chars=len(text))
        try:
            for strategy in ApplyStrategy:
                result = self.repo.apply(temp_path, *_STRATEGY_FLAGS[strategy])
                attempts.append(StrategyAttempt(strategy, result.returncode, result.stderr.strip()))
                rejects = self._collect_rejects()
                changed = self._changed_paths(baseline)

                succeeded = bool(changed) if strategy is ApplyStrategy.REJECT_TOLERANT else result.ok
                if succeeded:
                    self._remove_reject_files()
                    outcome = ApplyOutcome(
                        strategy_used=strategy,
                        partially_applied=bool(rejects),
                        rejected_fragments=tuple(rejects),
                        changed_paths=changed,
                        attempts=tuple(attempts),
                    )
                    emit_event(
                        "patch_apply_succeeded",
                        strategy=strategy,
                        partially_applied=outcome.partially_applied,
                        rejected=[fragment.path for fragment in outcome.rejected_fragments],
                        changed_paths=changed,
                    )
                    return outcome

                if rejects:
                    last_rejects = rejects
                emit_event(
                    "patch_strategy_failed",
                    strategy=strategy,
                    returncode=result.returncode,
                    stderr=result.stderr.strip()[:2000],
                )
                checkpoint.rollback()
                self._remove_reject_files()
        finally:
            temp_path.unlink(missing_ok=True)

        saved = self.save_failed_patch(text)
        details = {
            "saved_patch": saved,
            "attempts": {attempt.strategy.value: attempt.stderr for attempt in attempts},
            "rejects": [
                {"path": fragment.path, "preview": fragment.preview} for fragment in last_rejects
            ],
        }
        emit_event("patch_apply_failed", **details)
        raise SyncError(
            "Patch could not be applied with any strategy"
            + (f"; saved to {saved}" if saved is not None else ""),
            kind=ErrorKind.PATCH_APPLY,
            details=details,
        )


__all__ = [
    "ApplyOutcome",
    "ApplyStrategy",
    "PatchApplier",
    "RejectedFragment",
    "StrategyAttempt",
]
