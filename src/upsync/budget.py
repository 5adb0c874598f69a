"""Select, trim and size-check the files sent along with a synthesis request."""

from __future__ import annotations

import fnmatch
import math
import posixpath
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Dict, List, Mapping, Optional, Sequence

from .config import BudgetConfig
from .diff import ChangeOperation
from .errors import ErrorKind, SyncError
from .families import FamilyMember, FileFamily, build_families, classify, representative_order

FILE_TRUNCATION_MARKER = "... [truncated - file too large]"
DIFF_TRUNCATION_MARKER = "... [diff truncated - too large]"


class PriorityTier(IntEnum):
    """Ranking used when the file cap forces a cut; lower sorts first."""

    SOURCE = 1
    OTHER = 2
    FAMILY_SAMPLE = 3


@dataclass(frozen=True, slots=True)
class FileSnapshot:
    """Both sides of one changed file; ``None`` means the file does not exist."""

    path: str
    operation: ChangeOperation
    upstream: Optional[str]
    downstream: Optional[str]
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class RedundantFile:
    """A family member left out in favour of its representative."""

    path: str
    family: str
    variant: str
    representative: str


@dataclass(slots=True)
class BudgetedFileSet:
    """Outcome of :meth:`FileBudgeter.select`."""

    selected: List[str] = field(default_factory=list)
    files: Dict[str, FileSnapshot] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)
    redundant: List[RedundantFile] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    diff_text: str = ""
    diff_truncated: bool = False
    estimated_tokens: int = 0
    warnings: List[str] = field(default_factory=list)
    tiers: Dict[str, PriorityTier] = field(default_factory=dict)

    def selected_files(self) -> List[FileSnapshot]:
        return [self.files[path] for path in self.selected]

    def redundant_by_family(self) -> Dict[str, List[RedundantFile]]:
        grouped: Dict[str, List[RedundantFile]] = {}
        for entry in self.redundant:
            grouped.setdefault(entry.representative, []).append(entry)
        return grouped


def estimate_tokens(text: Optional[str], chars_per_token: float) -> int:
    """Rough token estimate: ``ceil(len(text) / chars_per_token)``."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


def truncate_at_line(text: str, limit: int, marker: str = FILE_TRUNCATION_MARKER) -> tuple[str, bool]:
    """Cut ``text`` at the last newline before ``limit`` and append ``marker``.

    The kept part always ends on a complete line; a text without any newline
    inside the window keeps nothing but the marker.
    """
    if limit <= 0 or len(text) <= limit:
        return text, False
    window = text[:limit]
    cut = window.rfind("\n")
    kept = window[: cut + 1] if cut >= 0 else ""
    return kept + marker, True


def _truncate_side(text: Optional[str], limit: int) -> tuple[Optional[str], bool]:
    if not text:
        return text, False
    return truncate_at_line(text, limit)


class FileBudgeter:
    """Deterministic file selection under a token ceiling."""

    def __init__(self, config: BudgetConfig, families: Sequence[FileFamily] | None = None) -> None:
        self._config = config
        self._families: List[FileFamily] = (
            list(families) if families is not None else build_families(config.families)
        )
        self._source_extensions = {ext.lower() for ext in config.source_extensions}

    @property
    def config(self) -> BudgetConfig:
        return self._config

    def estimate(self, text: Optional[str]) -> int:
        return estimate_tokens(text, self._config.chars_per_token)

    def is_excluded(self, path: str) -> bool:
        """Return ``True`` for vendored, build, VCS or generated paths."""
        parts = path.split("/")
        directories = set(parts[:-1])
        if directories.intersection(self._config.exclude_dirs):
            return True
        basename = parts[-1]
        return any(
            fnmatch.fnmatchcase(basename, pattern) or fnmatch.fnmatchcase(path, pattern)
            for pattern in self._config.exclude_globs
        )

    def tier_for(self, path: str, member: FamilyMember | None) -> PriorityTier:
        if member is not None:
            return PriorityTier.FAMILY_SAMPLE
        extension = posixpath.splitext(path)[1].lower()
        if extension in self._source_extensions:
            return PriorityTier.SOURCE
        return PriorityTier.OTHER

    def _truncate(self, snapshot: FileSnapshot, limit: int) -> FileSnapshot:
        upstream, cut_a = _truncate_side(snapshot.upstream, limit)
        downstream, cut_b = _truncate_side(snapshot.downstream, limit)
        if not (cut_a or cut_b):
            return snapshot
        return replace(snapshot, upstream=upstream, downstream=downstream, truncated=True)

    def file_tokens(self, snapshot: FileSnapshot) -> int:
        return self.estimate(snapshot.upstream) + self.estimate(snapshot.downstream)

    def select(self, files: Mapping[str, FileSnapshot], diff_text: str) -> BudgetedFileSet:
        """Choose which files accompany ``diff_text`` in a synthesis request."""
        config = self._config
        result = BudgetedFileSet()

        # 1. exclusion
        candidates: List[str] = []
        for path in files:
            if self.is_excluded(path):
                result.excluded.append(path)
            else:
                candidates.append(path)

        # 2. redundancy collapse
        members: Dict[str, FamilyMember] = {}
        groups: Dict[str, List[str]] = {}
        for path in candidates:
            member = classify(path, self._families)
            if member is None:
                continue
            members[path] = member
            groups.setdefault(member.key, []).append(path)

        dropped: set[str] = set()
        for key in groups:
            ordered = sorted(groups[key], key=lambda item: representative_order(members[item], item))
            representative = ordered[0]
            for path in ordered[1:]:
                member = members[path]
                result.redundant.append(
                    RedundantFile(
                        path=path,
                        family=member.family,
                        variant=member.variant,
                        representative=representative,
                    )
                )
                dropped.add(path)
        retained = [path for path in candidates if path not in dropped]

        # 3. per-file truncation
        trimmed: Dict[str, FileSnapshot] = {}
        for path in retained:
            limit = config.family_sample_chars if path in members else config.max_file_chars
            trimmed[path] = self._truncate(files[path], limit)

        # 4. file cap by priority tier (sorted() is stable)
        tiers = {path: self.tier_for(path, members.get(path)) for path in retained}
        ranked = sorted(retained, key=lambda item: tiers[item])
        within_cap = ranked[: config.max_files]
        result.skipped.extend(ranked[config.max_files :])

        # 5. token estimation
        diff_for_prompt, result.diff_truncated = truncate_at_line(
            diff_text, config.max_diff_chars, DIFF_TRUNCATION_MARKER
        )
        result.diff_text = diff_for_prompt
        running = self.estimate(diff_for_prompt)

        # 6. ceilings
        if running > config.hard_token_ceiling:
            raise SyncError(
                f"Estimated tokens for the diff alone ({running}) exceed the hard ceiling "
                f"({config.hard_token_ceiling}). Reduce max_diff_chars or split the change.",
                kind=ErrorKind.BUDGET_EXCEEDED,
                details={
                    "estimated_tokens": running,
                    "ceiling": config.hard_token_ceiling,
                    "diff_chars": len(diff_for_prompt),
                },
            )

        for path in within_cap:
            snapshot = trimmed[path]
            cost = self.file_tokens(snapshot)
            if running + cost > config.hard_token_ceiling:
                result.skipped.append(path)
                continue
            running += cost
            result.selected.append(path)
            result.files[path] = snapshot
            result.tiers[path] = tiers[path]

        result.estimated_tokens = running
        if running > config.soft_token_ceiling:
            result.warnings.append(
                f"Estimated tokens ({running}) exceed the soft ceiling ({config.soft_token_ceiling}); "
                "consider lowering max_files or max_file_chars."
            )
        return result


__all__ = [
    "BudgetedFileSet",
    "DIFF_TRUNCATION_MARKER",
    "FILE_TRUNCATION_MARKER",
    "FileBudgeter",
    "FileSnapshot",
    "PriorityTier",
    "RedundantFile",
    "estimate_tokens",
    "truncate_at_line",
]
