"""Extract, normalise and structurally validate generated patch text."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .errors import ErrorKind, SyncError

DEFAULT_TITLE = "Merge changes from upstream"
DEFAULT_DESCRIPTION = "Automated merge of upstream changes."
DEFAULT_MIN_PATCH_LINES = 4

_TITLE_RE = re.compile(r"TITLE:\s*(.+?)(?=\n---|\nDESCRIPTION:|\Z)", re.DOTALL)
_DESCRIPTION_RE = re.compile(r"DESCRIPTION:\s*(.+?)(?=\n---\s*\n|\nPATCH:|\Z)", re.DOTALL)
_PATCH_LABEL_RE = re.compile(r"^\s*\**PATCH\**:\s*(.*)$", re.MULTILINE | re.IGNORECASE)
_FENCE_RE = re.compile(r"^```[\w+-]*\s*$")
_FENCED_BLOCK_RE = re.compile(r"^```[\w+-]*\n(.+?)^```", re.DOTALL | re.MULTILINE)
_EMPHASIS_LINE_RE = re.compile(r"^\*\*\*.*\*\*\*$")
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<tail>.*)$"
)


@dataclass(frozen=True, slots=True)
class SynthesizedPatch:
    """Title, description and patch returned by the synthesis service."""

    title: str
    description: str
    patch_text: str
    used_fallback: bool = False
    adjustments: Tuple[str, ...] = ()


@dataclass(slots=True)
class PatchValidation:
    """Outcome of :func:`check_and_normalise`."""

    patch_text: str
    used_fallback: bool = False
    problems: List[str] = field(default_factory=list)
    adjustments: List[str] = field(default_factory=list)


def _strip_fences(text: str) -> str:
    lines = text.strip("\n").splitlines()
    if lines and _FENCE_RE.match(lines[0].lstrip()):
        lines = lines[1:]
    for index, line in enumerate(lines):
        # Diff lines always carry a prefix, so a fence in column zero closes the block.
        if _FENCE_RE.match(line):
            # Anything after the closing fence is commentary.
            lines = lines[:index]
            break
    lines = [line for line in lines if not _EMPHASIS_LINE_RE.match(line)]
    while lines and lines[-1].strip() in {"---", ""}:
        lines.pop()
    return "\n".join(lines)


def _find_diff_start(lines: List[str]) -> Optional[int]:
    for index, line in enumerate(lines):
        if line.startswith("diff --git"):
            return index
        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            return index
    return None


def extract_patch(raw: str) -> str:
    """Locate the patch body inside a free-text response."""
    label = _PATCH_LABEL_RE.search(raw)
    if label is not None:
        candidate = _strip_fences(raw[label.start(1) :])
        if candidate.strip():
            return candidate

    for block in _FENCED_BLOCK_RE.finditer(raw):
        if "diff --git" in block.group(1):
            return _strip_fences(block.group(1))

    lines = raw.splitlines()
    start = _find_diff_start(lines)
    if start is None:
        return ""
    return _strip_fences("\n".join(lines[start:]))


def parse_response(raw: str) -> SynthesizedPatch:
    """Split a ``TITLE:`` / ``DESCRIPTION:`` / ``PATCH:`` response into its parts."""
    title_match = _TITLE_RE.search(raw)
    description_match = _DESCRIPTION_RE.search(raw)
    title = title_match.group(1).strip() if title_match else ""
    description = description_match.group(1).strip() if description_match else ""
    return SynthesizedPatch(
        title=title.splitlines()[0].strip() if title else DEFAULT_TITLE,
        description=description or DEFAULT_DESCRIPTION,
        patch_text=extract_patch(raw),
    )


def trim_dangling_hunks(patch: str) -> str:
    """Drop hunk headers that have no body."""
    lines = patch.splitlines()
    keep = [True] * len(lines)
    for index, line in enumerate(lines):
        if not line.startswith("@@"):
            continue
        follower_index = index + 1
        has_body = False
        while follower_index < len(lines):
            follower = lines[follower_index]
            if follower.startswith("diff --git ") or follower.startswith("@@"):
                break
            if follower.strip():
                has_body = True
                break
            follower_index += 1
        if not has_body:
            keep[index] = False
    return "\n".join(line for flag, line in zip(keep, lines) if flag)


def _format_range(start: str, original_count: Optional[str], actual: int) -> str:
    if original_count is None and actual == 1:
        return start
    return f"{start},{actual}"


def normalise_hunks(patch: str) -> Tuple[str, List[str], List[str]]:
    """Rewrite hunk headers whose line counts disagree with their bodies.

    Returns the patch, the adjustments made, and problems found (malformed
    hunk headers are left untouched and reported).
    """
    lines = patch.splitlines()
    output: List[str] = []
    adjustments: List[str] = []
    problems: List[str] = []
    current_path = "<unknown>"
    index = 0

    while index < len(lines):
        line = lines[index]
        if line.startswith("diff --git "):
            current_path = line.rsplit(" ", 1)[-1]
            output.append(line)
            index += 1
            continue
        if not line.startswith("@@"):
            output.append(line)
            index += 1
            continue

        match = _HUNK_HEADER.match(line)
        if match is None:
            problems.append(f"{current_path}: malformed hunk header: {line}")
            output.append(line)
            index += 1
            continue

        body: List[str] = []
        index += 1
        while index < len(lines):
            candidate = lines[index]
            if candidate.startswith("diff --git ") or candidate.startswith("@@"):
                break
            body.append(candidate)
            index += 1
        while body and not body[-1].strip():
            body.pop()

        removed = added = 0
        for candidate in body:
            if candidate.startswith("\\"):
                continue
            prefix = candidate[:1]
            if prefix == "+":
                added += 1
            elif prefix == "-":
                removed += 1
            else:
                added += 1
                removed += 1

        old_count = match.group("old_count")
        new_count = match.group("new_count")
        expected_removed = int(old_count) if old_count is not None else 1
        expected_added = int(new_count) if new_count is not None else 1
        if removed != expected_removed or added != expected_added:
            adjustments.append(
                f"{current_path}: adjusted hunk counts "
                f"(-{expected_removed}/+{expected_added} -> -{removed}/+{added})"
            )
            line = (
                f"@@ -{_format_range(match.group('old_start'), old_count, removed)} "
                f"+{_format_range(match.group('new_start'), new_count, added)} @@{match.group('tail')}"
            )
        output.append(line)
        output.extend(body)

    return "\n".join(output), adjustments, problems


def check_patch_structure(patch: str, *, min_lines: int = DEFAULT_MIN_PATCH_LINES) -> List[str]:
    """Return the structural problems of ``patch``; empty means usable."""
    lines = patch.splitlines()
    non_blank = [line for line in lines if line.strip()]
    problems: List[str] = []
    if len(non_blank) < min_lines:
        problems.append(f"patch has {len(non_blank)} non-blank line(s); at least {min_lines} required")
    if not any(line.startswith("diff --git ") for line in lines):
        problems.append("missing 'diff --git' header")
    has_old = any(line.startswith("--- ") for line in lines)
    has_new = any(line.startswith("+++ ") for line in lines)
    if not (has_old and has_new):
        problems.append("missing '---'/'+++' file markers")
    has_hunk = any(line.startswith("@@") for line in lines)
    has_content = any(
        line[:1] in {"+", "-", " "} and not line.startswith(("--- ", "+++ "))
        for line in lines
    )
    if not (has_hunk or has_content):
        problems.append("no hunk header or content line")
    return problems


def _finalise(text: str) -> str:
    return text if text.endswith("\n") else text + "\n"


def check_and_normalise(
    patch_text: Optional[str],
    fallback_diff: Optional[str],
    *,
    min_lines: int = DEFAULT_MIN_PATCH_LINES,
) -> PatchValidation:
    """Normalise ``patch_text``; substitute ``fallback_diff`` when it is unusable."""
    problems: List[str] = []
    adjustments: List[str] = []
    candidate = (patch_text or "").replace("\r\n", "\n")

    if candidate.strip():
        candidate = _strip_fences(candidate)
        candidate = trim_dangling_hunks(candidate)
        candidate, adjustments, hunk_problems = normalise_hunks(candidate)
        problems.extend(hunk_problems)
        problems.extend(check_patch_structure(candidate, min_lines=min_lines))
    else:
        problems.append("patch is empty")

    if not problems:
        return PatchValidation(patch_text=_finalise(candidate), adjustments=adjustments)

    fallback = (fallback_diff or "").replace("\r\n", "\n")
    if fallback.strip() and any(line.startswith("diff --git ") for line in fallback.splitlines()):
        return PatchValidation(
            patch_text=_finalise(fallback),
            used_fallback=True,
            problems=problems,
        )

    raise SyncError(
        "Generated patch is not a usable unified diff and no fallback diff is available.",
        kind=ErrorKind.NO_USABLE_PATCH,
        details={"problems": problems, "patch_chars": len(candidate)},
    )


def validate_patch(
    patch_text: Optional[str],
    fallback_diff: Optional[str],
    *,
    min_lines: int = DEFAULT_MIN_PATCH_LINES,
) -> str:
    """Return a patch that is safe to hand to the applier."""
    return check_and_normalise(patch_text, fallback_diff, min_lines=min_lines).patch_text


__all__ = [
    "DEFAULT_DESCRIPTION",
    "DEFAULT_MIN_PATCH_LINES",
    "DEFAULT_TITLE",
    "PatchValidation",
    "SynthesizedPatch",
    "check_and_normalise",
    "check_patch_structure",
    "extract_patch",
    "normalise_hunks",
    "parse_response",
    "trim_dangling_hunks",
    "validate_patch",
]
