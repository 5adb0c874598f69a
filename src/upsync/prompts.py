"""Prompt templates used to request a downstream patch."""

from __future__ import annotations

from typing import Mapping, Sequence

from .budget import BudgetedFileSet, FileBudgeter, FileSnapshot
from .diff import ChangeOperation
from .errors import ErrorKind, SyncError

PATCH_FORMAT_INSTRUCTION = """\
CRITICAL PATCH FORMAT REQUIREMENTS:
The patch MUST be a valid unified diff that can be applied with 'git apply'.

1. MODIFIED files:
   diff --git a/path/to/file b/path/to/file
   --- a/path/to/file
   +++ b/path/to/file
   @@ -<old_start>,<old_lines> +<new_start>,<new_lines> @@

2. NEW files:
   diff --git a/path/to/newfile b/path/to/newfile
   new file mode 100644
   --- /dev/null
   +++ b/path/to/newfile
   @@ -0,0 +1,<lines> @@

3. DELETED files:
   diff --git a/path/to/file b/path/to/file
   deleted file mode 100644
   --- a/path/to/file
   +++ /dev/null
   @@ -1,<lines> +0,0 @@

4. Every line inside a hunk MUST start with '+', '-' or ' ' (context).
   Include at least 3 lines of context around each change."""

RESPONSE_FORMAT_INSTRUCTION = """\
Return your response in the following EXACT format:
---
TITLE: [Your PR title here]
---
DESCRIPTION: [Your PR description here, markdown allowed]
---
PATCH:
[Complete unified diff applicable with 'git apply']
---"""

_MISSING = "(file does not exist)"


def render_file_section(snapshot: FileSnapshot) -> str:
    """Render both sides of one file for the prompt."""
    header = f"FILE: {snapshot.path}\nOPERATION: {snapshot.operation.value}\n-------------"
    if snapshot.truncated:
        header += "\n(Content truncated to fit the request size.)"
    upstream = snapshot.upstream if snapshot.upstream is not None else _MISSING
    downstream = snapshot.downstream if snapshot.downstream is not None else _MISSING

    if snapshot.operation is ChangeOperation.NEW:
        body = (
            "This is a NEW file created upstream.\n\n"
            f"Content upstream:\n{upstream}\n\n"
            "Current state downstream:\n"
            + (downstream if snapshot.downstream is not None else "(file does not exist - should be created)")
        )
    elif snapshot.operation is ChangeOperation.DELETED:
        body = (
            "This file was DELETED upstream.\n\n"
            f"Current state downstream:\n{downstream}\n\n"
            "Note: consider whether the file should be deleted downstream or kept."
        )
    else:
        body = (
            f"Content upstream (after changes):\n{upstream}\n\n"
            f"Current state downstream:\n{downstream}"
        )
    return f"{header}\n{body}\n"


def render_file_note(budgeted: BudgetedFileSet) -> str:
    """List excluded, redundant and skipped files with resolution guidance."""
    blocks: list[str] = []

    grouped = budgeted.redundant_by_family()
    if grouped:
        lines = [
            "REPEATED-CONTENT FILES NOTE:",
            "Only one representative per file family was included in this request.",
            "Apply the same change by analogy to every other member of the family:",
        ]
        for representative, entries in grouped.items():
            variants = ", ".join(entry.variant for entry in entries)
            lines.append(f"- {representative} (included): apply the same change to {variants}")
            lines.extend(f"    {entry.path}" for entry in entries)
        blocks.append("\n".join(lines))

    if budgeted.skipped:
        shown = budgeted.skipped[:10]
        suffix = "..." if len(budgeted.skipped) > 10 else ""
        blocks.append(
            f"NOTE: {len(budgeted.skipped)} other file(s) were skipped due to size limits. "
            "Review the git diff for the complete changes.\n"
            f"Skipped files: {', '.join(shown)}{suffix}"
        )

    if budgeted.excluded:
        blocks.append(
            "NOTE: build output, vendored and generated files were excluded and must not be patched:\n"
            + "\n".join(f"- {path}" for path in budgeted.excluded)
        )

    return "\n\n".join(blocks)


def render_commit_messages(commit_messages: Sequence[str]) -> str:
    if not commit_messages:
        return ""
    lines = ["Upstream commit messages:"]
    lines.extend(f"- {message.strip().splitlines()[0]}" for message in commit_messages if message.strip())
    return "\n".join(lines)


def build_prompt(
    budgeted: BudgetedFileSet,
    *,
    upstream_url: str = "",
    downstream_url: str = "",
    commit_messages: Sequence[str] = (),
) -> str:
    """Assemble the full synthesis prompt from a budgeted file set."""
    sections = "\n\n".join(render_file_section(snapshot) for snapshot in budgeted.selected_files())
    parts = [
        "You are an expert in code merging and git patch generation.",
        f"Upstream repository: {upstream_url or '(unknown)'}\n"
        f"Downstream repository: {downstream_url or '(unknown)'}",
        render_commit_messages(commit_messages),
        f"Latest changes upstream (git diff):\n-------------------------\n{budgeted.diff_text}",
        f"Detailed file information:\n-------------------------\n{sections or '(no files included)'}",
        render_file_note(budgeted),
        "Task:\nGenerate the best possible pull request patch that merges the upstream changes "
        "into the downstream repository while preserving downstream customisations.",
        PATCH_FORMAT_INSTRUCTION,
        RESPONSE_FORMAT_INSTRUCTION,
    ]
    return "\n\n".join(part for part in parts if part) + "\n"


def check_prompt_size(prompt: str, budgeter: FileBudgeter) -> int:
    """Refuse a prompt whose estimate is above the hard ceiling; return the estimate."""
    estimate = budgeter.estimate(prompt)
    ceiling = budgeter.config.hard_token_ceiling
    if estimate > ceiling:
        raise SyncError(
            f"Estimated tokens ({estimate}) exceed the hard ceiling ({ceiling}). "
            "Reduce max_files or max_file_chars.",
            kind=ErrorKind.BUDGET_EXCEEDED,
            details={"estimated_tokens": estimate, "ceiling": ceiling, "prompt_chars": len(prompt)},
        )
    return estimate


def fit_prompt(
    budgeted: BudgetedFileSet,
    budgeter: FileBudgeter,
    *,
    upstream_url: str = "",
    downstream_url: str = "",
    commit_messages: Sequence[str] = (),
) -> tuple[str, int]:
    """Render the prompt, moving the lowest-ranked files to ``skipped`` until it fits.

    File selection only counts raw file contents; section headers, the
    template and the file note are measured here on the rendered text.
    ``budgeted`` is updated in place. Raises ``BUDGET_EXCEEDED`` when even
    the prompt without any file sections is above the hard ceiling.
    """
    ceiling = budgeter.config.hard_token_ceiling
    while True:
        prompt = build_prompt(
            budgeted,
            upstream_url=upstream_url,
            downstream_url=downstream_url,
            commit_messages=commit_messages,
        )
        if budgeter.estimate(prompt) <= ceiling or not budgeted.selected:
            break
        dropped = budgeted.selected.pop()
        budgeted.files.pop(dropped, None)
        budgeted.tiers.pop(dropped, None)
        budgeted.skipped.append(dropped)

    estimate = check_prompt_size(prompt, budgeter)
    budgeted.estimated_tokens = estimate
    return prompt, estimate


def summarise_budget(budgeted: BudgetedFileSet) -> Mapping[str, object]:
    """Compact view of a budget decision for telemetry and the CLI."""
    return {
        "selected": list(budgeted.selected),
        "excluded": list(budgeted.excluded),
        "redundant": [entry.path for entry in budgeted.redundant],
        "skipped": list(budgeted.skipped),
        "estimated_tokens": budgeted.estimated_tokens,
        "diff_truncated": budgeted.diff_truncated,
        "warnings": list(budgeted.warnings),
    }


__all__ = [
    "PATCH_FORMAT_INSTRUCTION",
    "RESPONSE_FORMAT_INSTRUCTION",
    "build_prompt",
    "check_prompt_size",
    "fit_prompt",
    "render_file_note",
    "render_file_section",
    "summarise_budget",
]
