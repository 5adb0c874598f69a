from __future__ import annotations

import pytest

from upsync.budget import BudgetedFileSet, FileBudgeter, FileSnapshot, RedundantFile
from upsync.config import BudgetConfig
from upsync.diff import ChangeOperation
from upsync.errors import ErrorKind, SyncError
from upsync.prompts import (
    RESPONSE_FORMAT_INSTRUCTION,
    build_prompt,
    check_prompt_size,
    render_file_note,
    render_file_section,
    summarise_budget,
)


def budgeted_set() -> BudgetedFileSet:
    snapshot = FileSnapshot(
        path="lang/front/en.json",
        operation=ChangeOperation.MODIFIED,
        upstream='{"hello": "Hello"}\n',
        downstream='{"hello": "Hi"}\n',
    )
    return BudgetedFileSet(
        selected=[snapshot.path],
        files={snapshot.path: snapshot},
        redundant=[
            RedundantFile(
                path="lang/front/de.json",
                family="translations",
                variant="de",
                representative="lang/front/en.json",
            )
        ],
        skipped=["docs/guide.md"],
        diff_text="diff --git a/lang/front/en.json b/lang/front/en.json\n",
        estimated_tokens=42,
    )


def test_prompt_contains_diff_files_and_format_instructions() -> None:
    prompt = build_prompt(
        budgeted_set(),
        upstream_url="https://github.com/acme/upstream",
        downstream_url="https://github.com/acme/downstream",
        commit_messages=["Update greeting\n\nLonger body"],
    )

    assert "Upstream repository: https://github.com/acme/upstream" in prompt
    assert "- Update greeting" in prompt
    assert "Longer body" not in prompt
    assert "diff --git a/lang/front/en.json" in prompt
    assert "FILE: lang/front/en.json" in prompt
    assert "REPEATED-CONTENT FILES NOTE" in prompt
    assert "lang/front/de.json" in prompt
    assert "docs/guide.md" in prompt
    assert RESPONSE_FORMAT_INSTRUCTION in prompt


def test_new_file_section_mentions_missing_downstream() -> None:
    section = render_file_section(
        FileSnapshot(path="src/new.py", operation=ChangeOperation.NEW, upstream="x = 1\n", downstream=None)
    )

    assert "NEW file" in section
    assert "should be created" in section


def test_file_note_is_empty_without_redundant_skipped_or_excluded_files() -> None:
    assert render_file_note(BudgetedFileSet()) == ""


def test_check_prompt_size_rejects_oversized_prompt() -> None:
    budgeter = FileBudgeter(BudgetConfig(chars_per_token=1.0, soft_token_ceiling=5, hard_token_ceiling=10))

    assert check_prompt_size("short", budgeter) == 5
    with pytest.raises(SyncError) as excinfo:
        check_prompt_size("x" * 11, budgeter)

    assert excinfo.value.kind is ErrorKind.BUDGET_EXCEEDED
    assert "Estimated tokens (11) exceed the hard ceiling (10)" in str(excinfo.value)


def test_summary_lists_every_bucket() -> None:
    summary = summarise_budget(budgeted_set())

    assert summary["selected"] == ["lang/front/en.json"]
    assert summary["redundant"] == ["lang/front/de.json"]
    assert summary["skipped"] == ["docs/guide.md"]
    assert summary["estimated_tokens"] == 42
