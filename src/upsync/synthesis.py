"""Turn a budgeted file set into a validated patch via the completion service."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence

from .budget import BudgetedFileSet, FileBudgeter
from .models.completion import CompletionClient
from .prompts import fit_prompt, summarise_budget
from .telemetry import emit_event
from .validate import DEFAULT_MIN_PATCH_LINES, SynthesizedPatch, check_and_normalise, parse_response

LOGGER = logging.getLogger(__name__)


class PatchSynthesizer:
    """Build the prompt, call the client, and validate what comes back."""

    def __init__(
        self,
        client: CompletionClient,
        budgeter: FileBudgeter,
        *,
        min_patch_lines: int = DEFAULT_MIN_PATCH_LINES,
        deadline: Optional[float] = None,
    ) -> None:
        self.client = client
        self.budgeter = budgeter
        self.min_patch_lines = min_patch_lines
        self.deadline = deadline

    def synthesize(
        self,
        budgeted: BudgetedFileSet,
        *,
        fallback_diff: str,
        upstream_url: str = "",
        downstream_url: str = "",
        commit_messages: Sequence[str] = (),
    ) -> SynthesizedPatch:
        """Return a patch ready for the applier.

        ``fallback_diff`` (the untruncated upstream diff) replaces the
        generated patch when that one is structurally unusable.
        """
        for warning in budgeted.warnings:
            LOGGER.warning(warning)

        selected_before = len(budgeted.selected)
        prompt, estimate = fit_prompt(
            budgeted,
            self.budgeter,
            upstream_url=upstream_url,
            downstream_url=downstream_url,
            commit_messages=commit_messages,
        )
        if len(budgeted.selected) < selected_before:
            LOGGER.warning(
                "Dropped %d file(s) so the rendered prompt fits the hard ceiling",
                selected_before - len(budgeted.selected),
            )
        emit_event(
            "synthesis_requested",
            model=self.client.model,
            estimated_tokens=estimate,
            budget=summarise_budget(budgeted),
        )

        raw = self.client.complete(prompt, deadline=self.deadline)
        parsed = parse_response(raw)
        validation = check_and_normalise(parsed.patch_text, fallback_diff, min_lines=self.min_patch_lines)
        if validation.used_fallback:
            LOGGER.warning(
                "Generated patch unusable (%s); falling back to the upstream diff",
                "; ".join(validation.problems),
            )
        for adjustment in validation.adjustments:
            LOGGER.info(adjustment)

        emit_event(
            "synthesis_completed",
            title=parsed.title,
            used_fallback=validation.used_fallback,
            problems=validation.problems,
            adjustments=validation.adjustments,
            patch_chars=len(validation.patch_text),
        )
        return replace(
            parsed,
            patch_text=validation.patch_text,
            used_fallback=validation.used_fallback,
            adjustments=tuple(validation.adjustments),
        )


__all__ = ["PatchSynthesizer"]
