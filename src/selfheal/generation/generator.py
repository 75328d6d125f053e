"""Turn issues into scored candidate patches."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Literal, Optional, Sequence, Tuple

from ..analysis.parsing import language_for
from ..config import LLMSettings, SafetySettings
from ..errors import DiffParseError, ErrorKind, PatchApplyError
from ..lifecycle import mark_invalid
from ..models.backend import CodeGenBackend, GenerationRequest
from ..storage.schema import Issue, Patch
from ..telemetry import emit_event
from ..tools.diffs import DiffExtraction, apply_file_patch, extract_diff, make_diff, render_diff
from .prompts import render_explanation_prompt, render_patch_prompt, render_review_prompt
from .ratelimit import TokenBucket
from .scoring import (
    breaking_changes,
    compile_denylist,
    extract_dependencies,
    extract_explanation,
    safety_score,
    score_confidence,
)

LOGGER = logging.getLogger(__name__)

REVIEW_MAX_TOKENS = 500
REVIEW_TEMPERATURE = 0.1
_VERDICT = re.compile(r"^\s*\**verdict\**\s*:\s*\**\s*(approve|reject)\b", re.IGNORECASE | re.MULTILINE)


@dataclass(slots=True)
class PatchReview:
    """Backend assessment of a candidate patch."""

    verdict: Literal["approve", "reject", "unclear"]
    report: str

    @classmethod
    def parse(cls, completion: str) -> "PatchReview":
        text = (completion or "").strip()
        match = _VERDICT.search(text)
        if match is None:
            return cls(verdict="unclear", report=text)
        verdict = "approve" if match.group(1).lower() == "approve" else "reject"
        report = (text[: match.start()] + text[match.end():]).strip()
        return cls(verdict=verdict, report=report)


class PatchGenerator:
    """Request diffs from a backend and annotate them with heuristic scores.

    The generator owns its :class:`TokenBucket`; every backend call takes a
    token first and an empty bucket raises ``RateLimitError`` straight away.
    """

    def __init__(
        self,
        backend: CodeGenBackend,
        *,
        project_root: Path | str,
        llm: LLMSettings | None = None,
        safety: SafetySettings | None = None,
        rate_limiter: TokenBucket | None = None,
    ) -> None:
        self.backend = backend
        self.project_root = Path(project_root).resolve()
        self.llm = llm or LLMSettings()
        self.safety = safety or SafetySettings()
        self._bucket = rate_limiter or TokenBucket(self.llm.requests_per_window, self.llm.window_seconds)
        self._denylist = compile_denylist(self.safety.denylist)

    # ----------------------------------------------------------------- source
    def _resolve(self, relative: str) -> Path | None:
        candidate = (self.project_root / relative).resolve()
        try:
            candidate.relative_to(self.project_root)
        except ValueError:
            return None
        return candidate

    def read_source(self, relative: str) -> str:
        """Current content of ``relative`` under the project root ('' when absent)."""
        path = self._resolve(relative)
        if path is None or not path.is_file():
            return ""
        return path.read_text(encoding="utf-8")

    def _snippet(self, issue: Issue, text: str) -> Tuple[List[str], int]:
        lines = text.splitlines()
        if not lines:
            fallback = [issue.context.get(key, "") for key in ("before", "line", "after")]
            snippet = "\n".join(part for part in fallback if part).splitlines()
            return snippet, max(1, issue.line - len(issue.context.get("before", "").splitlines()))
        half = max(1, self.llm.max_context_lines // 2)
        start = max(0, issue.line - 1 - half)
        end = min(len(lines), issue.line + half)
        return lines[start:end], start + 1

    def build_request(self, issue: Issue, source_text: str) -> GenerationRequest:
        snippet, start_line = self._snippet(issue, source_text)
        return GenerationRequest(
            prompt=render_patch_prompt(issue, snippet, start_line, language_for(issue.file_path)),
            context={
                "file_path": issue.file_path,
                "issue_kind": issue.kind.value,
                "severity": issue.severity.value,
                "line": str(issue.line),
            },
            max_tokens=self.llm.max_tokens,
            temperature=self.llm.temperature,
            model=self.llm.model,
        )

    # ------------------------------------------------------------- generation
    def generate_patch(self, issue: Issue, *, generation_index: int = 0) -> Patch:
        """Request one candidate patch for ``issue``."""

        self._bucket.try_acquire()
        source_text = self.read_source(issue.file_path)
        response = self.backend.generate(self.build_request(issue, source_text))
        return self.build_patch(issue, response.content, source_text, generation_index=generation_index)

    def generate_candidates(self, issue: Issue, count: int | None = None) -> List[Patch]:
        """Request ``count`` candidates and return them ranked."""

        total = count if count is not None else self.llm.candidates
        patches = [self.generate_patch(issue, generation_index=index) for index in range(max(1, total))]
        return self.rank_patches(patches)

    def explain_issue(self, issue: Issue) -> str:
        self._bucket.try_acquire()
        response = self.backend.generate(
            GenerationRequest(
                prompt=render_explanation_prompt(issue),
                max_tokens=min(self.llm.max_tokens, 1000),
                temperature=self.llm.temperature,
                model=self.llm.model,
            )
        )
        return response.content.strip()

    def review_patch(self, issue: Issue, patch: Patch) -> PatchReview:
        """Ask the backend for a second opinion on ``patch`` before it is validated."""

        if not patch.diff:
            raise DiffParseError(f"Patch {patch.id} has no diff to review.", details={"patch_id": patch.id})
        self._bucket.try_acquire()
        language = language_for(issue.file_path)
        response = self.backend.generate(
            GenerationRequest(
                prompt=render_review_prompt(issue, patch.diff, language),
                context={
                    "file_path": issue.file_path,
                    "issue_kind": issue.kind.value,
                    "patch_id": patch.id,
                },
                max_tokens=min(self.llm.max_tokens, REVIEW_MAX_TOKENS),
                temperature=REVIEW_TEMPERATURE,
                model=self.llm.model,
            )
        )
        review = PatchReview.parse(response.content)
        LOGGER.info("Review of patch %s: %s", patch.id, review.verdict)
        emit_event("patch_reviewed", issue_id=issue.id, patch_id=patch.id, verdict=review.verdict)
        return review

    @staticmethod
    def rank_patches(patches: Sequence[Patch]) -> List[Patch]:
        """Order by ``confidence * safety_score`` descending; ties keep generation order."""
        ordered = sorted(patches, key=lambda patch: patch.generation_index)
        return sorted(ordered, key=lambda patch: patch.ranking_score, reverse=True)

    # ---------------------------------------------------------------- scoring
    def build_patch(
        self,
        issue: Issue,
        completion: str,
        source_text: str,
        *,
        generation_index: int = 0,
    ) -> Patch:
        """Parse, apply and score ``completion``; never raises on malformed output."""

        explanation = extract_explanation(completion)
        patch = Patch(issue_id=issue.id, explanation=explanation, generation_index=generation_index)
        extraction: Optional[DiffExtraction] = None
        try:
            extraction = extract_diff(completion)
        except DiffParseError as error:
            return self._reject_unparseable(patch, completion, f"ParseError: {error}")

        target = extraction.file_for(issue.file_path)
        if target is None:
            target = extraction.files[0]
        original = source_text if target.path == issue.file_path else self.read_source(target.path)
        try:
            patched = apply_file_patch(original, target)
        except PatchApplyError as error:
            patch.diff = extraction.text
            return self._reject_unparseable(patch, completion, f"ParseError: {error}", extraction)

        if target.is_new_file or target.is_deleted:
            canonical = render_diff([target])
        else:
            canonical = make_diff(original, patched, target.path)
        if not canonical:
            patch.diff = extraction.text
            return self._reject_unparseable(
                patch, completion, f"ParseError: diff leaves {target.path} unchanged", extraction
            )

        language = language_for(target.path)
        added_code = "\n".join(extraction.added_lines)
        safety = safety_score(added_code, self._denylist)
        confidence = score_confidence(completion, extraction)

        patch.original_code = original
        patch.patched_code = patched
        patch.diff = canonical
        patch.confidence = confidence.score
        patch.safety_score = safety.score
        patch.safety_matches = safety.matches
        patch.breaking_changes = breaking_changes(original, patched, language)
        patch.dependencies = extract_dependencies(patched, language)
        self._apply_safety_gate(patch)
        LOGGER.debug("Confidence for patch %s: %s", patch.id, confidence.explain())
        emit_event(
            "patch_generated",
            issue_id=issue.id,
            patch_id=patch.id,
            confidence=patch.confidence,
            confidence_components=confidence.components,
            safety_score=patch.safety_score,
            safety_matches=patch.safety_matches,
            status=patch.validation_status,
        )
        return patch

    def _reject_unparseable(
        self,
        patch: Patch,
        completion: str,
        reason: str,
        extraction: Optional[DiffExtraction] = None,
    ) -> Patch:
        LOGGER.info("Patch %s for issue %s is unusable: %s", patch.id, patch.issue_id, reason)
        patch.confidence = score_confidence(completion, extraction).score
        report = safety_score(completion, self._denylist)
        patch.safety_score = report.score
        patch.safety_matches = report.matches
        patch.explanation = f"{patch.explanation}\n\n{reason}".strip()
        mark_invalid(patch, ErrorKind.PARSE_ERROR)
        emit_event("patch_generated", issue_id=patch.issue_id, patch_id=patch.id, status=patch.validation_status, reason=reason)
        return patch

    def _apply_safety_gate(self, patch: Patch) -> None:
        if len(patch.diff) > self.safety.max_patch_size:
            patch.explanation = f"{patch.explanation}\n\nSafetyRejection: diff exceeds {self.safety.max_patch_size} characters".strip()
            mark_invalid(patch, ErrorKind.SAFETY_REJECTION)
            return
        if patch.safety_score >= self.safety.rejection_threshold:
            return
        if self.safety.require_review:
            patch.needs_review = True
            LOGGER.info("Patch %s held for review (safety %.2f)", patch.id, patch.safety_score)
            return
        mark_invalid(patch, ErrorKind.SAFETY_REJECTION)


def format_patch_for_review(patch: Patch, issue: Issue | None = None, review: PatchReview | None = None) -> str:
    """Markdown summary of ``patch`` for a human reviewer, with the backend review when given."""

    lines = [f"## Patch {patch.id}"]
    if issue is not None:
        lines.append(f"**Issue:** {issue.kind.value} at `{issue.file_path}:{issue.line}` - {issue.message}")
    lines.append(f"**Status:** {patch.validation_status.value}" + (" (needs review)" if patch.needs_review else ""))
    lines.append(f"**Confidence:** {patch.confidence:.2f}  **Safety:** {patch.safety_score:.2f}")
    if patch.safety_matches:
        lines.append(f"**Safety matches:** {', '.join(patch.safety_matches)}")
    if patch.breaking_changes:
        lines.append("**Breaking changes:**")
        lines.extend(f"- {change}" for change in patch.breaking_changes)
    if patch.dependencies:
        lines.append(f"**Dependencies:** {', '.join(patch.dependencies)}")
    if review is not None:
        lines.append(f"**Model review:** {review.verdict}")
        if review.report:
            lines.extend(["", review.report])
    if patch.explanation:
        lines.extend(["", patch.explanation])
    if patch.diff:
        lines.extend(["", "```diff", patch.diff.rstrip("\n"), "```"])
    return "\n".join(lines)


__all__ = ["PatchGenerator", "PatchReview", "format_patch_for_review"]
