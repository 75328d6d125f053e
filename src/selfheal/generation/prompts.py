"""Prompt templates used to request patches, explanations and reviews."""

from __future__ import annotations

from typing import Dict, Sequence

from ..storage.schema import Issue, IssueKind

DIFF_RESPONSE_INSTRUCTION = (
    "Respond with a single fenced ```diff block containing a unified diff against the file shown. "
    "Use `--- a/<path>` and `+++ b/<path>` headers and standard `@@` hunk headers with accurate line numbers. "
    "Keep the change minimal and do not touch unrelated code. "
    "After the diff, add one line starting with `Explanation:` describing the fix."
)

REVIEW_RESPONSE_INSTRUCTION = (
    "Start your answer with exactly one line, `Verdict: APPROVE` or `Verdict: REJECT`, "
    "then give a short report with concrete recommendations."
)

KIND_GUIDANCE: Dict[IssueKind, str] = {
    IssueKind.SECURITY: (
        "You are fixing a security vulnerability.\n"
        "- Eliminate the vulnerability rather than hiding it.\n"
        "- Preserve existing behaviour for valid input.\n"
        "- Validate untrusted input at the point it is used.\n"
        "- Prefer safe standard-library alternatives over hand-written escaping or evaluation."
    ),
    IssueKind.PERFORMANCE: (
        "You are optimising a hot path.\n"
        "- Reduce time complexity or repeated work before micro-tuning.\n"
        "- Avoid allocations and copies inside loops.\n"
        "- Keep results identical to the current implementation."
    ),
    IssueKind.UNSAFE_CODE: (
        "You are removing or narrowing unsafe code.\n"
        "- Replace the unsafe operation with a safe equivalent where one exists.\n"
        "- Otherwise shrink the unsafe region and state the invariant it relies on in a comment."
    ),
    IssueKind.TYPE_COMPAT: (
        "You are migrating code to the current language edition.\n"
        "- Keep the public API backward compatible.\n"
        "- Use newer language features only where they remove the incompatibility."
    ),
    IssueKind.DEPRECATED: (
        "You are replacing a deprecated construct.\n"
        "- Use the documented successor API.\n"
        "- Keep the public API backward compatible."
    ),
}

_EDITION_GUIDANCE = (
    "- Target Rust edition 2024: check `dyn` trait objects, async fn in traits, macro hygiene, "
    "pattern matching and lifetime elision changes.\n"
    "- Update Cargo.toml only if the edition or a feature flag must change."
)


def render_numbered_snippet(lines: Sequence[str], start_line: int) -> str:
    """Format ``lines`` with right-aligned line numbers starting at ``start_line``."""
    if not lines:
        return "(file is empty or missing)"
    width = len(str(start_line + len(lines) - 1))
    return "\n".join(f"{number:>{width}} | {text}" for number, text in enumerate(lines, start=start_line))


def render_issue_summary(issue: Issue) -> str:
    summary = (
        f"{issue.kind.value} ({issue.severity.value}) at {issue.file_path}:{issue.line}:{issue.column}\n"
        f"{issue.message}"
    )
    if issue.suggestion:
        summary += f"\nSuggested direction: {issue.suggestion}"
    return summary


def kind_guidance(kind: IssueKind, language: str) -> str:
    """Extra instructions for ``kind``; empty for kinds without special handling."""

    guidance = KIND_GUIDANCE.get(kind, "")
    if guidance and language == "rust" and kind in (IssueKind.TYPE_COMPAT, IssueKind.DEPRECATED):
        guidance = f"{guidance}\n{_EDITION_GUIDANCE}"
    return guidance


def render_patch_prompt(issue: Issue, snippet: Sequence[str], start_line: int, language: str) -> str:
    """Prompt asking the backend for a unified diff that fixes ``issue``."""
    sections = [
        f"## Issue\n{render_issue_summary(issue)}",
        f"## Source ({language}, {issue.file_path})\n{render_numbered_snippet(snippet, start_line)}",
    ]
    guidance = kind_guidance(issue.kind, language)
    if guidance:
        sections.append(f"## Focus\n{guidance}")
    sections.append(f"## Instructions\n{DIFF_RESPONSE_INSTRUCTION}")
    return "\n\n".join(sections)


def render_explanation_prompt(issue: Issue) -> str:
    """Prompt asking for a plain-language explanation of ``issue``."""
    context = "\n".join(
        part for part in (issue.context.get("before"), issue.context.get("line"), issue.context.get("after")) if part
    )
    return (
        "## Issue\n"
        f"{render_issue_summary(issue)}\n\n"
        "## Code\n"
        f"{context or '(no context captured)'}\n\n"
        "Explain why this is a problem, what could go wrong at runtime, and how to fix it. "
        "Answer in at most three short paragraphs without code fences."
    )


def render_review_prompt(issue: Issue, diff: str, language: str) -> str:
    """Prompt asking the backend to assess a proposed diff for ``issue``."""

    questions = [
        "Does the patch correctly address the issue?",
        "Are there any potential side effects?",
        "Does it maintain backward compatibility?",
    ]
    if language == "rust":
        questions.append("Is it compatible with Rust edition 2024?")
    questions.extend(
        [
            "Are there any security concerns?",
            f"Does it follow {language} best practices?" if language != "text" else "Does it follow best practices?",
        ]
    )
    numbered = "\n".join(f"{index}. {question}" for index, question in enumerate(questions, start=1))
    return (
        "## Issue\n"
        f"{render_issue_summary(issue)}\n\n"
        "## Proposed patch\n"
        f"```diff\n{diff.rstrip()}\n```\n\n"
        "## Review\n"
        f"{numbered}\n\n"
        f"{REVIEW_RESPONSE_INSTRUCTION}"
    )


__all__ = [
    "DIFF_RESPONSE_INSTRUCTION",
    "KIND_GUIDANCE",
    "REVIEW_RESPONSE_INSTRUCTION",
    "kind_guidance",
    "render_explanation_prompt",
    "render_issue_summary",
    "render_numbered_snippet",
    "render_patch_prompt",
    "render_review_prompt",
]
