from __future__ import annotations

import textwrap

from selfheal.config import SafetySettings
from selfheal.generation.scoring import (
    breaking_changes,
    compile_denylist,
    extract_dependencies,
    extract_explanation,
    safety_score,
    score_confidence,
)
from selfheal.tools.diffs import extract_diff

DENYLIST = compile_denylist(SafetySettings().denylist)

COMPLETION = textwrap.dedent(
    """
    Explanation: Use checked addition so the counter cannot overflow. This resolves the issue.

    ```diff
    --- a/src/main.rs
    +++ b/src/main.rs
    @@ -1,3 +1,3 @@
     fn bump(counter: u32) -> u32 {
    -    counter + 1
    +    counter.saturating_add(1)
     }
    ```
    """
)


def test_safety_score_is_one_for_plain_code() -> None:
    report = safety_score("let total = values.iter().sum::<u32>();", DENYLIST)

    assert report.score == 1.0
    assert report.matches == []


def test_process_execution_drops_safety_below_default_threshold() -> None:
    report = safety_score('let out = std::process::Command::new("sh").output();', DENYLIST)

    assert report.score < SafetySettings().rejection_threshold
    assert report.matches == ["process-execution x1"]


def test_safety_score_never_increases_when_dangerous_lines_are_added() -> None:
    lines = [
        "let x = 1;",
        "unsafe { ptr::read(p) }",
        "fs::remove_file(path)?;",
        "Command::new(\"rm\");",
        "let y = 2;",
    ]
    scores = [safety_score("\n".join(lines[:count]), DENYLIST).score for count in range(len(lines) + 1)]

    assert scores == sorted(scores, reverse=True)
    assert scores[-1] == 0.0


def test_confidence_rewards_a_focused_well_formed_diff() -> None:
    breakdown = score_confidence(COMPLETION, extract_diff(COMPLETION))

    assert 0.0 <= breakdown.score <= 1.0
    assert breakdown.components["headers"] > 0
    assert breakdown.components["certainty"] > 0
    assert breakdown.score > score_confidence("maybe change something", None).score
    explained = breakdown.explain()
    assert explained.startswith("base +0.30")
    assert explained.endswith(f"=> {breakdown.score:.2f}")


def test_confidence_penalises_hedging_but_stays_in_range() -> None:
    hedged = COMPLETION.replace("This resolves the issue.", "I think this might work, untested.")

    confident = score_confidence(COMPLETION, extract_diff(COMPLETION)).score
    unsure = score_confidence(hedged, extract_diff(hedged)).score

    assert unsure < confident
    assert 0.0 <= score_confidence("", None).score <= 1.0


def test_extract_explanation_ignores_the_diff_body() -> None:
    assert extract_explanation(COMPLETION).startswith("Use checked addition")
    assert extract_explanation("Short note.\n\n```diff\n--- a/x\n```") == "Short note."


def test_breaking_changes_reports_removed_public_symbols() -> None:
    before = "pub fn parse() {}\npub struct Config;\nfn helper() {}\n"
    after = "pub fn parse_all() {}\npub struct Config;\n"

    assert breaking_changes(before, after, "rust") == ["Public symbol 'parse' was removed or renamed"]
    assert breaking_changes("def run():\n    pass\n", "def run():\n    return 1\n", "python") == []


def test_extract_dependencies_for_rust_and_python() -> None:
    rust = "use serde::Deserialize;\nextern crate libc;\nfn main() { std::fs::read(\"x\"); self::helper(); }\n"
    python = "import os\nfrom pathlib import Path\nfrom . import sibling\n"

    assert extract_dependencies(rust, "rust") == ["fs", "libc", "serde", "serde::Deserialize", "std"]
    assert extract_dependencies(python, "python") == ["os", "pathlib"]
