"""Markdown rendering for inline comments and the run summary."""

from __future__ import annotations

import re
from collections import Counter
from typing import TYPE_CHECKING

from prsieve_core.models import SEVERITIES, ExistingComment, Violation

if TYPE_CHECKING:
    from prsieve_core.reviewer import ReviewOutcome

# Every comment we post carries this marker so later runs can recognise it.
COMMENT_MARKER = "<!-- prsieve -->"
COMMENT_FOOTER = "_Automated review by **prsieve**_"

_SEVERITY_BADGE = {
    "CRITICAL": "**[CRITICAL]**",
    "MAJOR": "**[MAJOR]**",
    "MINOR": "**[MINOR]**",
    "SUGGESTION": "**[SUGGESTION]**",
}

_LANGUAGE_BY_EXT = {
    "py": "python",
    "js": "javascript",
    "jsx": "jsx",
    "ts": "typescript",
    "tsx": "tsx",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "rb": "ruby",
    "php": "php",
    "cs": "csharp",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "sql": "sql",
    "sh": "bash",
    "yml": "yaml",
    "yaml": "yaml",
    "json": "json",
}

_DIFF_PREFIX_RE = re.compile(r"^[+\-\s]")


def is_tool_comment(comment: ExistingComment, bot_login: str | None = None) -> bool:
    """True for comments previously posted by this tool."""
    author = (comment.author or "").lower()
    if bot_login and author == bot_login.lower():
        return True
    body = comment.body or ""
    return COMMENT_MARKER in body or COMMENT_FOOTER in body or "prsieve" in author


def language_for(path: str | None) -> str:
    if not path or "." not in path:
        return ""
    return _LANGUAGE_BY_EXT.get(path.rsplit(".", 1)[-1].lower(), "")


def fenced(code: str, language: str = "") -> str:
    fence = "````" if "```" in code else "```"
    return f"{fence}{language}\n{code}\n{fence}"


def clean_suggestion(suggestion: str) -> str:
    """Drop diff prefixes the model sometimes leaves on suggested code."""
    return "\n".join(_DIFF_PREFIX_RE.sub("", line, count=1) for line in suggestion.split("\n")).strip("\n")


def format_inline_comment(violation: Violation) -> str:
    badge = _SEVERITY_BADGE.get(violation.severity, _SEVERITY_BADGE["MINOR"])
    category = violation.category.replace("_", " ").title()
    parts = [
        f"{badge} **{violation.issue}**",
        f"**Category**: {category}",
        f"**Issue**: {violation.message}",
    ]
    if violation.impact:
        parts.append(f"**Impact**: {violation.impact}")
    if violation.suggestion:
        parts.append("**Suggested fix**:\n" + fenced(clean_suggestion(violation.suggestion), language_for(violation.file)))
    parts.append(f"---\n{COMMENT_FOOTER}\n{COMMENT_MARKER}")
    return "\n\n".join(parts)


def build_summary(outcome: ReviewOutcome, failed_posts: list[Violation] | None = None) -> str:
    """Build the top-level summary comment for a finished run."""
    violations = outcome.violations
    totals = Counter(v.severity for v in violations)
    categories = Counter(v.category for v in violations)

    lines = ["## Review summary\n"]

    if not violations:
        verdict = "No issues found. The changes look good."
    else:
        issue_str = ", ".join(f"{totals[s]} {s.lower()}" for s in SEVERITIES if totals[s])
        if totals["CRITICAL"] or totals["MAJOR"]:
            verdict = f"{issue_str} issue(s), changes required."
        else:
            verdict = f"{issue_str} suggestion(s)."
    lines.append(f"> {verdict}\n")

    failed_batches = [r for r in outcome.batch_results if r.error is not None]
    lines.append(
        f"**{outcome.files_reviewed}** file(s) reviewed"
        + (f" in **{len(outcome.batch_results)}** batch(es)" if outcome.processing_strategy == "batch-processing" else "")
        + f" · **{len(violations)}** comment(s) · {outcome.elapsed_seconds:.0f}s\n"
    )

    if violations:
        lines.append("| Severity | Count |")
        lines.append("|----------|:-----:|")
        for severity in SEVERITIES:
            lines.append(f"| {severity.title()} | {totals[severity] or '—'} |")
        lines.append("")
        lines.append(
            "**By category**: " + ", ".join(f"{c.replace('_', ' ')} ({n})" for c, n in sorted(categories.items()))
        )

    dedup = outcome.dedup
    if dedup is not None and dedup.total_removed:
        lines.append(f"\n_Filtered {dedup.total_removed} duplicate finding(s)._")
    if outcome.unresolved:
        lines.append(f"_Dropped {outcome.unresolved} finding(s) that could not be located in the diff._")
    if failed_batches:
        lines.append(f"_{len(failed_batches)} batch(es) could not be analysed._")

    if failed_posts:
        lines.append("\n**Could not post inline:**")
        for v in failed_posts:
            lines.append(f"- **{v.issue}** in `{v.file or 'unknown file'}`")

    lines.append(f"\n---\n{COMMENT_FOOTER}\n{COMMENT_MARKER}")
    return "\n".join(lines)
