"""Data model shared by the diff locator, batch scheduler and duplicate engine.

The AI returns loosely-shaped JSON. Violation.from_dict is the single place where
that envelope is validated and coerced into the strict shape the rest of the
pipeline relies on; anything that fails validation is dropped there.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any

logger = logging.getLogger(__name__)

SEVERITIES = ("CRITICAL", "MAJOR", "MINOR", "SUGGESTION")
SEVERITY_RANK = {"CRITICAL": 4, "MAJOR": 3, "MINOR": 2, "SUGGESTION": 1}

CATEGORIES = (
    "security",
    "performance",
    "maintainability",
    "functionality",
    "error_handling",
    "testing",
    "general",
)

LINE_ADDED = "ADDED"
LINE_REMOVED = "REMOVED"
LINE_CONTEXT = "CONTEXT"

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


@dataclass(frozen=True)
class DiffLine:
    kind: str  # "added" | "removed" | "context"
    raw: str
    old_line_no: int | None = None
    new_line_no: int | None = None

    @property
    def line_type(self) -> str:
        if self.kind == "added":
            return LINE_ADDED
        if self.kind == "removed":
            return LINE_REMOVED
        return LINE_CONTEXT

    @property
    def line_number(self) -> int | None:
        """Removed lines are addressed on the old side, everything else on the new side."""
        if self.kind == "removed":
            return self.old_line_no
        return self.new_line_no


@dataclass
class Hunk:
    old_start: int
    new_start: int
    lines: list[DiffLine] = field(default_factory=list)


@dataclass
class FileDiff:
    file_path: str
    hunks: list[Hunk] = field(default_factory=list)

    def lines(self) -> list[DiffLine]:
        """All hunk lines in scan order."""
        return [line for hunk in self.hunks for line in hunk.lines]


@dataclass
class SearchContext:
    before: list[str] = field(default_factory=list)
    after: list[str] = field(default_factory=list)


def _split_lines(items) -> list[str]:
    # The model sometimes packs several diff lines into one array entry.
    result: list[str] = []
    for item in items or []:
        if not isinstance(item, str):
            continue
        if "\n" in item:
            result.extend(part for part in item.split("\n") if part)
        else:
            result.append(item)
    return result


def _text_or_none(value) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value


@dataclass
class Violation:
    """A single issue reported by the analyzer, optionally anchored to a diff line."""

    type: str
    severity: str
    category: str
    issue: str
    message: str
    impact: str = ""
    file: str | None = None
    code_snippet: str | None = None
    search_context: SearchContext | None = None
    line_type: str | None = None
    line_number: int | None = None
    suggestion: str | None = None
    source: str = ""

    @property
    def is_inline(self) -> bool:
        return self.type == "inline"

    @property
    def severity_rank(self) -> int:
        return SEVERITY_RANK.get(self.severity, 0)

    def copy(self, **changes) -> Violation:
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Any, source: str = "") -> Violation | None:
        """Coerce one raw AI entry into a Violation, or return None if it is unusable."""
        if not isinstance(data, dict):
            return None

        issue = str(data.get("issue") or "").strip()
        message = str(data.get("message") or "").strip()
        if not issue or not message:
            logger.debug("Dropping violation without issue/message: %r", data)
            return None

        vtype = str(data.get("type") or "inline").lower()
        if vtype not in ("inline", "general"):
            vtype = "inline"

        file = _text_or_none(data.get("file"))
        snippet = _text_or_none(data.get("code_snippet"))
        if vtype == "inline" and (file is None or snippet is None):
            logger.debug("Dropping inline violation without file/code_snippet: %s", issue)
            return None

        severity = str(data.get("severity") or "").upper()
        if severity not in SEVERITY_RANK:
            severity = "MINOR"

        category = str(data.get("category") or "general").lower()
        if category not in CATEGORIES:
            category = "general"

        search_context = None
        raw_ctx = data.get("search_context")
        if isinstance(raw_ctx, dict):
            search_context = SearchContext(
                before=_split_lines(raw_ctx.get("before")),
                after=_split_lines(raw_ctx.get("after")),
            )

        line_type = data.get("line_type")
        if line_type not in (LINE_ADDED, LINE_REMOVED, LINE_CONTEXT):
            line_type = None

        suggestion = data.get("suggestion")
        return cls(
            type=vtype,
            severity=severity,
            category=category,
            issue=issue,
            message=message,
            impact=str(data.get("impact") or ""),
            file=file,
            code_snippet=snippet,
            search_context=search_context,
            line_type=line_type,
            suggestion=suggestion if isinstance(suggestion, str) and suggestion.strip() else None,
            source=source,
        )


@dataclass
class ExistingComment:
    """Platform comment already present on the pull request."""

    id: int
    body: str
    author: str = ""
    path: str | None = None
    line: int | None = None


@dataclass
class PrioritizedFile:
    path: str
    priority: str
    estimated_tokens: int
    diff: str = ""


@dataclass
class FileBatch:
    files: list[PrioritizedFile]
    priority: str
    estimated_tokens: int
    batch_index: int

    @property
    def paths(self) -> list[str]:
        return [f.path for f in self.files]


@dataclass
class BatchResult:
    batch_index: int
    files: list[str]
    violations: list[Violation] = field(default_factory=list)
    processing_time_ms: int = 0
    error: str | None = None
    malformed: bool = False
    source: str = ""

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class SimilarityMatch:
    violation_index: int
    peer_index: int
    score: int
    reasoning: str | None = None


@dataclass
class DeduplicationResult:
    unique_violations: list[Violation]
    input_count: int
    exact_removed: int = 0
    normalized_removed: int = 0
    same_location_removed: int = 0
    semantic_existing_removed: int = 0
    semantic_intra_removed: int = 0
    instance_contributions: dict[str, int] = field(default_factory=dict)
    semantic_matches: list[SimilarityMatch] = field(default_factory=list)
    processing_time_ms: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return (
            self.exact_removed
            + self.normalized_removed
            + self.same_location_removed
            + self.semantic_existing_removed
            + self.semantic_intra_removed
        )

    @property
    def deduplication_rate(self) -> float:
        if not self.input_count:
            return 0.0
        return self.total_removed / self.input_count * 100
