"""AI-scored semantic similarity used by the last dedup stage.

The analyzer is only asked to score pairs; which violations survive is decided
by the duplicate engine from those scores.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from prsieve_core.exceptions import AnalyzerError, SimilarityUnavailableError
from prsieve_core.models import ExistingComment, SimilarityMatch, Violation
from prsieve_core.providers.base import BaseAnalyzer, extract_json_array

logger = logging.getLogger(__name__)

SIMILARITY_SYSTEM_PROMPT = (
    "You are an expert code reviewer analysing semantic similarity between code review "
    "findings. Provide accurate similarity scores based on content analysis."
)
_COMMENT_PREVIEW_CHARS = 300
_REPORT_FLOOR = 70


def describe_violation(violation: Violation) -> str:
    parts = [
        f"Issue: {violation.issue}",
        f"Message: {violation.message}",
        f"File: {violation.file}" if violation.file else "",
        f"Code: {violation.code_snippet}" if violation.code_snippet else "",
        f"Severity: {violation.severity}",
        f"Category: {violation.category}",
    ]
    return " | ".join(p for p in parts if p)


def describe_comment(comment: ExistingComment) -> str:
    body = comment.body or ""
    if len(body) > _COMMENT_PREVIEW_CHARS:
        body = body[:_COMMENT_PREVIEW_CHARS] + "..."
    parts = [
        f"Comment: {body}",
        f"File: {comment.path}" if comment.path else "",
        f"Author: {comment.author}" if comment.author else "",
    ]
    return " | ".join(p for p in parts if p)


def _to_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_score(value) -> int | None:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return None


class SimilarityScorer:
    def __init__(
        self,
        analyzer: BaseAnalyzer,
        batch_size: int = 15,
        batch_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.analyzer = analyzer
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep

    def _ask(self, prompt: str) -> list:
        try:
            raw = self.analyzer.analyze(prompt, system_prompt=SIMILARITY_SYSTEM_PROMPT, temperature=0.1)
        except AnalyzerError as e:
            raise SimilarityUnavailableError("Similarity scorer unreachable", original_error=e) from e
        parsed = extract_json_array(raw)
        if parsed is None:
            raise SimilarityUnavailableError("No JSON array found in similarity response")
        return parsed

    # ------------------------------------------------------------------ #
    # Violations vs. existing comments                                    #
    # ------------------------------------------------------------------ #

    def build_comment_prompt(self, violations: list[Violation], comments: list[ExistingComment]) -> str:
        violation_list = "\n".join(f"{i}. {describe_violation(v)}" for i, v in enumerate(violations, 1))
        comment_list = "\n".join(f"{i}. {describe_comment(c)}" for i, c in enumerate(comments, 1))
        return f"""Analyze the semantic similarity between these code review violations and existing PR comments.

NEW VIOLATIONS TO CHECK:
{violation_list}

EXISTING PR COMMENTS:
{comment_list}

For each violation, determine if it is semantically similar to any existing comment. Consider:
- Same or similar issues being reported
- Same file or code area being discussed
- Similar concerns or suggestions

Return a JSON array with similarity scores (0-100) for each violation-comment pair that has
meaningful similarity (score >= {_REPORT_FLOOR}).

Format: [{{"violation": 1, "comment": 2, "score": 85, "reasoning": "Both report the same SQL injection"}}]

If no meaningful similarities exist, return an empty array []."""

    def score_against_comments(
        self,
        violations: list[Violation],
        comments: list[ExistingComment],
    ) -> list[SimilarityMatch]:
        """Score violations against comments in chunks of ``batch_size`` violations.

        A failed chunk is skipped; SimilarityUnavailableError is raised only when
        every chunk failed.
        """
        if not violations or not comments:
            return []

        matches: list[SimilarityMatch] = []
        chunks = range(0, len(violations), self.batch_size)
        failures = 0
        for number, offset in enumerate(chunks, 1):
            chunk = violations[offset : offset + self.batch_size]
            try:
                entries = self._ask(self.build_comment_prompt(chunk, comments))
            except SimilarityUnavailableError as e:
                failures += 1
                logger.error("Similarity batch %d/%d failed: %s", number, len(chunks), e)
                continue

            for entry in entries:
                if not isinstance(entry, dict):
                    continue
                v_idx = _to_int(entry.get("violation"))
                c_idx = _to_int(entry.get("comment"))
                score = _to_score(entry.get("score"))
                if v_idx is None or c_idx is None or score is None:
                    continue
                if 1 <= v_idx <= len(chunk) and 1 <= c_idx <= len(comments):
                    matches.append(
                        SimilarityMatch(
                            violation_index=offset + v_idx - 1,
                            peer_index=c_idx - 1,
                            score=score,
                            reasoning=entry.get("reasoning"),
                        )
                    )

            if number < len(chunks) and self.batch_delay_seconds > 0:
                self._sleep(self.batch_delay_seconds)

        if failures == len(chunks):
            raise SimilarityUnavailableError(f"All {failures} similarity batch(es) failed")
        return matches

    # ------------------------------------------------------------------ #
    # Violations vs. each other                                            #
    # ------------------------------------------------------------------ #

    def build_group_prompt(self, violations: list[Violation]) -> str:
        violation_list = "\n".join(f"{i}. {describe_violation(v)}" for i, v in enumerate(violations, 1))
        return f"""TASK: Identify duplicate violations within this group of similar issues.

VIOLATIONS TO ANALYZE:
{violation_list}

DEDUPLICATION RULES:
1. These violations all have similar issue patterns.
2. Violations reporting the same issue in the SAME file at the SAME location are duplicates.
3. Violations in different files are NOT duplicates, even for the same issue type.
4. Violations at different locations within the same file are NOT duplicates.
5. When in doubt, they are NOT duplicates.

For every violation that duplicates an EARLIER violation in the list, return one entry.
Format: [{{"violation": 3, "duplicate_of": 1, "score": 95, "reasoning": "Same hardcoded key on the same line"}}]

If there are no duplicates, return an empty array []."""

    def score_group(self, violations: list[Violation]) -> list[SimilarityMatch]:
        """Score members of one pattern group against earlier members of the same group."""
        if len(violations) < 2:
            return []
        entries = self._ask(self.build_group_prompt(violations))
        matches = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            later = _to_int(entry.get("violation"))
            earlier = _to_int(entry.get("duplicate_of"))
            score = _to_score(entry.get("score"))
            if later is None or earlier is None or score is None:
                continue
            if 1 <= earlier < later <= len(violations):
                matches.append(
                    SimilarityMatch(
                        violation_index=later - 1,
                        peer_index=earlier - 1,
                        score=score,
                        reasoning=entry.get("reasoning"),
                    )
                )
        return matches
