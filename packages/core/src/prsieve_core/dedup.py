"""Layered duplicate removal for one run's violations.

Stages run cheapest first: exact hash, normalized hash, same-location severity
arbitration, then AI-scored similarity against prior tool comments and within
the run. Every stage keeps survivors in input order.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from collections import Counter
from typing import Iterable

from prsieve_core.exceptions import SimilarityUnavailableError
from prsieve_core.formatting import is_tool_comment
from prsieve_core.models import DeduplicationResult, ExistingComment, SimilarityMatch, Violation
from prsieve_core.similarity import SimilarityScorer

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 85

_QUOTES_RE = re.compile(r"[\"'`]")
_WS_RE = re.compile(r"\s+")
_TRAILING_SEMI_RE = re.compile(r"[;\s]+$")
_BRACES_RE = re.compile(r"[{}]")
_PUNCT_RE = re.compile(r"[^\w\s]")
_ACTION_WORDS_RE = re.compile(r"\b(?:introduces?|causes?|leads to|results in|creates?)\b")
_GENERIC_WORDS_RE = re.compile(r"\b(?:data|code|security|integrity|risk|issue|problem|vulnerability)\b")


def normalize_snippet(snippet: str | None) -> str:
    if not snippet:
        return ""
    text = _QUOTES_RE.sub('"', snippet)
    text = _BRACES_RE.sub(" ", text)
    text = _WS_RE.sub(" ", text).strip()
    return _TRAILING_SEMI_RE.sub("", text).lower()


def normalize_text(text: str | None) -> str:
    if not text:
        return ""
    return _WS_RE.sub(" ", _PUNCT_RE.sub("", text.lower())).strip()


def _digest(fields: dict) -> str:
    return hashlib.sha256(json.dumps(fields, sort_keys=True).encode("utf-8")).hexdigest()


def exact_hash(violation: Violation) -> str:
    return _digest(
        {
            "file": (violation.file or "").strip(),
            "code_snippet": (violation.code_snippet or "").strip(),
            "severity": violation.severity,
            "category": violation.category,
            "issue": violation.issue.strip(),
            "message": violation.message.strip(),
        }
    )


def normalized_hash(violation: Violation) -> str:
    return _digest(
        {
            "file": (violation.file or "").strip().lower(),
            "code_snippet": normalize_snippet(violation.code_snippet),
            "severity": violation.severity,
            "category": violation.category,
            "issue": normalize_text(violation.issue),
            "message": normalize_text(violation.message),
        }
    )


def pattern_key(violation: Violation) -> str:
    """Coarse grouping key for intra-run semantic comparison."""
    issue = _ACTION_WORDS_RE.sub(" ", normalize_text(violation.issue))
    issue = _WS_RE.sub(" ", _GENERIC_WORDS_RE.sub(" ", issue)).strip()
    return f"{violation.category}:{issue}:{normalize_text(violation.message)[:100]}"


def _first_by(violations: list[Violation], key) -> list[Violation]:
    seen: set = set()
    kept = []
    for v in violations:
        k = key(v)
        if k in seen:
            continue
        seen.add(k)
        kept.append(v)
    return kept


def dedup_exact(violations: list[Violation]) -> list[Violation]:
    return _first_by(violations, exact_hash)


def dedup_normalized(violations: list[Violation]) -> list[Violation]:
    return _first_by(violations, normalized_hash)


def dedup_same_location(violations: list[Violation]) -> list[Violation]:
    """Keep the most severe violation per (file, normalized snippet).

    Ties keep the earliest. The winner takes the position of the group's first
    member. Violations lacking a file or snippet pass through.
    """
    winners: dict[tuple[str, str], int] = {}
    slots: list[Violation | tuple[str, str]] = []
    for index, v in enumerate(violations):
        if not v.file or not v.code_snippet:
            slots.append(v)
            continue
        key = (v.file.strip().lower(), normalize_snippet(v.code_snippet))
        if key not in winners:
            winners[key] = index
            slots.append(key)
        elif v.severity_rank > violations[winners[key]].severity_rank:
            winners[key] = index
    return [violations[winners[s]] if isinstance(s, tuple) else s for s in slots]


def local_group_dedup(violations: list[Violation]) -> list[Violation]:
    """Fallback used when the scorer cannot judge a group."""
    return _first_by(
        violations,
        lambda v: ((v.file or "").strip().lower(), normalize_text(v.issue), normalize_snippet(v.code_snippet)),
    )


class DuplicateEngine:
    def __init__(
        self,
        scorer: SimilarityScorer | None = None,
        similarity_threshold: int = DEFAULT_SIMILARITY_THRESHOLD,
        bot_login: str | None = None,
    ):
        self.scorer = scorer
        self.similarity_threshold = similarity_threshold
        self.bot_login = bot_login

    @classmethod
    def from_config(cls, config: dict, scorer: SimilarityScorer | None = None) -> DuplicateEngine:
        dedup_cfg = config.get("deduplication", {})
        return cls(
            scorer=scorer if dedup_cfg.get("semantic", True) else None,
            similarity_threshold=dedup_cfg.get("similarity_threshold", DEFAULT_SIMILARITY_THRESHOLD),
            bot_login=dedup_cfg.get("bot_login"),
        )

    def run(
        self,
        violations: Iterable[Violation],
        existing_comments: Iterable[ExistingComment] = (),
    ) -> DeduplicationResult:
        start = time.monotonic()
        items = list(violations)
        result = DeduplicationResult(unique_violations=[], input_count=len(items))

        current = dedup_exact(items)
        result.exact_removed = len(items) - len(current)

        before = len(current)
        current = dedup_normalized(current)
        result.normalized_removed = before - len(current)

        before = len(current)
        current = dedup_same_location(current)
        result.same_location_removed = before - len(current)

        if self.scorer is not None and current:
            current = self._against_comments(current, list(existing_comments), result)
            current = self._within_run(current, result)

        result.unique_violations = current
        result.instance_contributions = dict(Counter(v.source or "single" for v in current))
        result.processing_time_ms = int((time.monotonic() - start) * 1000)
        if result.total_removed:
            logger.info(
                "Deduplication removed %d of %d violation(s) (%.1f%%)",
                result.total_removed,
                result.input_count,
                result.deduplication_rate,
            )
        return result

    def _against_comments(
        self,
        violations: list[Violation],
        comments: list[ExistingComment],
        result: DeduplicationResult,
    ) -> list[Violation]:
        own = [c for c in comments if is_tool_comment(c, self.bot_login)]
        if not own:
            return violations
        try:
            matches = self.scorer.score_against_comments(violations, own)
        except SimilarityUnavailableError as e:
            warning = f"Semantic deduplication against existing comments skipped: {e}"
            logger.warning("%s", warning)
            result.warnings.append(warning)
            return violations

        dropped = self._strong(matches, result)
        result.semantic_existing_removed = len(dropped)
        return [v for i, v in enumerate(violations) if i not in dropped]

    def _within_run(self, violations: list[Violation], result: DeduplicationResult) -> list[Violation]:
        groups: dict[str, list[int]] = {}
        for index, v in enumerate(violations):
            groups.setdefault(pattern_key(v), []).append(index)

        dropped: set[int] = set()
        for key, members in groups.items():
            if len(members) < 2:
                continue
            group = [violations[i] for i in members]
            try:
                matches = self.scorer.score_group(group)
            except SimilarityUnavailableError as e:
                logger.warning("Similarity scoring failed for group %r, falling back to exact dedup: %s", key, e)
                survivors = {id(v) for v in local_group_dedup(group)}
                dropped.update(i for i in members if id(violations[i]) not in survivors)
                continue
            dropped.update(members[local] for local in self._strong(matches, result))

        result.semantic_intra_removed = len(dropped)
        return [v for i, v in enumerate(violations) if i not in dropped]

    def _strong(self, matches: list[SimilarityMatch], result: DeduplicationResult) -> set[int]:
        strong = [m for m in matches if m.score >= self.similarity_threshold]
        result.semantic_matches.extend(strong)
        return {m.violation_index for m in strong}
