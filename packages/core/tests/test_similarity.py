"""Tests for the AI similarity scorer."""

import json
from unittest.mock import MagicMock

import pytest

from prsieve_core.exceptions import AnalyzerError, SimilarityUnavailableError
from prsieve_core.models import ExistingComment, Violation
from prsieve_core.similarity import SimilarityScorer, describe_comment


def _v(i, file="src/db.py"):
    return Violation(
        type="inline",
        severity="MAJOR",
        category="security",
        issue=f"Issue {i}",
        message=f"Message {i}",
        file=file,
        code_snippet=f"+line {i}",
    )


def _comment(i=1):
    return ExistingComment(id=i, body="SQL injection risk here", author="prsieve-bot", path="src/db.py", line=4)


def _scorer(*responses, batch_size=15):
    analyzer = MagicMock()
    analyzer.analyze.side_effect = list(responses)
    return SimilarityScorer(analyzer, batch_size=batch_size, batch_delay_seconds=0), analyzer


class TestScoreAgainstComments:
    def test_parses_one_based_indices(self):
        scorer, _ = _scorer(json.dumps([{"violation": 2, "comment": 1, "score": 92, "reasoning": "same"}]))
        matches = scorer.score_against_comments([_v(1), _v(2)], [_comment()])
        assert len(matches) == 1
        assert (matches[0].violation_index, matches[0].peer_index, matches[0].score) == (1, 0, 92)

    def test_chunk_offsets_applied(self):
        scorer, analyzer = _scorer(
            "[]",
            'Here you go: [{"violation": 1, "comment": 1, "score": 88}]',
            batch_size=2,
        )
        matches = scorer.score_against_comments([_v(1), _v(2), _v(3)], [_comment()])
        assert analyzer.analyze.call_count == 2
        assert [m.violation_index for m in matches] == [2]

    def test_out_of_range_and_malformed_entries_ignored(self):
        payload = [
            {"violation": 9, "comment": 1, "score": 90},
            {"violation": 1, "comment": 5, "score": 90},
            {"violation": "x", "comment": 1, "score": 90},
            "junk",
        ]
        scorer, _ = _scorer(json.dumps(payload))
        assert scorer.score_against_comments([_v(1)], [_comment()]) == []

    def test_score_clamped(self):
        scorer, _ = _scorer(json.dumps([{"violation": 1, "comment": 1, "score": 150}]))
        assert scorer.score_against_comments([_v(1)], [_comment()])[0].score == 100

    def test_failed_chunk_skipped(self):
        scorer, _ = _scorer(
            AnalyzerError("down"),
            json.dumps([{"violation": 1, "comment": 1, "score": 90}]),
            batch_size=1,
        )
        matches = scorer.score_against_comments([_v(1), _v(2)], [_comment()])
        assert [m.violation_index for m in matches] == [1]

    def test_all_chunks_failing_raises(self):
        scorer, _ = _scorer("no json here", AnalyzerError("down"), batch_size=1)
        with pytest.raises(SimilarityUnavailableError):
            scorer.score_against_comments([_v(1), _v(2)], [_comment()])

    def test_nothing_to_compare(self):
        scorer, analyzer = _scorer()
        assert scorer.score_against_comments([], [_comment()]) == []
        assert scorer.score_against_comments([_v(1)], []) == []
        analyzer.analyze.assert_not_called()

    def test_delay_between_chunks(self):
        sleeps = []
        analyzer = MagicMock()
        analyzer.analyze.return_value = "[]"
        scorer = SimilarityScorer(analyzer, batch_size=1, batch_delay_seconds=0.5, sleep=sleeps.append)
        scorer.score_against_comments([_v(1), _v(2), _v(3)], [_comment()])
        assert sleeps == [0.5, 0.5]


class TestScoreGroup:
    def test_only_later_to_earlier_pairs_kept(self):
        payload = [
            {"violation": 2, "duplicate_of": 1, "score": 95},
            {"violation": 1, "duplicate_of": 2, "score": 95},
            {"violation": 3, "duplicate_of": 3, "score": 95},
        ]
        scorer, _ = _scorer(json.dumps(payload))
        matches = scorer.score_group([_v(1), _v(2), _v(3)])
        assert [(m.violation_index, m.peer_index) for m in matches] == [(1, 0)]

    def test_prompt_states_location_rules(self):
        scorer, analyzer = _scorer("[]")
        scorer.score_group([_v(1), _v(2, file="src/other.py")])
        prompt = analyzer.analyze.call_args.args[0]
        assert "different files are NOT duplicates" in prompt
        assert "src/other.py" in prompt

    def test_singleton_group_not_scored(self):
        scorer, analyzer = _scorer()
        assert scorer.score_group([_v(1)]) == []
        analyzer.analyze.assert_not_called()

    def test_failure_raises(self):
        scorer, _ = _scorer(AnalyzerError("down"))
        with pytest.raises(SimilarityUnavailableError):
            scorer.score_group([_v(1), _v(2)])


def test_long_comment_truncated_in_prompt():
    comment = ExistingComment(id=1, body="x" * 1000)
    assert len(describe_comment(comment)) < 400
