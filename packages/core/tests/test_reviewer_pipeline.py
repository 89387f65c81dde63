"""End-to-end tests for ReviewPipeline with a fake analyzer."""

import json
import re
import threading
import time
from unittest.mock import MagicMock

import pytest

from prsieve_core.exceptions import AnalyzerError, BatchExecutionError, ReviewInputError
from prsieve_core.reviewer import AnalyzerInstance, ReviewPipeline, _is_excluded, build_batch_prompt, limit_comments
from prsieve_core.models import FileBatch, PrioritizedFile, Violation

_FILE_SECTION_RE = re.compile(r"^### (\S+)$", re.MULTILINE)


def _patch(n, extra=0):
    body = "\n".join(f"+filler_{n}_{k} = {k}" for k in range(extra))
    return f"@@ -1,1 +1,{2 + extra} @@\n base_{n} = 0\n+value_{n} = compute({n})" + (f"\n{body}" if body else "")


def _config(**parallel):
    return {
        "model": "anthropic",
        "exclude": [],
        "batch_processing": {
            "enabled": True,
            "max_files_per_batch": 3,
            "single_request_threshold": 5,
            "batch_delay_ms": 0,
            "prioritize_security_files": True,
            "batch_token_ratio": 0.7,
            "parallel": {
                "enabled": True,
                "max_concurrent_batches": 3,
                "failure_handling": "continue",
                "stagger_delay_ms": 0,
                "enable_token_budget": True,
                **parallel,
            },
        },
        "deduplication": {"semantic": False},
    }


class FakeAnalyzer:
    """Returns one violation per file section found in the prompt."""

    def __init__(self, diffs, delay=0.01, fail_batch=None, raw=None):
        self.diffs = diffs
        self.delay = delay
        self.fail_batch = fail_batch
        self.raw = raw
        self.prompts = []
        self.running = 0
        self.peak = 0
        self._lock = threading.Lock()

    def analyze(self, prompt, system_prompt=None, temperature=None, max_tokens=None):
        with self._lock:
            self.prompts.append(prompt)
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            time.sleep(self.delay)
            if self.fail_batch is not None and f"Batch: {self.fail_batch} of" in prompt:
                raise AnalyzerError("provider down")
            if self.raw is not None:
                return self.raw
            violations = []
            for path in _FILE_SECTION_RE.findall(prompt):
                added = [l for l in self.diffs[path].splitlines() if l.startswith("+value_")][0]
                violations.append(
                    {
                        "type": "inline",
                        "file": path,
                        "code_snippet": added,
                        "severity": "MINOR",
                        "category": "maintainability",
                        "issue": f"Unclear name in {path}",
                        "message": f"Rename the variable in {path}",
                    }
                )
            return "Analysis complete.\n" + json.dumps({"violations": violations, "summary": "ok"})
        finally:
            with self._lock:
                self.running -= 1


def _twelve_files():
    diffs = {
        "src/auth/session.py": _patch(1, extra=40),
        "src/auth/tokens.py": _patch(2, extra=5),
        "lib/payment/charge.py": _patch(3, extra=20),
        "lib/billing/invoice.py": _patch(4, extra=80),
    }
    for i in range(5, 13):
        diffs[f"src/module_{i}.py"] = _patch(i)
    return diffs


class TestBatchedRun:
    def test_twelve_files_four_batches(self):
        diffs = _twelve_files()
        analyzer = FakeAnalyzer(diffs)
        outcome = ReviewPipeline(analyzer, _config(), guidelines="Be strict.").review(diffs)

        assert outcome.processing_strategy == "batch-processing"
        assert len(outcome.batch_results) == 4
        assert all(r.succeeded for r in outcome.batch_results)
        assert outcome.batch_results[0].files == ["src/auth/tokens.py", "lib/payment/charge.py", "src/auth/session.py"]
        assert len(outcome.violations) == 12
        assert outcome.unresolved == 0
        assert outcome.files_reviewed == 12
        assert analyzer.peak <= 3

    def test_violations_pinned_to_diff_lines(self):
        diffs = _twelve_files()
        outcome = ReviewPipeline(FakeAnalyzer(diffs), _config(), guidelines="").review(diffs)
        for v in outcome.violations:
            assert v.line_number == 2
            assert v.line_type == "ADDED"

    def test_sources_labelled_per_batch(self):
        diffs = _twelve_files()
        outcome = ReviewPipeline(FakeAnalyzer(diffs), _config(), guidelines="").review(diffs)
        assert outcome.dedup.instance_contributions == {"batch-1": 3, "batch-2": 3, "batch-3": 3, "batch-4": 3}

    def test_sequential_matches_parallel(self):
        diffs = _twelve_files()
        parallel = ReviewPipeline(FakeAnalyzer(diffs), _config(), guidelines="").review(diffs)
        sequential = ReviewPipeline(FakeAnalyzer(diffs, delay=0), _config(enabled=False), guidelines="").review(diffs)
        assert [v.file for v in parallel.violations] == [v.file for v in sequential.violations]

    def test_failed_batch_recorded_under_continue(self):
        diffs = _twelve_files()
        outcome = ReviewPipeline(FakeAnalyzer(diffs, fail_batch=2), _config(), guidelines="").review(diffs)
        assert [r.succeeded for r in outcome.batch_results] == [True, False, True, True]
        assert len(outcome.violations) == 9
        assert len(outcome.failed_batches) == 1

    def test_failed_batch_aborts_under_stop_all(self):
        diffs = _twelve_files()
        pipeline = ReviewPipeline(FakeAnalyzer(diffs, fail_batch=1), _config(failure_handling="stop-all"), guidelines="")
        with pytest.raises(BatchExecutionError):
            pipeline.review(diffs)


class TestSingleRequest:
    def test_small_pr_uses_one_request(self):
        diffs = {f"src/module_{i}.py": _patch(i) for i in range(3)}
        analyzer = FakeAnalyzer(diffs)
        outcome = ReviewPipeline(analyzer, _config(), guidelines="").review(diffs)
        assert outcome.processing_strategy == "single-request"
        assert len(analyzer.prompts) == 1
        assert len(outcome.violations) == 3
        assert outcome.dedup.instance_contributions == {"single": 3}

    def test_response_without_json_is_not_fatal(self):
        diffs = {"src/module_1.py": _patch(1)}
        outcome = ReviewPipeline(FakeAnalyzer(diffs, raw="I found nothing."), _config(), guidelines="").review(diffs)
        assert outcome.violations == []
        assert outcome.malformed_responses == 1
        assert all(r.succeeded for r in outcome.batch_results)


class TestLocationAndDedup:
    def _run(self, raw_violations, diffs=None, existing=()):
        diffs = diffs or {"src/auth.ts": "@@ -1,1 +1,2 @@\n const a = 1;\n+const key = 'hunter2';"}
        analyzer = FakeAnalyzer(diffs, raw=json.dumps({"violations": raw_violations}))
        return ReviewPipeline(analyzer, _config(), guidelines="").review(diffs, existing)

    def test_major_and_critical_same_line_keeps_critical(self):
        base = {"type": "inline", "file": "src/auth.ts", "code_snippet": "+const key = 'hunter2';", "category": "security"}
        outcome = self._run(
            [
                {**base, "severity": "MAJOR", "issue": "Hardcoded credential", "message": "Move to env"},
                {**base, "severity": "CRITICAL", "issue": "Secret leaked", "message": "Rotate the key"},
            ]
        )
        assert [v.severity for v in outcome.violations] == ["CRITICAL"]
        assert outcome.dedup.same_location_removed == 1

    def test_unlocatable_violation_dropped_and_counted(self):
        outcome = self._run(
            [
                {
                    "file": "src/auth.ts",
                    "code_snippet": "+completely different line",
                    "severity": "MAJOR",
                    "issue": "x",
                    "message": "y",
                }
            ]
        )
        assert outcome.violations == []
        assert outcome.unresolved == 1

    def test_general_violation_kept_without_location(self):
        outcome = self._run([{"type": "general", "severity": "MINOR", "issue": "No tests", "message": "Add tests"}])
        assert len(outcome.violations) == 1
        assert outcome.violations[0].line_number is None

    def test_semantic_dedup_uses_scorer(self):
        diffs = {"src/auth.ts": "@@ -1,1 +1,2 @@\n const a = 1;\n+const key = 'hunter2';"}
        raw = json.dumps(
            {
                "violations": [
                    {
                        "file": "src/auth.ts",
                        "code_snippet": "+const key = 'hunter2';",
                        "severity": "MAJOR",
                        "issue": "x",
                        "message": "y",
                    }
                ]
            }
        )
        scorer = MagicMock()
        scorer.score_against_comments.side_effect = AssertionError("no tool comments present")
        config = _config()
        config["deduplication"] = {"semantic": True}
        outcome = ReviewPipeline(FakeAnalyzer(diffs, raw=raw), config, scorer=scorer, guidelines="").review(diffs)
        assert len(outcome.violations) == 1
        scorer.score_group.assert_not_called()


class TestInputs:
    def test_empty_diff_rejected(self):
        with pytest.raises(ReviewInputError):
            ReviewPipeline(MagicMock(), _config(), guidelines="").review({})

    def test_everything_excluded_rejected(self):
        config = _config()
        config["exclude"] = ["*.lock"]
        with pytest.raises(ReviewInputError):
            ReviewPipeline(MagicMock(), config, guidelines="").review({"yarn.lock": "@@ -1 +1 @@\n+x"})

    def test_excluded_files_not_sent(self):
        config = _config()
        config["exclude"] = ["migrations/"]
        diffs = {"src/module_1.py": _patch(1), "app/migrations/0001.py": _patch(2)}
        analyzer = FakeAnalyzer(diffs)
        outcome = ReviewPipeline(analyzer, config, guidelines="").review(diffs)
        assert "migrations" not in analyzer.prompts[0]
        assert outcome.files_reviewed == 1


class TestIsExcluded:
    def test_glob_on_full_path(self):
        assert _is_excluded("src/generated/models.py", ["src/generated/*.py"])

    def test_glob_on_basename(self):
        assert _is_excluded("path/to/yarn.lock", ["*.lock"])

    def test_directory_prefix(self):
        assert _is_excluded("app/migrations/0001.py", ["migrations/"])
        assert _is_excluded("tests/test_x.py", ["tests"])

    def test_no_match(self):
        assert not _is_excluded("src/main.py", ["*.lock", "migrations/"])


def test_batch_prompt_lists_files_and_context():
    batch = FileBatch(
        files=[PrioritizedFile(path="src/a.py", priority="high", estimated_tokens=1000, diff="@@ -1 +1 @@\n+x")],
        priority="high",
        estimated_tokens=1000,
        batch_index=1,
    )
    prompt = build_batch_prompt(batch, 3, "Rule one.", {"title": "Add login", "author": "dev"})
    assert "Batch: 2 of 3" in prompt
    assert "### src/a.py" in prompt
    assert "Title: Add login" in prompt
    assert "Rule one." in prompt
    assert '"violations"' in prompt


class TestWholeDiffInput:
    def test_unified_diff_text_split_per_file(self):
        diffs = {"src/module_1.py": _patch(1), "src/module_2.py": _patch(2)}
        text = "\n".join(
            f"diff --git a/{path} b/{path}\n--- a/{path}\n+++ b/{path}\n{patch}" for path, patch in diffs.items()
        )
        analyzer = FakeAnalyzer(diffs)
        outcome = ReviewPipeline(analyzer, _config(), guidelines="").review(text)

        assert outcome.files_reviewed == 2
        assert sorted(v.file for v in outcome.violations) == ["src/module_1.py", "src/module_2.py"]
        assert all(v.line_number == 2 for v in outcome.violations)

    def test_empty_diff_text_rejected(self):
        with pytest.raises(ReviewInputError):
            ReviewPipeline(MagicMock(), _config(), guidelines="").review("")


class TestMalformedFields:
    def test_non_string_file_on_general_finding_is_not_fatal(self):
        diffs = {"src/module_1.py": _patch(1)}
        raw = json.dumps(
            {"violations": [{"type": "general", "file": 123, "code_snippet": 7, "issue": "No tests", "message": "Add one"}]}
        )
        outcome = ReviewPipeline(FakeAnalyzer(diffs, raw=raw), _config(), guidelines="").review(diffs)
        assert len(outcome.violations) == 1
        assert outcome.violations[0].file is None


class TestMultiInstance:
    def _instances(self, first, second):
        return [
            AnalyzerInstance(name="claude", analyzer=first, provider="anthropic", temperature=0.3),
            AnalyzerInstance(name="gpt", analyzer=second, provider="openai", temperature=0.2),
        ]

    def test_every_instance_reviews_every_batch(self):
        diffs = {f"src/module_{i}.py": _patch(i) for i in range(3)}
        first, second = FakeAnalyzer(diffs), FakeAnalyzer(diffs)
        pipeline = ReviewPipeline(first, _config(), guidelines="", instances=self._instances(first, second))
        outcome = pipeline.review(diffs)

        assert len(first.prompts) == 1
        assert len(second.prompts) == 1
        assert [r.source for r in outcome.batch_results] == ["claude", "gpt"]

    def test_findings_deduplicated_across_instances(self):
        diffs = {f"src/module_{i}.py": _patch(i) for i in range(3)}
        first, second = FakeAnalyzer(diffs), FakeAnalyzer(diffs)
        pipeline = ReviewPipeline(first, _config(), guidelines="", instances=self._instances(first, second))
        outcome = pipeline.review(diffs)

        assert len(outcome.violations) == 3
        assert outcome.dedup.exact_removed == 3
        assert outcome.dedup.instance_contributions == {"claude": 3}

    def test_contributions_counted_per_instance(self):
        diffs = {f"src/module_{i}.py": _patch(i) for i in range(3)}
        extra = json.dumps({"violations": [{"type": "general", "severity": "MAJOR", "issue": "No tests", "message": "Add"}]})
        first, second = FakeAnalyzer(diffs), FakeAnalyzer(diffs, raw=extra)
        pipeline = ReviewPipeline(first, _config(), guidelines="", instances=self._instances(first, second))
        outcome = pipeline.review(diffs)

        assert outcome.dedup.instance_contributions == {"claude": 3, "gpt": 1}

    def test_instances_share_one_concurrency_bound(self):
        diffs = _twelve_files()
        first, second = FakeAnalyzer(diffs), FakeAnalyzer(diffs)
        pipeline = ReviewPipeline(first, _config(), guidelines="", instances=self._instances(first, second))
        outcome = pipeline.review(diffs)

        assert len(outcome.batch_results) == 8
        assert outcome.execution["peak_concurrency"] <= 3
        assert outcome.execution["token_budget"]["reserved"] == 0
        assert len(outcome.violations) == 12

    def test_max_comments_keeps_most_severe(self):
        diffs = {f"src/module_{i}.py": _patch(i) for i in range(3)}
        extra = json.dumps(
            {"violations": [{"type": "general", "severity": "CRITICAL", "issue": "No tests", "message": "Add"}]}
        )
        first, second = FakeAnalyzer(diffs), FakeAnalyzer(diffs, raw=extra)
        config = _config()
        config["multi_instance"] = {"max_comments": 2}
        pipeline = ReviewPipeline(first, config, guidelines="", instances=self._instances(first, second))
        outcome = pipeline.review(diffs)

        assert len(outcome.violations) == 2
        assert outcome.capped == 2
        assert "CRITICAL" in [v.severity for v in outcome.violations]


def test_limit_comments_preserves_order():
    def _g(issue, severity):
        return Violation(type="general", severity=severity, category="general", issue=issue, message="m")

    kept = limit_comments([_g("a", "MINOR"), _g("b", "CRITICAL"), _g("c", "MAJOR")], 2)
    assert [v.issue for v in kept] == ["b", "c"]
    assert len(limit_comments([_g("a", "MINOR")], None)) == 1
