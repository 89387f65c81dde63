"""Core PR review orchestration."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping

from github import GithubException
from rich.console import Console

from prsieve_core.batching import (
    build_batches,
    estimate_tokens,
    file_priority,
    max_tokens_per_batch,
    prioritize_files,
    should_use_batch_processing,
)
from prsieve_core.config import load_guidelines
from prsieve_core.dedup import DuplicateEngine
from prsieve_core.diff import DiffLocator, split_unified_diff
from prsieve_core.exceptions import ReviewInputError
from prsieve_core.executor import BatchAnalysis, BatchExecutor, ExecutorSettings
from prsieve_core.formatting import build_summary, format_inline_comment
from prsieve_core.gh.pull_request import (
    get_existing_comments,
    get_file_diffs,
    get_pull,
    get_repo,
    post_inline_comment,
    post_issue_comment,
)
from prsieve_core.models import (
    BatchResult,
    DeduplicationResult,
    ExistingComment,
    FileBatch,
    PrioritizedFile,
    Violation,
)
from prsieve_core.providers.anthropic import AnthropicAnalyzer
from prsieve_core.providers.base import BaseAnalyzer, extract_json_object
from prsieve_core.providers.openai import OpenAIAnalyzer
from prsieve_core.retry import RetryPolicy
from prsieve_core.similarity import SimilarityScorer

console = Console()
logger = logging.getLogger(__name__)

SINGLE_REQUEST = "single-request"
BATCH_PROCESSING = "batch-processing"


@dataclass
class ReviewOutcome:
    """Everything one run produced, including what was dropped along the way."""

    violations: list[Violation] = field(default_factory=list)
    batch_results: list[BatchResult] = field(default_factory=list)
    dedup: DeduplicationResult | None = None
    unresolved: int = 0
    malformed_responses: int = 0
    processing_strategy: str = SINGLE_REQUEST
    elapsed_seconds: float = 0.0
    files_reviewed: int = 0
    capped: int = 0
    execution: dict = field(default_factory=dict)
    posted: int = 0
    post_failures: list[Violation] = field(default_factory=list)
    summary_posted: bool = False

    @property
    def severity_counts(self) -> dict[str, int]:
        return dict(Counter(v.severity for v in self.violations))

    @property
    def category_counts(self) -> dict[str, int]:
        return dict(Counter(v.category for v in self.violations))

    @property
    def failed_batches(self) -> list[BatchResult]:
        return [r for r in self.batch_results if not r.succeeded]


def _get_analyzer(config: dict, provider: str | None = None, model_name: str | None = None) -> BaseAnalyzer:
    model = provider or config["model"]
    retry_policy = RetryPolicy.from_config(config)
    if model == "anthropic":
        return AnthropicAnalyzer(api_key=config["anthropic_api_key"], model=model_name, retry_policy=retry_policy)
    if model == "openai":
        return OpenAIAnalyzer(api_key=config["openai_api_key"], model=model_name, retry_policy=retry_policy)
    raise ValueError(f"Unknown model provider: {model!r}. Choose 'anthropic' or 'openai'.")


@dataclass
class AnalyzerInstance:
    """One independently configured analyzer in a multi-instance review."""

    name: str
    analyzer: BaseAnalyzer
    provider: str
    temperature: float | None = None


def build_instances(config: dict) -> list[AnalyzerInstance]:
    """Analyzers listed under ``multi_instance``; empty when the feature is off."""
    multi_cfg = config.get("multi_instance", {})
    if not multi_cfg.get("enabled"):
        return []
    specs = multi_cfg.get("instances") or []
    if not specs:
        raise ValueError("multi_instance is enabled but no instances are configured.")

    instances: list[AnalyzerInstance] = []
    for spec in specs:
        name, provider = spec.get("name"), spec.get("model")
        if not name or not provider:
            raise ValueError("Every multi_instance entry needs a name and a model provider.")
        if any(existing.name == name for existing in instances):
            raise ValueError(f"Duplicate multi_instance name: {name!r}")
        analyzer = _get_analyzer(config, provider=provider, model_name=spec.get("model_name"))
        instances.append(
            AnalyzerInstance(name=name, analyzer=analyzer, provider=provider, temperature=spec.get("temperature"))
        )
    return instances


def limit_comments(violations: list[Violation], max_comments: int | None) -> list[Violation]:
    """Keep the ``max_comments`` most severe violations, in their original order."""
    if not max_comments or len(violations) <= max_comments:
        return violations
    ranked = sorted(range(len(violations)), key=lambda i: -violations[i].severity_rank)
    keep = set(ranked[:max_comments])
    return [v for i, v in enumerate(violations) if i in keep]


def _is_excluded(filename: str, patterns: list[str]) -> bool:
    """Return True if filename matches any exclude pattern.

    Supports:
    - fnmatch globs on the full path: "src/generated/*.py"
    - fnmatch globs on the basename: "*.lock", "*.min.js"
    - Directory names/prefixes: "migrations/", "tests" (matches any file within that tree)
    """
    for pattern in patterns:
        if fnmatch.fnmatch(filename, pattern):
            return True
        if fnmatch.fnmatch(filename.rsplit("/", 1)[-1], pattern):
            return True
        prefix = pattern.rstrip("/") + "/"
        if filename.startswith(prefix) or ("/" + prefix) in filename:
            return True
    return False


_OUTPUT_FORMAT = """Return ONLY valid JSON:
{
  "violations": [
    {
      "type": "inline",
      "file": "exact/file/path.ext",
      "code_snippet": "EXACT line from diff INCLUDING the +/- prefix",
      "search_context": {
        "before": ["line before from diff with prefix"],
        "after": ["line after from diff with prefix"]
      },
      "severity": "CRITICAL|MAJOR|MINOR|SUGGESTION",
      "category": "security|performance|maintainability|functionality|error_handling|testing|general",
      "issue": "Brief issue title",
      "message": "Detailed explanation",
      "impact": "Potential impact description",
      "suggestion": "Clean, executable code fix (no diff symbols)"
    }
  ],
  "summary": "Short analysis summary"
}
Use "type": "general" (without file and code_snippet) for findings that are not tied to one line."""


def build_batch_prompt(
    batch: FileBatch,
    total_batches: int,
    guidelines: str,
    pr_context: Mapping | None = None,
) -> str:
    pr_context = pr_context or {}
    diffs = "\n\n".join(f"### {f.path}\n```diff\n{f.diff}\n```" for f in batch.files)
    header = (
        f"Conduct a focused security and quality analysis of this batch of {len(batch.files)} "
        f"file(s) ({batch.priority} priority)."
    )
    if total_batches == 1:
        header = f"Conduct a focused security and quality analysis of these {len(batch.files)} changed file(s)."

    return f"""{header}

## BATCH CONTEXT
Batch: {batch.batch_index + 1} of {total_batches}
Priority: {batch.priority}
Files in batch: {", ".join(batch.paths)}

## PR CONTEXT
Title: {pr_context.get("title") or "(none)"}
Author: {pr_context.get("author") or "(unknown)"}
Repository: {pr_context.get("repository") or "(unknown)"}
Description:
{pr_context.get("description") or "(none)"}

## REVIEW GUIDELINES
{guidelines}

## CODE CHANGES
{diffs}

## CODE SNIPPET RULES
1. Copy the EXACT line from the diff above, including its diff prefix (+, - or space).
2. Do NOT modify, clean, or reformat the line.
3. If an issue spans several lines, choose the most relevant single line.

## OUTPUT FORMAT
{_OUTPUT_FORMAT}"""


@dataclass
class _Assignment:
    """Which analyzer handles a scheduled batch, and under which source label."""

    batch: FileBatch
    source: str
    analyzer: BaseAnalyzer
    temperature: float | None = None


class ReviewPipeline:
    """Batch, analyse, locate and deduplicate violations for one pull request.

    With ``instances`` every batch is reviewed once per analyzer instance. All
    calls share one semaphore and token budget, and findings are deduplicated
    across instances. A pipeline holds no state between runs; build a new one
    per review.
    """

    def __init__(
        self,
        analyzer: BaseAnalyzer,
        config: dict,
        scorer: SimilarityScorer | None = None,
        guidelines: str | None = None,
        instances: list[AnalyzerInstance] | None = None,
    ):
        self.analyzer = analyzer
        self.config = config
        self.scorer = scorer
        self.guidelines = guidelines if guidelines is not None else load_guidelines(config)
        self.instances = list(instances or [])

    @property
    def providers(self) -> list[str]:
        if self.instances:
            return [instance.provider for instance in self.instances]
        return [self.config.get("model")]

    def _plan(self, file_diffs: Mapping[str, str]) -> tuple[list[FileBatch], bool]:
        batch_cfg = self.config.get("batch_processing", {})
        prioritize = batch_cfg.get("prioritize_security_files", True)

        if not should_use_batch_processing(len(file_diffs), self.config):
            files = [
                PrioritizedFile(
                    path=path,
                    priority=file_priority(path, prioritize),
                    estimated_tokens=estimate_tokens(diff),
                    diff=diff,
                )
                for path, diff in file_diffs.items()
            ]
            priority = min((f.priority for f in files), key=["high", "medium", "low"].index)
            batch = FileBatch(
                files=files,
                priority=priority,
                estimated_tokens=sum(f.estimated_tokens for f in files),
                batch_index=0,
            )
            return [batch], False

        files = prioritize_files(file_diffs, prioritize)
        batches = build_batches(
            files,
            batch_cfg.get("max_files_per_batch", 3),
            max_tokens_per_batch(self.config, self.providers),
        )
        return batches, True

    def _assign(self, batches: list[FileBatch], batched: bool) -> tuple[list[FileBatch], list[_Assignment]]:
        """Expand planned batches into the scheduled jobs, one per (instance, batch)."""
        if not self.instances:
            assignments = [
                _Assignment(
                    batch=batch,
                    source=f"batch-{batch.batch_index + 1}" if batched else "single",
                    analyzer=self.analyzer,
                    temperature=self.config.get("temperature"),
                )
                for batch in batches
            ]
            return list(batches), assignments

        jobs: list[FileBatch] = []
        assignments: list[_Assignment] = []
        for instance in self.instances:
            for batch in batches:
                jobs.append(replace(batch, batch_index=len(jobs)))
                assignments.append(_Assignment(batch, instance.name, instance.analyzer, instance.temperature))
        return jobs, assignments

    def analyze_batch(
        self,
        batch: FileBatch,
        total_batches: int,
        source: str,
        pr_context: Mapping | None = None,
        analyzer: BaseAnalyzer | None = None,
        temperature: float | None = None,
    ) -> BatchAnalysis:
        """One analyzer call for one batch. Analyzer errors propagate to the executor."""
        prompt = build_batch_prompt(batch, total_batches, self.guidelines, pr_context)
        raw = (analyzer or self.analyzer).analyze(prompt, temperature=temperature)

        data = extract_json_object(raw)
        if data is None or not isinstance(data.get("violations", []), list):
            logger.warning(
                "Batch %d (%s) returned no usable JSON; treating it as zero violations", batch.batch_index + 1, source
            )
            return BatchAnalysis(malformed=True)

        violations = []
        for entry in data.get("violations", []):
            violation = Violation.from_dict(entry, source=source)
            if violation is not None:
                violations.append(violation)
        return BatchAnalysis(violations=violations)

    async def run(
        self,
        file_diffs: Mapping[str, str] | str,
        existing_comments: Iterable[ExistingComment] = (),
        pr_context: Mapping | None = None,
    ) -> ReviewOutcome:
        """Review a per-file diff map, or a whole unified diff which is split per file first."""
        start = time.monotonic()
        if isinstance(file_diffs, str):
            file_diffs = split_unified_diff(file_diffs)
        if not file_diffs:
            raise ReviewInputError("No diff content to review")

        exclude = self.config.get("exclude", [])
        reviewable = {path: diff for path, diff in file_diffs.items() if not _is_excluded(path, exclude)}
        for path in file_diffs:
            if path not in reviewable:
                logger.info("Skipping excluded file: %s", path)
        if not reviewable:
            raise ReviewInputError("Every changed file is excluded from review")

        batches, batched = self._plan(reviewable)
        jobs, assignments = self._assign(batches, batched)
        logger.info(
            "Reviewing %d file(s) using %s (%d request(s), %d analyzer instance(s))",
            len(reviewable),
            BATCH_PROCESSING if batched else SINGLE_REQUEST,
            len(jobs),
            max(1, len(self.instances)),
        )

        # Each concurrent slot may draw up to one full batch worth of tokens.
        parallel_cfg = self.config.get("batch_processing", {}).get("parallel", {})
        budget = max_tokens_per_batch(self.config, self.providers) * max(
            1, parallel_cfg.get("max_concurrent_batches", 3)
        )
        settings = ExecutorSettings.from_config(self.config, token_budget=budget)

        def analyze_job(job: FileBatch) -> BatchAnalysis:
            assignment = assignments[job.batch_index]
            return self.analyze_batch(
                assignment.batch,
                len(batches),
                assignment.source,
                pr_context,
                analyzer=assignment.analyzer,
                temperature=assignment.temperature,
            )

        executor = BatchExecutor(analyze_job, settings)
        batch_results = await executor.run(jobs)
        for result in batch_results:
            result.source = assignments[result.batch_index].source

        locator = DiffLocator(reviewable)
        resolved: list[Violation] = []
        unresolved = 0
        for result in batch_results:
            for violation in result.violations:
                located = locator.resolve(violation)
                if located is None:
                    logger.warning("Could not locate %r in %s; dropping it", violation.issue, violation.file)
                    unresolved += 1
                    continue
                resolved.append(located)

        engine = DuplicateEngine.from_config(self.config, scorer=self.scorer)
        dedup = await asyncio.to_thread(engine.run, resolved, list(existing_comments))

        max_comments = self.config.get("multi_instance", {}).get("max_comments") if self.instances else None
        violations = limit_comments(dedup.unique_violations, max_comments)

        execution: dict = {"requests": len(jobs)}
        if executor.semaphore is not None:
            execution["peak_concurrency"] = executor.semaphore.peak_in_use
        if executor.budget is not None:
            execution["token_budget"] = executor.budget.status()

        return ReviewOutcome(
            violations=violations,
            batch_results=batch_results,
            dedup=dedup,
            unresolved=unresolved,
            malformed_responses=sum(1 for r in batch_results if r.malformed),
            processing_strategy=BATCH_PROCESSING if batched else SINGLE_REQUEST,
            elapsed_seconds=time.monotonic() - start,
            files_reviewed=len(reviewable),
            capped=len(dedup.unique_violations) - len(violations),
            execution=execution,
        )

    def review(
        self,
        file_diffs: Mapping[str, str] | str,
        existing_comments: Iterable[ExistingComment] = (),
        pr_context: Mapping | None = None,
    ) -> ReviewOutcome:
        """Blocking wrapper around run() for synchronous callers."""
        return asyncio.run(self.run(file_diffs, existing_comments, pr_context))


def print_shadow_comments(violations: list[Violation]) -> None:
    """Print review comments to the terminal without posting to GitHub."""
    _severity_color = {"CRITICAL": "red", "MAJOR": "yellow", "MINOR": "blue", "SUGGESTION": "dim"}
    if not violations:
        console.print("[yellow]Shadow mode: no comments generated.[/yellow]")
        return
    console.print(f"\n[bold]Shadow review: {len(violations)} comment(s) (not posted)[/bold]\n")
    for v in violations:
        color = _severity_color.get(v.severity, "white")
        location = f"  line [bold]{v.line_number}[/bold]" if v.line_number is not None else ""
        console.print(
            f"[bold cyan]{v.file or 'general'}[/bold cyan]{location}  [{color}]{v.severity}[/{color}]  {v.issue}"
        )
        if v.code_snippet:
            console.print(f"  [dim]{v.code_snippet.strip()}[/dim]")
        console.print(f"  {v.message}")
        console.print()


def _print_stats(outcome: ReviewOutcome) -> None:
    console.print(
        f"[cyan]{outcome.files_reviewed} file(s) via {outcome.processing_strategy}, "
        f"{len(outcome.violations)} violation(s) after dedup.[/cyan]"
    )
    if outcome.dedup is not None and outcome.dedup.total_removed:
        d = outcome.dedup
        console.print(
            f"[dim]Duplicates removed: exact {d.exact_removed}, normalized {d.normalized_removed}, "
            f"same-location {d.same_location_removed}, existing comments {d.semantic_existing_removed}, "
            f"intra-run {d.semantic_intra_removed}[/dim]"
        )
    if outcome.dedup is not None and outcome.dedup.instance_contributions:
        parts = ", ".join(f"{source} {count}" for source, count in outcome.dedup.instance_contributions.items())
        console.print(f"[dim]Findings by source: {parts}[/dim]")
    budget = outcome.execution.get("token_budget")
    if budget:
        console.print(
            f"[dim]Peak concurrency {outcome.execution.get('peak_concurrency', 1)}, "
            f"{budget['consumed']} of {budget['total']} budget tokens drawn[/dim]"
        )
    for warning in outcome.dedup.warnings if outcome.dedup else []:
        console.print(f"[yellow]{warning}[/yellow]")
    if outcome.capped:
        console.print(f"[yellow]{outcome.capped} lower-severity violation(s) over the comment limit skipped.[/yellow]")
    if outcome.unresolved:
        console.print(f"[yellow]{outcome.unresolved} violation(s) could not be located in the diff.[/yellow]")
    if outcome.malformed_responses:
        console.print(f"[yellow]{outcome.malformed_responses} malformed AI response(s).[/yellow]")
    for failed in outcome.failed_batches:
        label = f" ({failed.source})" if failed.source else ""
        console.print(f"[red]Batch {failed.batch_index + 1}{label} failed: {failed.error}[/red]")


def run_review(
    repo: str,
    pr_number: int,
    config: dict,
    auto_confirm: bool = False,
    shadow: bool = False,
    repo_obj=None,
) -> ReviewOutcome | None:
    """Run the full PR review pipeline against GitHub.

    Returns None when the user declines to post; otherwise the ReviewOutcome,
    including in shadow mode.
    """
    this_repo = repo_obj if repo_obj is not None else get_repo(repo, token=config["github_token"])

    try:
        this_pr = get_pull(this_repo, pr_number)
    except GithubException:
        raise ValueError(f"PR #{pr_number} not found in {repo}.")

    file_diffs = get_file_diffs(this_pr)
    existing_comments = get_existing_comments(this_pr)
    console.print(f"Fetched {len(file_diffs)} changed file(s) and {len(existing_comments)} existing comment(s).")

    analyzer = _get_analyzer(config)
    dedup_cfg = config.get("deduplication", {})
    scorer = SimilarityScorer(analyzer, batch_size=dedup_cfg.get("similarity_batch_size", 15))
    pipeline = ReviewPipeline(analyzer, config, scorer=scorer, instances=build_instances(config))
    pr_context = {
        "title": this_pr.title,
        "author": getattr(this_pr.user, "login", None),
        "repository": repo,
        "description": this_pr.body or "",
    }

    outcome = pipeline.review(file_diffs, existing_comments, pr_context)
    _print_stats(outcome)

    if shadow:
        print_shadow_comments(outcome.violations)
        console.print(f"[bold]Shadow review complete. {len(outcome.violations)} comment(s) would be posted.[/bold]")
        return outcome

    if not auto_confirm:
        answer = input(f"Post {len(outcome.violations)} comment(s) and a summary? (y/n): ").strip().lower()
        if answer != "y":
            return None

    for violation in outcome.violations:
        body = format_inline_comment(violation)
        try:
            if violation.is_inline:
                post_inline_comment(this_pr, violation, body)
            else:
                post_issue_comment(this_pr, body)
            outcome.posted += 1
        except GithubException as e:
            logger.warning("Could not post comment for %s: %s", violation.file or "general finding", e)
            outcome.post_failures.append(violation)

    try:
        post_issue_comment(this_pr, build_summary(outcome, outcome.post_failures))
        outcome.summary_posted = True
    except GithubException as e:
        logger.warning("Could not post the review summary: %s", e)
        console.print("[red]Could not post the review summary; see the log for details.[/red]")
    console.print(
        f"\n[green]Review posted: {outcome.posted} comment(s)"
        + (f", {len(outcome.post_failures)} failed" if outcome.post_failures else "")
        + ".[/green]"
    )
    return outcome
