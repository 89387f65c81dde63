"""File prioritisation, token estimation and batch construction.

Security-sensitive files are analysed first and small files go before large
ones within a priority tier. Batches are bounded by both a file count and an
aggregate token estimate so every request stays inside the provider's window.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Iterable, Mapping

from prsieve_core.models import PRIORITY_RANK, FileBatch, PrioritizedFile

logger = logging.getLogger(__name__)

# Prompt scaffolding (instructions, PR metadata, output schema) per file.
BASE_TOKEN_OVERHEAD = 1000
DEFAULT_TOKEN_ESTIMATE = 2000
CHARS_PER_TOKEN = 4

# Conservative request limits per provider, slightly under the published ones.
PROVIDER_TOKEN_LIMITS = {
    "vertex": 65536,
    "google-ai": 65536,
    "gemini": 65536,
    "openai": 120000,
    "gpt-4": 120000,
    "anthropic": 190000,
    "claude": 190000,
    "azure": 120000,
    "bedrock": 95000,
    "auto": 60000,
}


@dataclass(frozen=True)
class PriorityRule:
    pattern: re.Pattern
    priority: str

    @classmethod
    def of(cls, pattern: str, priority: str) -> PriorityRule:
        return cls(re.compile(pattern, re.IGNORECASE), priority)

    def matches(self, path: str) -> bool:
        return self.pattern.search(path) is not None


_HIGH_PATTERNS = [
    r"auth", r"login", r"password", r"token", r"jwt", r"oauth",
    r"crypto", r"encrypt", r"decrypt", r"hash", r"security",
    r"payment", r"billing", r"transaction", r"money", r"wallet",
    r"admin", r"privilege", r"permission", r"role", r"access",
    r"config", r"env", r"secret", r"key", r"credential",
    r"api", r"endpoint", r"route", r"controller", r"middleware",
]  # fmt: skip

_LOW_PATTERNS = [
    r"\.md$", r"\.txt$", r"readme", r"changelog", r"license",
    r"test", r"spec", r"__tests__",
    r"\.json$", r"\.ya?ml$", r"\.toml$", r"\.ini$",
    r"\.lock$", r"package-lock", r"pnpm-lock",
    r"\.gitignore", r"\.eslint", r"\.prettier", r"tsconfig",
    r"\.svg$", r"\.png$", r"\.jpe?g$", r"\.gif$", r"\.ico$", r"\.webp$",
    r"\.pdf$", r"\.woff2?$", r"\.ttf$",
]  # fmt: skip

# Order matters: the first matching rule decides.
DEFAULT_PRIORITY_RULES: tuple[PriorityRule, ...] = tuple(
    [PriorityRule.of(p, "high") for p in _HIGH_PATTERNS] + [PriorityRule.of(p, "low") for p in _LOW_PATTERNS]
)


def file_priority(
    path: str,
    prioritize: bool = True,
    rules: Iterable[PriorityRule] = DEFAULT_PRIORITY_RULES,
) -> str:
    """Classify a changed path as high, medium or low priority."""
    if not prioritize:
        return "medium"
    for rule in rules:
        if rule.matches(path):
            return rule.priority
    return "medium"


def estimate_tokens(diff_text) -> int:
    """Approximate the prompt cost of one file's diff."""
    try:
        return math.ceil(len(diff_text) / CHARS_PER_TOKEN) + BASE_TOKEN_OVERHEAD
    except TypeError:
        logger.debug("Could not measure diff content, using default token estimate")
        return DEFAULT_TOKEN_ESTIMATE


def provider_token_limit(provider: str | None) -> int:
    if not provider:
        return PROVIDER_TOKEN_LIMITS["auto"]
    name = provider.lower()
    if name in PROVIDER_TOKEN_LIMITS:
        return PROVIDER_TOKEN_LIMITS[name]
    for key, limit in PROVIDER_TOKEN_LIMITS.items():
        if key in name or name in key:
            return limit
    return PROVIDER_TOKEN_LIMITS["auto"]


def safe_token_limit(provider: str | None, configured: int | None = None) -> int:
    """Return the smaller of the configured request size and the provider limit."""
    limit = provider_token_limit(provider)
    if configured and configured > 0:
        return min(configured, limit)
    return limit


def max_tokens_per_batch(config: dict, providers: list[str] | None = None) -> int:
    """Batch token cap. With several providers the smallest limit applies to all of them."""
    batch_cfg = config.get("batch_processing", {})
    ratio = batch_cfg.get("batch_token_ratio", 0.7)
    limit = min(safe_token_limit(p, config.get("max_tokens")) for p in (providers or [config.get("model")]))
    return int(limit * ratio)


def should_use_batch_processing(file_count: int, config: dict) -> bool:
    batch_cfg = config.get("batch_processing", {})
    if not batch_cfg.get("enabled", True):
        logger.debug("Batch processing disabled in config")
        return False
    threshold = batch_cfg.get("single_request_threshold", 5)
    if file_count <= threshold:
        logger.debug("File count (%d) <= threshold (%d), using single request", file_count, threshold)
        return False
    return True


def prioritize_files(
    file_diffs: Mapping[str, str],
    prioritize: bool = True,
    rules: Iterable[PriorityRule] = DEFAULT_PRIORITY_RULES,
) -> list[PrioritizedFile]:
    """Rank files by priority tier, then by ascending token estimate."""
    rules = tuple(rules)
    files = [
        PrioritizedFile(
            path=path,
            priority=file_priority(path, prioritize, rules),
            estimated_tokens=estimate_tokens(diff),
            diff=diff if isinstance(diff, str) else "",
        )
        for path, diff in file_diffs.items()
    ]
    # sorted() is stable, so equal keys keep input order.
    return sorted(files, key=lambda f: (PRIORITY_RANK[f.priority], f.estimated_tokens))


def build_batches(
    files: list[PrioritizedFile],
    max_files_per_batch: int,
    max_tokens_per_batch: int,
) -> list[FileBatch]:
    """Greedily pack prioritised files into batches.

    A batch is closed when the next file would break either cap. A single file
    larger than the token cap still gets a batch of its own.
    """
    if max_files_per_batch < 1:
        raise ValueError("max_files_per_batch must be at least 1")

    batches: list[FileBatch] = []
    current = FileBatch(files=[], priority="low", estimated_tokens=0, batch_index=0)

    for f in files:
        too_many_tokens = current.estimated_tokens + f.estimated_tokens > max_tokens_per_batch
        too_many_files = len(current.files) >= max_files_per_batch
        if (too_many_tokens or too_many_files) and current.files:
            batches.append(current)
            current = FileBatch(files=[], priority="low", estimated_tokens=0, batch_index=len(batches))

        current.files.append(f)
        current.estimated_tokens += f.estimated_tokens
        if PRIORITY_RANK[f.priority] < PRIORITY_RANK[current.priority]:
            current.priority = f.priority

    if current.files:
        batches.append(current)

    logger.debug(
        "Built %d batch(es) from %d file(s) (max %d files, %d tokens per batch)",
        len(batches),
        len(files),
        max_files_per_batch,
        max_tokens_per_batch,
    )
    return batches
