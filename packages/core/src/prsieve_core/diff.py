"""Unified diff parsing and snippet location.

The analyzer reports issues as a file path plus a copied diff line. Neither is
reliable: paths arrive with or without ``a/``/``b/``/``app/`` prefixes, and the
copied line may have lost its diff prefix or some whitespace. This module maps
those reports back onto an exact (line number, line type) inside the diff, or
refuses to place them at all.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Mapping

from prsieve_core.models import DiffLine, FileDiff, Hunk, SearchContext, Violation

logger = logging.getLogger(__name__)

_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,\d+)? \+(\d+)(?:,\d+)? @@")
_GIT_HEADER_RE = re.compile(r"^diff --git a/(.*?) b/(.*)$")
_PREFIX_RE = re.compile(r"^[+\-\s]")

_KIND_BY_PREFIX = {"+": "added", "-": "removed", " ": "context"}


@dataclass(frozen=True)
class Location:
    line_number: int
    line_type: str
    index: int = 0  # position in FileDiff.lines()


@dataclass(frozen=True)
class FuzzyMatch:
    fixed_snippet: str
    line_number: int | None
    line_type: str | None
    search_context: SearchContext


def parse_patch(diff_text: str, file_path: str = "") -> FileDiff:
    """Parse one file's unified diff into hunks of numbered lines.

    Lines before the first hunk header (``diff --git``, ``---``/``+++``) and
    lines that carry no diff prefix (``\\ No newline at end of file``) are
    ignored. A malformed ``@@`` header closes the current hunk instead of
    raising, so everything up to the next valid header is skipped.
    """
    file_diff = FileDiff(file_path=file_path)
    hunk: Hunk | None = None
    old_no = new_no = 0

    for line in (diff_text or "").splitlines():
        if line.startswith("@@"):
            match = _HUNK_RE.match(line)
            if match is None:
                logger.debug("Malformed hunk header in %s: %r", file_path or "<patch>", line)
                hunk = None
                continue
            old_no, new_no = int(match.group(1)), int(match.group(2))
            hunk = Hunk(old_start=old_no, new_start=new_no)
            file_diff.hunks.append(hunk)
            continue

        if line.startswith("diff --git") or line.startswith("Index:"):
            hunk = None
            continue

        if hunk is None or not line:
            continue

        kind = _KIND_BY_PREFIX.get(line[0])
        if kind is None:
            continue

        if kind == "added":
            hunk.lines.append(DiffLine(kind=kind, raw=line, new_line_no=new_no))
            new_no += 1
        elif kind == "removed":
            hunk.lines.append(DiffLine(kind=kind, raw=line, old_line_no=old_no))
            old_no += 1
        else:
            hunk.lines.append(DiffLine(kind=kind, raw=line, old_line_no=old_no, new_line_no=new_no))
            old_no += 1
            new_no += 1

    return file_diff


def split_unified_diff(diff_text: str) -> dict[str, str]:
    """Split a whole-PR diff into per-file sections keyed by destination path."""
    sections: dict[str, str] = {}
    current: str | None = None
    buffer: list[str] = []

    def flush():
        if current is not None:
            sections[current] = "\n".join(buffer)

    for line in (diff_text or "").splitlines():
        header = _GIT_HEADER_RE.match(line)
        if header or line.startswith("Index:"):
            flush()
            current = header.group(2) if header else line[len("Index:") :].strip()
            buffer = [line]
            continue
        if current is not None:
            buffer.append(line)

    flush()
    return sections


def path_variants(path: str) -> list[str]:
    """Return plausible spellings of a path, most literal first."""
    variants: list[str] = []

    def add(candidate: str):
        if candidate and candidate not in variants:
            variants.append(candidate)

    add(path)
    add(f"a/{path}")
    add(f"b/{path}")
    if path.startswith(("a/", "b/")):
        add(path[2:])

    if "/" in path:
        parts = path.split("/")
        if len(parts) > 1:
            add("/".join(parts[1:]))
        if len(parts) > 2:
            add("/".join(parts[2:]))
        add(parts[-1])

    if path.startswith("app/"):
        bare = path[len("app/") :]
        add(bare)
        add(f"a/{bare}")
        add(f"b/{bare}")
    else:
        add(f"app/{path}")
        add(f"a/app/{path}")
        add(f"b/app/{path}")

    return variants


def find_file_diff(file_diffs: Mapping[str, str], path: str) -> tuple[str, str] | None:
    """Find the diff for ``path`` using path variants, then suffix matching."""
    if not path:
        return None
    for variant in path_variants(path):
        if variant in file_diffs:
            return variant, file_diffs[variant]
    for key, text in file_diffs.items():
        if key.endswith("/" + path) or path.endswith("/" + key):
            logger.debug("Matched %s to diff key %s by suffix", path, key)
            return key, text
    return None


def locate_exact(file_diff: FileDiff, snippet: str) -> Location | None:
    """Return the first diff line whose raw text (prefix included) equals ``snippet``."""
    for index, line in enumerate(file_diff.lines()):
        if line.raw == snippet:
            return Location(line_number=line.line_number, line_type=line.line_type, index=index)
    return None


def _clean(text: str) -> str:
    return _PREFIX_RE.sub("", text.strip(), count=1).strip()


def _context_around(lines: list[DiffLine], index: int) -> SearchContext:
    before = [lines[index - 1].raw] if index > 0 else []
    after = [lines[index + 1].raw] if index < len(lines) - 1 else []
    return SearchContext(before=before, after=after)


def locate_fuzzy(file_diff: FileDiff, snippet: str) -> FuzzyMatch | None:
    """Match a snippet that lost its prefix or whitespace against the diff lines.

    Containment is checked both ways so a truncated snippet and an over-long
    snippet both resolve to the real line.
    """
    wanted = _clean(snippet or "")
    if not wanted:
        return None

    lines = file_diff.lines()
    for index, line in enumerate(lines):
        candidate = _clean(line.raw)
        if not candidate:
            continue
        if wanted in candidate or candidate in wanted:
            return FuzzyMatch(
                fixed_snippet=line.raw,
                line_number=line.line_number,
                line_type=line.line_type,
                search_context=_context_around(lines, index),
            )
    return None


class DiffLocator:
    """Resolves violations against one run's per-file diffs.

    Parsed diffs are cached per instance; a locator belongs to a single review run.
    """

    def __init__(self, file_diffs: Mapping[str, str]):
        self.file_diffs = dict(file_diffs)
        self._parsed: dict[str, FileDiff] = {}

    def file_diff_for(self, path: str) -> FileDiff | None:
        found = find_file_diff(self.file_diffs, path)
        if found is None:
            return None
        key, text = found
        if key not in self._parsed:
            self._parsed[key] = parse_patch(text, key)
        return self._parsed[key]

    def resolve(self, violation: Violation) -> Violation | None:
        """Return a copy of ``violation`` pinned to an exact diff line, or None.

        General (non-inline) violations are returned unchanged.
        """
        if not violation.is_inline:
            return violation
        if not violation.file or not violation.code_snippet:
            return None

        file_diff = self.file_diff_for(violation.file)
        if file_diff is None:
            logger.debug("No diff found for file: %s", violation.file)
            return None

        exact = locate_exact(file_diff, violation.code_snippet)
        if exact is not None:
            return violation.copy(
                file=file_diff.file_path,
                line_number=exact.line_number,
                line_type=exact.line_type,
                search_context=_context_around(file_diff.lines(), exact.index),
            )

        fuzzy = locate_fuzzy(file_diff, violation.code_snippet)
        if fuzzy is not None:
            logger.debug("Fixed code snippet for %s using fuzzy match", violation.file)
            return violation.copy(
                file=file_diff.file_path,
                code_snippet=fuzzy.fixed_snippet,
                line_number=fuzzy.line_number,
                line_type=fuzzy.line_type,
                search_context=fuzzy.search_context,
            )

        logger.debug("Snippet not found in diff for %s: %r", violation.file, violation.code_snippet)
        return None


def resolve_violation(violation: Violation, file_diffs: Mapping[str, str]) -> Violation | None:
    """One-shot form of DiffLocator.resolve for callers holding a single violation."""
    return DiffLocator(file_diffs).resolve(violation)
