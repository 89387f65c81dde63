"""Base analyzer implementing the Template Method pattern.

All providers share the same call algorithm:
    analyze() → retry policy → _call_api()   ← only this differs per provider

Subclasses implement two things only:
  - __init__: validate and store the SDK client
  - _call_api: make one raw API call and return the text response

Prompt construction lives with the callers (the review pipeline and the
similarity scorer); response parsing helpers live here because every caller
receives JSON embedded in free text.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from prsieve_core.exceptions import AnalyzerError
from prsieve_core.retry import RetryPolicy

logger = logging.getLogger(__name__)

_MAX_TOKENS = 4096

DEFAULT_SYSTEM_PROMPT = (
    "You are an expert security-focused code reviewer. You analyse unified diffs and "
    "report concrete, actionable violations as strict JSON."
)


def _balanced_block(text: str, opener: str, closer: str) -> str | None:
    """Return the first balanced ``opener…closer`` block, ignoring brackets inside strings."""
    start = text.find(opener)
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == opener:
                depth += 1
            elif char == closer:
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        # Unbalanced from this opener; try the next one.
        start = text.find(opener, start + 1)
    return None


def extract_json_object(raw: str | None) -> dict[str, Any] | None:
    """Parse the first balanced ``{...}`` block found in a model response."""
    if not raw:
        return None
    block = _balanced_block(raw, "{", "}")
    if block is None:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON object from response: %s", raw[:200])
        return None
    return data if isinstance(data, dict) else None


def extract_json_array(raw: str | None) -> list | None:
    """Parse the first balanced ``[...]`` block found in a model response."""
    if not raw:
        return None
    block = _balanced_block(raw, "[", "]")
    if block is None:
        return None
    try:
        data = json.loads(block)
    except json.JSONDecodeError:
        logger.warning("Failed to parse JSON array from response: %s", raw[:200])
        return None
    return data if isinstance(data, list) else None


class BaseAnalyzer(ABC):
    MAX_TOKENS: int = _MAX_TOKENS
    TEMPERATURE: float = 0.3
    PROVIDER: str = "auto"

    retry_policy: RetryPolicy = RetryPolicy()

    # ------------------------------------------------------------------ #
    # Public interface                                                     #
    # ------------------------------------------------------------------ #

    def analyze(
        self,
        prompt: str,
        system_prompt: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Send one prompt and return the raw text response.

        Raises AnalyzerError once the retry policy gives up.
        """
        system = system_prompt or DEFAULT_SYSTEM_PROMPT
        try:
            return self.retry_policy.call(
                self._call_api,
                system,
                prompt,
                self.TEMPERATURE if temperature is None else temperature,
                max_tokens or self.MAX_TOKENS,
            )
        except Exception as e:
            logger.error("%s API failed: %s", self.__class__.__name__, e)
            raise AnalyzerError(
                f"{self.__class__.__name__} request failed: {e}",
                provider=self.PROVIDER,
                original_error=e,
            ) from e

    # ------------------------------------------------------------------ #
    # Abstract: implement in each provider                               #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _call_api(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        """Make a single API call and return the raw text response.

        It should raise on failure; the retry policy decides whether to try again.
        """
