from __future__ import annotations

from prsieve_core.providers.base import BaseAnalyzer
from prsieve_core.retry import RetryPolicy


class AnthropicAnalyzer(BaseAnalyzer):
    MODEL = "claude-sonnet-4-20250514"
    PROVIDER = "anthropic"
    TEMPERATURE = 0.3

    def __init__(self, api_key: str, model: str | None = None, retry_policy: RetryPolicy | None = None):
        try:
            from anthropic import Anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for this provider. "
                "Install it with: pip install 'prsieve[anthropic]'"
            )
        self.client = Anthropic(api_key=api_key)
        self.model = model or self.MODEL
        if retry_policy is not None:
            self.retry_policy = retry_policy

    def _call_api(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        # anthropic is optional; __init__ already validated it is installed.
        from anthropic.types import TextBlock

        response = self.client.messages.create(
            model=self.model,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text_blocks = [block.text for block in response.content if isinstance(block, TextBlock)]
        return "".join(text_blocks).strip()
