from __future__ import annotations

try:
    from openai import OpenAI as _OpenAI
except ImportError:
    _OpenAI = None  # type: ignore[assignment,misc]

from prsieve_core.providers.base import BaseAnalyzer
from prsieve_core.retry import RetryPolicy


class OpenAIAnalyzer(BaseAnalyzer):
    MODEL = "gpt-4o"
    PROVIDER = "openai"
    # Slightly lower than Anthropic's to keep the JSON structure stable.
    TEMPERATURE = 0.2

    def __init__(self, api_key: str, model: str | None = None, retry_policy: RetryPolicy | None = None):
        if _OpenAI is None:
            raise ImportError(
                "The 'openai' package is required for this provider. Install it with: pip install 'prsieve[openai]'"
            )
        self.client = _OpenAI(api_key=api_key)
        self.model = model or self.MODEL
        if retry_policy is not None:
            self.retry_policy = retry_policy

    def _call_api(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""
