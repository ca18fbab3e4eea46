"""Chat-completion providers tried in a fixed order."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from llm_autotrader.constants import LLM_TIMEOUT_SECONDS
from llm_autotrader.core.config import ProviderSettings
from llm_autotrader.core.logger import logger
from llm_autotrader.resilience import LLMProviderError, log_provider_error

Message = Dict[str, str]


class ChatProvider:
    """One OpenAI-compatible chat endpoint (OpenAI, DeepSeek)."""

    def __init__(
        self,
        settings: ProviderSettings,
        http: Optional[httpx.Client] = None,
        timeout_s: float = LLM_TIMEOUT_SECONDS,
    ):
        self.settings = settings
        self.timeout_s = timeout_s
        self._http = http or httpx.Client(timeout=timeout_s)

    @property
    def name(self) -> str:
        return self.settings.name

    @property
    def usable(self) -> bool:
        return self.settings.usable

    def complete(self, messages: List[Message], temperature: float, max_tokens: int) -> str:
        """Return the first choice's content or raise LLMProviderError."""
        try:
            resp = self._http.post(
                self.settings.base_url,
                headers={
                    "Authorization": f"Bearer {self.settings.api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self.settings.model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_tokens": max_tokens,
                },
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as e:
            raise LLMProviderError(self.name, f"transport error: {e}") from e

        try:
            data: Any = resp.json()
        except ValueError as e:
            raise LLMProviderError(self.name, f"non-JSON reply (HTTP {resp.status_code})") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            detail = data.get("error") if isinstance(data, dict) else None
            raise LLMProviderError(
                self.name, f"no completion in reply (HTTP {resp.status_code}): {detail}"
            )
        if not isinstance(content, str) or not content.strip():
            raise LLMProviderError(self.name, "empty completion")
        return content


@dataclass
class Completion:
    content: Optional[str]
    provider: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.content is not None


class ProviderChain:
    """Try each usable provider in order; the first that answers wins."""

    def __init__(self, providers: List[ChatProvider]):
        self.providers = providers

    @property
    def usable(self) -> List[ChatProvider]:
        return [p for p in self.providers if p.usable]

    @property
    def any_usable(self) -> bool:
        return bool(self.usable)

    def request(
        self,
        purpose: str,
        messages: List[Message],
        temperature: float,
        max_tokens: int,
    ) -> Completion:
        errors: List[str] = []
        for provider in self.usable:
            try:
                content = provider.complete(messages, temperature, max_tokens)
            except LLMProviderError as e:
                log_provider_error(provider.name, purpose, "LLM", str(e))
                errors.append(str(e))
                continue
            logger.debug(f"{provider.name} answered {purpose} ({len(content)} chars)")
            return Completion(content=content, provider=provider.name, errors=errors)
        return Completion(content=None, errors=errors)
