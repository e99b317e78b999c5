"""LLM client and provider resolution.

Anthropic goes through ``anthropic.AsyncAnthropic``; OpenAI, Gemini and Grok
all speak the OpenAI chat-completions protocol and go through
``openai.AsyncOpenAI`` with a provider-specific base URL.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ventureclone.config import get_settings
from ventureclone.errors import AppError, LLMCallError
from ventureclone.models import AIProvider

log = logging.getLogger(__name__)

DEFAULT_MODELS: dict[str, str] = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o",
    "gemini": "gemini-2.0-flash",
    "grok": "grok-2-1212",
}

BASE_URLS: dict[str, str] = {
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai/",
    "grok": "https://api.x.ai/v1",
}

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def extract_json_text(text: str) -> str:
    """Strip markdown code fences around a JSON object, if present."""
    text = (text or "").strip()
    m = _FENCE_RE.search(text)
    return m.group(1) if m else text


class LLMClient:
    """Unified async LLM client for the supported providers."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_tokens: int = 4096,
    ):
        settings = get_settings()
        self.provider = (provider or settings.llm_provider).lower()
        # LLM_MODEL names a model of LLM_PROVIDER and is meaningless for any other provider
        configured = settings.llm_model if self.provider == settings.llm_provider.lower() else ""
        self.model = model or configured or DEFAULT_MODELS.get(self.provider, "")
        self.timeout = timeout or settings.llm_timeout
        self.max_tokens = max_tokens
        self._api_key = api_key or settings.provider_keys.get(self.provider, "")
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key or None, max_retries=1)
        elif self.provider in ("openai", "gemini", "grok"):
            import openai
            kwargs: dict[str, Any] = {"max_retries": 1}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self.provider in BASE_URLS:
                kwargs["base_url"] = BASE_URLS[self.provider]
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            return response.content[0].text
        response = await self._client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send system+user message to the LLM, return parsed JSON."""
        try:
            text = await asyncio.wait_for(self._complete(system, user), timeout=self.timeout)
        except LLMCallError:
            raise
        except asyncio.TimeoutError as exc:
            raise LLMCallError(
                f"AI provider {self.provider} timeout after {self.timeout:.0f}s", retryable=True,
            ) from exc
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        text = extract_json_text(text)
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(
                f"LLM returned invalid JSON: {text[:200]}", retryable=False,
            ) from exc
        if not isinstance(data, dict):
            raise LLMCallError("LLM returned JSON that is not an object", retryable=False)
        return data

    async def check_connection(self) -> bool:
        """Send a tiny prompt and report whether the provider answered OK."""
        data = await self.call(
            "You check connectivity. Reply with a JSON object only.",
            'Respond with {"status": "OK"}.',
        )
        return str(data.get("status", "")).strip().upper() == "OK"


def active_provider(session: Session, user_id: str) -> AIProvider | None:
    return session.execute(
        select(AIProvider).where(AIProvider.user_id == user_id, AIProvider.is_active.is_(True))
        .order_by(AIProvider.created_at.desc())
    ).scalars().first()


def client_for_user(session: Session, user_id: str) -> LLMClient:
    """Build a client from the user's active provider, else from the environment.

    Raises ``AppError`` (500, ``CONFIG_MISSING``) when no key is available.
    """
    stored = active_provider(session, user_id)
    if stored is not None:
        return LLMClient(stored.provider, stored.model or None, stored.api_key)

    settings = get_settings()
    if settings.provider_keys.get(settings.llm_provider):
        return LLMClient(settings.llm_provider)
    for name, key in settings.provider_keys.items():
        if key:
            log.info("LLM_PROVIDER %s has no key, using %s", settings.llm_provider, name)
            return LLMClient(name)
    raise AppError.config_missing("No AI provider configured: add a provider or set an API key")
