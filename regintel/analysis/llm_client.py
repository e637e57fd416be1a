"""Minimal JSON-mode chat client for the analysis capability.

OpenAI is preferred when both keys are configured. Transport problems become
`TransientFetchError` (retried by the dispatcher); a rejected key becomes
`ServiceUnavailable`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import requests

from regintel.config import Settings
from regintel.errors import InvalidResponseError, ServiceUnavailable, TransientFetchError


logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


def parse_json_text(text: str) -> Dict[str, Any]:
    """Parse a model answer, tolerating ```json fences."""
    clean_text = (text or "").strip()
    if clean_text.startswith("```json"):
        clean_text = clean_text[7:]
    if clean_text.startswith("```"):
        clean_text = clean_text[3:]
    if clean_text.endswith("```"):
        clean_text = clean_text[:-3]
    clean_text = clean_text.strip()
    try:
        data = json.loads(clean_text)
    except json.JSONDecodeError as e:
        raise InvalidResponseError(f"model response was not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidResponseError("model response JSON is not an object")
    return data


class LLMClient:
    def __init__(
        self,
        *,
        provider: str,
        api_key: str,
        model: str,
        timeout: int = 120,
        temperature: float = 0.1,
        max_tokens: int = 2000,
        session: Optional[requests.Session] = None,
    ):
        self.provider = provider
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings, *, session: Optional[requests.Session] = None) -> "LLMClient":
        provider = settings.analysis_provider
        if provider == "openai":
            return cls(
                provider=provider,
                api_key=settings.openai_api_key,
                model=settings.openai_model,
                timeout=settings.analysis_timeout,
                session=session,
            )
        if provider == "anthropic":
            return cls(
                provider=provider,
                api_key=settings.anthropic_api_key,
                model=settings.anthropic_model,
                timeout=settings.analysis_timeout,
                session=session,
            )
        logger.warning("No LLM API key found - analysis will be unavailable")
        return cls(provider="", api_key="", model="", timeout=settings.analysis_timeout, session=session)

    def is_available(self) -> bool:
        return bool(self.api_key) and self.provider in ("openai", "anthropic")

    def complete_json(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        if not self.is_available():
            raise ServiceUnavailable("no LLM API key configured")
        if self.provider == "openai":
            url = OPENAI_URL
            headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
            body = {
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                "response_format": {"type": "json_object"},
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            }
        else:
            url = ANTHROPIC_URL
            headers = {
                "x-api-key": self.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            }
            body = {
                "model": self.model,
                "system": system_prompt,
                "messages": [{"role": "user", "content": user_prompt}],
                "temperature": self.temperature,
                "max_tokens": self.max_tokens,
            }

        try:
            resp = self.session.post(url, headers=headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientFetchError(f"{self.provider} request failed: {e}") from e

        if resp.status_code in (401, 403):
            raise ServiceUnavailable(f"{self.provider} rejected the API key (HTTP {resp.status_code})")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientFetchError(f"{self.provider} API error: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise InvalidResponseError(f"{self.provider} API error: HTTP {resp.status_code} - {resp.text[:300]}")

        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidResponseError(f"{self.provider} returned non-JSON body") from e

        try:
            if self.provider == "openai":
                content = data["choices"][0]["message"]["content"]
            else:
                content = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidResponseError(f"unexpected {self.provider} response shape") from e

        usage = data.get("usage") or {}
        if usage:
            logger.info(f"{self.provider} usage: {usage}")
        return parse_json_text(content)
