"""Async LLM client used as the strategy-generation oracle.

The client is constructed explicitly and passed to whatever needs it; the
application creates one per process (see ``strategist.app.get_llm_client``).

Oracle output is parsed in two stages:

1. strict ``json.loads`` (after stripping a ```json fence, if any)
2. extract the first balanced ``{...}`` block from the text and parse that

Models regularly wrap JSON in prose, so stage 2 is part of the contract.
"""
from __future__ import annotations

import json
import logging
import os
import re
from typing import Any

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


class LLMCallError(Exception):
    """LLM call failed or returned unparseable output."""
    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` block in *text*, or None.

    Braces inside JSON string literals (including escaped quotes) do not count.
    """
    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_json_payload(text: str) -> Any:
    """Parse oracle text as JSON, salvaging an embedded object when needed."""
    text = (text or "").strip()
    if not text:
        raise LLMCallError("LLM returned no content", retryable=True)
    m = _FENCE_RE.search(text)
    if m:
        text = m.group(1)
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    block = extract_json_object(text)
    if block is not None:
        try:
            return json.loads(block)
        except json.JSONDecodeError:
            pass
    raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class LLMClient:
    """Unified async LLM client supporting Anthropic, OpenAI and Azure OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        elif self.provider == "azure":
            import openai
            self.model = self.model or os.environ.get("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
            self._client = openai.AsyncAzureOpenAI(
                api_key=self._api_key or os.environ.get("AZURE_OPENAI_API_KEY"),
                azure_endpoint=self._base_url or os.environ.get("AZURE_OPENAI_ENDPOINT", ""),
                api_version=os.environ.get("AZURE_OPENAI_API_VERSION", "2024-08-01-preview"),
            )
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self, system: str, user: str, *, temperature: float = 0.7, max_tokens: int = 4096,
    ) -> str:
        """Send system+user message to the LLM, return the raw text."""
        try:
            if self.provider == "anthropic":
                kwargs: dict[str, Any] = {"system": system} if system else {}
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "user", "content": user}],
                    **kwargs,
                )
                return "".join(
                    getattr(block, "text", "") for block in response.content
                ).strip()

            messages = [{"role": "user", "content": user}]
            if system:
                messages.insert(0, {"role": "system", "content": system})
            response = await self._client.chat.completions.create(
                model=self.model,
                max_completion_tokens=max_tokens,
                temperature=temperature,
                response_format={"type": "json_object"},
                messages=messages,
            )
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

        choice = response.choices[0] if response.choices else None
        content = choice.message.content if choice else None
        if not content:
            reason = getattr(choice, "finish_reason", None)
            if reason == "content_filter":
                raise LLMCallError("LLM response was blocked by the content filter")
            if reason == "length":
                raise LLMCallError("LLM response hit the token limit", retryable=True)
            raise LLMCallError("LLM returned no content", retryable=True)
        return content

    async def call(
        self, system: str, user: str, *, temperature: float = 0.7, max_tokens: int = 4096,
    ) -> Any:
        """Send system+user message to the LLM, return parsed JSON."""
        text = await self.complete(system, user, temperature=temperature, max_tokens=max_tokens)
        log.debug("LLM %s/%s returned %d chars", self.provider, self.model, len(text))
        return parse_json_payload(text)
