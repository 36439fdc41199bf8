"""TextGen: single-turn text generation used as a mode execution boundary."""

from __future__ import annotations

import logging

import anyio
import httpx

logger = logging.getLogger(__name__)

ENDPOINTS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
    "google": "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
}

_MAX_RETRIES = 3
_RETRY_STATUSES = {429, 500, 502, 503, 529}
_TRANSIENT_ERRORS = (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError)


class HttpTextGen:
    """HTTP text generation against Anthropic, OpenAI or Google."""

    def __init__(
        self,
        provider: str,
        model: str,
        api_key: str,
        max_tokens: int = 8192,
        timeout_sec: float = 300,
    ):
        if provider not in ENDPOINTS:
            raise ValueError(f"Unknown provider: {provider}")
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.timeout_sec = timeout_sec

    async def chat(self, system: str, user: str) -> str:
        """Send prompt, return text response."""
        if self.provider == "anthropic":
            return await self._call_anthropic(system, user)
        if self.provider == "google":
            return await self._call_google(system, user)
        return await self._call_openai(system, user)

    async def _post(self, url: str, **kwargs) -> httpx.Response:
        """POST with exponential backoff on throttling and transient network errors."""
        async with httpx.AsyncClient(timeout=self.timeout_sec) as client:
            for attempt in range(_MAX_RETRIES + 1):
                last = attempt == _MAX_RETRIES
                try:
                    resp = await client.post(url, **kwargs)
                except _TRANSIENT_ERRORS as exc:
                    if last:
                        raise
                    logger.warning("%s request failed (%s), retrying", self.provider, exc)
                    await anyio.sleep(2 ** attempt)
                    continue
                if resp.status_code in _RETRY_STATUSES and not last:
                    logger.warning("%s returned %d, retrying", self.provider, resp.status_code)
                    await resp.aclose()
                    await anyio.sleep(2 ** attempt)
                    continue
                resp.raise_for_status()
                return resp
        raise RuntimeError("unreachable")  # pragma: no cover

    async def _call_anthropic(self, system: str, user: str) -> str:
        resp = await self._post(
            ENDPOINTS["anthropic"],
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json={
                "model": self.model,
                "max_tokens": self.max_tokens,
                "system": system,
                "messages": [{"role": "user", "content": user}],
            },
        )
        blocks = resp.json()["content"]
        return "".join(b.get("text", "") for b in blocks if b.get("type", "text") == "text")

    async def _call_openai(self, system: str, user: str) -> str:
        resp = await self._post(
            ENDPOINTS["openai"],
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            },
        )
        return resp.json()["choices"][0]["message"]["content"]

    async def _call_google(self, system: str, user: str) -> str:
        url = ENDPOINTS["google"].format(model=self.model)
        resp = await self._post(
            url,
            headers={"x-goog-api-key": self.api_key},
            json={
                "system_instruction": {"parts": [{"text": system}]},
                "contents": [{"parts": [{"text": user}]}],
            },
        )
        parts = resp.json()["candidates"][0]["content"]["parts"]
        return "".join(p.get("text", "") for p in parts)


class ClaudeCodeTextGen:
    """Text generation via local Claude Code CLI auth — no API key needed.

    Uses claude_code_sdk.query() with max_turns=1 and no tools.
    """

    def __init__(self, model: str):
        self.model = model

    async def chat(self, system: str, user: str) -> str:
        from claude_code_sdk import ClaudeCodeOptions, Message, query

        options = ClaudeCodeOptions(
            model=self.model,
            max_turns=1,
            allowed_tools=[],
            system_prompt=system,
        )
        parts: list[str] = []
        async for message in query(prompt=user, options=options):
            if isinstance(message, Message):
                for block in message.content:
                    if hasattr(block, "text"):
                        parts.append(block.text)
        return "".join(parts)
