"""
Upstream model providers.

Each client turns a prompt into a short reply or raises ProviderCallError.
Clients never log or return their API key; callers refer to a key by its
candidate id (``gemini:0``, ``deepseek:1``, ...).
"""

import html
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

import httpx

from personachat.core.config import settings, split_keys


logger = logging.getLogger(__name__)

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
DEEPSEEK_URL = "https://api.deepseek.com/v1/chat/completions"

MAX_OUTPUT_TOKENS = 150
TEMPERATURE = 0.9
TOP_P = 0.95
MAX_REPLY_CHARS = 500

_SCRIPT_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


class ProviderCallError(Exception):
    """An upstream call failed (transport, status or payload)."""

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderCandidate:
    provider_id: str
    kind: str
    api_key: str

    def __repr__(self) -> str:
        return f"ProviderCandidate(provider_id={self.provider_id!r}, kind={self.kind!r})"


class ProviderClient(Protocol):
    kind: str

    async def generate(self, prompt: str, api_key: str) -> str:
        ...


def sanitize_reply(text: str) -> str:
    """Strip script blocks and markup, then cap the length."""
    cleaned = _SCRIPT_RE.sub("", text or "")
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = html.unescape(cleaned).strip()
    return cleaned[:MAX_REPLY_CHARS]


class GeminiClient:
    kind = "gemini"

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.model = model or settings.GEMINI_MODEL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.transport = transport

    async def generate(self, prompt: str, api_key: str) -> str:
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": MAX_OUTPUT_TOKENS,
                "temperature": TEMPERATURE,
                "topP": TOP_P,
            },
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    GEMINI_URL.format(model=self.model),
                    params={"key": api_key},
                    json=body,
                )
        except httpx.HTTPError as e:
            raise ProviderCallError(self.kind, f"transport error: {type(e).__name__}")

        if response.status_code >= 400:
            raise ProviderCallError(self.kind, "upstream error", status_code=response.status_code)
        try:
            text = response.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ProviderCallError(self.kind, "malformed response")
        reply = sanitize_reply(text)
        if not reply:
            raise ProviderCallError(self.kind, "empty response")
        return reply


class DeepSeekClient:
    kind = "deepseek"

    def __init__(self, model: Optional[str] = None, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.model = model or settings.DEEPSEEK_MODEL
        self.timeout = timeout or settings.PROVIDER_TIMEOUT_SECONDS
        self.transport = transport

    async def generate(self, prompt: str, api_key: str) -> str:
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": MAX_OUTPUT_TOKENS,
            "temperature": TEMPERATURE,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    DEEPSEEK_URL,
                    headers={"Authorization": f"Bearer {api_key}"},
                    json=body,
                )
        except httpx.HTTPError as e:
            raise ProviderCallError(self.kind, f"transport error: {type(e).__name__}")

        if response.status_code >= 400:
            raise ProviderCallError(self.kind, "upstream error", status_code=response.status_code)
        try:
            text = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            raise ProviderCallError(self.kind, "malformed response")
        reply = sanitize_reply(text)
        if not reply:
            raise ProviderCallError(self.kind, "empty response")
        return reply


def default_clients() -> Dict[str, ProviderClient]:
    return {"gemini": GeminiClient(), "deepseek": DeepSeekClient()}


def build_candidates(gemini_keys: Optional[str] = None, deepseek_keys: Optional[str] = None) -> List[ProviderCandidate]:
    """One candidate per configured key, numbered across the whole pool."""
    gemini = split_keys(settings.GEMINI_API_KEYS if gemini_keys is None else gemini_keys)
    deepseek = split_keys(settings.DEEPSEEK_API_KEYS if deepseek_keys is None else deepseek_keys)
    candidates: List[ProviderCandidate] = []
    for kind, keys in (("gemini", gemini), ("deepseek", deepseek)):
        for key in keys:
            candidates.append(ProviderCandidate(provider_id=f"{kind}:{len(candidates)}", kind=kind, api_key=key))
    return candidates
