"""Provider fallback and session affinity."""

import random
from unittest.mock import AsyncMock

import pytest

from personachat.core.metrics import provider_attempts_total
from personachat.features.chat.dispatcher import PROVIDERS_UNAVAILABLE_MESSAGE, ProviderDispatcher
from personachat.features.chat.providers import ProviderCallError, ProviderCandidate
from personachat.features.sessions.service import ProviderAffinityCache


class FakeClient:
    """Answers for keys in ``working``; fails for everything else."""

    def __init__(self, kind: str, working=()):
        self.kind = kind
        self.working = set(working)
        self.calls = []

    async def generate(self, prompt: str, api_key: str) -> str:
        self.calls.append(api_key)
        if api_key not in self.working:
            raise ProviderCallError(self.kind, "upstream error", status_code=503)
        return f"reply from {api_key}"


def _candidates(kind: str, count: int):
    return [ProviderCandidate(provider_id=f"{kind}:{i}", kind=kind, api_key=f"key{i}") for i in range(count)]


def _dispatcher(candidates, clients, *, max_retries=5, sleep=None, seed=7):
    return ProviderDispatcher(
        candidates,
        clients,
        ProviderAffinityCache(ttl_seconds=600, max_entries=100),
        max_retries=max_retries,
        retry_delay=1.0,
        sleep=sleep or AsyncMock(),
        rng=random.Random(seed),
    )


@pytest.mark.asyncio
async def test_only_third_provider_works():
    client = FakeClient("gemini", working={"key2"})
    sleep = AsyncMock()
    dispatcher = _dispatcher(_candidates("gemini", 3), {"gemini": client}, sleep=sleep)

    result = await dispatcher.dispatch("hello", "s1")

    assert result.success
    assert result.message == "reply from key2"
    assert result.provider_id == "gemini:2"
    assert dispatcher.cache.get("s1").provider_id == "gemini:2"
    assert sleep.await_count == result.attempts - 1


@pytest.mark.asyncio
async def test_cached_provider_is_tried_first():
    client = FakeClient("gemini", working={"key0", "key1", "key2"})
    dispatcher = _dispatcher(_candidates("gemini", 3), {"gemini": client})
    dispatcher.cache.put("s1", "gemini:1", "gemini")

    result = await dispatcher.dispatch("hello", "s1")

    assert result.provider_id == "gemini:1"
    assert result.attempts == 1
    assert client.calls == ["key1"]
    assert dispatcher.cache.get("s1").request_count == 2


@pytest.mark.asyncio
async def test_failing_cached_provider_is_evicted_and_replaced():
    gemini = FakeClient("gemini", working=set())
    deepseek = FakeClient("deepseek", working={"key0"})
    candidates = [
        ProviderCandidate("gemini:0", "gemini", "gkey"),
        ProviderCandidate("deepseek:1", "deepseek", "key0"),
    ]
    dispatcher = _dispatcher(candidates, {"gemini": gemini, "deepseek": deepseek})
    dispatcher.cache.put("s1", "gemini:0", "gemini")

    result = await dispatcher.dispatch("hello", "s1")

    assert result.success
    assert result.provider_id == "deepseek:1"
    entry = dispatcher.cache.get("s1")
    assert entry.provider_id == "deepseek:1"
    assert entry.request_count == 1  # fresh entry after eviction
    assert gemini.calls == ["gkey"]
    assert dispatcher.cache.session_stats("s1")["lastError"] == "gemini:0: gemini: upstream error"
    assert provider_attempts_total.value({"kind": "gemini", "outcome": "error"}) >= 1
    assert provider_attempts_total.value({"kind": "deepseek", "outcome": "success"}) == 1


@pytest.mark.asyncio
async def test_failed_cached_provider_is_not_retried_during_discovery():
    client = FakeClient("gemini", working={"key1"})
    sleep = AsyncMock()
    dispatcher = _dispatcher(_candidates("gemini", 2), {"gemini": client}, sleep=sleep)
    dispatcher.cache.put("s1", "gemini:0", "gemini")

    result = await dispatcher.dispatch("hello", "s1")

    assert result.provider_id == "gemini:1"
    assert result.attempts == 2
    assert client.calls == ["key0", "key1"]
    assert sleep.await_count == 0


@pytest.mark.asyncio
async def test_sole_provider_failing_from_cache_is_tried_once():
    client = FakeClient("gemini", working=set())
    sleep = AsyncMock()
    dispatcher = _dispatcher(_candidates("gemini", 1), {"gemini": client}, sleep=sleep)
    dispatcher.cache.put("s1", "gemini:0", "gemini")

    result = await dispatcher.dispatch("hello", "s1")

    assert not result.success
    assert result.attempts == 1
    assert client.calls == ["key0"]
    assert sleep.await_count == 0
    assert dispatcher.cache.get("s1") is None


@pytest.mark.asyncio
async def test_all_providers_fail():
    client = FakeClient("gemini", working=set())
    sleep = AsyncMock()
    dispatcher = _dispatcher(_candidates("gemini", 3), {"gemini": client}, sleep=sleep)

    result = await dispatcher.dispatch("hello", "s1")

    assert not result.success
    assert result.error == PROVIDERS_UNAVAILABLE_MESSAGE
    assert result.attempts == 3
    assert sleep.await_count == 2
    sleep.assert_awaited_with(1.0)
    assert dispatcher.cache.get("s1") is None


@pytest.mark.asyncio
async def test_attempts_capped_by_max_retries():
    client = FakeClient("deepseek", working=set())
    dispatcher = _dispatcher(_candidates("deepseek", 8), {"deepseek": client}, max_retries=2)

    result = await dispatcher.dispatch("hello", "s1")

    assert result.attempts == 2
    assert len(client.calls) == 2


@pytest.mark.asyncio
async def test_unexpected_client_exception_counts_as_failure():
    class Broken:
        kind = "gemini"

        async def generate(self, prompt, api_key):
            raise RuntimeError("boom")

    dispatcher = _dispatcher(_candidates("gemini", 1), {"gemini": Broken()})
    result = await dispatcher.dispatch("hello", "s1")
    assert not result.success
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_empty_pool():
    dispatcher = _dispatcher([], {})
    result = await dispatcher.dispatch("hello", "s1")
    assert not result.success
    assert result.attempts == 0
