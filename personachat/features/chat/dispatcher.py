"""
Provider discovery and fallback.

A session first retries the provider that last answered it. If that fails
(or the session is new) the remaining candidates are shuffled and tried in order,
with a fixed pause between attempts, until one succeeds or the attempt
budget runs out. The winner is remembered for the session.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from personachat.core.metrics import provider_attempts_total
from personachat.features.chat.providers import ProviderCallError, ProviderCandidate, ProviderClient
from personachat.features.sessions.service import ProviderAffinityCache


logger = logging.getLogger(__name__)

PROVIDERS_UNAVAILABLE_MESSAGE = "All API providers are temporarily unavailable"


@dataclass(frozen=True)
class DispatchResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    provider_id: Optional[str] = None
    attempts: int = 0


class ProviderDispatcher:
    def __init__(
        self,
        candidates: Sequence[ProviderCandidate],
        clients: Dict[str, ProviderClient],
        cache: ProviderAffinityCache,
        *,
        max_retries: int = 5,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.candidates = list(candidates)
        self.clients = clients
        self.cache = cache
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.rng = rng or random.Random()

    def _candidate(self, provider_id: str) -> Optional[ProviderCandidate]:
        for candidate in self.candidates:
            if candidate.provider_id == provider_id:
                return candidate
        return None

    async def _attempt(self, candidate: ProviderCandidate, prompt: str) -> Tuple[Optional[str], Optional[str]]:
        """Returns (reply, None) on success or (None, error) on failure."""
        client = self.clients.get(candidate.kind)
        if client is None:
            logger.warning("[dispatch] no client for provider kind", extra={"provider_id": candidate.provider_id})
            return None, f"{candidate.provider_id}: no client"
        try:
            reply = await client.generate(prompt, candidate.api_key)
        except ProviderCallError as e:
            provider_attempts_total.inc(labels={"kind": candidate.kind, "outcome": "error"})
            logger.info(
                "[dispatch] provider failed",
                extra={"provider_id": candidate.provider_id, "status": e.status_code},
            )
            return None, f"{candidate.provider_id}: {e}"
        except Exception as e:
            provider_attempts_total.inc(labels={"kind": candidate.kind, "outcome": "error"})
            logger.exception("[dispatch] provider raised unexpectedly", extra={"provider_id": candidate.provider_id})
            return None, f"{candidate.provider_id}: {type(e).__name__}"
        provider_attempts_total.inc(labels={"kind": candidate.kind, "outcome": "success"})
        return reply, None

    async def dispatch(self, prompt: str, session_id: str) -> DispatchResult:
        attempts = 0
        failed_id: Optional[str] = None
        cached_error: Optional[str] = None

        cached = self.cache.get(session_id)
        if cached is not None:
            candidate = self._candidate(cached.provider_id)
            if candidate is not None:
                attempts += 1
                reply, cached_error = await self._attempt(candidate, prompt)
                if reply is not None:
                    self.cache.put(session_id, candidate.provider_id, candidate.kind)
                    return DispatchResult(True, message=reply, provider_id=candidate.provider_id, attempts=attempts)
                failed_id = candidate.provider_id
            self.cache.evict(session_id)

        pool: List[ProviderCandidate] = [c for c in self.candidates if c.provider_id != failed_id]
        self.rng.shuffle(pool)
        budget = min(self.max_retries, len(pool))

        for index, candidate in enumerate(pool[:budget]):
            if index > 0 and self.retry_delay > 0:
                await self.sleep(self.retry_delay)
            attempts += 1
            reply, _ = await self._attempt(candidate, prompt)
            if reply is not None:
                self.cache.put(session_id, candidate.provider_id, candidate.kind)
                if cached_error:
                    self.cache.record_error(session_id, cached_error)
                logger.info(
                    "[dispatch] provider selected",
                    extra={"session_id": session_id, "provider_id": candidate.provider_id, "attempts": attempts},
                )
                return DispatchResult(True, message=reply, provider_id=candidate.provider_id, attempts=attempts)

        logger.warning("[dispatch] all providers failed", extra={"session_id": session_id, "attempts": attempts})
        return DispatchResult(False, error=PROVIDERS_UNAVAILABLE_MESSAGE, attempts=attempts)
