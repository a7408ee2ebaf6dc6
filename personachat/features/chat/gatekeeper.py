"""
Chat request pipeline.

Order per request: rate limit, input validation, entitlement resolution,
quota pre-check, provider dispatch, quota consumption. A message is only
counted once a provider has answered.
"""

import logging
import re
from typing import Any, Dict, Optional, Tuple

from personachat.core.config import settings
from personachat.core.errors import (
    ProvidersUnavailableError,
    QuotaExceededError,
    RateLimitError,
    ValidationError,
)
from personachat.core.logging import log_event
from personachat.core.metrics import quota_blocked_total, ratelimit_block_total
from personachat.core.rate_limit import FixedWindowLimiter
from personachat.features.billing.service import resolve_user_entitlement
from personachat.features.chat.dispatcher import PROVIDERS_UNAVAILABLE_MESSAGE, ProviderDispatcher
from personachat.features.chat.providers import build_candidates, default_clients
from personachat.features.sessions.service import affinity_cache
from personachat.features.usage.service import check_quota, consume, quota_exceeded_message


logger = logging.getLogger(__name__)

DENY_PATTERNS = (
    re.compile(r"system|admin|root|sudo", re.IGNORECASE),
    re.compile(r"exec|eval|script|javascript", re.IGNORECASE),
    re.compile(r"<script>|</script>", re.IGNORECASE),
    re.compile(r"onerror|onload|onclick", re.IGNORECASE),
)


def validate_chat_input(
    prompt: Any,
    persona: Any,
    *,
    max_prompt_length: int,
    max_persona_length: int,
) -> Tuple[str, str]:
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError("Prompt is required")
    if len(prompt) > max_prompt_length:
        raise ValidationError(f"Prompt too long (max {max_prompt_length} characters)")
    if not isinstance(persona, str) or not persona.strip():
        raise ValidationError("Persona is required")
    if len(persona) > max_persona_length:
        raise ValidationError(f"Persona too long (max {max_persona_length} characters)")
    if any(pattern.search(prompt) for pattern in DENY_PATTERNS):
        raise ValidationError("Invalid content detected")
    return prompt.strip(), persona.strip()


class ChatGatekeeper:
    def __init__(
        self,
        dispatcher: ProviderDispatcher,
        limiter: FixedWindowLimiter,
        *,
        max_prompt_length: Optional[int] = None,
        max_persona_length: Optional[int] = None,
    ):
        self.dispatcher = dispatcher
        self.limiter = limiter
        self.max_prompt_length = max_prompt_length or settings.MAX_PROMPT_LENGTH
        self.max_persona_length = max_persona_length or settings.MAX_PERSONA_LENGTH

    async def handle(
        self,
        uid: str,
        *,
        prompt: Any,
        persona: Any,
        session_id: Optional[str] = None,
        request_id: Optional[str] = None,
        now: Optional[Any] = None,
    ) -> Dict[str, Any]:
        if not self.limiter.allow(f"chat:{uid}"):
            ratelimit_block_total.inc(labels={"scope": "chat"})
            raise RateLimitError("Rate limit exceeded. Please slow down.", request_id=request_id)

        prompt_text, persona_name = validate_chat_input(
            prompt,
            persona,
            max_prompt_length=self.max_prompt_length,
            max_persona_length=self.max_persona_length,
        )
        sid = session_id.strip() if isinstance(session_id, str) and session_id.strip() else None
        if sid is None:
            sid = self.dispatcher.cache.generate_session_id()

        user, _, entitlement = resolve_user_entitlement(uid, now=now)
        quota = check_quota(user, entitlement.daily_limit, now)
        if not quota.allowed:
            quota_blocked_total.inc(labels={"plan": entitlement.plan.value})
            raise QuotaExceededError(quota_exceeded_message(entitlement.daily_limit), request_id=request_id)

        result = await self.dispatcher.dispatch(prompt_text, sid)
        if not result.success:
            log_event(
                "warning",
                "chat.providers_unavailable",
                request_id=request_id,
                user_id=uid,
                session_id=sid,
                error_code=ProvidersUnavailableError.code,
                extra={"attempts": result.attempts, "persona": persona_name},
            )
            raise ProvidersUnavailableError(PROVIDERS_UNAVAILABLE_MESSAGE, request_id=request_id)

        try:
            usage = consume(uid, entitlement.daily_limit, now)
            remaining = usage.remaining
        except QuotaExceededError:
            # A concurrent request used the last slot after our pre-check
            logger.info("[chat] quota overshoot tolerated", extra={"user_id": uid})
            remaining = 0

        log_event(
            "info",
            "chat.reply",
            request_id=request_id,
            user_id=uid,
            session_id=sid,
            event_type="chat",
            extra={"provider_id": result.provider_id, "persona": persona_name, "plan": entitlement.plan.value},
        )
        return {
            "success": True,
            "message": result.message,
            "sessionId": sid,
            "remainingMessages": "unlimited" if remaining < 0 else remaining,
        }


def build_default_gatekeeper(limiter: Optional[FixedWindowLimiter] = None) -> ChatGatekeeper:
    """Gatekeeper wired to the configured key pools and the shared affinity cache."""
    dispatcher = ProviderDispatcher(
        build_candidates(),
        default_clients(),
        affinity_cache,
        max_retries=settings.PROVIDER_MAX_RETRIES,
        retry_delay=settings.PROVIDER_RETRY_DELAY_SECONDS,
    )
    return ChatGatekeeper(dispatcher, limiter or FixedWindowLimiter(settings.CHAT_RATE_LIMIT_PER_MINUTE))
