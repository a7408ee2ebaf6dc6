"""Chat API.

POST /chat: rate-limited, quota-checked persona chat with provider fallback.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict

from personachat.core.auth import get_current_user_id
from personachat.core.logging import get_request_id

router = APIRouter(tags=["chat"])


class ChatRequest(BaseModel):
    # Fields are optional so auth and rate limiting run before content checks
    model_config = ConfigDict(extra="ignore")

    prompt: Optional[str] = None
    persona: Optional[str] = None
    sessionId: Optional[str] = None


@router.post("/chat")
async def chat_endpoint(
    body: ChatRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
):
    rid = getattr(request.state, "request_id", None) or get_request_id()
    gatekeeper = request.app.state.chat_gatekeeper
    return await gatekeeper.handle(
        user_id,
        prompt=body.prompt,
        persona=body.persona,
        session_id=body.sessionId,
        request_id=rid,
    )
