"""Chat session affinity stats and housekeeping."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from personachat.core.auth import get_current_user_id
from personachat.core.errors import NotFoundError, ValidationError
from personachat.features.sessions.service import affinity_cache

logger = logging.getLogger("personachat")

router = APIRouter(prefix="/session", tags=["sessions"])


class SessionActionRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    action: Optional[str] = None
    sessionId: Optional[str] = None


@router.get("")
def session_overview(user_id: str = Depends(get_current_user_id)):
    return {"success": True, "stats": affinity_cache.manager_stats()}


@router.post("")
def session_action(body: SessionActionRequest, user_id: str = Depends(get_current_user_id)):
    action = (body.action or "").strip()

    if action == "stats":
        if not body.sessionId:
            raise ValidationError("sessionId is required")
        stats = affinity_cache.session_stats(body.sessionId)
        if stats is None:
            raise NotFoundError("Session not found")
        return {"success": True, "stats": stats}

    if action == "clear":
        if body.sessionId:
            affinity_cache.evict(body.sessionId)
            return {"success": True, "message": "Session cleared"}
        affinity_cache.clear()
        logger.info("[sessions] cache cleared", extra={"user_id": user_id})
        return {"success": True, "message": "All sessions cleared"}

    if action == "cleanup":
        removed = affinity_cache.sweep()
        return {"success": True, "removed": removed, "stats": affinity_cache.manager_stats()}

    if action == "generate":
        return {"success": True, "sessionId": affinity_cache.generate_session_id()}

    raise ValidationError("Invalid action")
