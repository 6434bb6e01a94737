"""
Chat API.

POST /v1/chat — one conversation turn
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_user, get_db
from ..orchestrator.orchestrator import handle_message
from ..orchestrator.state import ThreadAccessError

logger = logging.getLogger(__name__)

chat_router = APIRouter(tags=["chat"])


class ChatRequest(BaseModel):
    message: str
    thread_id: Optional[str] = None
    category_ids: Optional[list[int]] = None  # None keeps the thread's current selection


class ChatResponse(BaseModel):
    content: str
    thread_id: str
    message_id: str
    skills: list[dict] = []
    degraded: list[str] = []
    summarization: Optional[str] = None
    memory: Optional[str] = None
    elapsed_ms: int = 0


@chat_router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    """Send a message. Skills, memory and thread summary are folded into the context."""
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Message is empty")

    try:
        result = await handle_message(
            db,
            user_id=user.user_id,
            message=request.message,
            thread_id=request.thread_id,
            category_ids=request.category_ids,
        )
    except ThreadAccessError:
        raise HTTPException(status_code=403, detail="Access denied")

    return ChatResponse(
        content=result.content,
        thread_id=result.thread_id,
        message_id=result.message_id,
        skills=result.skills,
        degraded=result.degraded,
        summarization=result.summarization,
        memory=result.memory,
        elapsed_ms=result.elapsed_ms,
    )
