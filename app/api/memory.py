"""
User memory API.

GET    /v1/user/memory                       — All memory rows for the current user
DELETE /v1/user/memory?category_id=<id|global>  — Clear one scope (omit to clear all)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_user, get_db
from ..services.memory import ALL_CATEGORIES, clear_memory, get_all_memories_for_user

logger = logging.getLogger(__name__)

memory_router = APIRouter(prefix="/user/memory", tags=["memory"])


class MemoryOut(BaseModel):
    id: int
    category_id: Optional[int] = None
    scope: str
    facts: list[str]
    updated_at: str


class MemoryList(BaseModel):
    memories: list[MemoryOut]
    total_facts: int


@memory_router.get("", response_model=MemoryList)
async def get_memories(
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    memories = await get_all_memories_for_user(db, user.user_id)
    return MemoryList(
        memories=[
            MemoryOut(
                id=m.id,
                category_id=m.category_id,
                scope="global" if m.category_id is None else "category",
                facts=m.facts,
                updated_at=m.updated_at.isoformat(),
            )
            for m in memories
        ],
        total_facts=sum(len(m.facts) for m in memories),
    )


@memory_router.delete("")
async def delete_memories(
    category_id: Optional[str] = None,
    user: AuthenticatedUser = Depends(get_user),
    db: AsyncSession = Depends(get_db),
):
    """category_id omitted → everything; 'global' → the global row; a number → that category."""
    if category_id is None:
        scope = ALL_CATEGORIES
    elif category_id == "global":
        scope = None
    else:
        try:
            scope = int(category_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="category_id must be an integer or 'global'")

    removed = await clear_memory(db, user.user_id, scope)
    return {"deleted": removed}
