import logging
from typing import Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opswatch.src.models.user import User
from opswatch.src.services.errors import NotFoundError

logger = logging.getLogger(__name__)

async def get_user(session: AsyncSession, user_id: UUID) -> Optional[User]:
    return await session.get(User, user_id)

async def get_user_names(session: AsyncSession, user_ids: Iterable[Optional[UUID]]) -> Dict[UUID, str]:
    ids = {user_id for user_id in user_ids if user_id is not None}
    if not ids:
        return {}
    result = await session.execute(select(User.id, User.name).where(User.id.in_(ids)))
    return {row.id: row.name for row in result}

async def get_delivery_address(session: AsyncSession, user_id: UUID) -> str:
    """Address notifications go to: the delivery email if set, else the login email."""
    user = await get_user(session, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user.delivery_email or user.email or ""
