import logging
from typing import Optional

from core.db import AsyncSessionLocal
from core.errors import UpstreamError
from core.logging_setup import log_step
from models.profiles import Profile
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

LOG_STEP = "PROFILES"


async def upsert_profile(user_id: str, name: str | None, email: str | None) -> None:
    with log_step(LOG_STEP):
        try:
            async with AsyncSessionLocal() as session:
                stmt = insert(Profile).values(id=user_id, name=name, email=email)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[Profile.id],
                    set_={
                        "name": stmt.excluded.name,
                        "email": stmt.excluded.email,
                        "updated_at": func.now(),
                    },
                )
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to save profile {user_id}: {e}")
            raise UpstreamError("Failed to save user profile.") from e


async def get_profile(user_id: str) -> Optional[Profile]:
    with log_step(LOG_STEP):
        try:
            async with AsyncSessionLocal() as session:
                result = await session.execute(select(Profile).where(Profile.id == user_id))
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Failed to read profile {user_id}: {e}")
            raise UpstreamError("Failed to read user profile.") from e


async def update_profile_name(user_id: str, name: str) -> bool:
    with log_step(LOG_STEP):
        try:
            async with AsyncSessionLocal() as session:
                result = await session.execute(
                    update(Profile)
                    .where(Profile.id == user_id)
                    .values(name=name, updated_at=func.now())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to update profile {user_id}: {e}")
            raise UpstreamError("Failed to update user profile.") from e

    return (result.rowcount or 0) > 0
