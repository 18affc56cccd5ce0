"""
User Repository

Thin async data access over the users table. Each call opens its own
session so a failed write never poisons a caller's later writes.
"""

from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select

from brickai.core.clock import utc_now
from brickai.core.logging import get_logger
from brickai.modules.users.models import User

logger = get_logger(__name__)


class UserRepository:
    """Repository for subject rows."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    async def get_by_subject(self, subject: str) -> Optional[User]:
        async with self._session_maker() as session:
            result = await session.execute(select(User).where(User.apple_user_id == subject))
            return result.scalar_one_or_none()

    async def upsert_identity(
        self,
        subject: str,
        refresh_token: Optional[str],
        email: Optional[str] = None
    ) -> User:
        """Insert a new subject with zero credits, or refresh an existing one.

        An existing row keeps its stored refresh token and email unless new
        values are supplied.
        """
        async with self._session_maker() as session:
            result = await session.execute(select(User).where(User.apple_user_id == subject))
            user = result.scalar_one_or_none()

            if user is None:
                user = User(
                    apple_user_id=subject,
                    apple_refresh_token=refresh_token,
                    email=email,
                    usage_credits=0
                )
                created = True
            else:
                if refresh_token:
                    user.apple_refresh_token = refresh_token
                if email:
                    user.email = email
                user.updated_at = utc_now()
                created = False

            session.add(user)
            await session.commit()
            await session.refresh(user)

        logger.info("user_upserted", user_id=user.id, created=created)
        return user

    async def set_refresh_token(self, subject: str, refresh_token: Optional[str]) -> bool:
        """Overwrite (or clear, with None) the stored provider refresh token."""
        async with self._session_maker() as session:
            result = await session.execute(
                update(User)
                .where(User.apple_user_id == subject)
                .values(apple_refresh_token=refresh_token, updated_at=utc_now())
            )
            await session.commit()
            return result.rowcount > 0

    async def modify_credits(self, subject: str, delta: int) -> Optional[User]:
        """Add (or with a negative delta, remove) credits, never going below zero."""
        async with self._session_maker() as session:
            result = await session.execute(select(User).where(User.apple_user_id == subject))
            user = result.scalar_one_or_none()
            if user is None:
                return None

            new_total = user.usage_credits + delta
            if new_total < 0:
                logger.warning(
                    "credits_clamped",
                    user_id=user.id,
                    requested_total=new_total
                )
            user.set_credits(new_total)

            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user
