"""
User Model

One row per Sign in with Apple subject. Holds the provider refresh token
that backs session refresh, and the usage credit balance.
"""

from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime

from sqlalchemy import DateTime

from brickai.core.clock import utc_now


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: Optional[int] = Field(default=None, primary_key=True)

    # Apple's stable subject identifier; immutable once written
    apple_user_id: str = Field(index=True, unique=True, nullable=False)
    apple_refresh_token: Optional[str] = None
    email: Optional[str] = None

    usage_credits: int = Field(default=0, nullable=False)

    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))

    def set_credits(self, credits: int):
        """Set the balance, clamped at zero."""
        self.usage_credits = max(0, credits)
        self.updated_at = utc_now()
