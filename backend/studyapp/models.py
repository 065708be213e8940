"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Each class maps to a table; foreign keys point at `user.id` and the
repositories take care of removing dependent rows.
"""

from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint
from datetime import datetime, date, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user together with cumulative study stats.

    Fields:
    - `email`, `username`: unique identities
    - `password_hash`: hashed password string (never store plaintext)
    - `total_study_time`: seconds studied across all completed sessions
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    username: str = Field(index=True, nullable=False, unique=True)
    password_hash: str
    total_xp: int = 0
    level: int = 1
    total_study_time: int = 0
    total_problems: int = 0
    total_correct: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class FriendshipStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    declined = "declined"


class Friendship(SQLModel, table=True):
    """A friend request / friendship edge between two users.

    `user_low_id` and `user_high_id` hold the unordered pair so that the
    unique constraint allows one row per pair regardless of direction.
    """
    __table_args__ = (UniqueConstraint("user_low_id", "user_high_id", name="uq_friendship_pair"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    sender_id: int = Field(foreign_key='user.id', index=True)
    receiver_id: int = Field(foreign_key='user.id', index=True)
    user_low_id: int
    user_high_id: int
    status: FriendshipStatus = Field(default=FriendshipStatus.pending)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def other(self, user_id: int) -> int:
        """Return the id of the participant that is not `user_id`."""
        return self.receiver_id if self.sender_id == user_id else self.sender_id


class StudySession(SQLModel, table=True):
    """A timed study session; `duration` is in seconds."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    category: str = "general"
    start_time: datetime = Field(default_factory=_now, index=True)
    end_time: Optional[datetime] = None
    duration: Optional[int] = None
    questions: int = 0
    correct: int = 0
    xp_earned: int = 0


class Streak(SQLModel, table=True):
    """Marker for a calendar day on which the user had a qualifying session."""
    __table_args__ = (UniqueConstraint("user_id", "day", name="uq_streak_user_day"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    day: date


class PasswordResetToken(SQLModel, table=True):
    """Single-use password reset token keyed by email."""
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True)
    token: str = Field(index=True, unique=True)
    expires_at: datetime
    used: bool = False
    created_at: datetime = Field(default_factory=_now)


class NotificationSettings(SQLModel, table=True):
    """Per-user notification preferences.

    `reminder_time` is a local "HH:MM" string used by the client to
    schedule study reminders.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', unique=True)
    study_reminder: bool = True
    friend_activity: bool = True
    streak_reminder: bool = True
    weekly_report: bool = False
    reminder_time: str = "19:00"


class PushSubscription(SQLModel, table=True):
    """A browser push subscription (serialized JSON) owned by a user."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key='user.id', index=True)
    endpoint: str = Field(index=True, unique=True)
    subscription: str
    created_at: datetime = Field(default_factory=_now)
