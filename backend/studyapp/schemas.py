"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. Business rules (duplicate checks, minimum
password length, email format) are enforced by the services so that the
error messages stay in one place.
"""

from pydantic import BaseModel, Field
from typing import Optional


class RegisterIn(BaseModel):
    """Payload for user registration."""
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


class LoginIn(BaseModel):
    """Payload for email/password login."""
    email: str
    password: str


class TokenOut(BaseModel):
    """Authentication response containing an access token."""
    access_token: str
    token_type: str = "bearer"
    user: dict


class ResetRequestIn(BaseModel):
    email: Optional[str] = None


class ConfirmResetIn(BaseModel):
    token: Optional[str] = None
    new_password: Optional[str] = None


class ProfileUpdateIn(BaseModel):
    """Partial profile update; omitted fields are left unchanged."""
    username: Optional[str] = None
    email: Optional[str] = None


class PasswordChangeIn(BaseModel):
    current_password: str
    new_password: str


class FriendRequestIn(BaseModel):
    receiver_username: Optional[str] = None


class FriendRequestActionIn(BaseModel):
    """`action` is either `accept` or `decline`."""
    action: str


class StudyStartIn(BaseModel):
    category: Optional[str] = None


class StudyEndIn(BaseModel):
    """Counts collected while studying.

    `duration` is in seconds; when omitted the server derives it from
    the session timestamps.
    """
    questions: int = 0
    correct: int = 0
    duration: Optional[int] = Field(default=None, ge=0)


class NotificationIn(BaseModel):
    title: str
    message: str


class NotificationSettingsIn(BaseModel):
    study_reminder: Optional[bool] = None
    friend_activity: Optional[bool] = None
    streak_reminder: Optional[bool] = None
    weekly_report: Optional[bool] = None
    reminder_time: Optional[str] = None


class PushSubscriptionIn(BaseModel):
    """Browser `PushSubscription.toJSON()` payload."""
    subscription: dict
