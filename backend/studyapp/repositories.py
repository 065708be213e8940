"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
friendships, study sessions, streak days, reset tokens, notification
preferences). Repositories return SQLModel objects and perform
commits/refreshes where appropriate.
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Sequence
from sqlmodel import Session, select
from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        return self.save(user)

    def save(self, user: models.User) -> models.User:
        """Commit `user`; a unique email/username clash becomes `ValueError`."""
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ValueError("email or username already in use")
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.email == email)
        return self.session.exec(stmt).first()

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def list_by_ids(self, user_ids: Sequence[int]) -> List[models.User]:
        if not user_ids:
            return []
        stmt = select(models.User).where(models.User.id.in_(list(user_ids)))
        return self.session.exec(stmt).all()

    def list_all(self) -> List[models.User]:
        return self.session.exec(select(models.User).order_by(models.User.id)).all()

    def delete(self, user: models.User) -> None:
        """Delete `user` and every row that belongs to them."""
        uid = user.id
        for model, column in (
            (models.StudySession, models.StudySession.user_id),
            (models.Streak, models.Streak.user_id),
            (models.NotificationSettings, models.NotificationSettings.user_id),
            (models.PushSubscription, models.PushSubscription.user_id),
        ):
            for row in self.session.exec(select(model).where(column == uid)).all():
                self.session.delete(row)
        friendships = self.session.exec(
            select(models.Friendship).where(
                or_(models.Friendship.sender_id == uid, models.Friendship.receiver_id == uid)
            )
        ).all()
        for row in friendships:
            self.session.delete(row)
        tokens = self.session.exec(
            select(models.PasswordResetToken).where(models.PasswordResetToken.email == user.email)
        ).all()
        for row in tokens:
            self.session.delete(row)
        self.session.delete(user)
        self.session.commit()


class FriendshipRepository:
    """Queries over the friendship graph."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, friendship_id: int) -> Optional[models.Friendship]:
        return self.session.get(models.Friendship, friendship_id)

    def get_pair(self, user_a: int, user_b: int) -> Optional[models.Friendship]:
        """Return the single row for the unordered pair, if any."""
        low, high = sorted((user_a, user_b))
        stmt = select(models.Friendship).where(
            models.Friendship.user_low_id == low,
            models.Friendship.user_high_id == high,
        )
        return self.session.exec(stmt).first()

    def create(self, sender_id: int, receiver_id: int) -> models.Friendship:
        low, high = sorted((sender_id, receiver_id))
        friendship = models.Friendship(
            sender_id=sender_id,
            receiver_id=receiver_id,
            user_low_id=low,
            user_high_id=high,
        )
        self.session.add(friendship)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ValueError('friendship already exists')
        self.session.refresh(friendship)
        return friendship

    def save(self, friendship: models.Friendship) -> models.Friendship:
        self.session.add(friendship)
        self.session.commit()
        self.session.refresh(friendship)
        return friendship

    def delete(self, friendship: models.Friendship) -> None:
        self.session.delete(friendship)
        self.session.commit()

    def list_accepted(self, user_id: int) -> List[models.Friendship]:
        """Accepted friendships involving `user_id`, most recently updated first."""
        stmt = select(models.Friendship).where(
            and_(
                or_(models.Friendship.sender_id == user_id, models.Friendship.receiver_id == user_id),
                models.Friendship.status == models.FriendshipStatus.accepted,
            )
        ).order_by(models.Friendship.updated_at.desc(), models.Friendship.id.desc())
        return self.session.exec(stmt).all()

    def list_pending_received(self, user_id: int) -> List[models.Friendship]:
        stmt = select(models.Friendship).where(
            models.Friendship.receiver_id == user_id,
            models.Friendship.status == models.FriendshipStatus.pending,
        ).order_by(models.Friendship.created_at.desc(), models.Friendship.id.desc())
        return self.session.exec(stmt).all()

    def list_pending_sent(self, user_id: int) -> List[models.Friendship]:
        stmt = select(models.Friendship).where(
            models.Friendship.sender_id == user_id,
            models.Friendship.status == models.FriendshipStatus.pending,
        ).order_by(models.Friendship.created_at.desc(), models.Friendship.id.desc())
        return self.session.exec(stmt).all()

    def friend_ids(self, user_id: int) -> List[int]:
        return [f.other(user_id) for f in self.list_accepted(user_id)]


class StudySessionRepository:
    """Persist study sessions and aggregate them for stats and rankings."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, study: models.StudySession) -> models.StudySession:
        self.session.add(study)
        self.session.commit()
        self.session.refresh(study)
        return study

    def get(self, session_id: int) -> Optional[models.StudySession]:
        return self.session.get(models.StudySession, session_id)

    def list_recent(self, user_id: int, limit: int = 20) -> List[models.StudySession]:
        stmt = select(models.StudySession).where(
            models.StudySession.user_id == user_id
        ).order_by(models.StudySession.start_time.desc(), models.StudySession.id.desc()).limit(limit)
        return self.session.exec(stmt).all()

    def list_completed_since(self, user_id: int, start: datetime) -> List[models.StudySession]:
        stmt = select(models.StudySession).where(
            models.StudySession.user_id == user_id,
            models.StudySession.end_time.is_not(None),
            models.StudySession.start_time >= start,
        )
        return self.session.exec(stmt).all()

    def totals_since(self, start: datetime, user_ids: Optional[Sequence[int]] = None) -> Dict[int, dict]:
        """Sum xp/duration/questions of completed sessions per user since `start`."""
        stmt = select(
            models.StudySession.user_id,
            func.coalesce(func.sum(models.StudySession.xp_earned), 0),
            func.coalesce(func.sum(models.StudySession.duration), 0),
            func.coalesce(func.sum(models.StudySession.questions), 0),
        ).where(
            models.StudySession.end_time.is_not(None),
            models.StudySession.start_time >= start,
        ).group_by(models.StudySession.user_id)
        if user_ids is not None:
            stmt = stmt.where(models.StudySession.user_id.in_(list(user_ids)))
        out = {}
        for user_id, xp, duration, questions in self.session.exec(stmt).all():
            out[user_id] = {'xp': int(xp), 'studyTime': int(duration), 'problems': int(questions)}
        return out


class StreakRepository:
    """Per-day study markers."""
    def __init__(self, session: Session):
        self.session = session

    def add_day(self, user_id: int, day: date) -> bool:
        """Record `day` for `user_id`; return False when it was already recorded."""
        stmt = select(models.Streak.id).where(models.Streak.user_id == user_id, models.Streak.day == day)
        if self.session.exec(stmt).first() is not None:
            return False
        self.session.add(models.Streak(user_id=user_id, day=day))
        try:
            self.session.commit()
        except IntegrityError:
            # a concurrent request recorded the same day first
            self.session.rollback()
            return False
        return True

    def list_days(self, user_id: int) -> List[date]:
        stmt = select(models.Streak.day).where(models.Streak.user_id == user_id).order_by(models.Streak.day)
        return list(self.session.exec(stmt).all())


class ResetTokenRepository:
    """Password reset token storage."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, token: models.PasswordResetToken) -> models.PasswordResetToken:
        self.session.add(token)
        self.session.commit()
        self.session.refresh(token)
        return token

    def get_by_token(self, token: str) -> Optional[models.PasswordResetToken]:
        stmt = select(models.PasswordResetToken).where(models.PasswordResetToken.token == token)
        return self.session.exec(stmt).first()

    def invalidate_active(self, email: str, now: datetime) -> int:
        """Mark every unused, unexpired token for `email` as used."""
        stmt = select(models.PasswordResetToken).where(
            models.PasswordResetToken.email == email,
            models.PasswordResetToken.used == False,  # noqa: E712
            models.PasswordResetToken.expires_at > now,
        )
        rows = self.session.exec(stmt).all()
        for row in rows:
            row.used = True
            self.session.add(row)
        self.session.commit()
        return len(rows)

    def mark_used(self, token: models.PasswordResetToken) -> None:
        token.used = True
        self.session.add(token)
        self.session.commit()

    def delete_for_email(self, email: str) -> int:
        rows = self.session.exec(
            select(models.PasswordResetToken).where(models.PasswordResetToken.email == email)
        ).all()
        for row in rows:
            self.session.delete(row)
        self.session.commit()
        return len(rows)


class NotificationRepository:
    """Notification preferences and push subscriptions."""
    def __init__(self, session: Session):
        self.session = session

    def get_settings(self, user_id: int) -> Optional[models.NotificationSettings]:
        stmt = select(models.NotificationSettings).where(models.NotificationSettings.user_id == user_id)
        return self.session.exec(stmt).first()

    def save_settings(self, prefs: models.NotificationSettings) -> models.NotificationSettings:
        self.session.add(prefs)
        self.session.commit()
        self.session.refresh(prefs)
        return prefs

    def list_subscriptions(self, user_id: int) -> List[models.PushSubscription]:
        stmt = select(models.PushSubscription).where(models.PushSubscription.user_id == user_id)
        return self.session.exec(stmt).all()

    def upsert_subscription(self, user_id: int, endpoint: str, subscription: str) -> models.PushSubscription:
        """Insert or re-own the subscription identified by `endpoint`."""
        stmt = select(models.PushSubscription).where(models.PushSubscription.endpoint == endpoint)
        existing = self.session.exec(stmt).first()
        if existing:
            existing.user_id = user_id
            existing.subscription = subscription
            row = existing
        else:
            row = models.PushSubscription(user_id=user_id, endpoint=endpoint, subscription=subscription)
        self.session.add(row)
        self.session.commit()
        self.session.refresh(row)
        return row
