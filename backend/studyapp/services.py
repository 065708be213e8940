"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and the pure helpers in `utils`. Services perform validation, execute
domain logic and persist aggregates via repositories. Validation
failures raise `ValueError`; `NotFoundError` and `PermissionDeniedError`
refine it so controllers can pick the right HTTP status.
"""

from datetime import date, datetime, time, timedelta, timezone
import json
import logging
import re
import secrets
from passlib.context import CryptContext
import jwt
from typing import List, Optional, Tuple
from sqlmodel import Session
from . import models, repositories
from .config import settings
from .utils import notifications, progression, streaks
from .utils.auth_events import log_auth_event
from .utils.periods import as_utc, period_window, utcnow

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
REMINDER_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
MIN_PASSWORD_LENGTH = 6

DEMO_EMAIL = "demo@example.com"
DEMO_USERNAME = "Demo User"
DEMO_PASSWORD = "demo123"

RANKING_CATEGORIES = ("xp", "studyTime", "problems")
RANKING_SCOPES = ("global", "friends")

logger = logging.getLogger("studyapp.services")


class NotFoundError(ValueError):
    """Referenced record does not exist (HTTP 404)."""


class PermissionDeniedError(ValueError):
    """Caller may not act on the referenced record (HTTP 403)."""


def validate_email(email: str) -> bool:
    return bool(email) and EMAIL_RE.match(email) is not None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _check_password(password: Optional[str]):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")


def user_summary(user: models.User) -> dict:
    """Public stats of a user as shown in friend lists and rankings."""
    return {
        'id': user.id,
        'username': user.username,
        'total_xp': user.total_xp,
        'level': user.level,
        'total_study_time': user.total_study_time,
        'total_problems': user.total_problems,
        'total_correct': user.total_correct,
        'accuracy': progression.accuracy(user.total_correct, user.total_problems),
    }


class AuthService:
    """Authentication related operations (register, authenticate, password change)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, email: Optional[str], username: Optional[str], password: Optional[str]) -> models.User:
        """Create a new user with a hashed password.

        Raises `ValueError` for missing fields, a malformed email, a short
        password or an email/username that is already taken.
        """
        log_auth_event(email or "", "REGISTRATION_START", {
            'has_email': bool(email), 'has_username': bool(username), 'has_password': bool(password),
        })
        if not email or not username or not username.strip() or not password:
            log_auth_event(email or "", "REGISTRATION_VALIDATION_FAILED")
            raise ValueError("email, username and password are required")
        email = normalize_email(email)
        username = username.strip()
        if not validate_email(email):
            log_auth_event(email, "REGISTRATION_EMAIL_INVALID")
            raise ValueError("invalid email format")
        try:
            _check_password(password)
        except ValueError:
            log_auth_event(email, "REGISTRATION_PASSWORD_TOO_SHORT", {'password_length': len(password)})
            raise
        if self.user_repo.get_by_email(email):
            log_auth_event(email, "REGISTRATION_EMAIL_EXISTS")
            raise ValueError("email already in use")
        if self.user_repo.get_by_username(username):
            log_auth_event(email, "REGISTRATION_USERNAME_EXISTS")
            raise ValueError("username already in use")
        u = models.User(email=email, username=username, password_hash=PWD_CTX.hash(password))
        user = self.user_repo.create(u)
        log_auth_event(email, "REGISTRATION_SUCCESS", {'user_id': user.id})
        return user

    def authenticate(self, email: str, password: str) -> Optional[Tuple[models.User, str]]:
        """Verify credentials and return `(user, token)` on success.

        Returns `None` if authentication fails.
        """
        email = normalize_email(email or "")
        user = self.user_repo.get_by_email(email)
        if not user:
            log_auth_event(email, "LOGIN_USER_NOT_FOUND", level=logging.WARNING)
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            log_auth_event(email, "LOGIN_INVALID_PASSWORD", level=logging.WARNING)
            return None
        log_auth_event(email, "LOGIN_SUCCESS", {'user_id': user.id})
        return user, self.issue_token(user)

    def issue_token(self, user: models.User) -> str:
        expire = utcnow() + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {"user_id": user.id, "username": user.username, "exp": int(expire.timestamp())}
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)

    def change_password(self, user: models.User, current_password: str, new_password: str) -> None:
        if not PWD_CTX.verify(current_password, user.password_hash):
            log_auth_event(user.email, "PASSWORD_CHANGE_REJECTED", level=logging.WARNING)
            raise ValueError("current password is incorrect")
        _check_password(new_password)
        user.password_hash = PWD_CTX.hash(new_password)
        user.updated_at = utcnow()
        self.user_repo.save(user)
        log_auth_event(user.email, "PASSWORD_CHANGED", {'user_id': user.id})


class PasswordResetService:
    """Issue and redeem single-use password reset tokens."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.token_repo = repositories.ResetTokenRepository(session)

    def request_reset(self, email: Optional[str], now: Optional[datetime] = None) -> Optional[str]:
        """Create a reset token for `email` and return it.

        Returns `None` (without raising) for unknown addresses so callers
        can answer identically whether or not the account exists.
        """
        if not email:
            raise ValueError("email is required")
        email = normalize_email(email)
        now = now or utcnow()
        user = self.user_repo.get_by_email(email)
        if not user:
            log_auth_event(email, "RESET_UNKNOWN_EMAIL")
            return None
        self.token_repo.invalidate_active(email, now)
        token = secrets.token_hex(32)
        expires = now + timedelta(minutes=settings.RESET_TOKEN_TTL_MINUTES)
        self.token_repo.create(models.PasswordResetToken(email=email, token=token, expires_at=expires))
        log_auth_event(email, "RESET_TOKEN_ISSUED", {'expires_at': expires.isoformat()})
        if settings.ENV == "dev":
            # no mail transport; the link is only printed in development
            logger.info("password reset link for %s: %s/auth/reset-password?token=%s", email, settings.APP_URL, token)
        return token

    def confirm_reset(self, token: Optional[str], new_password: Optional[str], now: Optional[datetime] = None) -> models.User:
        if not token or not new_password:
            raise ValueError("token and new_password are required")
        _check_password(new_password)
        now = now or utcnow()
        reset = self.token_repo.get_by_token(token)
        if not reset:
            raise ValueError("invalid token")
        if reset.used:
            raise ValueError("token already used")
        if as_utc(reset.expires_at) < as_utc(now):
            raise ValueError("token expired")
        user = self.user_repo.get_by_email(reset.email)
        if not user:
            raise NotFoundError("user not found")
        user.password_hash = PWD_CTX.hash(new_password)
        user.updated_at = now
        self.user_repo.save(user)
        self.token_repo.mark_used(reset)
        log_auth_event(user.email, "RESET_COMPLETED", {'user_id': user.id})
        return user


class ProfileService:
    """Read, edit and delete the authenticated user's account."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.streak_repo = repositories.StreakRepository(session)
        self.token_repo = repositories.ResetTokenRepository(session)

    def get_profile(self, user: models.User, today: Optional[date] = None) -> dict:
        today = today or utcnow().date()
        days = self.streak_repo.list_days(user.id)
        current = streaks.current_streak(days, today)
        return {
            'id': user.id,
            'email': user.email,
            'username': user.username,
            'created_at': as_utc(user.created_at).isoformat(),
            'stats': user_summary(user),
            'level_title': progression.level_title(user.level),
            'level_progress': progression.xp_to_next_level(user.total_xp),
            'current_streak': current,
            'longest_streak': streaks.longest_streak(days),
            'streak_tier': progression.streak_tier(current),
        }

    def update(self, user: models.User, username: Optional[str] = None, email: Optional[str] = None) -> models.User:
        """Apply a partial update; empty values leave the field unchanged.

        Changing the email drops the reset tokens issued to the old address.
        """
        old_email = user.email
        if username is not None and username.strip():
            username = username.strip()
            other = self.user_repo.get_by_username(username)
            if other and other.id != user.id:
                raise ValueError("username already in use")
            user.username = username
        if email is not None and email.strip():
            email = normalize_email(email)
            if not validate_email(email):
                raise ValueError("invalid email format")
            other = self.user_repo.get_by_email(email)
            if other and other.id != user.id:
                raise ValueError("email already in use")
            user.email = email
        user.updated_at = utcnow()
        user = self.user_repo.save(user)
        if user.email != old_email:
            self.token_repo.delete_for_email(old_email)
        return user

    def delete(self, user: models.User) -> None:
        log_auth_event(user.email, "ACCOUNT_DELETED", {'user_id': user.id})
        self.user_repo.delete(user)


class FriendService:
    """Friend requests and the accepted-friends list."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.friend_repo = repositories.FriendshipRepository(session)

    def send_request(self, user: models.User, receiver_username: Optional[str]) -> models.Friendship:
        """Create a pending request from `user` to `receiver_username`.

        A previously declined pair is reopened on the same row so the
        one-row-per-pair constraint holds.
        """
        if not receiver_username or not receiver_username.strip():
            raise ValueError("receiver_username is required")
        receiver = self.user_repo.get_by_username(receiver_username.strip())
        if not receiver:
            raise NotFoundError("user not found")
        if receiver.id == user.id:
            raise ValueError("cannot send a friend request to yourself")
        existing = self.friend_repo.get_pair(user.id, receiver.id)
        if existing:
            if existing.status == models.FriendshipStatus.accepted:
                raise ValueError("already friends")
            if existing.status == models.FriendshipStatus.pending:
                raise ValueError("friend request already pending")
            existing.sender_id = user.id
            existing.receiver_id = receiver.id
            existing.status = models.FriendshipStatus.pending
            existing.created_at = utcnow()
            existing.updated_at = existing.created_at
            return self.friend_repo.save(existing)
        return self.friend_repo.create(user.id, receiver.id)

    def list_requests(self, user: models.User, kind: str = "received") -> List[dict]:
        if kind not in ("received", "sent"):
            raise ValueError("type must be 'received' or 'sent'")
        if kind == "sent":
            rows = self.friend_repo.list_pending_sent(user.id)
        else:
            rows = self.friend_repo.list_pending_received(user.id)
        others = {u.id: u for u in self.user_repo.list_by_ids([f.other(user.id) for f in rows])}
        out = []
        for f in rows:
            other = others.get(f.other(user.id))
            if other is None:
                continue
            out.append({
                'id': f.id,
                'status': f.status.value,
                'created_at': as_utc(f.created_at).isoformat(),
                'user': {'id': other.id, 'username': other.username, 'total_xp': other.total_xp, 'level': other.level},
            })
        return out

    def respond(self, user: models.User, friendship_id: int, action: str) -> models.Friendship:
        if action not in ("accept", "decline"):
            raise ValueError("action must be 'accept' or 'decline'")
        friendship = self.friend_repo.get(friendship_id)
        if not friendship:
            raise NotFoundError("friend request not found")
        if friendship.receiver_id != user.id:
            raise PermissionDeniedError("only the receiver can respond to this request")
        if friendship.status != models.FriendshipStatus.pending:
            raise ValueError("friend request already handled")
        friendship.status = models.FriendshipStatus.accepted if action == "accept" else models.FriendshipStatus.declined
        friendship.updated_at = utcnow()
        return self.friend_repo.save(friendship)

    def list_friends(self, user: models.User) -> List[dict]:
        rows = self.friend_repo.list_accepted(user.id)
        others = {u.id: u for u in self.user_repo.list_by_ids([f.other(user.id) for f in rows])}
        out = []
        for f in rows:
            other = others.get(f.other(user.id))
            if other is None:
                continue
            item = user_summary(other)
            item['friendship_id'] = f.id
            item['friend_since'] = as_utc(f.created_at).isoformat()
            out.append(item)
        return out

    def remove_friend(self, user: models.User, friend_id: int) -> None:
        friendship = self.friend_repo.get_pair(user.id, friend_id)
        if not friendship or friendship.status != models.FriendshipStatus.accepted:
            raise NotFoundError("friendship not found")
        self.friend_repo.delete(friendship)


class StudyService:
    """Start and finish study sessions; derive streaks and stats."""
    def __init__(self, session: Session, min_streak_seconds: Optional[int] = None):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.study_repo = repositories.StudySessionRepository(session)
        self.streak_repo = repositories.StreakRepository(session)
        self.min_streak_seconds = settings.STREAK_MIN_SECONDS if min_streak_seconds is None else min_streak_seconds

    def start(self, user: models.User, category: Optional[str] = None, now: Optional[datetime] = None) -> models.StudySession:
        study = models.StudySession(
            user_id=user.id,
            category=(category or "general").strip() or "general",
            start_time=now or utcnow(),
        )
        return self.study_repo.create(study)

    def end(self, user: models.User, session_id: int, questions: int, correct: int,
            duration: Optional[int] = None, now: Optional[datetime] = None) -> dict:
        """Close a session, award XP and record the streak day.

        The streak day is only recorded when the session lasted at least
        `min_streak_seconds`; recording is idempotent per calendar day, and
        only the first qualifying session of a day earns the streak bonus.
        """
        study = self.study_repo.get(session_id)
        if not study or study.user_id != user.id:
            raise NotFoundError("study session not found")
        if study.end_time is not None:
            raise ValueError("study session already ended")
        if questions < 0 or correct < 0:
            raise ValueError("questions and correct must be >= 0")
        if correct > questions:
            raise ValueError("correct cannot exceed questions")
        now = as_utc(now or utcnow())
        if duration is None:
            duration = max(0, int((now - as_utc(study.start_time)).total_seconds()))

        new_day = False
        if duration >= self.min_streak_seconds:
            new_day = self.streak_repo.add_day(user.id, now.date())
        xp = progression.session_xp(duration / 60, questions, correct, 1 if new_day else 0)

        study.end_time = now
        study.duration = duration
        study.questions = questions
        study.correct = correct
        study.xp_earned = xp
        self.session.add(study)

        previous_level = user.level
        user.total_study_time += duration
        user.total_problems += questions
        user.total_correct += correct
        user.total_xp += xp
        user.level = progression.level_from_xp(user.total_xp)
        user.updated_at = now
        self.user_repo.save(user)
        self.session.refresh(study)

        current, longest = self.streak_summary(user.id, now.date())
        return {
            'session': session_dict(study),
            'xp_earned': xp,
            'total_xp': user.total_xp,
            'level': user.level,
            'leveled_up': user.level > previous_level,
            'streak_recorded': new_day,
            'current_streak': current,
            'longest_streak': longest,
        }

    def streak_summary(self, user_id: int, today: date) -> Tuple[int, int]:
        days = self.streak_repo.list_days(user_id)
        return streaks.current_streak(days, today), streaks.longest_streak(days)

    def stats(self, user: models.User, today: Optional[date] = None) -> dict:
        today = today or utcnow().date()
        first_day = today - timedelta(days=6)
        window_start = datetime.combine(first_day, time(), tzinfo=timezone.utc)
        daily = {first_day + timedelta(days=i): {'study_time': 0, 'questions': 0} for i in range(7)}
        for s in self.study_repo.list_completed_since(user.id, window_start):
            bucket = daily.get(as_utc(s.start_time).date())
            if bucket is not None:
                bucket['study_time'] += s.duration or 0
                bucket['questions'] += s.questions
        current, longest = self.streak_summary(user.id, today)
        return {
            'total_study_time': user.total_study_time,
            'total_questions': user.total_problems,
            'correct_answers': user.total_correct,
            'accuracy': progression.accuracy(user.total_correct, user.total_problems),
            'current_streak': current,
            'longest_streak': longest,
            'studied_today': today in set(self.streak_repo.list_days(user.id)),
            'weekly_stats': [{'date': d.isoformat(), **v} for d, v in sorted(daily.items())],
            'total_xp': user.total_xp,
            'level': user.level,
            'level_title': progression.level_title(user.level),
            'level_progress': progression.xp_to_next_level(user.total_xp),
        }

    def list_sessions(self, user: models.User, limit: int = 20) -> List[dict]:
        return [session_dict(s) for s in self.study_repo.list_recent(user.id, limit=limit)]


def session_dict(study: models.StudySession) -> dict:
    return {
        'id': study.id,
        'category': study.category,
        'start_time': as_utc(study.start_time).isoformat(),
        'end_time': as_utc(study.end_time).isoformat() if study.end_time else None,
        'duration': study.duration,
        'questions': study.questions,
        'correct': study.correct,
        'xp_earned': study.xp_earned,
    }


class RankingService:
    """Leaderboards over all users or the caller's friends."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.friend_repo = repositories.FriendshipRepository(session)
        self.study_repo = repositories.StudySessionRepository(session)

    def ranking(self, user: models.User, period_type: str = "weekly", category: str = "xp",
                scope: str = "global", limit: int = 50, now: Optional[datetime] = None) -> dict:
        """Sort users by score and assign dense ranks.

        Scores come from the user totals for `allTime` and from completed
        sessions started inside the period otherwise. Ties share a rank
        and are listed by username.
        """
        if category not in RANKING_CATEGORIES:
            raise ValueError(f"invalid ranking category: {category}")
        if scope not in RANKING_SCOPES:
            raise ValueError(f"invalid ranking scope: {scope}")
        if limit < 1 or limit > 100:
            raise ValueError("limit must be between 1 and 100")
        start, label = period_window(period_type, now)

        if scope == "friends":
            candidates = self.user_repo.list_by_ids([user.id] + self.friend_repo.friend_ids(user.id))
        else:
            candidates = self.user_repo.list_all()

        if start is None:
            field = {'xp': 'total_xp', 'studyTime': 'total_study_time', 'problems': 'total_problems'}[category]
            scored = [(getattr(u, field), u) for u in candidates]
        else:
            ids = [u.id for u in candidates] if scope == "friends" else None
            totals = self.study_repo.totals_since(start, ids)
            scored = [(totals.get(u.id, {}).get(category, 0), u) for u in candidates]

        scored.sort(key=lambda pair: (-pair[0], pair[1].username.lower(), pair[1].id))
        rows = []
        rank = 0
        previous = None
        for score, u in scored:
            if score != previous:
                rank += 1
                previous = score
            rows.append({
                'rank': rank,
                'user': user_summary(u),
                'score': score,
                'is_me': u.id == user.id,
            })
        me = next((r for r in rows if r['is_me']), None)
        return {
            'ranking': rows[:limit],
            'my_rank': me,
            'type': period_type,
            'category': category,
            'scope': scope,
            'period': label,
            'total': len(rows),
        }


class NotificationService:
    """Notification preferences, push subscriptions and reminder dispatch."""
    SETTING_FIELDS = ('study_reminder', 'friend_activity', 'streak_reminder', 'weekly_report', 'reminder_time')

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.NotificationRepository(session)
        self.streak_repo = repositories.StreakRepository(session)

    def _settings_for(self, user: models.User) -> models.NotificationSettings:
        return self.repo.get_settings(user.id) or models.NotificationSettings(user_id=user.id)

    def get_settings(self, user: models.User) -> dict:
        prefs = self._settings_for(user)
        return {f: getattr(prefs, f) for f in self.SETTING_FIELDS}

    def update_settings(self, user: models.User, changes: dict) -> dict:
        reminder_time = changes.get('reminder_time')
        if reminder_time is not None and not REMINDER_TIME_RE.match(reminder_time):
            raise ValueError("reminder_time must be HH:MM")
        prefs = self._settings_for(user)
        for f in self.SETTING_FIELDS:
            if changes.get(f) is not None:
                setattr(prefs, f, changes[f])
        self.repo.save_settings(prefs)
        return self.get_settings(user)

    def subscribe(self, user: models.User, subscription: dict) -> models.PushSubscription:
        endpoint = subscription.get('endpoint') if isinstance(subscription, dict) else None
        if not endpoint or not isinstance(endpoint, str):
            raise ValueError("subscription endpoint is required")
        return self.repo.upsert_subscription(user.id, endpoint, json.dumps(subscription, sort_keys=True))

    def _endpoints(self, user: models.User) -> List[str]:
        return [s.endpoint for s in self.repo.list_subscriptions(user.id)]

    def send(self, user: models.User, title: str, message: str) -> int:
        if not title or not message:
            raise ValueError("title and message are required")
        return notifications.dispatch(user.id, notifications.build_payload(title, message), self._endpoints(user))

    def send_reminders(self, user: models.User, today: Optional[date] = None) -> dict:
        """Dispatch the reminders enabled in the user's settings."""
        today = today or utcnow().date()
        prefs = self._settings_for(user)
        endpoints = self._endpoints(user)
        sent = []
        if prefs.study_reminder:
            notifications.dispatch(user.id, notifications.study_reminder(), endpoints)
            sent.append('study-reminder')
        streak = streaks.current_streak(self.streak_repo.list_days(user.id), today)
        if prefs.streak_reminder and streak >= 1:
            notifications.dispatch(user.id, notifications.streak_reminder(streak), endpoints)
            sent.append('streak-reminder')
        return {'sent': sent, 'subscriptions': len(endpoints), 'current_streak': streak}


def seed_demo_user(session: Session) -> Tuple[models.User, bool]:
    """Ensure the demo account exists; return `(user, created)`."""
    repo = repositories.UserRepository(session)
    existing = repo.get_by_email(DEMO_EMAIL)
    if existing:
        return existing, False
    if repo.get_by_username(DEMO_USERNAME):
        raise ValueError(f"username {DEMO_USERNAME!r} already in use by another account")
    user = repo.create(models.User(
        email=DEMO_EMAIL,
        username=DEMO_USERNAME,
        password_hash=PWD_CTX.hash(DEMO_PASSWORD),
    ))
    logger.info("created demo user id=%s", user.id)
    return user, True
