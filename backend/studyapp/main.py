"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the study tracker backend.
Controllers are intentionally thin: they accept requests, delegate to
services, and return JSON responses.

Endpoints implemented:
- POST /auth/register, POST /auth/login
- POST /auth/reset-password, POST /auth/confirm-reset
- GET/PUT/DELETE /profile, PUT /profile/password
- GET/POST /friends/requests, POST /friends/requests/{id}
- GET /friends, DELETE /friends/{friend_id}
- POST /study, PUT /study/{session_id}, GET /study/stats, GET /study/sessions
- GET /ranking
- POST /notifications, GET/PUT /notifications/settings,
  POST /notifications/subscribe, POST /notifications/reminders
- POST /db/init, GET /debug/env, GET /practice, GET /health
"""

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.responses import HTMLResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import services, models
from .auth import get_current_user
from .schemas import (
    RegisterIn, LoginIn, TokenOut, ResetRequestIn, ConfirmResetIn, ProfileUpdateIn, PasswordChangeIn,
    FriendRequestIn, FriendRequestActionIn, StudyStartIn, StudyEndIn,
    NotificationIn, NotificationSettingsIn, PushSubscriptionIn,
)
from .utils.rate_limit import InMemoryRateLimiter
from .utils.periods import as_utc
from .config import settings

app = FastAPI(title="Study Streak API")
logger = logging.getLogger("studyapp.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_auth_rate_limiter = InMemoryRateLimiter()

RESET_MESSAGE = 'if an account exists for that email, a reset link has been sent'

# Wide-open CORS keeps a separately served frontend working in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    info = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "client": request.client.host if request.client else "unknown",
    }
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", json.dumps(info, ensure_ascii=True))
        raise
    response.headers["X-Request-ID"] = req_id
    info["status_code"] = response.status_code
    info["duration_ms"] = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", json.dumps(info, ensure_ascii=True))
    return response


def _http_error(exc: ValueError) -> HTTPException:
    """Map a service-layer error to the matching HTTP status."""
    if isinstance(exc, services.NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, services.PermissionDeniedError):
        return HTTPException(status_code=403, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _enforce_auth_rate_limit(request: Request) -> None:
    key = InMemoryRateLimiter.key_for(request.client.host if request.client else None, request.url.path)
    allowed, retry_after = _auth_rate_limiter.allow(
        key, settings.AUTH_RATE_LIMIT_PER_MIN, settings.AUTH_RATE_LIMIT_WINDOW_SECONDS
    )
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def _account(user: models.User) -> dict:
    return {
        'id': user.id,
        'email': user.email,
        'username': user.username,
        'created_at': as_utc(user.created_at).isoformat(),
    }


def _friendship(f: models.Friendship) -> dict:
    return {
        'id': f.id,
        'sender_id': f.sender_id,
        'receiver_id': f.receiver_id,
        'status': f.status.value,
        'created_at': as_utc(f.created_at).isoformat(),
        'updated_at': as_utc(f.updated_at).isoformat(),
    }


@app.post('/auth/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new account.

    Email, username and password are required; duplicate emails or
    usernames are rejected with 400.
    """
    try:
        user = services.AuthService(db).register(payload.email, payload.username, payload.password)
    except ValueError as e:
        raise _http_error(e)
    return {'message': 'account created', 'user': _account(user)}


@app.post('/auth/login', response_model=TokenOut)
def login(payload: LoginIn, request: Request, db: Session = Depends(get_session)):
    """Authenticate with email/password and return a signed JWT.

    The token contains `user_id` and `username` and expires after
    `JWT_EXPIRE_HOURS`.
    """
    _enforce_auth_rate_limit(request)
    result = services.AuthService(db).authenticate(payload.email, payload.password)
    if not result:
        raise HTTPException(status_code=401, detail='invalid credentials')
    user, token = result
    return {'access_token': token, 'token_type': 'bearer', 'user': _account(user)}


@app.post('/auth/reset-password')
def request_password_reset(payload: ResetRequestIn, request: Request, db: Session = Depends(get_session)):
    """Issue a reset token; the response never reveals whether the email exists."""
    _enforce_auth_rate_limit(request)
    try:
        services.PasswordResetService(db).request_reset(payload.email)
    except ValueError as e:
        raise _http_error(e)
    return {'message': RESET_MESSAGE}


@app.post('/auth/confirm-reset')
def confirm_password_reset(payload: ConfirmResetIn, db: Session = Depends(get_session)):
    try:
        services.PasswordResetService(db).confirm_reset(payload.token, payload.new_password)
    except ValueError as e:
        raise _http_error(e)
    return {'message': 'password updated'}


@app.get('/profile')
def get_profile(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return the account, cumulative stats, level progress and streaks."""
    return services.ProfileService(db).get_profile(user)


@app.put('/profile')
def update_profile(payload: ProfileUpdateIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        updated = services.ProfileService(db).update(user, username=payload.username, email=payload.email)
    except ValueError as e:
        raise _http_error(e)
    return _account(updated)


@app.put('/profile/password')
def change_password(payload: PasswordChangeIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        services.AuthService(db).change_password(user, payload.current_password, payload.new_password)
    except ValueError as e:
        raise _http_error(e)
    return {'message': 'password updated'}


@app.delete('/profile')
def delete_account(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Delete the account together with its friendships, sessions and streak days."""
    services.ProfileService(db).delete(user)
    return {'message': 'account deleted'}


@app.post('/friends/requests')
def send_friend_request(payload: FriendRequestIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        friendship = services.FriendService(db).send_request(user, payload.receiver_username)
    except ValueError as e:
        raise _http_error(e)
    return {'message': 'friend request sent', 'friendship': _friendship(friendship)}


@app.get('/friends/requests')
def list_friend_requests(type: str = 'received', db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """List pending requests the caller `received` (default) or `sent`."""
    try:
        rows = services.FriendService(db).list_requests(user, type)
    except ValueError as e:
        raise _http_error(e)
    return {'friendships': rows}


@app.post('/friends/requests/{friendship_id}')
def respond_friend_request(friendship_id: int, payload: FriendRequestActionIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Accept or decline a pending request addressed to the caller."""
    try:
        friendship = services.FriendService(db).respond(user, friendship_id, payload.action)
    except ValueError as e:
        raise _http_error(e)
    message = 'friend request accepted' if payload.action == 'accept' else 'friend request declined'
    return {'message': message, 'friendship': _friendship(friendship)}


@app.get('/friends')
def list_friends(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return {'friends': services.FriendService(db).list_friends(user)}


@app.delete('/friends/{friend_id}')
def remove_friend(friend_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        services.FriendService(db).remove_friend(user, friend_id)
    except ValueError as e:
        raise _http_error(e)
    return {'message': 'friend removed'}


@app.post('/study')
def start_study_session(payload: StudyStartIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    study = services.StudyService(db).start(user, payload.category)
    return services.session_dict(study)


@app.put('/study/{session_id}')
def end_study_session(session_id: int, payload: StudyEndIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Finish a session and return XP, level and streak after the update."""
    try:
        return services.StudyService(db).end(
            user, session_id, payload.questions, payload.correct, duration=payload.duration
        )
    except ValueError as e:
        raise _http_error(e)


@app.get('/study/stats')
def study_stats(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Totals, streaks, the last seven days and level progress."""
    return services.StudyService(db).stats(user)


@app.get('/study/sessions')
def study_sessions(limit: int = Query(20, ge=1, le=100), db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return {'sessions': services.StudyService(db).list_sessions(user, limit=limit)}


@app.get('/ranking')
def ranking(
    type: str = 'weekly',
    category: str = 'xp',
    scope: str = 'global',
    limit: int = 50,
    db: Session = Depends(get_session),
    user: models.User = Depends(get_current_user),
):
    """Leaderboard for `type` (today/weekly/monthly/allTime) and `category` (xp/studyTime/problems)."""
    try:
        return services.RankingService(db).ranking(user, type, category, scope, limit)
    except ValueError as e:
        raise _http_error(e)


@app.post('/notifications')
def send_notification(payload: NotificationIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        delivered = services.NotificationService(db).send(user, payload.title, payload.message)
    except ValueError as e:
        raise _http_error(e)
    return {'success': True, 'delivered': delivered}


@app.get('/notifications/settings')
def get_notification_settings(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.NotificationService(db).get_settings(user)


@app.put('/notifications/settings')
def update_notification_settings(payload: NotificationSettingsIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        return services.NotificationService(db).update_settings(user, payload.model_dump(exclude_none=True))
    except ValueError as e:
        raise _http_error(e)


@app.post('/notifications/subscribe')
def subscribe_push(payload: PushSubscriptionIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    try:
        sub = services.NotificationService(db).subscribe(user, payload.subscription)
    except ValueError as e:
        raise _http_error(e)
    return {'success': True, 'subscription_id': sub.id}


@app.post('/notifications/reminders')
def send_reminders(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Dispatch the study/streak reminders enabled in the caller's settings."""
    return services.NotificationService(db).send_reminders(user)


@app.post('/db/init')
def init_database(db: Session = Depends(get_session)):
    """Create tables and the demo account; disabled unless `ALLOW_DB_INIT` is set."""
    if not settings.ALLOW_DB_INIT:
        raise HTTPException(status_code=403, detail='database initialization is disabled')
    create_db_and_tables()
    try:
        user, created = services.seed_demo_user(db)
    except ValueError as e:
        raise _http_error(e)
    return {'message': 'database initialized', 'created': created, 'user': {'email': user.email, 'username': user.username}}


@app.get('/debug/env')
def debug_env():
    """Report configuration presence (never values) outside production."""
    if settings.ENV == 'prod':
        raise HTTPException(status_code=403, detail='debug endpoints are disabled in production')
    return {
        'env': settings.ENV,
        'database_kind': settings.database_kind,
        'jwt_secret_set': settings.JWT_SECRET != 'change_me_for_prod',
        'app_url': settings.APP_URL,
    }


@app.get('/practice')
def practice_site():
    """URL of the external practice-question site embedded by the frontend."""
    return {'url': settings.PRACTICE_SITE_URL}


@app.get("/", response_class=HTMLResponse)
def home():
    """Minimal landing page for quick manual testing."""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
      <meta charset="UTF-8" />
      <title>Study Streak</title>
      <style>
        body {{ font-family: Arial, sans-serif; margin: 32px; }}
        a {{ color: #0a6; }}
        .card {{ max-width: 640px; padding: 16px; border: 1px solid #ddd; border-radius: 8px; }}
        iframe {{ width: 100%; height: 480px; border: 1px solid #ddd; margin-top: 16px; }}
      </style>
    </head>
    <body>
      <div class="card">
        <h1>Study Streak API</h1>
        <p>Quick links for local testing:</p>
        <ul>
          <li><a href="/docs">Swagger UI</a></li>
          <li><a href="{settings.PRACTICE_SITE_URL}" target="_blank">Practice questions</a></li>
        </ul>
        <p>Use <code>/auth/register</code> + <code>/auth/login</code> to get a token, then start a session with <code>POST /study</code> and check <code>/ranking</code>.</p>
      </div>
      <iframe src="{settings.PRACTICE_SITE_URL}" title="Practice questions"></iframe>
    </body>
    </html>
    """


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok"}
