import uuid
from datetime import timedelta

import pytest

from sqlmodel import Session, select

from studyapp import models, repositories, services
from studyapp.database import engine
from studyapp.utils.periods import utcnow
from studyapp.utils.rate_limit import InMemoryRateLimiter


def _creds():
    tag = uuid.uuid4().hex[:8]
    return {'email': f'auth-{tag}@example.com', 'username': f'auth_{tag}', 'password': 'pass123'}


def test_register_login_and_fetch_profile(client):
    creds = _creds()
    r = client.post('/auth/register', json=creds)
    assert r.status_code == 200
    assert r.json()['user']['username'] == creds['username']
    r2 = client.post('/auth/login', json={'email': creds['email'], 'password': creds['password']})
    assert r2.status_code == 200
    assert r2.json()['token_type'] == 'bearer'
    assert r2.json()['user']['email'] == creds['email']
    token = r2.json()['access_token']
    r3 = client.get('/profile', headers={'Authorization': f'Bearer {token}'})
    assert r3.status_code == 200
    profile = r3.json()
    assert profile['email'] == creds['email']
    assert profile['stats']['level'] == 1
    assert profile['current_streak'] == 0


def test_register_rejects_duplicate_email_and_username(client):
    creds = _creds()
    assert client.post('/auth/register', json=creds).status_code == 200
    same_email = dict(creds, username=creds['username'] + 'x')
    r = client.post('/auth/register', json=same_email)
    assert r.status_code == 400
    assert 'email' in r.json()['detail']
    same_username = dict(creds, email='other-' + creds['email'])
    r = client.post('/auth/register', json=same_username)
    assert r.status_code == 400
    assert 'username' in r.json()['detail']


def test_register_validation(client):
    creds = _creds()
    assert client.post('/auth/register', json={'email': creds['email']}).status_code == 400
    assert client.post('/auth/register', json=dict(creds, email='not-an-email')).status_code == 400
    assert client.post('/auth/register', json=dict(creds, password='12345')).status_code == 400


def test_login_rejects_wrong_password_and_unknown_email(client):
    creds = _creds()
    client.post('/auth/register', json=creds)
    r = client.post('/auth/login', json={'email': creds['email'], 'password': 'wrong-pass'})
    assert r.status_code == 401
    r = client.post('/auth/login', json={'email': 'nobody-' + creds['email'], 'password': 'pass123'})
    assert r.status_code == 401


def test_protected_endpoint_requires_valid_token(client):
    assert client.get('/profile').status_code == 401
    r = client.get('/profile', headers={'Authorization': 'Bearer invalid.token.here'})
    assert r.status_code == 401


def test_password_reset_flow(client):
    creds = _creds()
    client.post('/auth/register', json=creds)
    r = client.post('/auth/reset-password', json={'email': creds['email']})
    assert r.status_code == 200
    unknown = client.post('/auth/reset-password', json={'email': 'ghost@example.com'})
    assert unknown.json() == r.json()

    with Session(engine) as session:
        token = session.exec(
            select(models.PasswordResetToken).where(
                models.PasswordResetToken.email == creds['email'],
                models.PasswordResetToken.used == False,  # noqa: E712
            )
        ).one().token

    ok = client.post('/auth/confirm-reset', json={'token': token, 'new_password': 'newpass1'})
    assert ok.status_code == 200
    reused = client.post('/auth/confirm-reset', json={'token': token, 'new_password': 'newpass2'})
    assert reused.status_code == 400
    assert client.post('/auth/login', json={'email': creds['email'], 'password': 'pass123'}).status_code == 401
    assert client.post('/auth/login', json={'email': creds['email'], 'password': 'newpass1'}).status_code == 200


def test_new_reset_request_invalidates_previous_token():
    creds = _creds()
    with Session(engine) as session:
        services.AuthService(session).register(creds['email'], creds['username'], creds['password'])
        svc = services.PasswordResetService(session)
        first = svc.request_reset(creds['email'])
        second = svc.request_reset(creds['email'])
        assert first != second
        with pytest.raises(ValueError, match="used"):
            svc.confirm_reset(first, "another1")
        svc.confirm_reset(second, 'another1')


def test_expired_reset_token_rejected():
    creds = _creds()
    with Session(engine) as session:
        services.AuthService(session).register(creds['email'], creds['username'], creds['password'])
        svc = services.PasswordResetService(session)
        issued_at = utcnow() - timedelta(hours=2)
        token = svc.request_reset(creds['email'], now=issued_at)
        with pytest.raises(ValueError, match="expired"):
            svc.confirm_reset(token, "another1")


def test_profile_update_and_password_change(client, make_user):
    user, headers = make_user('prof')
    other, _ = make_user('prof')
    clash = client.put('/profile', json={'username': other['username']}, headers=headers)
    assert clash.status_code == 400
    renamed = client.put('/profile', json={'username': user['username'] + '_new'}, headers=headers)
    assert renamed.status_code == 200
    assert renamed.json()['username'] == user['username'] + '_new'

    bad = client.put('/profile/password', json={'current_password': 'nope', 'new_password': 'abcdef'}, headers=headers)
    assert bad.status_code == 400
    good = client.put('/profile/password', json={'current_password': 'secret123', 'new_password': 'abcdef'}, headers=headers)
    assert good.status_code == 200
    assert client.post('/auth/login', json={'email': user['email'], 'password': 'abcdef'}).status_code == 200


def test_delete_account_removes_owned_rows(client, make_user):
    user, headers = make_user('gone')
    friend, friend_headers = make_user('stay')
    client.post('/friends/requests', json={'receiver_username': friend['username']}, headers=headers)
    started = client.post('/study', json={}, headers=headers).json()
    client.put(f"/study/{started['id']}", json={'questions': 1, 'correct': 1, 'duration': 120}, headers=headers)

    r = client.delete('/profile', headers=headers)
    assert r.status_code == 200
    assert client.get('/profile', headers=headers).status_code == 401
    with Session(engine) as session:
        assert session.exec(select(models.StudySession).where(models.StudySession.user_id == user['id'])).first() is None
        assert session.exec(select(models.Streak).where(models.Streak.user_id == user['id'])).first() is None
        assert session.exec(select(models.Friendship).where(models.Friendship.sender_id == user['id'])).first() is None
    assert client.get('/friends/requests', headers=friend_headers).json()['friendships'] == []


def test_login_rate_limit(client, monkeypatch):
    monkeypatch.setattr("studyapp.main._auth_rate_limiter", InMemoryRateLimiter())
    monkeypatch.setattr("studyapp.main.settings.AUTH_RATE_LIMIT_PER_MIN", 1)
    payload = {'email': 'limit@example.com', 'password': 'whatever'}
    assert client.post('/auth/login', json=payload).status_code == 401
    second = client.post('/auth/login', json=payload)
    assert second.status_code == 429
    assert 'Retry-After' in second.headers


def test_request_id_header_exists(client):
    r = client.get('/health')
    assert r.status_code == 200
    assert 'X-Request-ID' in r.headers
    echoed = client.get('/health', headers={'X-Request-ID': 'abc123'})
    assert echoed.headers['X-Request-ID'] == 'abc123'


def test_db_init_seeds_demo_user_idempotently(client):
    first = client.post('/db/init')
    assert first.status_code == 200
    second = client.post('/db/init')
    assert second.json()['created'] is False
    login = client.post('/auth/login', json={'email': services.DEMO_EMAIL, 'password': services.DEMO_PASSWORD})
    assert login.status_code == 200


def test_db_init_disabled(client, monkeypatch):
    monkeypatch.setattr("studyapp.main.settings.ALLOW_DB_INIT", False)
    assert client.post('/db/init').status_code == 403


def test_debug_env_and_practice(client, monkeypatch):
    env = client.get('/debug/env')
    assert env.status_code == 200
    assert env.json()['database_kind'] == 'sqlite'
    assert client.get('/practice').json()['url'].startswith('http')
    monkeypatch.setattr("studyapp.main.settings.ENV", 'prod')
    assert client.get('/debug/env').status_code == 403


def test_user_save_reports_unique_clash_as_value_error():
    first, second = _creds(), _creds()
    with Session(engine) as session:
        auth = services.AuthService(session)
        auth.register(first['email'], first['username'], first['password'])
        user = auth.register(second['email'], second['username'], second['password'])
        user.username = first['username']
        with pytest.raises(ValueError, match="already in use"):
            repositories.UserRepository(session).save(user)
        assert repositories.UserRepository(session).get(user.id).username == second['username']


def test_db_init_rejects_demo_username_held_by_another_account(client):
    tag = uuid.uuid4().hex[:8]
    with Session(engine) as session:
        repo = repositories.UserRepository(session)
        demo = repo.get_by_email(services.DEMO_EMAIL)
        if demo:
            repo.delete(demo)
        holder = services.AuthService(session).register(f'holder-{tag}@example.com', services.DEMO_USERNAME, 'pass123')
        holder_id = holder.id
    try:
        r = client.post('/db/init')
        assert r.status_code == 400
        assert 'username' in r.json()['detail']
    finally:
        with Session(engine) as session:
            repo = repositories.UserRepository(session)
            repo.delete(repo.get(holder_id))
    assert client.post('/db/init').json()['created'] is True


def test_email_change_drops_reset_tokens_of_old_address(client, make_user):
    user, headers = make_user('move')
    with Session(engine) as session:
        old_token = services.PasswordResetService(session).request_reset(user['email'])
    new_email = 'moved-' + user['email']
    assert client.put('/profile', json={'email': new_email}, headers=headers).status_code == 200

    r = client.post('/auth/confirm-reset', json={'token': old_token, 'new_password': 'another1'})
    assert r.status_code == 400
    assert r.json()['detail'] == 'invalid token'
    with Session(engine) as session:
        leftover = session.exec(
            select(models.PasswordResetToken).where(models.PasswordResetToken.email == user['email'])
        ).first()
        assert leftover is None
