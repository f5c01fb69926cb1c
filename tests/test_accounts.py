from datetime import datetime, timedelta

import pytest

from examhub.auth import REFRESH, TokenService, get_token_service
from examhub.errors import (
    AccountExists,
    AuthenticationError,
    TooManyAttempts,
    UserNotFound,
    ValidationError,
)
from examhub.models import User
from examhub.services import accounts, throttle

NOW = datetime(2026, 3, 1, 9, 0, 0)


def test_register_normalises_and_hashes(app):
    user = accounts.register_user(
        email=" Jamie@Example.com ", username="jamie", password="password123", first_name="Jamie"
    )
    assert user.email == "jamie@example.com"
    assert user.role == "user"
    assert user.password_hash != "password123"
    assert user.check_password("password123")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"email": "not-an-email", "username": "jamie", "password": "password123"},
        {"email": "jamie@example.com", "username": "jj", "password": "password123"},
        {"email": "jamie@example.com", "username": "jamie", "password": "short"},
    ],
)
def test_register_validation(app, kwargs):
    with pytest.raises(ValidationError):
        accounts.register_user(**kwargs)


def test_register_rejects_duplicates(make_user):
    make_user("jamie")
    with pytest.raises(AccountExists):
        accounts.register_user(email="jamie@example.com", username="other", password="password123")
    with pytest.raises(AccountExists):
        accounts.register_user(email="new@example.com", username="jamie", password="password123")


def test_authenticate_records_login(make_user):
    make_user("jamie")
    user = accounts.authenticate("JAMIE@example.com", "password123", now=NOW)
    assert user.username == "jamie"
    assert user.last_login_at == NOW


def test_inactive_user_cannot_log_in(make_user):
    make_user("gone", is_active=False)
    with pytest.raises(AuthenticationError):
        accounts.authenticate("gone@example.com", "password123", now=NOW)


def test_login_throttle_window(make_user):
    make_user("jamie")
    for _ in range(5):
        with pytest.raises(AuthenticationError):
            accounts.authenticate("jamie@example.com", "wrong-pass", now=NOW)

    with pytest.raises(TooManyAttempts):
        accounts.authenticate("jamie@example.com", "password123", now=NOW + timedelta(minutes=1))

    user = accounts.authenticate(
        "jamie@example.com", "password123", now=NOW + timedelta(minutes=16)
    )
    assert user.username == "jamie"


def test_token_round_trip_and_tampering():
    service = TokenService("a-very-long-secret-for-testing-tokens", ttl_minutes=5)
    user = User(id=42, role="admin")
    token, expires = service.issue(user)

    claims = service.decode(token)
    assert claims.user_id == 42
    assert claims.is_admin
    assert claims.expires_at == expires.replace(microsecond=0)

    other = TokenService("another-secret-entirely-for-testing", ttl_minutes=5)
    with pytest.raises(AuthenticationError):
        other.decode(token)


def test_expired_token_is_rejected():
    service = TokenService("a-very-long-secret-for-testing-tokens", ttl_minutes=1)
    token, _ = service.issue(User(id=1, role="user"), now=datetime(2020, 1, 1))
    with pytest.raises(AuthenticationError) as excinfo:
        service.decode(token)
    assert excinfo.value.code == "INVALID_TOKEN"


def test_refresh_tokens_are_not_access_tokens():
    service = TokenService("a-very-long-secret-for-testing-tokens", ttl_minutes=5)
    pair = service.issue_pair(User(id=7, role="user", token_version=3))

    assert service.decode(pair.refresh_token, kind=REFRESH).version == 3
    with pytest.raises(AuthenticationError):
        service.decode(pair.refresh_token)
    with pytest.raises(AuthenticationError):
        service.decode(pair.access_token, kind=REFRESH)
    assert pair.refresh_expires_at > pair.access_expires_at


def test_refresh_session_follows_revocation(make_user):
    user = make_user("jamie")
    pair = get_token_service().issue_pair(user)
    assert accounts.refresh_session(pair.refresh_token).id == user.id

    accounts.revoke_tokens(user)
    with pytest.raises(AuthenticationError) as excinfo:
        accounts.refresh_session(pair.refresh_token)
    assert excinfo.value.code == "INVALID_REFRESH_TOKEN"


def test_change_password_checks_current_and_revokes(make_user):
    user = make_user("jamie")
    with pytest.raises(ValidationError):
        accounts.change_password(user, "wrong-pass", "new-password")
    with pytest.raises(ValidationError):
        accounts.change_password(user, "password123", "tiny")

    accounts.change_password(user, "password123", "new-password")
    assert user.check_password("new-password")
    assert user.token_version == 1


def test_user_updates_respect_permissions_and_uniqueness(make_user):
    admin = make_user("boss", role="admin")
    user = make_user("jamie")
    make_user("taken")

    self_edit = accounts.parse_user_payload(
        {"firstName": "J", "role": "admin", "isActive": False}, admin=False
    )
    assert self_edit.role is None and self_edit.is_active is None
    accounts.update_profile(user, self_edit)
    assert (user.first_name, user.role, user.is_active) == ("J", "user", True)

    with pytest.raises(AccountExists):
        accounts.update_user(
            user.id,
            accounts.parse_user_payload({"username": "taken"}, admin=True),
            acting=admin,
        )
    with pytest.raises(ValidationError):
        accounts.parse_user_payload({"role": "owner"}, admin=True)

    promoted = accounts.update_user(
        user.id, accounts.parse_user_payload({"role": "admin"}, admin=True), acting=admin
    )
    assert promoted.is_admin


def test_admins_cannot_lock_themselves_out(make_user):
    admin = make_user("boss", role="admin")
    with pytest.raises(ValidationError):
        accounts.set_user_active(admin.id, False, acting=admin)
    with pytest.raises(ValidationError):
        accounts.update_user(
            admin.id, accounts.parse_user_payload({"role": "user"}, admin=True), acting=admin
        )


def test_deactivated_users_cannot_be_assigned(make_user):
    admin = make_user("boss", role="admin")
    user = make_user("jamie")

    accounts.set_user_active(user.id, False, acting=admin)
    assert accounts.active_users_by_id([user.id]) == {}
    with pytest.raises(AuthenticationError):
        accounts.authenticate("jamie@example.com", "password123", now=NOW)

    accounts.set_user_active(user.id, True, acting=admin)
    assert list(accounts.active_users_by_id([user.id])) == [user.id]
    with pytest.raises(UserNotFound):
        accounts.get_user(4242)


def test_list_users_filters(make_user):
    make_user("alice")
    make_user("bob", is_active=False)
    make_user("boss", role="admin")

    assert accounts.list_users().total == 3
    assert [u.username for u in accounts.list_users(search="ali").items] == ["alice"]
    assert [u.username for u in accounts.list_users(role="admin").items] == ["boss"]
    assert [u.username for u in accounts.list_users(is_active=False).items] == ["bob"]


def test_submit_throttle_window(app):
    window = timedelta(minutes=1)
    for remaining in (1, 0):
        assert throttle.consume(
            throttle.SUBMIT_SCOPE, "user:1", limit=2, length=window, now=NOW
        ) == remaining
    with pytest.raises(TooManyAttempts):
        throttle.consume(throttle.SUBMIT_SCOPE, "user:1", limit=2, length=window, now=NOW)

    # Other callers and other scopes keep their own counters.
    throttle.consume(throttle.SUBMIT_SCOPE, "user:2", limit=2, length=window, now=NOW)
    throttle.consume(throttle.LOGIN_SCOPE, "user:1", limit=2, length=window, now=NOW)

    later = NOW + timedelta(minutes=1)
    remaining = throttle.consume(
        throttle.SUBMIT_SCOPE, "user:1", limit=2, length=window, now=later
    )
    assert remaining == 1
