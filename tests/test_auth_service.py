"""Integration tests for auth/service.py against a real SQLite database.

Covers:
- register: validation, duplicate email, module rows seeded atomically
- login: lockout after repeated failures, recovery after the lockout window,
  inactive accounts, per-email rate limit
- refresh / logout / authenticate_request / admin operations
"""

import pytest
from sqlalchemy import func, select

from auth.errors import (
    AccountInactive,
    AccountLocked,
    DuplicateEmail,
    Expired,
    InvalidCredentials,
    InvalidPayload,
    RateLimited,
    StorageError,
    TokenNotFound,
    UserInactive,
    ValidationError,
)
from auth.service import AuthService
from auth.throttle import RateLimitStore
from storage.database import MODULE_DEFAULTS, users

PASSWORD = "s3cret-password"


def _count(conn, table, **where) -> int:
    query = select(func.count()).select_from(table)
    for column, value in where.items():
        query = query.where(table.c[column] == value)
    count = conn.execute(query).scalar_one()
    conn.rollback()
    return count


@pytest.fixture
def registered(service):
    return service.register("Ann@Example.com ", "Ann", PASSWORD)


# ---------------------------------------------------------------------------
# Register
# ---------------------------------------------------------------------------


def test_register_returns_user_and_working_tokens(service, registered):
    assert registered.user.id is not None
    assert registered.user.email == "ann@example.com"
    assert service.authenticate_request(registered.access_token) == registered.user.id
    assert service.sessions.validate(registered.refresh_token) == registered.user.id


def test_register_seeds_one_row_per_module_table(conn, registered):
    for table, _, _ in MODULE_DEFAULTS:
        assert _count(conn, table, user_id=registered.user.id) == 1


def test_register_failure_while_seeding_leaves_no_user(service, conn, monkeypatch):
    seed = service.users.initialize_module_data

    def seed_then_fail(user_id):
        seed(user_id)
        raise StorageError()

    monkeypatch.setattr(service.users, "initialize_module_data", seed_then_fail)
    with pytest.raises(StorageError):
        service.register("ann@example.com", "Ann", PASSWORD)

    assert _count(conn, users) == 0
    for table, _, _ in MODULE_DEFAULTS:
        assert _count(conn, table) == 0


def test_register_duplicate_email_is_rejected(service, registered):
    with pytest.raises(DuplicateEmail):
        service.register("ANN@example.com", "Another Ann", PASSWORD)


def test_duplicate_insert_race_maps_to_duplicate_email(service, registered):
    with pytest.raises(DuplicateEmail):
        service.users.create_user("ann@example.com", "Ann", "hash")


@pytest.mark.parametrize(
    "email, name, password",
    [
        ("not-an-email", "Ann", PASSWORD),
        ("ann@example", "Ann", PASSWORD),
        ("ann@example.com", "A", PASSWORD),
        ("ann@example.com", "   ", PASSWORD),
        ("ann@example.com", "Ann", "short"),
        ("ann@example.com", "Ann", ""),
    ],
)
def test_register_validation(service, conn, email, name, password):
    with pytest.raises(ValidationError):
        service.register(email, name, password)
    assert _count(conn, users) == 0


def test_password_is_stored_hashed(service, registered):
    user = service.users.get_by_id(registered.user.id)
    assert user.password_hash != PASSWORD
    assert user.password_hash.startswith("$2")


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


def test_login_with_correct_password(service, registered):
    result = service.login("ann@example.com", PASSWORD)
    assert result.user.id == registered.user.id
    assert service.users.get_by_id(registered.user.id).last_login is not None


def test_unknown_email_and_wrong_password_look_the_same(service, registered):
    with pytest.raises(InvalidCredentials) as unknown:
        service.login("nobody@example.com", PASSWORD)
    with pytest.raises(InvalidCredentials) as wrong:
        service.login("ann@example.com", "wrong-password")
    assert unknown.value.message == wrong.value.message


def test_lockout_then_recovery_after_window(service, registered, clock):
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            service.login("ann@example.com", "wrong-password")

    with pytest.raises(AccountLocked):
        service.login("ann@example.com", PASSWORD)

    clock.advance(15 * 60 + 1)
    result = service.login("ann@example.com", PASSWORD)
    assert result.user.id == registered.user.id
    assert service.users.get_by_id(registered.user.id).failed_login_attempts == 0


def test_failures_count_afresh_after_lock_expires(service, registered, clock):
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            service.login("ann@example.com", "wrong-password")
    clock.advance(15 * 60 + 1)

    with pytest.raises(InvalidCredentials):
        service.login("ann@example.com", "wrong-password")
    user = service.users.get_by_id(registered.user.id)
    assert user.failed_login_attempts == 1
    assert user.locked_until is None


def test_inactive_account_cannot_log_in(service, registered):
    service.users.set_active(registered.user.id, False)
    with pytest.raises(AccountInactive):
        service.login("ann@example.com", PASSWORD)


def test_login_rate_limit_applies_per_email(conn, settings, codec, frozen_time):
    strict = settings.model_copy(update={"login_rate_limit": 2})
    service = AuthService.for_connection(conn, strict, codec, RateLimitStore(), clock=frozen_time)

    for _ in range(2):
        with pytest.raises(InvalidCredentials):
            service.login("nobody@example.com", PASSWORD)
    with pytest.raises(RateLimited) as excinfo:
        service.login("nobody@example.com", PASSWORD)
    assert excinfo.value.retry_after == strict.login_rate_window_seconds

    with pytest.raises(InvalidCredentials):
        service.login("someone-else@example.com", PASSWORD)


# ---------------------------------------------------------------------------
# Refresh, logout, request authentication
# ---------------------------------------------------------------------------


def test_refresh_rotates_and_issues_new_access_token(service, registered, clock):
    clock.advance(5)
    result = service.refresh(registered.refresh_token)

    assert result.user.id == registered.user.id
    assert result.refresh_token != registered.refresh_token
    assert result.access_token != registered.access_token
    with pytest.raises(TokenNotFound):
        service.refresh(registered.refresh_token)


def test_refresh_for_deactivated_user_fails(service, registered):
    service.users.set_active(registered.user.id, False)
    with pytest.raises(UserInactive):
        service.refresh(registered.refresh_token)


def test_logout_revokes_presented_token_only(service, registered):
    other = service.login("ann@example.com", PASSWORD)
    service.logout(registered.refresh_token, revoke_all=False, user_id=registered.user.id)

    with pytest.raises(TokenNotFound):
        service.sessions.validate(registered.refresh_token)
    assert service.sessions.validate(other.refresh_token) == registered.user.id


def test_logout_revoke_all_leaves_no_tokens(service, registered):
    service.login("ann@example.com", PASSWORD)
    service.login("ann@example.com", PASSWORD)
    service.logout(None, revoke_all=True, user_id=registered.user.id)
    assert service.sessions.list_active(registered.user.id) == []


def test_authenticate_request_rejects_deactivated_user(service, registered):
    service.users.set_active(registered.user.id, False)
    with pytest.raises(UserInactive):
        service.authenticate_request(registered.access_token)


def test_authenticate_request_rejects_expired_token(service, registered, clock):
    clock.advance(15 * 60 + 1)
    with pytest.raises(Expired):
        service.authenticate_request(registered.access_token)


@pytest.mark.parametrize("uid", [None, "1", 0, -3, True])
def test_authenticate_request_requires_positive_integer_uid(service, codec, uid):
    token = codec.issue({"uid": uid}, ttl=60)
    with pytest.raises(InvalidPayload):
        service.authenticate_request(token)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


def test_create_account_issues_no_tokens(service):
    user = service.create_account("cli@example.com", "Cli User", PASSWORD)
    assert service.sessions.list_active(user.id) == []
    assert service.login("cli@example.com", PASSWORD).user.id == user.id


def test_unlock_account(service, registered):
    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            service.login("ann@example.com", "wrong-password")
    assert service.unlock_account("ann@example.com").id == registered.user.id
    assert service.login("ann@example.com", PASSWORD).user.id == registered.user.id
    assert service.unlock_account("nobody@example.com") is None


def test_deactivate_account_revokes_sessions(service, registered):
    service.deactivate_account("ann@example.com")
    assert service.sessions.list_active(registered.user.id) == []
    with pytest.raises(UserInactive):
        service.authenticate_request(registered.access_token)


def test_sweep_expired_tokens(service, registered, clock):
    clock.advance(30 * 24 * 60 * 60)
    assert service.sweep_expired_tokens() == 1
