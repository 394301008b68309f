import threading
from datetime import datetime, timedelta, timezone

import pytest

from korella.storage.common import hash_token
from korella.storage.errors import ConstraintViolation, RecordNotFound
from korella.storage.memory import MemoryStore
from korella.storage.models import (
    AccountStatus,
    AuthEventType,
    AuthLog,
    OAuthLink,
    OAuthProvider,
    SingleUseToken,
    TokenPurpose,
    User,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _token(user_id, raw="raw-token", purpose=TokenPurpose.PASSWORD_RESET, ttl=timedelta(hours=1)):
    return SingleUseToken(
        token_hash=hash_token(raw), user_id=user_id, purpose=purpose, expires_at=NOW + ttl
    )


def test_email_is_unique_case_insensitively():
    store = MemoryStore()
    store.create_user(User.new("Agent@Example.com"))
    with pytest.raises(ConstraintViolation):
        store.create_user(User.new("agent@example.com "))
    assert store.get_user_by_email("AGENT@example.com").email == "agent@example.com"


def test_update_user_rejects_duplicate_email_and_unknown_fields():
    store = MemoryStore()
    first = store.create_user(User.new("one@example.com"))
    store.create_user(User.new("two@example.com"))
    with pytest.raises(ConstraintViolation):
        store.update_user(first.id, email="Two@example.com")
    with pytest.raises(ValueError):
        store.update_user(first.id, id="hijack")


def test_update_missing_user():
    with pytest.raises(RecordNotFound):
        MemoryStore().update_user("missing", full_name="x")


def test_writes_stamp_updated_at_from_store_clock():
    store = MemoryStore(clock=lambda: NOW)
    user = store.create_user(User.new("stamp@example.com"))
    assert store.update_user(user.id, full_name="Stamped").updated_at == NOW
    assert store.reset_failed_logins(user.id).updated_at == NOW


def test_returned_records_are_copies():
    store = MemoryStore()
    user = store.create_user(User.new("copy@example.com"))
    user.account_status = AccountStatus.SUSPENDED
    assert store.get_user(user.id).account_status == AccountStatus.PENDING


def test_concurrent_failed_logins_are_all_counted():
    store = MemoryStore()
    user = store.create_user(User.new("race@example.com", account_status=AccountStatus.ACTIVE))
    newly_locked = []

    def worker():
        for _ in range(25):
            _, locked = store.increment_failed_login(
                user.id, threshold=5, lock_until=NOW + timedelta(minutes=30), now=NOW
            )
            newly_locked.append(locked)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    stored = store.get_user(user.id)
    assert stored.failed_login_count == 200
    assert stored.locked_until == NOW + timedelta(minutes=30)
    assert newly_locked.count(True) == 1


def test_expired_lock_restarts_counter():
    store = MemoryStore()
    user = store.create_user(User.new("lapse@example.com"))
    store.update_user(user.id, failed_login_count=7, locked_until=NOW - timedelta(seconds=1))
    updated, locked = store.increment_failed_login(
        user.id, threshold=5, lock_until=NOW + timedelta(minutes=30), now=NOW
    )
    assert updated.failed_login_count == 1
    assert updated.locked_until is None
    assert locked is False


def test_token_is_consumed_once_under_contention():
    store = MemoryStore()
    user = store.create_user(User.new("once@example.com"))
    store.save_token(_token(user.id))
    winners = []

    def worker():
        if store.consume_token(hash_token("raw-token"), TokenPurpose.PASSWORD_RESET, now=NOW):
            winners.append(1)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert len(winners) == 1


def test_supersede_only_touches_matching_purpose():
    store = MemoryStore()
    user = store.create_user(User.new("purpose@example.com"))
    store.save_token(_token(user.id, "reset"))
    store.save_token(_token(user.id, "verify", purpose=TokenPurpose.EMAIL_VERIFICATION))
    assert store.supersede_tokens(user.id, TokenPurpose.PASSWORD_RESET, now=NOW) == 1
    assert store.consume_token(hash_token("reset"), TokenPurpose.PASSWORD_RESET, now=NOW) is None
    assert store.consume_token(
        hash_token("verify"), TokenPurpose.EMAIL_VERIFICATION, now=NOW
    )


def test_purge_removes_expired_and_used_tokens():
    store = MemoryStore()
    user = store.create_user(User.new("purge@example.com"))
    store.save_token(_token(user.id, "stale", ttl=timedelta(hours=-1)))
    store.save_token(_token(user.id, "used"))
    store.save_token(_token(user.id, "live", ttl=timedelta(days=2)))
    store.consume_token(hash_token("used"), TokenPurpose.PASSWORD_RESET, now=NOW)
    assert store.purge_tokens(before=NOW + timedelta(minutes=1)) == 2
    assert hash_token("live") in store.tokens


def test_oauth_identity_links_once():
    store = MemoryStore()
    user = store.create_user(User.new("link@example.com"))
    link = OAuthLink(user_id=user.id, provider=OAuthProvider.GOOGLE, provider_user_id="g-1")
    store.create_oauth_link(link)
    with pytest.raises(ConstraintViolation):
        store.create_oauth_link(
            OAuthLink(user_id=user.id, provider=OAuthProvider.GOOGLE, provider_user_id="g-1")
        )
    assert store.delete_oauth_link(user.id, OAuthProvider.GOOGLE) is True
    assert store.delete_oauth_link(user.id, OAuthProvider.GOOGLE) is False


def test_oauth_link_requires_user():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.create_oauth_link(
            OAuthLink(user_id="ghost", provider=OAuthProvider.MICROSOFT, provider_user_id="m-1")
        )


def test_auth_log_purge_keeps_recent_rows():
    store = MemoryStore()
    store.append_auth_log(
        AuthLog(event_type=AuthEventType.LOGOUT, success=True, created_at=NOW - timedelta(days=100))
    )
    store.append_auth_log(AuthLog(event_type=AuthEventType.LOGOUT, success=True, created_at=NOW))
    assert store.purge_auth_logs(before=NOW - timedelta(days=90)) == 1
    assert [entry.created_at for entry in store.list_auth_logs()] == [NOW]


def test_state_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user(
        User.new(
            "persist@example.com",
            account_status=AccountStatus.ACTIVE,
            email_verified=True,
            trial_expires_at=NOW + timedelta(days=14),
        )
    )
    store.save_token(_token(user.id))
    store.create_oauth_link(
        OAuthLink(user_id=user.id, provider=OAuthProvider.MICROSOFT, provider_user_id="m-9")
    )
    store.append_auth_log(
        AuthLog(event_type=AuthEventType.REGISTRATION, success=True, user_id=user.id)
    )

    reloaded = MemoryStore(fs_root=str(tmp_path))

    reloaded_user = reloaded.get_user(user.id)
    assert reloaded_user.account_status == AccountStatus.ACTIVE
    assert reloaded_user.trial_expires_at == NOW + timedelta(days=14)
    assert reloaded.get_oauth_link(OAuthProvider.MICROSOFT, "m-9").user_id == user.id
    assert reloaded.consume_token(hash_token("raw-token"), TokenPurpose.PASSWORD_RESET, now=NOW)
    assert reloaded.list_auth_logs(user_id=user.id)[0].event_type == AuthEventType.REGISTRATION
