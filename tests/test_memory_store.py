import asyncio
from datetime import timedelta

import pytest

from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.memory import MemoryStore
from latchkey.storage.models import Identifier, utcnow


EMAIL = Identifier(type="email-otp", value="a@b.com")


async def test_create_user_and_lookup():
    store = MemoryStore()
    user = await store.create_user(EMAIL, {"name": "A"})

    assert await store.get_user_by_id(user.id) is user
    assert await store.get_user_by_identifier(EMAIL) is user
    assert await store.get_user_by_identifier(Identifier("email-otp", "x@b.com")) is None
    assert user.mfa_enabled is False
    assert user.data == {"name": "A"}


async def test_identifier_is_unique_per_type():
    store = MemoryStore()
    await store.create_user(EMAIL)

    with pytest.raises(ConstraintViolation):
        await store.create_user(Identifier(type="email-otp", value="a@b.com"))

    other = await store.create_user(Identifier(type="google-oauth", value="a@b.com"))
    assert other.id in store.users


async def test_identifier_data_is_stored():
    store = MemoryStore()
    ident = Identifier(type="google-oauth", value="123", data={"email": "a@b.com"})
    user = await store.create_user(ident)
    assert store.identifiers[("google-oauth", "123")] == {
        "user_id": user.id,
        "data": {"email": "a@b.com"},
    }


async def test_update_session_refuses_invalidated():
    store = MemoryStore()
    session = await store.create_session("u1", "t" * 64, utcnow() + timedelta(days=1))

    assert await store.update_session(session.id, mfa_verified=True) is True
    await store.invalidate_session(session.id)
    first_invalidated_at = session.invalidated_at

    assert await store.update_session(session.id, used_at=utcnow()) is False
    assert await store.update_session("missing", used_at=utcnow()) is False
    await store.invalidate_session(session.id)
    assert session.invalidated_at == first_invalidated_at


async def test_invalidate_all_user_sessions_counts():
    store = MemoryStore()
    expires = utcnow() + timedelta(days=1)
    s1 = await store.create_session("u1", "a", expires)
    await store.create_session("u1", "b", expires)
    other = await store.create_session("u2", "c", expires)
    await store.invalidate_session(s1.id)

    assert await store.invalidate_all_user_sessions("u1") == 1
    assert other.invalidated is False
    assert all(s.invalidated for s in store.sessions.values() if s.user_id == "u1")


async def test_mark_otp_as_used_once():
    store = MemoryStore()
    otp = await store.create_otp("a@b.com", "123456", utcnow() + timedelta(minutes=5), "sig")

    results = await asyncio.gather(*(store.mark_otp_as_used(otp.id) for _ in range(10)))

    assert results.count(True) == 1
    assert await store.mark_otp_as_used("missing") is False


async def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = await store.create_user(EMAIL, {"name": "A"})
    await store.set_user_mfa_enabled(user.id, True)
    session = await store.create_session(
        user.id, "tok", utcnow() + timedelta(days=1), "1.2.3.4", "ua", mfa_enabled=True
    )
    otp = await store.create_otp("a@b.com", "123456", utcnow() + timedelta(minutes=5), "sig")
    await store.mark_otp_as_used(otp.id)

    reloaded = MemoryStore(fs_root=str(tmp_path))

    restored = await reloaded.get_user_by_identifier(EMAIL)
    assert restored.id == user.id
    assert restored.mfa_enabled is True
    assert restored.data == {"name": "A"}
    restored_session = await reloaded.get_session_by_id(session.id)
    assert restored_session.token == "tok"
    assert restored_session.expires_at == session.expires_at
    assert restored_session.mfa_enabled is True
    assert (await reloaded.get_otp_by_id(otp.id)).used is True
    assert (tmp_path / "state" / "memory_store.json").exists()


def test_corrupt_state_is_ignored(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "memory_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))

    assert store.users == {}
