import pytest

from notify_queue.models import JobKind
from notify_queue.preferences import DEFAULT_PREFERENCES, AllowAll, InMemoryPreferences


@pytest.mark.asyncio
async def test_unknown_users_receive_everything():
    prefs = InMemoryPreferences()
    assert await prefs.is_channel_enabled("nobody", JobKind.FOCUS_ALERT)
    assert await prefs.is_channel_enabled(None, JobKind.WELCOME)
    assert await AllowAll().is_channel_enabled("u1", JobKind.ACHIEVEMENT)


@pytest.mark.asyncio
async def test_stored_preferences_fall_back_to_defaults():
    prefs = InMemoryPreferences({"u1": {"email_achievements_enabled": False}})
    assert not await prefs.is_channel_enabled("u1", JobKind.ACHIEVEMENT)
    assert await prefs.is_channel_enabled("u1", JobKind.TASK_REMINDER)
    # focus alerts are opt-in
    assert not await prefs.is_channel_enabled("u1", JobKind.FOCUS_ALERT)
    assert await prefs.is_channel_enabled("u1", JobKind.BATCH_CHUNK)


@pytest.mark.asyncio
async def test_update_merges_flags():
    prefs = InMemoryPreferences()
    prefs.update("u1", {"email_focus_session_alerts_enabled": 1})
    assert await prefs.is_channel_enabled("u1", JobKind.FOCUS_ALERT)
    prefs.update("u1", {"email_enabled": False})
    assert not await prefs.is_channel_enabled("u1", JobKind.PASSWORD_RESET)
    assert prefs.get("u1")["email_focus_session_alerts_enabled"] is True
    assert prefs.get("u2") == DEFAULT_PREFERENCES
