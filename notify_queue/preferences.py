"""Per-user notification preferences consulted before a job is enqueued."""

from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from .models import JobKind

# Flag controlling each user-addressed kind. ``email_enabled`` is the master switch.
KIND_FLAGS: Dict[JobKind, str] = {
    JobKind.WELCOME: "email_welcome_enabled",
    JobKind.VERIFICATION: "email_verification_enabled",
    JobKind.PASSWORD_RESET: "email_password_reset_enabled",
    JobKind.TASK_REMINDER: "email_task_reminders_enabled",
    JobKind.FOCUS_ALERT: "email_focus_session_alerts_enabled",
    JobKind.ACHIEVEMENT: "email_achievements_enabled",
    JobKind.WEEKLY_DIGEST: "email_weekly_digest_enabled",
}

DEFAULT_PREFERENCES: Dict[str, bool] = {
    "email_enabled": True,
    "email_welcome_enabled": True,
    "email_verification_enabled": True,
    "email_password_reset_enabled": True,
    "email_task_reminders_enabled": True,
    "email_weekly_digest_enabled": True,
    "email_focus_session_alerts_enabled": False,
    "email_achievements_enabled": True,
}


class PreferenceStore(Protocol):
    async def is_channel_enabled(self, user_id: Optional[str], kind: JobKind) -> bool:
        ...


class AllowAll:
    """Permissive store: every channel is enabled for every user."""

    async def is_channel_enabled(self, user_id: Optional[str], kind: JobKind) -> bool:
        return True


class InMemoryPreferences:
    """Flat boolean preference table keyed by user id.

    Users without stored preferences receive everything. Once a user has
    preferences, flags that were not provided fall back to
    :data:`DEFAULT_PREFERENCES`.
    """

    def __init__(self, table: Optional[Dict[str, Dict[str, Any]]] = None):
        self.table: Dict[str, Dict[str, bool]] = {}
        for user_id, prefs in (table or {}).items():
            self.update(user_id, prefs)

    def update(self, user_id: str, prefs: Dict[str, Any]) -> Dict[str, bool]:
        current = self.table.setdefault(user_id, dict(DEFAULT_PREFERENCES))
        for key, value in prefs.items():
            current[key] = bool(value)
        return current

    def get(self, user_id: str) -> Dict[str, bool]:
        return dict(self.table.get(user_id, DEFAULT_PREFERENCES))

    async def is_channel_enabled(self, user_id: Optional[str], kind: JobKind) -> bool:
        if not user_id or user_id not in self.table:
            return True
        prefs = self.table[user_id]
        if not prefs.get("email_enabled", True):
            return False
        flag = KIND_FLAGS.get(kind)
        if flag is None:
            return True
        return prefs.get(flag, DEFAULT_PREFERENCES.get(flag, True))
