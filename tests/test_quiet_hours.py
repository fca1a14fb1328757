from datetime import datetime, timezone

import pytest

from notify_queue.models import JobKind
from notify_queue.quiet_hours import NeverQuiet, QuietHoursWindows, QuietWindow, bypasses_quiet_hours


def ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


@pytest.mark.parametrize(
    "at, expected",
    [
        (ms(2024, 1, 10, 23, 0), ms(2024, 1, 11, 8, 0)),
        (ms(2024, 1, 11, 3, 0), ms(2024, 1, 11, 8, 0)),
        (ms(2024, 1, 10, 22, 0), ms(2024, 1, 11, 8, 0)),
        (ms(2024, 1, 10, 12, 0), None),
        (ms(2024, 1, 11, 8, 0), None),
    ],
)
def test_overnight_window(at, expected):
    window = QuietWindow(start="22:00", end="08:00", timezone="UTC")
    assert window.window_end(at) == expected


def test_same_day_window_ends_today():
    window = QuietWindow(start="01:00", end="06:00", timezone="UTC")
    assert window.window_end(ms(2024, 1, 10, 2, 30)) == ms(2024, 1, 10, 6, 0)
    assert window.window_end(ms(2024, 1, 10, 7, 0)) is None


def test_window_is_evaluated_in_user_timezone():
    window = QuietWindow(start="22:00", end="08:00", timezone="Europe/Rome")
    # 21:30 UTC is 22:30 in Rome during winter
    assert window.window_end(ms(2024, 1, 10, 21, 30)) == ms(2024, 1, 11, 7, 0)
    assert window.window_end(ms(2024, 1, 10, 20, 30)) is None


def test_disabled_window_never_applies():
    window = QuietWindow(enabled=False)
    assert window.window_end(ms(2024, 1, 10, 23, 0)) is None


def test_invalid_time_of_day_is_rejected():
    with pytest.raises(ValueError):
        QuietWindow(start="25:00")


def test_bypass_policy():
    assert bypasses_quiet_hours(JobKind.TASK_REMINDER, 80)
    assert bypasses_quiet_hours(JobKind.PASSWORD_RESET, 10)
    assert bypasses_quiet_hours(JobKind.VERIFICATION, 90)
    assert not bypasses_quiet_hours(JobKind.ACHIEVEMENT, 30)


@pytest.mark.asyncio
async def test_oracle_defers_only_users_with_a_window():
    oracle = QuietHoursWindows({"u1": QuietWindow()})
    assert await oracle.should_defer("u1", JobKind.ACHIEVEMENT, 30) is True
    assert await oracle.should_defer("u1", JobKind.PASSWORD_RESET, 90) is False
    assert await oracle.should_defer("u1", JobKind.TASK_REMINDER, 80) is False
    assert await oracle.should_defer("u2", JobKind.ACHIEVEMENT, 30) is False
    assert await oracle.should_defer(None, JobKind.BATCH_CHUNK, 10) is False


@pytest.mark.asyncio
async def test_next_allowed_time():
    oracle = QuietHoursWindows()
    oracle.set_window("u1", QuietWindow(start="22:00", end="08:00"))
    night = ms(2024, 1, 10, 23, 0)
    noon = ms(2024, 1, 10, 12, 0)
    assert await oracle.next_allowed_time("u1", night) == ms(2024, 1, 11, 8, 0)
    assert await oracle.next_allowed_time("u1", noon) == noon
    assert await oracle.next_allowed_time("u2", night) == night

    oracle.set_window("u1", None)
    assert await oracle.next_allowed_time("u1", night) == night


@pytest.mark.asyncio
async def test_never_quiet():
    oracle = NeverQuiet()
    assert await oracle.should_defer("u1", JobKind.WELCOME, 70) is False
    assert await oracle.next_allowed_time("u1", 123) == 123
