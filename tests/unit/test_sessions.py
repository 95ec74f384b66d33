from datetime import timedelta

import pytest

from visitrack.core.errors import ConflictError, NotFoundError, ValidationError
from visitrack.models.session import SessionStatus
from visitrack.schemas.session import SessionAttributes
from visitrack.services.sessions import compute_duration_ms, is_terminal
from visitrack.services.windows import TimeWindow
from tests.conftest import T0


def test_compute_duration_ms():
    assert compute_duration_ms(T0, T0 + timedelta(minutes=1, milliseconds=5)) == 60005


def test_is_terminal():
    assert is_terminal(SessionStatus.ENDED.value)
    assert is_terminal(SessionStatus.EXPIRED.value)
    assert not is_terminal(SessionStatus.ACTIVE.value)


@pytest.mark.asyncio
async def test_create_session(tracker, ledger):
    session = await tracker.create("user-1", SessionAttributes(device="mobile", country="DE"), session_id="s1")

    assert session.status == SessionStatus.ACTIVE.value
    assert session.start_time == T0
    assert session.last_activity_at == T0
    assert session.page_views == 0
    assert session.event_count == 0
    assert session.device == "mobile"

    visitor = await ledger.get("user-1")
    assert visitor.total_sessions == 1


@pytest.mark.asyncio
async def test_create_with_existing_id_conflicts(tracker):
    await tracker.create("user-1", session_id="s1")
    with pytest.raises(ConflictError):
        await tracker.create("user-2", session_id="s1")


@pytest.mark.asyncio
async def test_record_activity_updates_counters_and_pages(tracker, clock):
    await tracker.create("user-1", session_id="s1")
    clock.advance(minutes=2)

    assert await tracker.record_activity("s1", is_page_view=True, page_url="/home")
    assert await tracker.record_activity("s1", is_page_view=False)
    assert await tracker.record_activity("s1", is_page_view=True, page_url="/cart")

    session = await tracker.get("s1")
    assert session.event_count == 3
    assert session.page_views == 2
    assert session.entry_page == "/home"
    assert session.exit_page == "/cart"
    assert session.last_activity_at == T0 + timedelta(minutes=2)


@pytest.mark.asyncio
async def test_record_activity_on_unknown_session_is_dropped(tracker):
    assert await tracker.record_activity("missing", is_page_view=True) is False


@pytest.mark.asyncio
async def test_end_session_sets_duration(tracker, clock):
    await tracker.create("user-1", session_id="s1")
    clock.advance(minutes=5)

    session = await tracker.end_session("s1", exit_page="/bye")

    assert session.status == SessionStatus.ENDED.value
    assert session.end_time == T0 + timedelta(minutes=5)
    assert session.duration == 300000
    assert session.exit_page == "/bye"


@pytest.mark.asyncio
async def test_ending_a_terminal_session_changes_nothing(tracker, clock):
    await tracker.create("user-1", session_id="s1")
    clock.advance(minutes=5)
    first = await tracker.end_session("s1")
    end_time, duration = first.end_time, first.duration

    clock.advance(minutes=10)
    second = await tracker.end_session("s1", exit_page="/late")

    assert second.status == SessionStatus.ENDED.value
    assert second.end_time == end_time
    assert second.duration == duration
    assert second.exit_page is None


@pytest.mark.asyncio
async def test_end_unknown_session(tracker):
    with pytest.raises(NotFoundError):
        await tracker.end_session("missing")


@pytest.mark.asyncio
async def test_sweep_expires_idle_sessions_at_cutoff(tracker, clock):
    await tracker.create("user-1", session_id="idle")
    clock.advance(minutes=20)
    await tracker.create("user-2", session_id="busy")
    clock.advance(minutes=11)

    expired = await tracker.sweep_inactive(timedelta(minutes=30))

    assert expired == 1
    idle = await tracker.get("idle")
    assert idle.status == SessionStatus.EXPIRED.value
    assert idle.end_time == T0 + timedelta(minutes=1)
    assert idle.duration == 60000

    busy = await tracker.get("busy")
    assert busy.status == SessionStatus.ACTIVE.value


@pytest.mark.asyncio
async def test_sweep_is_idempotent(tracker, clock):
    await tracker.create("user-1", session_id="s1")
    clock.advance(hours=1)

    assert await tracker.sweep_inactive(timedelta(minutes=30)) == 1
    assert await tracker.sweep_inactive(timedelta(minutes=30)) == 0


@pytest.mark.asyncio
async def test_activity_keeps_session_alive(tracker, clock):
    await tracker.create("user-1", session_id="s1")
    clock.advance(minutes=25)
    await tracker.record_activity("s1", is_page_view=True, page_url="/home")
    clock.advance(minutes=25)

    assert await tracker.sweep_inactive(timedelta(minutes=30)) == 0


@pytest.mark.asyncio
async def test_activity_never_reopens_expired_session(tracker, clock):
    await tracker.create("user-1", session_id="s1")
    await tracker.record_activity("s1", is_page_view=True, page_url="/home")
    clock.advance(hours=1)
    await tracker.sweep_inactive(timedelta(minutes=30))

    assert await tracker.record_activity("s1", is_page_view=True, page_url="/late") is False

    session = await tracker.get("s1")
    assert session.status == SessionStatus.EXPIRED.value
    assert session.page_views == 1
    assert session.event_count == 1
    assert session.exit_page == "/home"


@pytest.mark.asyncio
async def test_sweep_rejects_non_positive_threshold(tracker):
    with pytest.raises(ValidationError):
        await tracker.sweep_inactive(timedelta(0))


@pytest.mark.asyncio
async def test_search_and_stats(tracker, clock):
    await tracker.create("user-1", SessionAttributes(device="mobile", country="DE"), session_id="s1")
    await tracker.record_activity("s1", is_page_view=True, page_url="/a")
    clock.advance(minutes=1)
    await tracker.create("user-2", SessionAttributes(device="desktop", country="DE"), session_id="s2")
    await tracker.record_activity("s2", is_page_view=True, page_url="/a")
    await tracker.record_activity("s2", is_page_view=True, page_url="/b")
    clock.advance(minutes=1)
    await tracker.create("user-2", session_id="s3")
    await tracker.end_session("s1")

    sessions, total, total_pages = await tracker.search(user_id="user-2", limit=1)
    assert total == 2
    assert total_pages == 2
    assert [s.session_id for s in sessions] == ["s3"]

    ended, total, _ = await tracker.search(status=SessionStatus.ENDED)
    assert total == 1
    assert ended[0].session_id == "s1"

    stats = await tracker.stats(TimeWindow(T0, T0 + timedelta(hours=1)))
    assert stats.total_sessions == 3
    assert stats.active_sessions == 2
    assert stats.bounce_rate == 66.67
    assert [d.device for d in stats.sessions_by_device] == ["Unknown", "desktop", "mobile"]
    assert stats.sessions_by_country[0].country == "DE"
    assert stats.sessions_by_country[0].sessions == 2
    assert stats.sessions_by_country[0].unique_users == 2


@pytest.mark.asyncio
async def test_search_rejects_unknown_sort_field(tracker):
    with pytest.raises(ValidationError):
        await tracker.search(sort_by="password")


@pytest.mark.asyncio
async def test_forty_minutes_idle_expires_with_duration_to_cutoff(tracker, clock):
    await tracker.create("u1", session_id="s1")
    for n in range(5):
        await tracker.record_activity("s1", is_page_view=True, page_url=f"/page/{n}")
    clock.advance(minutes=40)

    assert await tracker.sweep_inactive(timedelta(minutes=30)) == 1

    session = await tracker.get("s1")
    assert session.status == SessionStatus.EXPIRED.value
    assert session.page_views == 5
    assert session.end_time == T0 + timedelta(minutes=10)
    assert session.duration == 10 * 60 * 1000


@pytest.mark.asyncio
async def test_activity_between_sweep_select_and_update_keeps_session_active(tracker, clock, monkeypatch):
    await tracker.create("user-1", session_id="s1")
    await tracker.create("user-2", session_id="s2")
    clock.advance(hours=1)

    execute = tracker.db.execute
    interleaved = []

    async def execute_then_record_activity(statement, *args, **kwargs):
        result = await execute(statement, *args, **kwargs)
        if not interleaved:
            # The sweep has just read its candidates; s1 sees activity before the UPDATE
            interleaved.append(statement)
            assert await tracker.record_activity("s1", is_page_view=True, page_url="/late")
        return result

    monkeypatch.setattr(tracker.db, "execute", execute_then_record_activity)

    assert await tracker.sweep_inactive(timedelta(minutes=30)) == 1

    s1 = await tracker.get("s1")
    assert s1.status == SessionStatus.ACTIVE.value
    assert s1.end_time is None
    assert s1.last_activity_at == T0 + timedelta(hours=1)
    assert s1.page_views == 1
    assert (await tracker.get("s2")).status == SessionStatus.EXPIRED.value
