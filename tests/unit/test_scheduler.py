import json
from datetime import date, timedelta

import duckdb
import pytest

from visitrack.models.session import SessionStatus
from visitrack.services.export import SUMMARY_TABLE, SummaryExporter
from visitrack.services.scheduler import EXPORT_MARKER_KEY, LOCK_KEY, SweepScheduler
from tests.conftest import T0, make_event


@pytest.fixture()
def scheduler(database, fake_redis, settings, clock):
    return SweepScheduler(database, fake_redis, settings, clock=clock)


@pytest.mark.asyncio
async def test_run_once_sweeps_and_exports(scheduler, store, tracker, clock, settings, fake_redis):
    await store.ingest(make_event("SESSION_START", timestamp=(T0 - timedelta(hours=14)).isoformat()))
    await store.ingest(make_event("PAGE_VIEW", pageUrl="/home", timestamp=(T0 - timedelta(hours=13)).isoformat()))
    clock.advance(hours=1)

    result = await scheduler.run_once()

    assert result == {"ran": True, "expired": 1, "exported": True}
    assert (await tracker.get("sess-1")).status == SessionStatus.EXPIRED.value
    assert fake_redis.get(EXPORT_MARKER_KEY) == "2024-03-09"
    assert fake_redis.get(LOCK_KEY) is None

    exported = json.loads((scheduler.exporter.export_dir / "summary-2024-03-09.json").read_text())
    assert exported["totalEvents"] == 2
    assert exported["totalPageViews"] == 1
    assert exported["eventBreakdown"]["SESSION_START"] == 1

    con = duckdb.connect(settings.duckdb_path)
    rows = con.execute(f"SELECT day, total_events FROM {SUMMARY_TABLE}").fetchall()
    con.close()
    assert rows == [("2024-03-09", 2)]


@pytest.mark.asyncio
async def test_export_runs_once_per_day(scheduler):
    first = await scheduler.run_once()
    second = await scheduler.run_once()

    assert first["exported"] is True
    assert second["exported"] is False


@pytest.mark.asyncio
async def test_tick_is_skipped_while_lock_is_held(scheduler, fake_redis):
    fake_redis.set(LOCK_KEY, "another-runner")

    result = await scheduler.run_once()

    assert result["ran"] is False
    assert fake_redis.get(LOCK_KEY) == "another-runner"
    assert fake_redis.get(EXPORT_MARKER_KEY) is None


def test_release_does_not_drop_a_foreign_lock(scheduler, fake_redis):
    token = scheduler.acquire_lock()
    assert token is not None
    assert scheduler.acquire_lock() is None

    fake_redis.set(LOCK_KEY, "someone-else")
    scheduler.release_lock(token)
    assert fake_redis.get(LOCK_KEY) == "someone-else"


@pytest.mark.asyncio
async def test_reexport_replaces_the_day(analytics, tmp_path):
    exporter = SummaryExporter(str(tmp_path / "out"), str(tmp_path / "db" / "summaries.duckdb"))
    summary = await analytics.summary(T0 - timedelta(days=1), T0)

    exporter.export(date(2024, 3, 9), summary)
    exporter.export(date(2024, 3, 9), summary)

    con = duckdb.connect(str(tmp_path / "db" / "summaries.duckdb"))
    count = con.execute(f"SELECT COUNT(*) FROM {SUMMARY_TABLE}").fetchone()[0]
    con.close()
    assert count == 1
