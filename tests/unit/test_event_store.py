from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from visitrack.core.errors import DuplicateKeyError, NotFoundError, ValidationError
from visitrack.models.session import SessionStatus
from visitrack.services import events as events_module
from visitrack.services.events import escape_like, purchase_amount
from visitrack.models.event import EventType
from visitrack.services.windows import TimeWindow
from tests.conftest import T0, make_event


def test_purchase_amount_only_counts_purchases():
    assert purchase_amount(EventType.PURCHASE, {"amount": "19.5"}) == 19.5
    assert purchase_amount(EventType.PURCHASE, {"amount": "n/a"}) == 0.0
    assert purchase_amount(EventType.PURCHASE, {}) == 0.0
    assert purchase_amount(EventType.ADD_TO_CART, {"amount": 10}) == 0.0


def test_purchase_amount_ignores_non_finite_values():
    assert purchase_amount(EventType.PURCHASE, {"amount": "NaN"}) == 0.0
    assert purchase_amount(EventType.PURCHASE, {"amount": "1e400"}) == 0.0
    assert purchase_amount(EventType.PURCHASE, {"amount": "-inf"}) == 0.0
    assert purchase_amount(EventType.PURCHASE, {"amount": float("inf")}) == 0.0


def test_escape_like():
    assert escape_like("50%_off") == "50\\%\\_off"
    assert escape_like("a\\b") == "a\\\\b"


@pytest.mark.asyncio
async def test_ingest_defaults_id_and_timestamp(store):
    event = await store.ingest(make_event())

    assert event.event_id
    assert event.timestamp == T0
    assert event.created_at == T0
    assert (await store.get(event.event_id)).user_id == "user-1"


@pytest.mark.asyncio
async def test_session_start_creates_session(store, tracker):
    await store.ingest(make_event(
        "SESSION_START",
        pageUrl="/landing",
        metadata={"device": "mobile", "country": "FR", "userAgent": "Mozilla/5.0", "campaign": "spring"}
    ))

    session = await tracker.get("sess-1")
    assert session.status == SessionStatus.ACTIVE.value
    assert session.device == "mobile"
    assert session.country == "FR"
    assert session.user_agent == "Mozilla/5.0"
    assert session.entry_page == "/landing"
    assert session.event_count == 1
    assert session.page_views == 0


@pytest.mark.asyncio
async def test_unknown_metadata_keys_pass_through(store):
    event = await store.ingest(make_event(metadata={"campaign": "spring", "ipAddress": "10.0.0.1"}))
    stored = await store.get(event.event_id)
    assert stored.event_metadata == {"campaign": "spring", "ipAddress": "10.0.0.1"}


@pytest.mark.asyncio
async def test_events_drive_session_counters_and_end(store, tracker, clock):
    await store.ingest(make_event("SESSION_START"))
    clock.advance(minutes=1)
    await store.ingest(make_event("PAGE_VIEW", pageUrl="/home"))
    await store.ingest(make_event("PAGE_VIEW", pageUrl="/product/1"))
    await store.ingest(make_event("CLICK"))
    clock.advance(minutes=1)
    await store.ingest(make_event("SESSION_END", pageUrl="/product/1"))

    session = await tracker.get("sess-1")
    assert session.status == SessionStatus.ENDED.value
    assert session.event_count == 5
    assert session.page_views == 2
    assert session.entry_page == "/home"
    assert session.exit_page == "/product/1"
    assert session.duration == 120000


@pytest.mark.asyncio
async def test_duplicate_event_is_rejected_without_side_effects(store, ledger, tracker):
    await store.ingest(make_event("SESSION_START", eventId="e1"))

    with pytest.raises(DuplicateKeyError):
        await store.ingest(make_event("SESSION_START", eventId="e1"))

    visitor = await ledger.get("user-1")
    assert visitor.total_events == 1
    assert visitor.total_sessions == 1
    assert (await tracker.get("sess-1")).event_count == 1


@pytest.mark.asyncio
async def test_ledger_tracks_purchases_and_seen_range(store, ledger):
    await store.ingest(make_event("PURCHASE", properties={"amount": 40}, timestamp=T0.isoformat()))
    await store.ingest(make_event(
        "PURCHASE", properties={"amount": 2.5}, timestamp=(T0 - timedelta(days=2)).isoformat()
    ))
    await store.ingest(make_event("PAGE_VIEW", timestamp=(T0 + timedelta(hours=1)).isoformat()))

    visitor = await ledger.get("user-1")
    assert visitor.total_events == 3
    assert visitor.total_purchases == 2
    assert visitor.total_revenue == 42.5
    assert visitor.first_seen == T0 - timedelta(days=2)
    assert visitor.last_seen == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_batch_reports_rejections_and_keeps_accepted(store):
    items = [
        {"eventId": "a", "userId": "u1", "sessionId": "s1", "eventType": "PAGE_VIEW"},
        {"eventId": "b", "sessionId": "s1", "eventType": "PAGE_VIEW"},
        {"eventId": "a", "userId": "u1", "sessionId": "s1", "eventType": "PAGE_VIEW"},
        {"eventId": "c", "userId": "u1", "sessionId": "s1", "eventType": "TELEPORT"},
        {"eventId": "d", "userId": "u1", "sessionId": "s1", "eventType": "CLICK"},
    ]

    result = await store.ingest_batch(items)

    assert result.total_received == 5
    assert result.accepted == 2
    assert [(r.index, r.event_id, r.code) for r in result.rejected] == [
        (1, "b", "VALIDATION_ERROR"),
        (2, "a", "DUPLICATE_KEY"),
        (3, "c", "VALIDATION_ERROR"),
    ]
    _, total, _ = await store.query(user_id="u1")
    assert total == 2


@pytest.mark.asyncio
async def test_batch_over_limit_is_rejected(store):
    items = [{"userId": "u1", "sessionId": "s1", "eventType": "CLICK"}] * 1001
    with pytest.raises(ValidationError):
        await store.ingest_batch(items)


@pytest.mark.asyncio
async def test_query_window_is_half_open(store):
    await store.ingest(make_event(eventId="at-start", timestamp=T0.isoformat()))
    await store.ingest(make_event(eventId="at-end", timestamp=(T0 + timedelta(hours=1)).isoformat()))

    events, total, _ = await store.query(window=TimeWindow(T0, T0 + timedelta(hours=1)))

    assert total == 1
    assert [e.event_id for e in events] == ["at-start"]


@pytest.mark.asyncio
async def test_query_filters_and_sorting(store):
    await store.ingest(make_event(eventId="e1", pageUrl="/Shop/Shoes", timestamp=T0.isoformat()))
    await store.ingest(make_event(
        "CLICK", eventId="e2", pageUrl="/shop/hats", timestamp=(T0 + timedelta(minutes=1)).isoformat()
    ))
    await store.ingest(make_event(eventId="e3", pageUrl="/about", user_id="user-2"))

    events, total, _ = await store.query(page_url="shop", sort_by="timestamp", sort_order="asc")
    assert total == 2
    assert [e.event_id for e in events] == ["e1", "e2"]

    events, total, _ = await store.query(event_type=EventType.CLICK)
    assert [e.event_id for e in events] == ["e2"]

    with pytest.raises(ValidationError):
        await store.query(sort_by="properties")


@pytest.mark.asyncio
async def test_get_unknown_event(store):
    with pytest.raises(NotFoundError):
        await store.get("missing")


@pytest.mark.asyncio
async def test_user_journey_groups_by_session(store):
    await store.ingest(make_event(session_id="old", eventId="o1", timestamp=(T0 - timedelta(days=1)).isoformat()))
    await store.ingest(make_event(
        session_id="old", eventId="o2", timestamp=(T0 - timedelta(days=1, minutes=-5)).isoformat()
    ))
    await store.ingest(make_event(session_id="new", eventId="n1", timestamp=T0.isoformat()))

    journey = await store.user_journey("user-1")

    assert [j.session_id for j in journey] == ["new", "old"]
    assert [e.event_id for e in journey[1].events] == ["o1", "o2"]
    assert journey[1].event_count == 2
    assert journey[1].end_time - journey[1].start_time == timedelta(minutes=5)


@pytest.mark.asyncio
async def test_by_session_is_oldest_first(store):
    await store.ingest(make_event(eventId="late", timestamp=(T0 + timedelta(minutes=3)).isoformat()))
    await store.ingest(make_event(eventId="early", timestamp=T0.isoformat()))

    events = await store.by_session("sess-1")
    assert [e.event_id for e in events] == ["early", "late"]


@pytest.mark.asyncio
async def test_non_finite_amounts_are_stored_as_zero_revenue(store, ledger):
    await store.ingest(make_event("PURCHASE", eventId="nan-amount", properties={"amount": "NaN"}))
    await store.ingest(make_event("PURCHASE", eventId="huge-amount", properties={"amount": "1e400"}))

    assert (await store.get("nan-amount")).revenue == 0.0
    assert (await store.get("huge-amount")).revenue == 0.0
    visitor = await ledger.get("user-1")
    assert visitor.total_purchases == 2
    assert visitor.total_revenue == 0.0


@pytest.mark.asyncio
async def test_constraint_failure_on_new_id_is_not_a_duplicate(store, monkeypatch):
    # SQLite stores NaN as NULL, which the NOT NULL revenue column refuses
    monkeypatch.setattr(events_module, "purchase_amount", lambda event_type, properties: float("nan"))

    with pytest.raises(IntegrityError):
        await store.ingest(make_event("PURCHASE", eventId="fresh-id"))

    with pytest.raises(NotFoundError):
        await store.get("fresh-id")


@pytest.mark.asyncio
async def test_batch_rejects_items_that_are_not_objects(store):
    items = [
        {"eventId": "ok", "userId": "u1", "sessionId": "s1", "eventType": "CLICK"},
        "oops",
        None,
        7,
    ]

    result = await store.ingest_batch(items)

    assert result.total_received == 4
    assert result.accepted == 1
    assert [(r.index, r.event_id, r.code) for r in result.rejected] == [
        (1, None, "VALIDATION_ERROR"),
        (2, None, "VALIDATION_ERROR"),
        (3, None, "VALIDATION_ERROR"),
    ]
    assert (await store.get("ok")).event_type == "CLICK"


@pytest.mark.asyncio
async def test_page_url_filter_matches_wildcards_literally(store):
    await store.ingest(make_event(eventId="literal", pageUrl="/sale_50%"))
    await store.ingest(make_event(eventId="lookalike", pageUrl="/saleX50off"))

    events, total, _ = await store.query(page_url="_50%")

    assert total == 1
    assert [e.event_id for e in events] == ["literal"]
