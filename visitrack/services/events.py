import math
import uuid
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, func, desc, asc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from visitrack.core.errors import AppError, ConflictError, DuplicateKeyError, NotFoundError, ValidationError
from visitrack.models.event import Event, EventType
from visitrack.schemas.event import (
    EventCreate,
    EventResponse,
    BatchIngestResponse,
    BatchRejection,
    JourneySession,
    MAX_BATCH_SIZE,
)
from visitrack.schemas.session import SessionAttributes
from visitrack.services.ledger import VisitorLedger
from visitrack.services.queries import GroupCount, in_window, group_by_field
from visitrack.services.sessions import SessionTracker
from visitrack.services.windows import Clock, TimeWindow, utcnow

logger = structlog.get_logger()

SORTABLE_FIELDS = {
    "timestamp": Event.timestamp,
    "eventType": Event.event_type,
    "userId": Event.user_id,
    "sessionId": Event.session_id,
    "pageUrl": Event.page_url,
}


def purchase_amount(event_type: EventType, properties: dict[str, Any]) -> float:
    """Revenue carried by an event: ``properties.amount`` on purchases, else 0"""
    if event_type != EventType.PURCHASE:
        return 0.0
    amount = properties.get("amount")
    if isinstance(amount, bool):
        return 0.0
    try:
        value = float(amount) if amount is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
    # NaN and infinities count as no revenue
    return value if math.isfinite(value) else 0.0


def escape_like(text: str) -> str:
    """Make ``%`` and ``_`` match literally in a LIKE pattern escaped by ``\\``"""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class EventStore:
    """Append-only event storage with idempotent ingestion"""

    def __init__(
            self,
            db: AsyncSession,
            tracker: SessionTracker,
            ledger: VisitorLedger,
            clock: Clock = utcnow
    ):
        self.db = db
        self.tracker = tracker
        self.ledger = ledger
        self.clock = clock

    async def ingest(self, payload: EventCreate) -> Event:
        """
        Store one event, then update the visitor ledger and the session.

        Raises:
            DuplicateKeyError: the event id was already ingested; nothing is
                written and no counters move.
        """
        now = self.clock()
        event_id = payload.event_id or str(uuid.uuid4())

        # Pre-check keeps the common duplicate path free of constraint errors
        existing = await self.db.execute(select(Event.event_id).where(Event.event_id == event_id))
        if existing.first() is not None:
            raise DuplicateKeyError(f"Event {event_id} already exists", details={"eventId": event_id})

        timestamp = payload.timestamp or now
        revenue = purchase_amount(payload.event_type, payload.properties)
        event = Event(
            event_id=event_id,
            user_id=payload.user_id,
            session_id=payload.session_id,
            event_type=payload.event_type.value,
            timestamp=timestamp,
            properties=payload.properties,
            event_metadata=payload.metadata.model_dump(by_alias=True, exclude_none=True),
            page_url=payload.page_url,
            referrer=payload.referrer,
            duration=payload.duration,
            revenue=revenue,
            created_at=now,
        )
        self.db.add(event)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            # Lost a race with a concurrent insert of the same key
            if await self.db.get(Event, event_id) is not None:
                raise DuplicateKeyError(f"Event {event_id} already exists", details={"eventId": event_id})
            raise

        await self.ledger.record_event(
            payload.user_id,
            timestamp,
            is_purchase=payload.event_type == EventType.PURCHASE,
            revenue=revenue
        )
        await self.db.commit()

        await self._notify_session(payload)

        logger.info(
            "event_ingested",
            event_id=event_id,
            event_type=payload.event_type.value,
            session_id=payload.session_id
        )
        return event

    async def _notify_session(self, payload: EventCreate):
        """Feed lifecycle signals and activity counters to the session tracker"""
        if payload.event_type == EventType.SESSION_START:
            attrs = SessionAttributes.model_validate({
                **payload.metadata.model_dump(include=set(SessionAttributes.model_fields)),
                "entry_page": payload.page_url,
            })
            try:
                await self.tracker.create(payload.user_id, attrs, session_id=payload.session_id)
            except ConflictError:
                # A session created earlier (or restarted) keeps its current state
                logger.info("session_already_started", session_id=payload.session_id)

        await self.tracker.record_activity(
            payload.session_id,
            is_page_view=payload.event_type == EventType.PAGE_VIEW,
            page_url=payload.page_url
        )

        if payload.event_type == EventType.SESSION_END:
            try:
                await self.tracker.end_session(payload.session_id, exit_page=payload.page_url)
            except NotFoundError:
                logger.info("session_end_for_unknown_session", session_id=payload.session_id)

    async def ingest_batch(self, items: list[Any]) -> BatchIngestResponse:
        """
        Ingest each item independently.

        A rejected item (not an object, invalid payload or duplicate key) is
        reported and never rolls back the items accepted before or after it.
        """
        if len(items) > MAX_BATCH_SIZE:
            raise ValidationError(f"Batch size cannot exceed {MAX_BATCH_SIZE} events")

        accepted = 0
        rejected: list[BatchRejection] = []

        for index, item in enumerate(items):
            if isinstance(item, EventCreate):
                raw_id = item.event_id
            elif isinstance(item, dict):
                raw_id = item.get("eventId")
            else:
                rejected.append(BatchRejection(
                    index=index,
                    code=ValidationError.code,
                    message=f"Event must be an object, got {type(item).__name__}"
                ))
                continue
            try:
                payload = item if isinstance(item, EventCreate) else EventCreate.model_validate(item)
                await self.ingest(payload)
                accepted += 1
            except PydanticValidationError as e:
                rejected.append(BatchRejection(
                    index=index,
                    event_id=raw_id if isinstance(raw_id, str) else None,
                    code=ValidationError.code,
                    message="; ".join(
                        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                    )
                ))
            except AppError as e:
                rejected.append(BatchRejection(
                    index=index,
                    event_id=raw_id if isinstance(raw_id, str) else None,
                    code=e.code,
                    message=e.message
                ))

        logger.info(
            "event_batch_ingested",
            total=len(items),
            accepted=accepted,
            rejected=len(rejected)
        )
        return BatchIngestResponse(total_received=len(items), accepted=accepted, rejected=rejected)

    async def get(self, event_id: str) -> Event:
        event = await self.db.get(Event, event_id)
        if event is None:
            raise NotFoundError("Event")
        return event

    async def query(
            self,
            user_id: Optional[str] = None,
            session_id: Optional[str] = None,
            event_type: Optional[EventType] = None,
            page_url: Optional[str] = None,
            window: Optional[TimeWindow] = None,
            page: int = 1,
            limit: int = 50,
            sort_by: str = "timestamp",
            sort_order: str = "desc"
    ) -> tuple[list[Event], int, int]:
        """Filtered, paginated search. Returns (events, total, total_pages)."""
        column = SORTABLE_FIELDS.get(sort_by)
        if column is None:
            raise ValidationError(
                f"Cannot sort events by '{sort_by}'",
                details={"allowed": sorted(SORTABLE_FIELDS)}
            )

        criteria = []
        if user_id:
            criteria.append(Event.user_id == user_id)
        if session_id:
            criteria.append(Event.session_id == session_id)
        if event_type:
            criteria.append(Event.event_type == EventType(event_type).value)
        if page_url:
            criteria.append(Event.page_url.ilike(f"%{escape_like(page_url)}%", escape="\\"))
        if window:
            criteria.append(in_window(Event.timestamp, window))

        total = (await self.db.execute(
            select(func.count()).select_from(Event).where(*criteria)
        )).scalar() or 0

        direction = asc if sort_order == "asc" else desc
        result = await self.db.execute(
            select(Event)
            .where(*criteria)
            .order_by(direction(column), direction(Event.event_id))
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars()), total, math.ceil(total / limit) if limit else 0

    async def by_user(
            self,
            user_id: str,
            window: Optional[TimeWindow] = None,
            limit: int = 100
    ) -> list[Event]:
        events, _, _ = await self.query(
            user_id=user_id, window=window, limit=limit, sort_by="timestamp", sort_order="desc"
        )
        return events

    async def by_session(self, session_id: str) -> list[Event]:
        """All events of a session, oldest first"""
        result = await self.db.execute(
            select(Event)
            .where(Event.session_id == session_id)
            .order_by(asc(Event.timestamp), asc(Event.event_id))
        )
        return list(result.scalars())

    async def user_journey(self, user_id: str, window: Optional[TimeWindow] = None) -> list[JourneySession]:
        """A user's events grouped per session, newest session first"""
        criteria = [Event.user_id == user_id]
        if window:
            criteria.append(in_window(Event.timestamp, window))

        result = await self.db.execute(
            select(Event).where(*criteria).order_by(asc(Event.timestamp), asc(Event.event_id))
        )

        grouped: dict[str, list[Event]] = {}
        for event in result.scalars():
            grouped.setdefault(event.session_id, []).append(event)

        journeys = [
            JourneySession(
                session_id=session_id,
                start_time=events[0].timestamp,
                end_time=events[-1].timestamp,
                event_count=len(events),
                events=[EventResponse.model_validate(e) for e in events]
            )
            for session_id, events in grouped.items()
        ]
        journeys.sort(key=lambda j: (j.start_time, j.session_id), reverse=True)
        return journeys

    async def event_counts(self, window: TimeWindow) -> list[GroupCount]:
        return await group_by_field(self.db, Event.event_type, Event.timestamp, window)
