"""
Turns stored access events into attendance sessions.

Events for a branch are processed in event_time order so entry/exit pairs line
up per person. Each event runs in its own transaction:
  entry  → open a session (a second entry while one is open is an anomaly, not a new session)
  exit   → close the most recent open session (no open session is an anomaly)
  denied → audit only, never attendance

A session still open STALE_SESSION_HOURS after its check-in lost its exit: the
next entry closes it (no duration) and opens a fresh one, and a late exit no
longer pairs with it.

Anomalies still mark the event processed (flagged). Any other failure, such as an
unknown person, leaves the event unprocessed for the next pass and bumps its
attempt counter; after MAX_PROCESSING_ATTEMPTS passes it is dead-lettered and
no longer selected.
"""

from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.exceptions import ProcessingAnomaly, UnknownPersonError
from app.models.access_event import AccessEvent
from app.models.attendance import AttendanceRecord
from app.models.membership import Member
from app.models.person_mapping import PersonMapping
from app.services.event_parser import EVENT_DENIED, EVENT_ENTRY, EVENT_EXIT
from app.services.sync_log_service import LEVEL_ERROR, LEVEL_INFO, LEVEL_WARNING, record_log
from app.utils.logger import get_logger

logger = get_logger(__name__)

STALE_SESSION_NOTE = "Closed automatically: no exit recorded"


async def process_events(db: AsyncSession, tenant_id: str) -> int:
    """Process every pending event of the branch. Returns how many were marked processed."""
    result = await db.execute(
        select(AccessEvent.id)
        .where(
            AccessEvent.branch_id == tenant_id,
            AccessEvent.processed.is_(False),
            AccessEvent.dead_lettered.is_(False),
        )
        .order_by(AccessEvent.event_time.asc(), AccessEvent.id.asc())
        .limit(settings.EVENT_BATCH_LIMIT)
    )
    pending = list(result.scalars().all())
    if not pending:
        return 0

    processed = 0
    for pk in pending:
        if await _process_one(db, pk):
            processed += 1

    logger.info(f"[{tenant_id}] Processed {processed}/{len(pending)} pending events")
    return processed


async def _process_one(db: AsyncSession, pk: int) -> bool:
    event = await db.get(AccessEvent, pk)
    if event is None or event.processed:
        return False    # handled by a concurrent pass
    branch_id, event_id = event.branch_id, event.event_id

    try:
        try:
            await _apply(db, event)
        except ProcessingAnomaly as anomaly:
            event.anomaly = anomaly.kind
            record_log(db, branch_id, LEVEL_WARNING, _label(event, anomaly.kind),
                       details=anomaly.message, entity_type="event", entity_id=event_id)
        event.processed = True
        event.processed_at = datetime.utcnow()
        event.last_error = None
        await db.commit()
        return True
    except Exception as e:  # noqa: BLE001  one bad event must not abort the batch
        await db.rollback()
        logger.error(f"[{branch_id}] Event {event_id} failed: {e}", exc_info=not isinstance(e, UnknownPersonError))
        await _record_failure(db, pk, branch_id, event_id, e)
        return False


async def _record_failure(db: AsyncSession, pk: int, branch_id: str, event_id: str, error: Exception):
    try:
        attempts = (await db.execute(
            select(AccessEvent.processing_attempts).where(AccessEvent.id == pk)
        )).scalar_one() + 1
        dead = attempts >= settings.MAX_PROCESSING_ATTEMPTS
        await db.execute(
            update(AccessEvent)
            .where(AccessEvent.id == pk)
            .values(processing_attempts=attempts, last_error=str(error)[:500], dead_lettered=dead)
        )
        if dead:
            record_log(db, branch_id, LEVEL_ERROR, f"Event {event_id} dead-lettered",
                       details=f"Gave up after {attempts} attempts: {error}",
                       entity_type="event", entity_id=event_id)
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.error(f"[{branch_id}] Could not record failure for event {event_id}", exc_info=True)


async def _apply(db: AsyncSession, event: AccessEvent):
    if event.event_type == EVENT_DENIED:
        record_log(db, event.branch_id, LEVEL_INFO, _label(event, "access denied"),
                   details=f"Door {event.door_name or event.door_id or '?'} at {event.event_time}",
                   entity_type="event", entity_id=event.event_id)
        return

    member_id = await resolve_member_id(db, event.branch_id, event.person_id)
    if event.event_type == EVENT_ENTRY:
        await _open_session(db, event, member_id)
    elif event.event_type == EVENT_EXIT:
        await _close_session(db, event, member_id)
    else:
        raise ValueError(f"Unsupported event type {event.event_type!r}")


async def resolve_member_id(db: AsyncSession, branch_id: str, person_id: Optional[str]) -> str:
    """Map a device person id to a member: mapping table first, then person id == member id."""
    if not person_id:
        raise UnknownPersonError("Event carries no person id")

    mapped = (await db.execute(
        select(PersonMapping.member_id)
        .where(PersonMapping.person_id == person_id, PersonMapping.branch_id == branch_id)
        .limit(1)
    )).scalar_one_or_none()
    if mapped:
        return mapped

    member = await db.get(Member, person_id)
    if member is not None:
        return member.id
    raise UnknownPersonError(f"No member mapped to person {person_id} at branch {branch_id}")


async def _find_open_session(db: AsyncSession, branch_id: str, member_id: str,
                             not_after: Optional[datetime] = None,
                             not_before: Optional[datetime] = None) -> Optional[AttendanceRecord]:
    query = (
        select(AttendanceRecord)
        .where(
            AttendanceRecord.branch_id == branch_id,
            AttendanceRecord.member_id == member_id,
            AttendanceRecord.check_out.is_(None),
        )
        .order_by(AttendanceRecord.check_in.desc())
        .limit(1)
    )
    if not_after is not None:
        query = query.where(AttendanceRecord.check_in <= not_after)
    if not_before is not None:
        query = query.where(AttendanceRecord.check_in >= not_before)
    return (await db.execute(query)).scalars().first()


async def _open_session(db: AsyncSession, event: AccessEvent, member_id: str):
    existing = await _find_open_session(db, event.branch_id, member_id)
    if existing and existing.check_in < event.event_time - _stale_after():
        _close_stale(db, existing, member_id)
        existing = None
    if existing:
        raise ProcessingAnomaly(
            ProcessingAnomaly.DUPLICATE_ENTRY,
            f"Entry at {event.event_time} ignored: session open since {existing.check_in}",
        )

    db.add(AttendanceRecord(
        branch_id=event.branch_id,
        member_id=member_id,
        person_id=event.person_id,
        check_in=event.event_time,
        device_id=event.device_id,
        door_id=event.door_id,
        source="access_control",
        event_id=event.event_id,
        created_at=datetime.utcnow(),
    ))
    record_log(db, event.branch_id, LEVEL_INFO, _label(event, "checked in"),
               details=f"Entry at {event.event_time} via door {event.door_name or event.door_id or '?'}",
               entity_type="attendance", entity_id=member_id)


async def _close_session(db: AsyncSession, event: AccessEvent, member_id: str):
    session = await _find_open_session(db, event.branch_id, member_id, not_after=event.event_time,
                                       not_before=event.event_time - _stale_after())
    if session is None:
        raise ProcessingAnomaly(
            ProcessingAnomaly.ORPHAN_EXIT,
            f"Exit at {event.event_time} has no matching check-in",
        )

    session.check_out = event.event_time
    session.duration_minutes = max(0, round((event.event_time - session.check_in).total_seconds() / 60))
    record_log(db, event.branch_id, LEVEL_INFO, _label(event, "checked out"),
               details=f"Exit at {event.event_time}, session {session.duration_minutes} min",
               entity_type="attendance", entity_id=member_id)


def _stale_after() -> timedelta:
    return timedelta(hours=settings.STALE_SESSION_HOURS)


def _close_stale(db: AsyncSession, session: AttendanceRecord, member_id: str):
    """A session left open past the stale window lost its exit; close it with no duration."""
    session.check_out = session.check_in
    session.duration_minutes = None
    session.notes = STALE_SESSION_NOTE
    logger.warning(f"[{session.branch_id}] Auto-closed session of {member_id} open since {session.check_in}")
    record_log(db, session.branch_id, LEVEL_WARNING, f"{member_id}: stale session closed",
               details=f"No exit recorded for entry at {session.check_in}",
               entity_type="attendance", entity_id=member_id)


def _label(event: AccessEvent, what: str) -> str:
    who = event.person_name or event.person_id or "Unknown person"
    return f"{who}: {what}"[:255]
