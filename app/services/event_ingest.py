"""
Idempotent persistence of parsed access events.

The (branch_id, event_id) unique constraint is the correctness mechanism for
redelivery: a second insert of the same event hits IntegrityError, which is
turned into "return the existing row". Ingestion commits on its own so a later
processing failure can never roll the stored event back.
"""

from datetime import datetime
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.access_event import AccessEvent
from app.services.event_parser import ParsedAccessEvent
from app.utils.logger import get_logger

logger = get_logger(__name__)


async def find_event(db: AsyncSession, branch_id: str, event_id: str):
    result = await db.execute(
        select(AccessEvent).where(AccessEvent.branch_id == branch_id, AccessEvent.event_id == event_id)
    )
    return result.scalars().first()


async def ingest_event(db: AsyncSession, parsed: ParsedAccessEvent) -> tuple[AccessEvent, bool]:
    """Store the event unprocessed. Returns (row, created); created is False for a redelivery."""
    existing = await find_event(db, parsed.branch_id, parsed.event_id)
    if existing:
        logger.info(f"Duplicate delivery of event {parsed.event_id} for {parsed.branch_id}, skipped")
        return existing, False

    event = AccessEvent(
        event_id=parsed.event_id,
        branch_id=parsed.branch_id,
        event_type=parsed.event_type,
        raw_event_type=parsed.raw_event_type,
        event_time=parsed.event_time,
        person_id=parsed.person_id,
        person_name=parsed.person_name,
        door_id=parsed.door_id,
        door_name=parsed.door_name,
        device_id=parsed.device_id,
        device_name=parsed.device_name,
        card_no=parsed.card_no,
        face_id=parsed.face_id,
        msg_id=parsed.msg_id,
        topic=parsed.topic,
        raw_payload=parsed.raw_payload,
        processed=False,
        processing_attempts=0,
        dead_lettered=False,
        created_at=datetime.utcnow(),
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent delivery of the same event
        await db.rollback()
        existing = await find_event(db, parsed.branch_id, parsed.event_id)
        if existing is None:
            raise
        logger.info(f"Concurrent duplicate of event {parsed.event_id} for {parsed.branch_id}, skipped")
        return existing, False

    logger.info(f"Stored {parsed.event_type} event {parsed.event_id} for {parsed.branch_id} "
                f"(person={parsed.person_id}, door={parsed.door_name or parsed.door_id})")
    return event, True
