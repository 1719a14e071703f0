# app/routers/webhook.py
"""
Device webhook endpoint.
POST /hikvision/webhook/{branch_id}: receives access events pushed by the cloud gateway.

Every accepted delivery is stored before anything else happens, then a processing
pass runs for the branch. Processing problems never change the response: the event
is already safe in the database and the next pass picks it up.
"""

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.database import get_db
from app.exceptions import ValidationError
from app.models.access_event import AccessEvent
from app.services.event_ingest import ingest_event
from app.services.event_parser import parse_webhook_payload
from app.services.event_processor import process_events
from app.utils.json_parser import safe_parse_json
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"message": message})


@router.post("/hikvision/webhook", summary="Webhook without branch id (rejected)", include_in_schema=False)
async def receive_webhook_without_branch():
    return _bad_request("Branch ID is required")


@router.post("/hikvision/webhook/{branch_id}", summary="Device webhook, receives access events")
async def receive_webhook(branch_id: str, request: Request, db: AsyncSession = Depends(get_db)):
    branch_id = branch_id.strip()
    if not branch_id:
        return _bad_request("Branch ID is required")

    if settings.WEBHOOK_TOKEN and request.headers.get("X-Webhook-Token") != settings.WEBHOOK_TOKEN:
        logger.warning(f"[{branch_id}] Webhook rejected: bad or missing X-Webhook-Token")
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"message": "Forbidden"})

    try:
        raw_body = await request.body()
        body = safe_parse_json(raw_body)
        if body is None:
            return _bad_request("Invalid JSON body")

        try:
            parsed = parse_webhook_payload(body, branch_id)
        except ValidationError as e:
            logger.warning(f"[{branch_id}] Webhook payload rejected: {e.message}")
            return _bad_request(e.message)

        event, created = await ingest_event(db, parsed)
        event_pk, event_id = event.id, event.event_id

        try:
            await process_events(db, branch_id)
        except Exception as e:
            logger.error(f"[{branch_id}] Processing pass after webhook failed: {e}", exc_info=True)
            await db.rollback()

        processed = (await db.execute(
            select(AccessEvent.processed).where(AccessEvent.id == event_pk)
        )).scalar_one()

        return {
            "message": "Event received" if created else "Duplicate event ignored",
            "event_id": event_id,
            "duplicate": not created,
            "processed": bool(processed),
        }

    except Exception as e:
        logger.error(f"[{branch_id}] Webhook handling error: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"message": "Internal server error", "error": type(e).__name__},
        )
