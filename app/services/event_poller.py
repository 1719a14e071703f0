"""
Pull path for access events: asks the vendor API for events recorded since the
last successful poll and feeds them through the same ingest → process pipeline
as the webhook. Redelivered events are absorbed by ingest_event's dedupe, so
overlapping windows are harmless.

The poll cursor (last_polled_at) lives on the branch's credential row and only
advances after a successful fetch; a failed poll is recorded there with its
error and retried from the same point next time.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.exceptions import AccessControlError, AuthenticationError, ConfigurationError, DeviceApiError, ValidationError
from app.models.integration_credential import IntegrationCredential
from app.services.credential_store import get_active_credential
from app.services.event_ingest import ingest_event
from app.services.event_parser import parse_webhook_payload
from app.services.event_processor import process_events
from app.services.hik_client import HikCloudClient
from app.services.sync_log_service import LEVEL_ERROR, record_log
from app.services.token_manager import TokenManager, with_token_retry
from app.utils.logger import get_logger

logger = get_logger(__name__)

POLL_SUCCESS = "success"
POLL_FAILED = "failed"


def _page_items(page: dict) -> list:
    for key in ("list", "events", "rows"):
        items = page.get(key)
        if isinstance(items, list):
            return items
    return []


class EventPoller:
    def __init__(self, token_manager: TokenManager, client: HikCloudClient,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.token_manager = token_manager
        self.client = client
        self.clock = clock

    async def poll_branch(self, db: AsyncSession, branch_id: str) -> dict:
        """
        Fetch, store and process the branch's events since the last poll.

        Raises:
            ConfigurationError: no active credential for the branch
            AuthenticationError / DeviceApiError: the fetch failed (recorded on the credential)
        """
        credential = await get_active_credential(db, branch_id)
        if credential is None:
            raise ConfigurationError(f"Access control not configured for branch {branch_id}")
        credential_id = credential.id
        base_url = credential.base_url
        window_end = self.clock()
        window_start = credential.last_polled_at or window_end - timedelta(
            minutes=settings.EVENT_POLL_LOOKBACK_MINUTES)

        async def fetch(token: str) -> tuple[list, bool]:
            return await self._fetch_all(base_url, token, window_start, window_end)

        try:
            items, complete = await with_token_retry(self.token_manager, branch_id, fetch)
        except (AuthenticationError, DeviceApiError) as e:
            logger.error(f"[{branch_id}] Event poll failed: {e}")
            await self._mark(db, credential_id, POLL_FAILED, error=str(e))
            record_log(db, branch_id, LEVEL_ERROR, "Event poll failed", details=str(e),
                       entity_type="poll", entity_id=str(credential_id))
            await db.commit()
            raise

        stored = skipped = 0
        latest = window_start
        for item in items:
            try:
                parsed = parse_webhook_payload({"data": item, "topic": "poll"}, branch_id)
            except ValidationError as e:
                logger.warning(f"[{branch_id}] Skipping malformed polled event: {e}")
                skipped += 1
                continue
            _, created = await ingest_event(db, parsed)
            latest = max(latest, parsed.event_time)
            stored += int(created)

        # A truncated fetch resumes from the newest event seen instead of skipping the rest
        await self._mark(db, credential_id, POLL_SUCCESS, polled_at=window_end if complete else latest)
        await db.commit()

        processed = 0
        try:
            processed = await process_events(db, branch_id)
        except SQLAlchemyError as e:
            # Stored events stay pending for the next pass
            logger.error(f"[{branch_id}] Processing after poll failed: {e}", exc_info=True)
            await db.rollback()

        logger.info(f"[{branch_id}] Polled {len(items)} events ({stored} new, {skipped} skipped), "
                    f"processed {processed}")
        return {"branch_id": branch_id, "status": POLL_SUCCESS, "fetched": len(items),
                "stored": stored, "skipped": skipped, "processed": processed}

    async def poll_all(self, db: AsyncSession) -> list[dict]:
        """Poll every branch with an active credential. One branch failing does not stop the rest."""
        branch_ids = (await db.execute(
            select(IntegrationCredential.tenant_id)
            .where(IntegrationCredential.is_active.is_(True))
            .distinct()
            .order_by(IntegrationCredential.tenant_id)
        )).scalars().all()

        results = []
        for branch_id in branch_ids:
            try:
                results.append(await self.poll_branch(db, branch_id))
            except AccessControlError as e:
                results.append({"branch_id": branch_id, "status": POLL_FAILED, "error": str(e)})
        return results

    async def _fetch_all(self, base_url: str, token: str, start: datetime, end: datetime) -> tuple[list, bool]:
        """All pages of the window, up to EVENT_POLL_MAX_PAGES. Returns (items, complete)."""
        items: list[Any] = []
        page_size = settings.EVENT_POLL_PAGE_SIZE
        for page_no in range(1, settings.EVENT_POLL_MAX_PAGES + 1):
            page = await self.client.fetch_events(base_url, token, start.isoformat(), end.isoformat(),
                                                  page_no=page_no, page_size=page_size)
            batch = _page_items(page)
            items.extend(batch)
            total = page.get("total")
            if len(batch) < page_size or (isinstance(total, int) and len(items) >= total):
                return items, True
        logger.warning(f"Event poll stopped after {settings.EVENT_POLL_MAX_PAGES} pages; "
                       f"the rest is picked up next poll")
        return items, False

    async def _mark(self, db: AsyncSession, credential_id: int, status: str,
                    error: Optional[str] = None, polled_at: Optional[datetime] = None):
        values = {"last_poll_status": status, "last_poll_error": error[:500] if error else None}
        if polled_at is not None:
            values["last_polled_at"] = polled_at
        await db.execute(update(IntegrationCredential)
                         .where(IntegrationCredential.id == credential_id)
                         .values(**values))


async def run_poll_loop(poller: EventPoller, session_factory: async_sessionmaker, interval_seconds: int):
    """Background task started by the app when EVENT_POLL_INTERVAL_SECONDS > 0."""
    logger.info(f"Event poller running every {interval_seconds}s")
    while True:
        async with session_factory() as db:
            try:
                await poller.poll_all(db)
            except SQLAlchemyError as e:
                logger.error(f"Event poll pass failed: {e}", exc_info=True)
        await asyncio.sleep(interval_seconds)
