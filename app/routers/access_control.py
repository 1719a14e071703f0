# app/routers/access_control.py
"""
Operator endpoints for the access-control integration.
POST /access-control/sync                     push one member's access to the devices
POST /access-control/{branch_id}/sync-all     batch push for every member of a branch
POST /access-control/{branch_id}/process      manual event processing pass
GET  /access-control/{branch_id}/events       stored device events
GET  /access-control/{branch_id}/token        token status (never the token itself)
POST /access-control/{branch_id}/token/refresh
POST /access-control/{branch_id}/test-event   inject a simulated device event
POST /access-control/{branch_id}/members/{member_id}/cards   register a card and re-sync
POST /access-control/{branch_id}/poll         pull events from the vendor API
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.dependencies import get_event_poller, get_sync_service, get_token_manager, require_staff_role
from app.exceptions import DeviceApiError
from app.models.access_event import AccessEvent
from app.models.membership import Branch, Member
from app.models.person_mapping import PersonMapping
from app.schemas.access_event import AccessEventOut, SimulatedEventCreate
from app.schemas.sync import BranchSyncResponse, CardRegistration, PollResponse, SyncRequest, SyncResponse
from app.schemas.token import TokenStatusOut
from app.services.event_poller import EventPoller
from app.services.event_processor import process_events
from app.services.sync_service import AccessSyncService
from app.services.token_manager import TokenManager
from app.utils.logger import get_logger

router = APIRouter(prefix="/access-control")
logger = get_logger(__name__)


@router.post("/sync", response_model=SyncResponse, summary="Sync one member's door access")
async def sync_member(
    body: SyncRequest,
    role: str = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
    sync_service: AccessSyncService = Depends(get_sync_service),
):
    if await db.get(Member, body.memberId) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")
    if await db.get(Branch, body.branchId) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Branch not found")

    logger.info(f"[{body.branchId}] Access sync for member {body.memberId} requested by {role}")
    if not await sync_service.sync_member_access(db, body.memberId, body.branchId):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            detail="Failed to sync access control")

    mapping = (await db.execute(
        select(PersonMapping).where(PersonMapping.member_id == body.memberId,
                                    PersonMapping.branch_id == body.branchId)
    )).scalars().first()
    return SyncResponse(
        message="Access control synced",
        memberId=body.memberId,
        branchId=body.branchId,
        status=mapping.status if mapping else None,
        privileges=list(mapping.privileges or []) if mapping else [],
    )


@router.post("/{branch_id}/sync-all", response_model=BranchSyncResponse, summary="Sync every member of a branch")
async def sync_branch(
    branch_id: str,
    role: str = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
    sync_service: AccessSyncService = Depends(get_sync_service),
):
    if await db.get(Branch, branch_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Branch not found")
    result = await sync_service.sync_branch_access(db, branch_id)
    return BranchSyncResponse(branch_id=branch_id, **result)


@router.post("/{branch_id}/process", summary="Run an event processing pass")
async def process_branch_events(
    branch_id: str,
    role: str = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
):
    processed = await process_events(db, branch_id)
    return {"branch_id": branch_id, "processed": processed}


@router.get("/{branch_id}/events", response_model=list[AccessEventOut], summary="List stored device events")
async def list_events(
    branch_id: str,
    event_type: Optional[str] = None,
    processed: Optional[bool] = None,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
):
    """Newest first. Filter by event_type (entry/exit/denied) or processed."""
    q = select(AccessEvent).where(AccessEvent.branch_id == branch_id)
    if event_type:
        q = q.where(AccessEvent.event_type == event_type)
    if processed is not None:
        q = q.where(AccessEvent.processed.is_(processed))
    result = await db.execute(q.order_by(AccessEvent.event_time.desc()).limit(min(limit, 500)))
    return result.scalars().all()


@router.get("/{branch_id}/token", response_model=TokenStatusOut, summary="Cached token status")
async def token_status(branch_id: str, token_manager: TokenManager = Depends(get_token_manager)):
    return token_manager.token_status(branch_id)


@router.post("/{branch_id}/token/refresh", response_model=TokenStatusOut, summary="Force a token exchange")
async def refresh_token(
    branch_id: str,
    role: str = Depends(require_staff_role),
    token_manager: TokenManager = Depends(get_token_manager),
):
    # ConfigurationError / AuthenticationError are mapped to 409 / 502 in main.py
    await token_manager.refresh(branch_id)
    return token_manager.token_status(branch_id)


@router.post("/{branch_id}/test-event", response_model=AccessEventOut, summary="Inject a simulated device event")
async def create_test_event(
    branch_id: str,
    body: SimulatedEventCreate,
    role: str = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
    sync_service: AccessSyncService = Depends(get_sync_service),
):
    try:
        return await sync_service.create_test_event(db, branch_id, body.person_id, body.event_type)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


@router.post("/{branch_id}/members/{member_id}/cards", response_model=SyncResponse,
             summary="Register an access card and push it to the devices")
async def register_card(
    branch_id: str,
    member_id: str,
    body: CardRegistration,
    role: str = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
    sync_service: AccessSyncService = Depends(get_sync_service),
):
    if await db.get(Member, member_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Member not found")
    if await db.get(Branch, branch_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Branch not found")

    try:
        synced = await sync_service.register_card(db, member_id, branch_id, body.card_no)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if not synced:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            detail="Card stored but failed to sync access control")

    mapping = (await db.execute(
        select(PersonMapping).where(PersonMapping.member_id == member_id, PersonMapping.branch_id == branch_id)
    )).scalars().first()
    return SyncResponse(
        message="Card registered",
        memberId=member_id,
        branchId=branch_id,
        status=mapping.status if mapping else None,
        privileges=list(mapping.privileges or []) if mapping else [],
    )


@router.post("/{branch_id}/poll", response_model=PollResponse, summary="Pull new events from the vendor API")
async def poll_events(
    branch_id: str,
    role: str = Depends(require_staff_role),
    db: AsyncSession = Depends(get_db),
    poller: EventPoller = Depends(get_event_poller),
):
    # ConfigurationError / AuthenticationError are mapped to 409 / 502 in main.py
    try:
        return await poller.poll_branch(db, branch_id)
    except DeviceApiError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Event poll failed: {e.message}")
