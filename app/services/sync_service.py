"""
Member ↔ access-control person reconciliation.

A sync always re-derives the member's full door list from the membership domain
and pushes it as a replacement:
  membership current today  → standard-zone doors + zones unlocked by the plan tier,
                              adjusted by the member's access overrides
  anything else             → [] (total revocation)

Mapping state: unsynced → synced → revoked. Every transition is the result of a
successful push; a failed push leaves the state untouched and records last_error.

Sync failures are operational: sync_member_access() logs them and returns False
so batch callers can carry on with the next member.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Callable, Iterable, Optional
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.exceptions import (
    AuthenticationError,
    ConfigurationError,
    DeviceApiError,
    SyncFailure,
)
from app.models.access_event import AccessEvent
from app.models.member_access import (
    ACCESS_ALLOWED,
    ACCESS_DENIED,
    ACCESS_SCHEDULED,
    CREDENTIAL_CARD,
    CREDENTIAL_FACE,
    MemberAccessCredential,
    MemberAccessOverride,
)
from app.models.membership import AccessDoor, Member, Membership
from app.models.person_mapping import STATUS_REVOKED, STATUS_SYNCED, STATUS_UNSYNCED, PersonMapping
from app.services.credential_store import get_active_credential
from app.services.event_ingest import ingest_event
from app.services.event_parser import EVENT_DENIED, EVENT_ENTRY, EVENT_EXIT, ParsedAccessEvent
from app.services.hik_client import HikCloudClient
from app.services.sync_log_service import LEVEL_ERROR, LEVEL_INFO, record_log
from app.services.token_manager import TokenManager, with_token_retry
from app.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class AccessPlan:
    active: bool
    door_codes: list[str]
    start: Optional[date] = None
    end: Optional[date] = None
    plan_tier: Optional[str] = None


def membership_is_active(membership: Optional[Membership], today: date) -> bool:
    if membership is None or (membership.status or "").lower() != "active":
        return False
    if membership.start_date and membership.start_date > today:
        return False
    if membership.end_date and membership.end_date < today:
        return False
    return True


def zones_for_tier(plan_tier: Optional[str]) -> set[str]:
    zones = {settings.STANDARD_ZONE}
    zones.update(settings.PLAN_TIER_ZONES.get((plan_tier or "").lower(), []))
    return zones


def select_current_membership(memberships: Iterable[Membership], today: date) -> Optional[Membership]:
    """Highest-tier membership in force today; a prepaid renewal that has not started is ignored."""
    current = [m for m in memberships if membership_is_active(m, today)]
    if not current:
        return None
    return max(current, key=lambda m: (len(zones_for_tier(m.plan_tier)), m.end_date or date.max, m.id or 0))


def _parse_hhmm(value: Optional[str]) -> Optional[time]:
    try:
        hours, minutes = (value or "").strip().split(":")
        return time(int(hours), int(minutes))
    except ValueError:
        return None


def is_within_schedule(override: MemberAccessOverride, now: datetime) -> bool:
    """True when `now` falls on a scheduled weekday between start and end time (inclusive)."""
    start = _parse_hhmm(override.schedule_start_time)
    end = _parse_hhmm(override.schedule_end_time)
    days = [str(d).strip().lower() for d in (override.schedule_days or [])]
    if start is None or end is None or not days:
        return False
    if now.strftime("%A").lower() not in days:
        return False
    return start <= now.time().replace(second=0, microsecond=0) <= end


def override_in_effect(override: MemberAccessOverride, now: datetime) -> bool:
    if override.valid_from and override.valid_from > now:
        return False
    if override.valid_until and override.valid_until < now:
        return False
    return True


def apply_overrides(zones: set[str], overrides: Iterable[MemberAccessOverride], now: datetime) -> set[str]:
    granted = set(zones)
    denied = set()
    for override in overrides:
        if not override_in_effect(override, now):
            continue
        kind = (override.access_type or "").lower()
        if kind == ACCESS_ALLOWED:
            granted.add(override.zone)
        elif kind == ACCESS_SCHEDULED and is_within_schedule(override, now):
            granted.add(override.zone)
        elif kind == ACCESS_DENIED:
            denied.add(override.zone)
    return granted - denied


class AccessSyncService:
    def __init__(self, token_manager: TokenManager, client: HikCloudClient,
                 today: Callable[[], date] = date.today,
                 now: Callable[[], datetime] = datetime.now):
        self.token_manager = token_manager
        self.client = client
        self.today = today
        self.now = now    # local wall clock, for schedules and override validity

    # ── Single member ────────────────────────────────────────────────────

    async def sync_member_access(self, db: AsyncSession, member_id: str, branch_id: str) -> bool:
        member = await db.get(Member, member_id)
        if member is None:
            logger.warning(f"[{branch_id}] Sync requested for unknown member {member_id}")
            return False

        plan = await self.compute_access_plan(db, member, branch_id)
        mapping = await self._get_or_create_mapping(db, member, branch_id)

        try:
            person_id = await self._push(db, member, mapping, plan)
        except (SyncFailure, ConfigurationError, AuthenticationError) as e:
            await self._record_failure(db, member, mapping, e)
            return False

        mapping.person_id = person_id
        mapping.privileges = plan.door_codes
        mapping.status = STATUS_SYNCED if plan.active else STATUS_REVOKED
        mapping.last_synced_at = datetime.utcnow()
        mapping.updated_at = mapping.last_synced_at
        mapping.last_error = None
        action = f"granted {len(plan.door_codes)} doors" if plan.active else "access revoked"
        record_log(db, branch_id, LEVEL_INFO, f"{member.full_name}: {action}",
                   details=", ".join(plan.door_codes) or None, entity_type="person", entity_id=member.id)
        await db.commit()
        return True

    async def compute_access_plan(self, db: AsyncSession, member: Member, branch_id: str) -> AccessPlan:
        memberships = (await db.execute(
            select(Membership).where(Membership.member_id == member.id)
        )).scalars().all()
        membership = select_current_membership(memberships, self.today())
        if membership is None or member.branch_id != branch_id:
            return AccessPlan(active=False, door_codes=[])

        overrides = (await db.execute(
            select(MemberAccessOverride)
            .where(MemberAccessOverride.member_id == member.id, MemberAccessOverride.branch_id == branch_id)
        )).scalars().all()
        zones = apply_overrides(zones_for_tier(membership.plan_tier), overrides, self.now())
        doors = []
        if zones:
            doors = (await db.execute(
                select(AccessDoor.door_index_code)
                .where(AccessDoor.branch_id == branch_id, AccessDoor.is_active.is_(True),
                       AccessDoor.zone.in_(zones))
            )).scalars().all()
        return AccessPlan(active=True, door_codes=sorted(set(doors)), start=membership.start_date,
                          end=membership.end_date, plan_tier=membership.plan_tier)

    async def _find_mapping(self, db: AsyncSession, member_id: str, branch_id: str) -> Optional[PersonMapping]:
        return (await db.execute(
            select(PersonMapping).where(PersonMapping.member_id == member_id,
                                        PersonMapping.branch_id == branch_id)
        )).scalars().first()

    async def _get_or_create_mapping(self, db: AsyncSession, member: Member, branch_id: str) -> PersonMapping:
        member_id = member.id
        mapping = await self._find_mapping(db, member_id, branch_id)
        if mapping is not None:
            return mapping

        now = datetime.utcnow()
        mapping = PersonMapping(member_id=member_id, branch_id=branch_id, employee_no=member_id,
                                privileges=[], status=STATUS_UNSYNCED, created_at=now, updated_at=now)
        db.add(mapping)
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent sync of the same member created the mapping first
            await db.rollback()
            await db.refresh(member)
            mapping = await self._find_mapping(db, member_id, branch_id)
            if mapping is None:
                raise
            logger.info(f"[{branch_id}] Mapping for member {member_id} created concurrently, reusing it")
        return mapping

    async def _active_credentials(self, db: AsyncSession, member_id: str) -> dict[str, list[dict]]:
        now = self.now()
        rows = (await db.execute(
            select(MemberAccessCredential)
            .where(MemberAccessCredential.member_id == member_id, MemberAccessCredential.is_active.is_(True))
            .order_by(MemberAccessCredential.id)
        )).scalars().all()
        payload = {}
        for row in rows:
            if row.expires_at and row.expires_at <= now:
                continue
            if row.credential_type == CREDENTIAL_CARD:
                payload.setdefault("cards", []).append({"cardNo": row.credential_value})
            elif row.credential_type == CREDENTIAL_FACE:
                payload.setdefault("faces", []).append({"faceData": row.credential_value})
        return payload

    async def _push(self, db: AsyncSession, member: Member, mapping: PersonMapping, plan: AccessPlan) -> str:
        branch_id = mapping.branch_id
        credential = await get_active_credential(db, branch_id)
        if credential is None:
            raise ConfigurationError(f"Access control not configured for branch {branch_id}")
        base_url = credential.base_url

        person = {
            "personId": mapping.person_id or mapping.employee_no,
            "employeeNo": mapping.employee_no,
            "personName": member.full_name,
            "email": member.email or "",
            "orgIndexCode": branch_id,
            **await self._active_credentials(db, member.id),
        }

        async def push(token: str) -> str:
            if mapping.person_id:
                await self.client.update_person(base_url, token, {**person, "personId": mapping.person_id})
                person_id = mapping.person_id
            else:
                response = await self.client.add_person(base_url, token, person)
                person_id = str(response.get("personId") or person["personId"])
                # The person now exists on the device side even if the privilege push fails
                mapping.person_id = person_id
            await self.client.configure_privileges(
                base_url, token, person_id, plan.door_codes,
                start_time=plan.start.isoformat() if plan.start else None,
                end_time=plan.end.isoformat() if plan.end else None,
            )
            return person_id

        try:
            return await with_token_retry(self.token_manager, branch_id, push)
        except DeviceApiError as e:
            raise SyncFailure(e.message, code=e.code) from e

    async def _record_failure(self, db: AsyncSession, member: Member, mapping: PersonMapping, error: Exception):
        branch_id = mapping.branch_id
        logger.error(f"[{branch_id}] Access sync failed for member {member.id}: {error}")
        mapping.last_error = str(error)[:500]
        mapping.updated_at = datetime.utcnow()
        record_log(db, branch_id, LEVEL_ERROR, f"{member.full_name}: sync failed",
                   details=str(error), entity_type="person", entity_id=member.id)
        await db.commit()

    # ── Credentials ──────────────────────────────────────────────────────

    async def register_card(self, db: AsyncSession, member_id: str, branch_id: str, card_no: str) -> bool:
        """
        Store an access card for the member and push it to the devices with the
        member's current privileges. Re-registering a card the member already
        holds only re-syncs. Returns the result of the sync.
        """
        card_no = (card_no or "").strip()
        if not card_no:
            raise ValueError("card_no is required")

        existing = (await db.execute(
            select(MemberAccessCredential)
            .where(MemberAccessCredential.member_id == member_id,
                   MemberAccessCredential.credential_type == CREDENTIAL_CARD,
                   MemberAccessCredential.credential_value == card_no,
                   MemberAccessCredential.is_active.is_(True))
        )).scalars().first()
        if existing is None:
            db.add(MemberAccessCredential(member_id=member_id, credential_type=CREDENTIAL_CARD,
                                          credential_value=card_no, is_active=True,
                                          issued_at=datetime.utcnow()))
            record_log(db, branch_id, LEVEL_INFO, f"Card registered for member {member_id}",
                       entity_type="credential", entity_id=member_id)
            await db.commit()
            logger.info(f"[{branch_id}] Registered card for member {member_id}")
        return await self.sync_member_access(db, member_id, branch_id)

    # ── Batch ────────────────────────────────────────────────────────────

    async def sync_branch_access(self, db: AsyncSession, branch_id: str) -> dict:
        """Sync every member assigned to, or mapped at, the branch. Failures do not stop the batch."""
        member_ids = (await db.execute(
            select(Member.id)
            .where(or_(
                Member.branch_id == branch_id,
                Member.id.in_(select(PersonMapping.member_id).where(PersonMapping.branch_id == branch_id)),
            ))
            .order_by(Member.id)
        )).scalars().all()

        synced = 0
        for member_id in member_ids:
            if await self.sync_member_access(db, member_id, branch_id):
                synced += 1
        logger.info(f"[{branch_id}] Batch access sync: {synced}/{len(member_ids)} members synced")
        return {"total": len(member_ids), "synced": synced, "failed": len(member_ids) - synced}

    # ── Simulation ───────────────────────────────────────────────────────

    async def create_test_event(self, db: AsyncSession, branch_id: str, person_id: str,
                                event_type: str = EVENT_ENTRY) -> AccessEvent:
        if event_type not in (EVENT_ENTRY, EVENT_EXIT, EVENT_DENIED):
            raise ValueError(f"event_type must be entry, exit or denied, got {event_type!r}")
        parsed = ParsedAccessEvent(
            event_id=f"sim-{uuid.uuid4().hex}",
            branch_id=branch_id,
            event_type=event_type,
            raw_event_type=f"simulated_{event_type}",
            event_time=datetime.utcnow(),
            person_id=person_id,
            device_name="simulator",
            topic="simulation",
        )
        event, _ = await ingest_event(db, parsed)
        return event
