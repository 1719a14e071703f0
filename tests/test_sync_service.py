# tests/test_sync_service.py
"""Unit tests for pushing member door privileges to the access-control devices."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import date, datetime
from sqlalchemy import select
from app.exceptions import AuthenticationError, DeviceApiError, TokenRejectedError
from app.models.access_event import AccessEvent
from app.models.integration_credential import IntegrationCredential
from app.models.membership import AccessDoor, Branch, Member, Membership
from app.models.person_mapping import STATUS_REVOKED, STATUS_SYNCED, STATUS_UNSYNCED, PersonMapping
from app.models.sync_log import SyncLog
from app.models.member_access import MemberAccessCredential, MemberAccessOverride
from app.services.sync_service import AccessSyncService, is_within_schedule, membership_is_active

BRANCH = "branch-1"
TODAY = date(2026, 3, 1)
NOW = datetime(2026, 3, 1, 18, 30)     # a Sunday evening


def make_service(client=None, token_manager=None):
    if token_manager is None:
        token_manager = MagicMock()
        token_manager.get_token = AsyncMock(return_value="tok-1")
    if client is None:
        client = MagicMock()
        client.add_person = AsyncMock(return_value={"personId": "HIK-1"})
        client.update_person = AsyncMock(return_value={})
        client.configure_privileges = AsyncMock(return_value={})
    return AccessSyncService(token_manager, client, today=lambda: TODAY, now=lambda: NOW)


async def seed_branch(db, with_credential=True):
    db.add(Branch(id=BRANCH, name="Downtown"))
    if with_credential:
        db.add(IntegrationCredential(tenant_id=BRANCH, base_url="https://hik.example.com",
                                     app_key="key-1", app_secret="secret-1", is_active=True,
                                     created_at=datetime(2026, 1, 1), updated_at=datetime(2026, 1, 1)))
    db.add_all([
        AccessDoor(branch_id=BRANCH, door_index_code="D-STD", zone="standard"),
        AccessDoor(branch_id=BRANCH, door_index_code="D-PREM", zone="premium"),
        AccessDoor(branch_id=BRANCH, door_index_code="D-VIP", zone="vip"),
        AccessDoor(branch_id=BRANCH, door_index_code="D-OLD", zone="standard", is_active=False),
        AccessDoor(branch_id="branch-2", door_index_code="D-ELSEWHERE", zone="standard"),
    ])
    await db.commit()


async def add_member(db, member_id="m1", plan_tier="standard", status="active",
                     start=date(2026, 1, 1), end=date(2026, 12, 31)):
    db.add(Member(id=member_id, first_name="Sara", last_name="Ali", branch_id=BRANCH))
    db.add(Membership(member_id=member_id, plan_tier=plan_tier, status=status,
                      start_date=start, end_date=end))
    await db.commit()


async def mapping_for(db, member_id="m1"):
    return (await db.execute(
        select(PersonMapping).where(PersonMapping.member_id == member_id, PersonMapping.branch_id == BRANCH)
    )).scalars().first()


class TestMembershipIsActive:
    def test_status_and_dates(self):
        m = Membership(status="active", start_date=date(2026, 1, 1), end_date=date(2026, 12, 31))
        assert membership_is_active(m, TODAY) is True
        assert membership_is_active(m, date(2027, 1, 1)) is False
        assert membership_is_active(m, date(2025, 12, 31)) is False

    def test_non_active_status(self):
        assert membership_is_active(Membership(status="frozen"), TODAY) is False
        assert membership_is_active(None, TODAY) is False


class TestSyncMemberAccess:
    @pytest.mark.asyncio
    async def test_standard_member_gets_standard_doors(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        service.client.add_person.assert_awaited_once()
        args = service.client.configure_privileges.await_args
        assert args.args[2] == "HIK-1"
        assert args.args[3] == ["D-STD"]
        assert args.kwargs["start_time"] == "2026-01-01"
        assert args.kwargs["end_time"] == "2026-12-31"
        mapping = await mapping_for(db)
        assert mapping.status == STATUS_SYNCED
        assert mapping.person_id == "HIK-1"
        assert mapping.privileges == ["D-STD"]
        assert mapping.last_synced_at is not None

    @pytest.mark.asyncio
    async def test_plan_tier_unlocks_extra_zones(self, db):
        await seed_branch(db)
        await add_member(db, plan_tier="vip")
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        assert service.client.configure_privileges.await_args.args[3] == ["D-PREM", "D-STD", "D-VIP"]

    @pytest.mark.asyncio
    async def test_expired_member_is_totally_revoked(self, db):
        await seed_branch(db)
        await add_member(db, status="expired", end=date(2026, 2, 1))
        db.add(PersonMapping(member_id="m1", branch_id=BRANCH, person_id="HIK-1", employee_no="m1",
                             privileges=["D-STD", "D-PREM"], status=STATUS_SYNCED))
        await db.commit()
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        service.client.add_person.assert_not_called()
        service.client.update_person.assert_awaited_once()
        assert service.client.configure_privileges.await_args.args[3] == []
        mapping = await mapping_for(db)
        assert mapping.status == STATUS_REVOKED
        assert mapping.privileges == []

    @pytest.mark.asyncio
    async def test_member_of_another_branch_gets_nothing_here(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()

        assert await service.sync_member_access(db, "m1", "branch-2") is False  # no credential there
        service.client.configure_privileges.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_token_is_refreshed_and_retried_once(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()
        service.client.configure_privileges.side_effect = [
            TokenRejectedError("Token rejected by vendor", status_code=401, code="401"),
            {},
        ]

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        service.token_manager.invalidate.assert_called_once_with(BRANCH)
        assert service.token_manager.get_token.await_count == 2
        assert service.client.configure_privileges.await_count == 2
        # the person was created on the first attempt and is updated on the retry
        service.client.add_person.assert_awaited_once()
        service.client.update_person.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_rejection_fails_the_sync(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()
        service.client.configure_privileges.side_effect = TokenRejectedError("rejected", status_code=401)

        assert await service.sync_member_access(db, "m1", BRANCH) is False

        assert service.client.configure_privileges.await_count == 2
        service.token_manager.invalidate.assert_called_once_with(BRANCH)

    @pytest.mark.asyncio
    async def test_device_failure_recorded_and_state_kept(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()
        service.client.configure_privileges.side_effect = DeviceApiError("door offline", code="ACS001")

        assert await service.sync_member_access(db, "m1", BRANCH) is False

        service.token_manager.invalidate.assert_not_called()
        mapping = await mapping_for(db)
        assert mapping.status == STATUS_UNSYNCED
        assert "door offline" in mapping.last_error
        errors = (await db.execute(select(SyncLog).where(SyncLog.level == "error"))).scalars().all()
        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_missing_credential_returns_false_without_calls(self, db):
        await seed_branch(db, with_credential=False)
        await add_member(db)
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is False

        service.token_manager.get_token.assert_not_called()
        service.client.add_person.assert_not_called()

    @pytest.mark.asyncio
    async def test_authentication_failure_returns_false(self, db):
        await seed_branch(db)
        await add_member(db)
        token_manager = MagicMock()
        token_manager.get_token = AsyncMock(side_effect=AuthenticationError("bad appKey"))
        service = make_service(token_manager=token_manager)

        assert await service.sync_member_access(db, "m1", BRANCH) is False
        assert (await mapping_for(db)).last_error == "bad appKey"

    @pytest.mark.asyncio
    async def test_unknown_member_returns_false(self, db):
        await seed_branch(db)
        assert await make_service().sync_member_access(db, "nobody", BRANCH) is False

    @pytest.mark.asyncio
    async def test_successful_sync_clears_previous_error(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()
        service.client.configure_privileges.side_effect = [DeviceApiError("door offline"), {}]

        assert await service.sync_member_access(db, "m1", BRANCH) is False
        assert await service.sync_member_access(db, "m1", BRANCH) is True

        mapping = await mapping_for(db)
        assert mapping.status == STATUS_SYNCED
        assert mapping.last_error is None


class TestIsWithinSchedule:
    def make(self, start="18:00", end="20:00", days=("sunday",)):
        return MemberAccessOverride(zone="premium", access_type="scheduled", schedule_start_time=start,
                                    schedule_end_time=end, schedule_days=list(days) if days else None)

    def test_inside_window(self):
        assert is_within_schedule(self.make(), NOW) is True

    def test_bounds_are_inclusive(self):
        assert is_within_schedule(self.make(), datetime(2026, 3, 1, 20, 0)) is True
        assert is_within_schedule(self.make(), datetime(2026, 3, 1, 18, 0)) is True
        assert is_within_schedule(self.make(), datetime(2026, 3, 1, 20, 1)) is False

    def test_other_weekday(self):
        assert is_within_schedule(self.make(days=("Monday",)), NOW) is False

    def test_missing_parts_never_match(self):
        assert is_within_schedule(self.make(start=None), NOW) is False
        assert is_within_schedule(self.make(end="late"), NOW) is False
        assert is_within_schedule(self.make(days=None), NOW) is False


class TestCurrentMembership:
    @pytest.mark.asyncio
    async def test_prepaid_renewal_does_not_revoke_current_access(self, db):
        await seed_branch(db)
        await add_member(db, end=date(2026, 12, 31))
        db.add(Membership(member_id="m1", plan_tier="standard", status="active",
                          start_date=date(2027, 1, 1), end_date=date(2027, 12, 31)))
        await db.commit()
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        args = service.client.configure_privileges.await_args
        assert args.args[3] == ["D-STD"]
        assert args.kwargs["end_time"] == "2026-12-31"
        assert (await mapping_for(db)).status == STATUS_SYNCED

    @pytest.mark.asyncio
    async def test_highest_current_tier_wins(self, db):
        await seed_branch(db)
        await add_member(db, plan_tier="vip", end=date(2026, 6, 30))
        db.add(Membership(member_id="m1", plan_tier="standard", status="active",
                          start_date=date(2026, 1, 1), end_date=None))
        await db.commit()
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        assert service.client.configure_privileges.await_args.args[3] == ["D-PREM", "D-STD", "D-VIP"]

    @pytest.mark.asyncio
    async def test_only_future_membership_revokes(self, db):
        await seed_branch(db)
        await add_member(db, start=date(2026, 4, 1), end=date(2027, 3, 31))
        service = make_service()

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        assert service.client.configure_privileges.await_args.args[3] == []
        assert (await mapping_for(db)).status == STATUS_REVOKED


class TestAccessOverrides:
    async def override(self, db, zone, access_type, **kwargs):
        db.add(MemberAccessOverride(member_id="m1", branch_id=BRANCH, zone=zone, access_type=access_type,
                                    **kwargs))
        await db.commit()

    @pytest.mark.asyncio
    async def test_allowed_zone_is_added(self, db):
        await seed_branch(db)
        await add_member(db)
        await self.override(db, "premium", "allowed", reason="Trial week")
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        assert service.client.configure_privileges.await_args.args[3] == ["D-PREM", "D-STD"]

    @pytest.mark.asyncio
    async def test_denied_zone_wins_over_plan(self, db):
        await seed_branch(db)
        await add_member(db, plan_tier="vip")
        await self.override(db, "vip", "denied", reason="Suspended from VIP lounge")
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        assert service.client.configure_privileges.await_args.args[3] == ["D-PREM", "D-STD"]

    @pytest.mark.asyncio
    async def test_scheduled_zone_only_inside_window(self, db):
        await seed_branch(db)
        await add_member(db)
        await self.override(db, "premium", "scheduled", schedule_start_time="18:00",
                            schedule_end_time="20:00", schedule_days=["sunday"])
        await self.override(db, "vip", "scheduled", schedule_start_time="06:00",
                            schedule_end_time="08:00", schedule_days=["sunday"])
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        assert service.client.configure_privileges.await_args.args[3] == ["D-PREM", "D-STD"]

    @pytest.mark.asyncio
    async def test_expired_or_future_override_ignored(self, db):
        await seed_branch(db)
        await add_member(db)
        await self.override(db, "premium", "allowed", valid_until=datetime(2026, 2, 1))
        await self.override(db, "vip", "allowed", valid_from=datetime(2026, 4, 1))
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        assert service.client.configure_privileges.await_args.args[3] == ["D-STD"]

    @pytest.mark.asyncio
    async def test_overrides_do_not_restore_revoked_access(self, db):
        await seed_branch(db)
        await add_member(db, status="expired", end=date(2026, 2, 1))
        await self.override(db, "premium", "allowed")
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        assert service.client.configure_privileges.await_args.args[3] == []


class TestCredentials:
    @pytest.mark.asyncio
    async def test_active_card_and_face_pushed_with_person(self, db):
        await seed_branch(db)
        await add_member(db)
        db.add_all([
            MemberAccessCredential(member_id="m1", credential_type="card", credential_value="CARD-1"),
            MemberAccessCredential(member_id="m1", credential_type="face", credential_value="b64face"),
            MemberAccessCredential(member_id="m1", credential_type="card", credential_value="CARD-OLD",
                                   expires_at=datetime(2026, 1, 1)),
            MemberAccessCredential(member_id="m1", credential_type="card", credential_value="CARD-LOST",
                                   is_active=False),
        ])
        await db.commit()
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        person = service.client.add_person.await_args.args[2]
        assert person["cards"] == [{"cardNo": "CARD-1"}]
        assert person["faces"] == [{"faceData": "b64face"}]

    @pytest.mark.asyncio
    async def test_no_credentials_no_credential_fields(self, db):
        await seed_branch(db)
        await add_member(db)
        service = make_service()

        await service.sync_member_access(db, "m1", BRANCH)

        person = service.client.add_person.await_args.args[2]
        assert "cards" not in person
        assert "faces" not in person

    @pytest.mark.asyncio
    async def test_register_card_stores_and_pushes(self, db):
        await seed_branch(db)
        await add_member(db)
        db.add(PersonMapping(member_id="m1", branch_id=BRANCH, person_id="HIK-1", employee_no="m1",
                             privileges=["D-STD"], status=STATUS_SYNCED))
        await db.commit()
        service = make_service()

        assert await service.register_card(db, "m1", BRANCH, " 0012345 ") is True
        assert await service.register_card(db, "m1", BRANCH, "0012345") is True

        cards = (await db.execute(select(MemberAccessCredential))).scalars().all()
        assert [c.credential_value for c in cards] == ["0012345"]
        person = service.client.update_person.await_args.args[2]
        assert person["personId"] == "HIK-1"
        assert person["cards"] == [{"cardNo": "0012345"}]

    @pytest.mark.asyncio
    async def test_register_blank_card_rejected(self, db):
        await seed_branch(db)
        await add_member(db)
        with pytest.raises(ValueError):
            await make_service().register_card(db, "m1", BRANCH, "   ")


class TestMappingRace:
    @pytest.mark.asyncio
    async def test_concurrently_created_mapping_is_reused(self, db):
        await seed_branch(db)
        await add_member(db)
        db.add(PersonMapping(member_id="m1", branch_id=BRANCH, person_id="HIK-1", employee_no="m1",
                             privileges=[], status=STATUS_UNSYNCED))
        await db.commit()
        service = make_service()
        real_find = service._find_mapping
        calls = []

        async def miss_first_lookup(session, member_id, branch_id):
            # The other sync commits its mapping between our lookup and our insert
            calls.append(member_id)
            if len(calls) == 1:
                return None
            return await real_find(session, member_id, branch_id)

        service._find_mapping = miss_first_lookup

        assert await service.sync_member_access(db, "m1", BRANCH) is True

        service.client.add_person.assert_not_called()
        service.client.update_person.assert_awaited_once()
        mappings = (await db.execute(select(PersonMapping))).scalars().all()
        assert len(mappings) == 1
        assert mappings[0].status == STATUS_SYNCED


class TestSyncBranchAccess:
    @pytest.mark.asyncio
    async def test_batch_continues_past_failures(self, db):
        await seed_branch(db)
        await add_member(db, "m1")
        await add_member(db, "m2")
        service = make_service()
        service.client.add_person.side_effect = [DeviceApiError("duplicate employeeNo"), {"personId": "HIK-2"}]

        result = await service.sync_branch_access(db, BRANCH)

        assert result == {"total": 2, "synced": 1, "failed": 1}


class TestCreateTestEvent:
    @pytest.mark.asyncio
    async def test_simulated_event_is_stored_unprocessed(self, db):
        event = await make_service().create_test_event(db, BRANCH, "P-1", "exit")

        assert event.event_id.startswith("sim-")
        assert event.event_type == "exit"
        stored = (await db.execute(select(AccessEvent))).scalars().all()
        assert len(stored) == 1
        assert stored[0].processed is False

    @pytest.mark.asyncio
    async def test_unknown_type_rejected(self, db):
        with pytest.raises(ValueError):
            await make_service().create_test_event(db, BRANCH, "P-1", "teleport")
