"""Tests for the case assignment engine: selection, conflict retry, rollback, recovery."""

import asyncio

import pytest

from app.models.location import Location
from app.services.assignment import (
    AssignmentEngine,
    AssignmentPersistFailed,
    CaseNotPending,
    NoHospitalAvailable,
    NoResponderAvailable,
    hospital_group,
    select_nearest,
)
from app.services.capacity_store import CapacityStore, TransientStoreError, WriteOutcome
from app.services.notifications import NotificationDispatcher
from factories import add_case, add_hospital, add_responder

# 1 degree of latitude is ~111 km; 0.009 degrees is ~1 km.
ONE_KM = 0.009
FIFTY_KM = 0.45


class RacingStore(CapacityStore):
    """Holds the first ``parties`` hospital reads at a barrier so both callers see the same snapshot."""

    def __init__(self, db, parties: int = 2) -> None:
        super().__init__(db)
        self._barrier = asyncio.Barrier(parties)
        self._waiting = parties

    async def list_hospitals_with_availability(self, min_available: int = 1):
        hospitals = await super().list_hospitals_with_availability(min_available)
        if self._waiting > 0:
            self._waiting -= 1
            await self._barrier.wait()
        return hospitals


class ResponderStolenStore(CapacityStore):
    """Every available responder goes busy right after the bed is reserved."""

    async def reserve_hospital_bed(self, hospital_id: str, expected_available: int):
        outcome = await super().reserve_hospital_bed(hospital_id, expected_available)
        for r in await super().list_responders("available"):
            await self.set_responder_status(r.id, "available", "busy")
        return outcome


class FailingResponderStore(CapacityStore):
    async def reserve_responder(self, responder_id: str, expected_status: str):
        raise TransientStoreError("reserve_responder")


class FailingPersistStore(CapacityStore):
    async def update_case_assignment(self, case_id: str, hospital_id: str, responder_id: str):
        raise TransientStoreError("update_case_assignment")


class StuckReleaseStore(FailingPersistStore):
    """Persist fails, and so does the first attempt to hand the responder back."""

    def __init__(self, db) -> None:
        super().__init__(db)
        self.release_failures = 1

    async def set_responder_status(self, responder_id, expected_status, new_status, location=None):
        if (expected_status, new_status) == ("assigned", "available") and self.release_failures:
            self.release_failures -= 1
            raise TransientStoreError("set_responder_status")
        return await super().set_responder_status(responder_id, expected_status, new_status, location=location)


# --- Selection ---


class TestSelectNearest:
    async def test_empty(self, store):
        assert select_nearest(Location(latitude=0, longitude=0), []) is None

    async def test_ties_prefer_smaller_id(self, store):
        a = await add_hospital(store, name="A", lat=1.0, lon=0.0)
        b = await add_hospital(store, name="B", lat=-1.0, lon=0.0)
        origin = Location(latitude=0, longitude=0)
        expected = min(a.id, b.id)

        for _ in range(5):
            assert select_nearest(origin, [a, b]).id == expected
            assert select_nearest(origin, [b, a]).id == expected


# --- Scenarios ---


async def test_single_hospital_and_responder(store):
    h = await add_hospital(store, available=1)
    r = await add_responder(store)
    case = await add_case(store)

    result = await AssignmentEngine(store).assign(case)

    assert result.hospital.id == h.id
    assert result.responder.id == r.id
    assert result.case.status == "assigned"
    assert (await store.get_hospital(h.id)).capacity.available == 0
    assert (await store.get_responder(r.id)).status == "assigned"
    stored = await store.get_case(case.id)
    assert stored.status == "assigned"
    assert stored.assigned_hospital_id == h.id
    assert stored.assigned_responder_id == r.id


async def test_no_hospital_available_mutates_nothing(store):
    h = await add_hospital(store, available=0)
    r = await add_responder(store)
    case = await add_case(store)

    with pytest.raises(NoHospitalAvailable):
        await AssignmentEngine(store).assign(case)

    assert (await store.get_hospital(h.id)).capacity.available == 0
    assert (await store.get_responder(r.id)).status == "available"
    assert (await store.get_case(case.id)).status == "pending"


async def test_no_responder_available_before_reserving(store):
    h = await add_hospital(store, available=1)
    await add_responder(store, status="busy")
    case = await add_case(store)

    with pytest.raises(NoResponderAvailable):
        await AssignmentEngine(store).assign(case)
    assert (await store.get_hospital(h.id)).capacity.available == 1


async def test_picks_nearest_hospital(store):
    near = await add_hospital(store, name="Near", lat=ONE_KM, available=3)
    await add_hospital(store, name="Far", lat=FIFTY_KM, available=3)
    await add_responder(store)
    case = await add_case(store)

    result = await AssignmentEngine(store).assign(case)
    assert result.hospital.id == near.id


async def test_hospital_and_responder_chosen_independently(store):
    hospital = await add_hospital(store, lat=FIFTY_KM)
    responder = await add_responder(store, lat=-ONE_KM)
    await add_responder(store, user_id="medic-2", lat=FIFTY_KM)
    case = await add_case(store)

    result = await AssignmentEngine(store).assign(case)
    assert result.hospital.id == hospital.id
    assert result.responder.id == responder.id


async def test_responder_exhausted_restores_hospital(db):
    store = ResponderStolenStore(db)
    h = await add_hospital(store, total=5, available=2)
    await add_responder(store)
    case = await add_case(store)

    with pytest.raises(NoResponderAvailable):
        await AssignmentEngine(store).assign(case)

    assert (await store.get_hospital(h.id)).capacity.available == 2
    assert (await store.get_case(case.id)).status == "pending"
    assert await store.list_stale_holds("9999-12-31") == []


async def test_concurrent_assign_single_bed(db):
    store = RacingStore(db)
    h = await add_hospital(store, available=1)
    await add_responder(store, user_id="medic-1")
    await add_responder(store, user_id="medic-2", vehicle_id="AMB-2")
    first = await add_case(store, patient_id="p1")
    second = await add_case(store, patient_id="p2")

    engine = AssignmentEngine(store)
    results = await asyncio.gather(
        engine.assign(first), engine.assign(second), return_exceptions=True
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], NoHospitalAvailable)
    assert (await store.get_hospital(h.id)).capacity.available == 0
    assigned = await store.list_responders("assigned")
    assert len(assigned) == 1


async def test_conflict_falls_back_to_next_nearest(db):
    store = RacingStore(db)
    near = await add_hospital(store, name="Near", lat=ONE_KM, available=1)
    far = await add_hospital(store, name="Far", lat=FIFTY_KM, available=1)
    await add_responder(store, user_id="medic-1")
    await add_responder(store, user_id="medic-2", vehicle_id="AMB-2")
    first = await add_case(store, patient_id="p1")
    second = await add_case(store, patient_id="p2")

    engine = AssignmentEngine(store)
    a, b = await asyncio.gather(engine.assign(first), engine.assign(second))

    assert {a.hospital.id, b.hospital.id} == {near.id, far.id}
    assert a.responder.id != b.responder.id


async def test_max_conflicts_caps_retries(db):
    store = RacingStore(db)
    await add_hospital(store, name="Near", lat=ONE_KM, available=1)
    await add_hospital(store, name="Far", lat=FIFTY_KM, available=1)
    await add_responder(store, user_id="medic-1")
    await add_responder(store, user_id="medic-2", vehicle_id="AMB-2")
    first = await add_case(store, patient_id="p1")
    second = await add_case(store, patient_id="p2")

    engine = AssignmentEngine(store, max_conflicts=1)
    results = await asyncio.gather(
        engine.assign(first), engine.assign(second), return_exceptions=True
    )
    assert sum(isinstance(r, NoHospitalAvailable) for r in results) == 1


async def test_unknown_case_reserves_nothing(store):
    h = await add_hospital(store, available=1)
    r = await add_responder(store)
    case = await add_case(store)
    ghost = case.model_copy(update={"id": "does-not-exist"})

    with pytest.raises(AssignmentPersistFailed):
        await AssignmentEngine(store).assign(ghost)

    assert (await store.get_hospital(h.id)).capacity.available == 1
    assert (await store.get_responder(r.id)).status == "available"


async def test_assign_rejects_case_not_pending(store):
    await add_hospital(store, name="A", available=1)
    await add_hospital(store, name="B", lat=ONE_KM, available=1)
    await add_responder(store, user_id="medic-1")
    await add_responder(store, user_id="medic-2", vehicle_id="AMB-2")
    case = await add_case(store)
    engine = AssignmentEngine(store)

    await engine.assign(case)
    # ``case`` is the stale pending copy; the stored row decides.
    with pytest.raises(CaseNotPending):
        await engine.assign(case)

    beds = sum(h.capacity.available for h in await store.list_hospitals())
    assert beds == 1
    assert len(await store.list_responders("available")) == 1
    assert await store.list_stale_holds("9999-12-31") == []


async def test_same_case_assigned_concurrently_rolls_back_loser(db):
    store = RacingStore(db)
    await add_hospital(store, name="A", available=1)
    await add_hospital(store, name="B", lat=ONE_KM, available=1)
    await add_responder(store, user_id="medic-1")
    await add_responder(store, user_id="medic-2", vehicle_id="AMB-2")
    case = await add_case(store)
    engine = AssignmentEngine(store)

    results = await asyncio.gather(engine.assign(case), engine.assign(case), return_exceptions=True)

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], AssignmentPersistFailed)
    assert not isinstance(failures[0], CaseNotPending)
    beds = sum(h.capacity.available for h in await store.list_hospitals())
    assert beds == 1
    assert len(await store.list_responders("available")) == 1
    assert await store.list_stale_holds("9999-12-31") == []


async def test_persist_transient_failure_rolls_back(db):
    store = FailingPersistStore(db)
    h = await add_hospital(store, available=1)
    r = await add_responder(store)
    case = await add_case(store)

    with pytest.raises(AssignmentPersistFailed) as exc_info:
        await AssignmentEngine(store).assign(case)

    assert isinstance(exc_info.value.__cause__, TransientStoreError)
    assert (await store.get_hospital(h.id)).capacity.available == 1
    assert (await store.get_responder(r.id)).status == "available"
    assert (await store.get_case(case.id)).status == "pending"


async def test_transient_error_on_responder_releases_bed(db):
    store = FailingResponderStore(db)
    h = await add_hospital(store, available=1)
    await add_responder(store)
    case = await add_case(store)

    with pytest.raises(TransientStoreError):
        await AssignmentEngine(store).assign(case)
    assert (await store.get_hospital(h.id)).capacity.available == 1


async def test_failed_responder_release_still_releases_bed(db):
    store = StuckReleaseStore(db)
    h = await add_hospital(store, total=5, available=2)
    r = await add_responder(store)
    case = await add_case(store)

    with pytest.raises(AssignmentPersistFailed) as exc_info:
        await AssignmentEngine(store).assign(case)

    assert isinstance(exc_info.value.__cause__, TransientStoreError)
    assert (await store.get_hospital(h.id)).capacity.available == 2
    assert (await store.get_responder(r.id)).status == "assigned"

    # Only the responder is left on the hold, so recovery frees it without a second bed release.
    holds = await store.list_stale_holds("9999-12-31")
    assert [(x.hospital_id, x.responder_id) for x in holds] == [(None, r.id)]

    assert await AssignmentEngine(store).recover(grace_seconds=-60) == 1
    assert (await store.get_responder(r.id)).status == "available"
    assert (await store.get_hospital(h.id)).capacity.available == 2
    assert await store.list_stale_holds("9999-12-31") == []


# --- Recovery ---


async def test_recover_releases_stranded_reservation(store):
    h = await add_hospital(store, total=3, available=2)
    r = await add_responder(store)
    case = await add_case(store)

    # Simulate a crash after both reservations but before the case link was written.
    assert await store.reserve_hospital_bed(h.id, 2) is WriteOutcome.SUCCESS
    assert await store.reserve_responder(r.id, "available") is WriteOutcome.SUCCESS
    hold_id = await store.open_hold(case.id, h.id)
    await store.attach_hold_responder(hold_id, r.id)

    recovered = await AssignmentEngine(store).recover(grace_seconds=-60)

    assert recovered == 1
    assert (await store.get_hospital(h.id)).capacity.available == 2
    assert (await store.get_responder(r.id)).status == "available"
    assert await store.list_stale_holds("9999-12-31") == []


async def test_recover_keeps_completed_assignment(store):
    h = await add_hospital(store, available=1)
    await add_responder(store)
    case = await add_case(store)
    result = await AssignmentEngine(store).assign(case)
    # Leftover hold from a close that never reached the store
    await store.open_hold(case.id, h.id)

    recovered = await AssignmentEngine(store).recover(grace_seconds=-60)

    assert recovered == 0
    assert (await store.get_hospital(h.id)).capacity.available == 0
    assert (await store.get_responder(result.responder.id)).status == "assigned"


async def test_recover_ignores_fresh_holds(store):
    h = await add_hospital(store, available=1)
    case = await add_case(store)
    await store.reserve_hospital_bed(h.id, 1)
    await store.open_hold(case.id, h.id)

    assert await AssignmentEngine(store).recover(grace_seconds=3600) == 0
    assert (await store.get_hospital(h.id)).capacity.available == 0


# --- Notifications ---


async def test_assignment_notifies_patient_responder_and_hospital(store):
    h = await add_hospital(store, available=1)
    r = await add_responder(store, user_id="medic-9")
    case = await add_case(store, patient_id="patient-9")

    dispatcher = NotificationDispatcher()
    await dispatcher.start()
    received: dict[str, list[dict]] = {"patient-9": [], "medic-9": [], "staff-1": [], "bystander": []}
    try:
        await dispatcher.connect("patient-9")
        await dispatcher.connect("medic-9")
        await dispatcher.connect("staff-1", groups=[hospital_group(h.id)])
        await dispatcher.connect("bystander")
        for user_id, inbox in received.items():
            dispatcher.subscribe(user_id, "case_assigned", inbox.append)

        await AssignmentEngine(store, dispatcher).assign(case)
        await dispatcher.drain()
    finally:
        await dispatcher.stop()

    for user_id in ("patient-9", "medic-9", "staff-1"):
        assert len(received[user_id]) == 1
        event = received[user_id][0]
        assert event["type"] == "case_assigned"
        assert event["payload"]["case"]["id"] == case.id
        assert event["payload"]["responder"]["id"] == r.id
        assert event["payload"]["hospital"]["capacity"]["available"] == 0
        assert "message" in event["payload"]
    assert received["bystander"] == []


async def test_assignment_succeeds_when_dispatcher_stopped(store):
    await add_hospital(store, available=1)
    await add_responder(store)
    case = await add_case(store)

    dispatcher = NotificationDispatcher()
    result = await AssignmentEngine(store, dispatcher).assign(case)
    assert result.case.status == "assigned"
