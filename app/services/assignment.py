"""Match an incoming emergency case to the nearest free hospital bed and responder.

Hospital and responder are chosen independently, each as the candidate
nearest to the case location. Both are claimed through conditional writes; a
conflict drops the contested candidate and selection runs again on a fresh
read, so every retry shrinks the set of ids still eligible. Once the bed is
taken, any later failure gives it back before the error reaches the caller.
A reservation hold row records what has been claimed for a case until the
assignment is persisted, which lets ``recover`` undo work left behind by a
process that died mid-assignment.
"""

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Generic, TypeVar

from app.config import ASSIGNMENT_MAX_CONFLICTS, RECOVERY_GRACE_SECONDS
from app.models.case import EmergencyCase
from app.models.hospital import Hospital
from app.models.location import Location
from app.models.notification import CASE_ASSIGNED, RESOURCE_UPDATE, STATUS_UPDATE
from app.models.responder import EmergencyResponder
from app.services.capacity_store import CapacityStore, TransientStoreError, WriteOutcome
from app.services.geo import distance_km
from app.services.notifications import NotificationDispatcher

logger = logging.getLogger(__name__)

# Distances closer than this are treated as equal and ordered by id.
DISTANCE_TOLERANCE_KM = 1e-9

# Release attempts per resource before compensation is reported as failed.
COMPENSATION_ATTEMPTS = 10

T = TypeVar("T", Hospital, EmergencyResponder)


class AssignmentError(Exception):
    """Base class for assignment failures that leave the case pending."""


class NoHospitalAvailable(AssignmentError):
    pass


class NoResponderAvailable(AssignmentError):
    pass


class AssignmentPersistFailed(AssignmentError):
    pass


class CaseNotPending(AssignmentPersistFailed):
    """The stored case is no longer waiting for assignment."""


class CompensationFailed(AssignmentError):
    """A claimed resource could not be handed back; needs manual correction."""


@dataclass
class AssignmentResult:
    case: EmergencyCase
    hospital: Hospital
    responder: EmergencyResponder


@dataclass
class Selected(Generic[T]):
    candidate: T


@dataclass
class Conflict:
    candidate_id: str


@dataclass
class Exhausted:
    pass


def hospital_group(hospital_id: str) -> str:
    """Notification group that hospital staff sessions join."""
    return f"hospital:{hospital_id}"


def select_nearest(location: Location, candidates: Sequence[T]) -> T | None:
    """Nearest candidate to ``location``; equal distances prefer the smaller id."""
    best: T | None = None
    best_distance = 0.0
    for candidate in candidates:
        d = distance_km(location, candidate.location)
        if best is None or d < best_distance - DISTANCE_TOLERANCE_KM:
            best, best_distance = candidate, d
        elif abs(d - best_distance) <= DISTANCE_TOLERANCE_KM and candidate.id < best.id:
            best, best_distance = candidate, d
    return best


class AssignmentEngine:
    def __init__(
        self,
        store: CapacityStore,
        dispatcher: NotificationDispatcher | None = None,
        max_conflicts: int = ASSIGNMENT_MAX_CONFLICTS,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._max_conflicts = max_conflicts

    async def assign(self, case: EmergencyCase) -> AssignmentResult:
        stored = await self._store.get_case(case.id)
        if stored is None:
            raise AssignmentPersistFailed(f"case {case.id} does not exist")
        if stored.status != "pending":
            raise CaseNotPending(f"case {case.id} is already {stored.status}")

        hospitals = await self._store.list_hospitals_with_availability(1)
        if not hospitals:
            raise NoHospitalAvailable("no hospital has a free bed")

        responders = await self._store.list_responders("available")
        if not responders:
            raise NoResponderAvailable("no responder is available")

        hospital = await self._claim(
            case,
            hospitals,
            refetch=lambda: self._store.list_hospitals_with_availability(1),
            reserve=lambda h: self._store.reserve_hospital_bed(h.id, h.capacity.available),
            exhausted=NoHospitalAvailable("every candidate hospital was taken"),
        )

        try:
            hold_id = await self._store.open_hold(case.id, hospital.id)
        except TransientStoreError:
            await self._compensate(None, hospital.id, None)
            raise

        try:
            responder = await self._claim(
                case,
                responders,
                refetch=lambda: self._store.list_responders("available"),
                reserve=lambda r: self._store.reserve_responder(r.id, "available"),
                exhausted=NoResponderAvailable("every candidate responder was taken"),
            )
        except (AssignmentError, TransientStoreError):
            await self._compensate(hold_id, hospital.id, None)
            raise

        try:
            await self._store.attach_hold_responder(hold_id, responder.id)
            outcome = await self._store.update_case_assignment(case.id, hospital.id, responder.id)
        except TransientStoreError as exc:
            await self._compensate(hold_id, hospital.id, responder.id)
            raise AssignmentPersistFailed(f"could not persist assignment for case {case.id}") from exc

        if outcome is not WriteOutcome.SUCCESS:
            await self._compensate(hold_id, hospital.id, responder.id)
            raise AssignmentPersistFailed(f"case {case.id} could not be assigned ({outcome.value})")

        try:
            await self._store.close_hold(hold_id)
        except TransientStoreError:
            # The case is assigned; a leftover hold is skipped by recover().
            logger.warning("Could not close reservation hold %s for case %s", hold_id, case.id)

        assigned_case = case.model_copy(update={
            "status": "assigned",
            "assigned_hospital_id": hospital.id,
            "assigned_responder_id": responder.id,
        })
        hospital = hospital.model_copy(update={
            "capacity": hospital.capacity.model_copy(update={"available": hospital.capacity.available - 1}),
        })
        responder = responder.model_copy(update={"status": "assigned"})
        logger.info(
            "Case %s assigned to hospital %s and responder %s", case.id, hospital.id, responder.id
        )

        result = AssignmentResult(case=assigned_case, hospital=hospital, responder=responder)
        await self._announce(result)
        return result

    async def _claim(
        self,
        case: EmergencyCase,
        candidates: list[T],
        refetch: Callable[[], Awaitable[list[T]]],
        reserve: Callable[[T], Awaitable[WriteOutcome]],
        exhausted: AssignmentError,
    ) -> T:
        excluded: set[str] = set()
        while True:
            step = await self._attempt(case.location, candidates, excluded, reserve)
            if isinstance(step, Selected):
                return step.candidate
            if isinstance(step, Exhausted):
                raise exhausted

            excluded.add(step.candidate_id)
            logger.info("Reservation conflict on %s for case %s, reselecting", step.candidate_id, case.id)
            if self._max_conflicts and len(excluded) >= self._max_conflicts:
                raise exhausted
            candidates = await refetch()

    async def _attempt(
        self,
        location: Location,
        candidates: list[T],
        excluded: set[str],
        reserve: Callable[[T], Awaitable[WriteOutcome]],
    ) -> "Selected[T] | Conflict | Exhausted":
        remaining = [c for c in candidates if c.id not in excluded]
        choice = select_nearest(location, remaining)
        if choice is None:
            return Exhausted()
        outcome = await reserve(choice)
        if outcome is WriteOutcome.SUCCESS:
            return Selected(choice)
        return Conflict(choice.id)

    # --- Compensation ---

    async def _compensate(
        self, hold_id: str | None, hospital_id: str | None, responder_id: str | None
    ) -> bool:
        """Hand back each claimed resource independently.

        Release failures are logged, not raised, so the caller's own error is
        what surfaces. Whatever is still held stays on the hold for
        ``recover``; returns True once nothing is held.
        """
        logger.warning(
            "Rolling back reservation of hospital %s and responder %s", hospital_id, responder_id
        )
        held_responder = responder_id
        if responder_id is not None:
            try:
                await self._release_responder(responder_id)
                held_responder = None
            except TransientStoreError as exc:
                logger.error("Could not release responder %s: %s", responder_id, exc)

        held_hospital = hospital_id
        if hospital_id is not None:
            try:
                await self._release_hospital(hospital_id)
                held_hospital = None
            except (TransientStoreError, CompensationFailed) as exc:
                logger.error("Could not release bed at hospital %s: %s", hospital_id, exc)

        released = held_hospital is None and held_responder is None
        if hold_id is None:
            if not released:
                logger.error(
                    "Hospital %s left reserved with no hold to recover it; correct capacity manually",
                    held_hospital,
                )
            return released
        try:
            if released:
                await self._store.close_hold(hold_id)
            else:
                await self._store.update_hold(hold_id, held_hospital, held_responder)
        except TransientStoreError:
            logger.warning("Could not update reservation hold %s after rollback", hold_id)
        return released

    async def _release_hospital(self, hospital_id: str) -> None:
        for _ in range(COMPENSATION_ATTEMPTS):
            hospital = await self._store.get_hospital(hospital_id)
            if hospital is None:
                logger.error("Hospital %s vanished before its bed could be released", hospital_id)
                return
            if hospital.capacity.available >= hospital.capacity.total:
                # Staff already corrected the count upwards.
                logger.warning("Hospital %s already at full capacity, nothing to release", hospital_id)
                return
            outcome = await self._store.release_hospital_bed(hospital_id, hospital.capacity.available)
            if outcome is WriteOutcome.SUCCESS:
                return
        logger.error("Failed to release bed at hospital %s", hospital_id)
        raise CompensationFailed(f"bed at hospital {hospital_id} could not be released")

    async def _release_responder(self, responder_id: str) -> None:
        outcome = await self._store.set_responder_status(responder_id, "assigned", "available")
        if outcome is not WriteOutcome.SUCCESS:
            # The responder changed state on their own; that update wins.
            logger.warning("Responder %s not released (%s)", responder_id, outcome.value)

    # --- Recovery ---

    async def recover(self, grace_seconds: int = RECOVERY_GRACE_SECONDS) -> int:
        """Undo reservations whose case was never linked, for holds older than the grace window."""
        cutoff = (datetime.now(UTC) - timedelta(seconds=grace_seconds)).isoformat()
        holds = await self._store.list_stale_holds(cutoff)
        recovered = 0
        for hold in holds:
            case = await self._store.get_case(hold.case_id)
            linked = (
                case is not None
                and hold.hospital_id is not None
                and case.status != "pending"
                and case.assigned_hospital_id == hold.hospital_id
            )
            if linked:
                await self._store.close_hold(hold.id)
                continue
            logger.warning("Recovering stranded reservation %s for case %s", hold.id, hold.case_id)
            if await self._compensate(hold.id, hold.hospital_id, hold.responder_id):
                recovered += 1
        return recovered

    # --- Notifications ---

    async def _announce(self, result: AssignmentResult) -> None:
        if self._dispatcher is None:
            return
        case, hospital, responder = result.case, result.hospital, result.responder
        audience = [case.patient_id, responder.user_id, hospital_group(hospital.id)]
        try:
            await self._dispatcher.publish(
                CASE_ASSIGNED,
                {
                    "case": case.model_dump(),
                    "hospital": hospital.model_dump(),
                    "responder": responder.model_dump(),
                    "message": f"New emergency case assigned: {case.description}",
                },
                recipients=audience,
            )
            await self._dispatcher.publish(
                STATUS_UPDATE,
                {"case": case.model_dump(), "message": f"Case {case.id} is now assigned"},
                recipients=audience,
            )
            await self._dispatcher.publish(
                RESOURCE_UPDATE,
                {
                    "hospital": hospital.model_dump(),
                    "message": f"{hospital.name} has {hospital.capacity.available} beds available",
                },
            )
        except Exception:
            logger.exception("Failed to publish assignment of case %s", case.id)
