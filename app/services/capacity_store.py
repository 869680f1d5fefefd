"""Read/write contract over hospital capacity, responder status and case rows.

Every mutation of shared state is a single conditional statement carrying the
caller's last observed value. A row count of zero means another writer got
there first (or the row is gone); the store never overwrites blindly.
"""

import json
import logging
import secrets
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from app.database import DB_ERRORS, INTEGRITY_ERRORS, DatabaseAdapter
from app.models.case import CaseCreate, EmergencyCase
from app.models.hospital import Capacity, Hospital, HospitalCreate, Resources
from app.models.location import Location
from app.models.responder import EmergencyResponder, ResponderCreate
from app.models.verification import VerificationCode

logger = logging.getLogger(__name__)

# Draws of a random verification code before giving up on collisions.
CODE_ATTEMPTS = 3


class TransientStoreError(Exception):
    """The store could not be reached or the statement failed; the caller may retry."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"store operation failed: {operation}")
        self.operation = operation


class StoreIntegrityError(Exception):
    """A constraint rejected the statement; retrying it will not help."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"store constraint violated: {operation}")
        self.operation = operation


class WriteOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass
class ReservationHold:
    id: str
    case_id: str
    hospital_id: str | None
    responder_id: str | None
    created_at: str


def _now() -> str:
    return datetime.now(UTC).isoformat()


@contextmanager
def _store_call(operation: str) -> Iterator[None]:
    try:
        yield
    except INTEGRITY_ERRORS as exc:
        logger.warning("Store operation %s violated a constraint: %s", operation, exc)
        raise StoreIntegrityError(operation) from exc
    except DB_ERRORS as exc:
        logger.warning("Store operation %s failed: %s", operation, exc)
        raise TransientStoreError(operation) from exc


def _row_to_case(row) -> EmergencyCase:
    return EmergencyCase(
        id=row["id"],
        patient_id=row["patient_id"],
        description=row["description"],
        severity=row["severity"],
        location=Location(
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
        ),
        status=row["status"],
        assigned_hospital_id=row["assigned_hospital_id"],
        assigned_responder_id=row["assigned_responder_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_hospital(row) -> Hospital:
    try:
        specialties = json.loads(row["specialties"] or "[]")
    except json.JSONDecodeError:
        logger.debug("Failed to parse specialties for hospital %s", row["id"])
        specialties = []
    return Hospital(
        id=row["id"],
        name=row["name"],
        location=Location(
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
        ),
        capacity=Capacity(total=row["total_beds"], available=row["available_beds"]),
        resources=Resources(icu_beds=row["icu_beds"], ventilators=row["ventilators"]),
        specialties=specialties,
        updated_at=row["updated_at"],
    )


def _row_to_responder(row) -> EmergencyResponder:
    return EmergencyResponder(
        id=row["id"],
        user_id=row["user_id"],
        vehicle_id=row["vehicle_id"],
        status=row["status"],
        location=Location(
            latitude=row["latitude"],
            longitude=row["longitude"],
            address=row["address"],
        ),
        last_update=row["last_update"],
    )


class CapacityStore:
    def __init__(self, db: DatabaseAdapter) -> None:
        self._db = db

    async def _exists(self, table: str, row_id: str) -> bool:
        row = await self._db.fetch_one(f"SELECT id FROM {table} WHERE id = ?", (row_id,))  # noqa: S608
        return row is not None

    async def _conditional_write(self, table: str, row_id: str, query: str, params: tuple) -> WriteOutcome:
        changed = await self._db.execute(query, params)
        await self._db.commit()
        if changed:
            return WriteOutcome.SUCCESS
        if await self._exists(table, row_id):
            return WriteOutcome.CONFLICT
        return WriteOutcome.NOT_FOUND

    # --- Cases ---

    async def create_case(self, body: CaseCreate) -> EmergencyCase:
        case_id = str(uuid.uuid4())
        now = _now()
        with _store_call("create_case"):
            await self._db.execute(
                """INSERT INTO emergency_cases (
                    id, patient_id, description, severity, latitude, longitude, address,
                    status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?)""",
                (
                    case_id,
                    body.patient_id,
                    body.description,
                    body.severity,
                    body.location.latitude,
                    body.location.longitude,
                    body.location.address,
                    now,
                    now,
                ),
            )
            await self._db.commit()
        return EmergencyCase(
            id=case_id,
            patient_id=body.patient_id,
            description=body.description,
            severity=body.severity,
            location=body.location,
            created_at=now,
            updated_at=now,
        )

    async def get_case(self, case_id: str) -> EmergencyCase | None:
        with _store_call("get_case"):
            row = await self._db.fetch_one("SELECT * FROM emergency_cases WHERE id = ?", (case_id,))
        return _row_to_case(row) if row else None

    async def list_cases(self, status: str | None = None) -> list[EmergencyCase]:
        with _store_call("list_cases"):
            if status:
                rows = await self._db.fetch_all(
                    "SELECT * FROM emergency_cases WHERE status = ? ORDER BY created_at DESC",
                    (status,),
                )
            else:
                rows = await self._db.fetch_all("SELECT * FROM emergency_cases ORDER BY created_at DESC")
        return [_row_to_case(r) for r in rows]

    async def update_case_assignment(self, case_id: str, hospital_id: str, responder_id: str) -> WriteOutcome:
        """Link a pending case to its hospital and responder and mark it assigned."""
        with _store_call("update_case_assignment"):
            return await self._conditional_write(
                "emergency_cases",
                case_id,
                """UPDATE emergency_cases
                   SET status = 'assigned', assigned_hospital_id = ?, assigned_responder_id = ?, updated_at = ?
                   WHERE id = ? AND status = 'pending'""",
                (hospital_id, responder_id, _now(), case_id),
            )

    async def update_case_status(self, case_id: str, expected_status: str, new_status: str) -> WriteOutcome:
        with _store_call("update_case_status"):
            return await self._conditional_write(
                "emergency_cases",
                case_id,
                "UPDATE emergency_cases SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status, _now(), case_id, expected_status),
            )

    # --- Hospitals ---

    async def create_hospital(self, body: HospitalCreate) -> Hospital:
        hospital_id = str(uuid.uuid4())
        now = _now()
        with _store_call("create_hospital"):
            await self._db.execute(
                """INSERT INTO hospitals (
                    id, name, latitude, longitude, address, total_beds, available_beds,
                    icu_beds, ventilators, specialties, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    hospital_id,
                    body.name,
                    body.location.latitude,
                    body.location.longitude,
                    body.location.address,
                    body.capacity.total,
                    body.capacity.available,
                    body.resources.icu_beds,
                    body.resources.ventilators,
                    json.dumps(body.specialties),
                    now,
                ),
            )
            await self._db.commit()
        return Hospital(id=hospital_id, updated_at=now, **body.model_dump())

    async def get_hospital(self, hospital_id: str) -> Hospital | None:
        with _store_call("get_hospital"):
            row = await self._db.fetch_one("SELECT * FROM hospitals WHERE id = ?", (hospital_id,))
        return _row_to_hospital(row) if row else None

    async def list_hospitals(self) -> list[Hospital]:
        with _store_call("list_hospitals"):
            rows = await self._db.fetch_all("SELECT * FROM hospitals ORDER BY name")
        return [_row_to_hospital(r) for r in rows]

    async def list_hospitals_with_availability(self, min_available: int = 1) -> list[Hospital]:
        with _store_call("list_hospitals_with_availability"):
            rows = await self._db.fetch_all(
                "SELECT * FROM hospitals WHERE available_beds >= ? ORDER BY id",
                (min_available,),
            )
        return [_row_to_hospital(r) for r in rows]

    async def reserve_hospital_bed(self, hospital_id: str, expected_available: int) -> WriteOutcome:
        """Take one bed if the stored count still equals ``expected_available``."""
        with _store_call("reserve_hospital_bed"):
            return await self._conditional_write(
                "hospitals",
                hospital_id,
                """UPDATE hospitals SET available_beds = available_beds - 1, updated_at = ?
                   WHERE id = ? AND available_beds = ? AND available_beds > 0""",
                (_now(), hospital_id, expected_available),
            )

    async def release_hospital_bed(self, hospital_id: str, expected_available: int) -> WriteOutcome:
        """Give one bed back if the count is unchanged and below the total."""
        with _store_call("release_hospital_bed"):
            return await self._conditional_write(
                "hospitals",
                hospital_id,
                """UPDATE hospitals SET available_beds = available_beds + 1, updated_at = ?
                   WHERE id = ? AND available_beds = ? AND available_beds < total_beds""",
                (_now(), hospital_id, expected_available),
            )

    async def set_hospital_capacity(
        self, hospital_id: str, expected_available: int, new_available: int
    ) -> WriteOutcome:
        """Manual correction (e.g. a discharge), still conditioned on the last observed count."""
        if new_available < 0:
            raise ValueError("available beds cannot be negative")
        with _store_call("set_hospital_capacity"):
            return await self._conditional_write(
                "hospitals",
                hospital_id,
                """UPDATE hospitals SET available_beds = ?, updated_at = ?
                   WHERE id = ? AND available_beds = ? AND ? <= total_beds""",
                (new_available, _now(), hospital_id, expected_available, new_available),
            )

    async def set_hospital_resources(
        self, hospital_id: str, expected: Resources, new: Resources
    ) -> WriteOutcome:
        """Replace ICU bed and ventilator counts if both still match what the editor saw."""
        with _store_call("set_hospital_resources"):
            return await self._conditional_write(
                "hospitals",
                hospital_id,
                """UPDATE hospitals SET icu_beds = ?, ventilators = ?, updated_at = ?
                   WHERE id = ? AND icu_beds = ? AND ventilators = ?""",
                (
                    new.icu_beds,
                    new.ventilators,
                    _now(),
                    hospital_id,
                    expected.icu_beds,
                    expected.ventilators,
                ),
            )

    # --- Responders ---

    async def create_responder(self, body: ResponderCreate) -> EmergencyResponder:
        responder_id = str(uuid.uuid4())
        now = _now()
        with _store_call("create_responder"):
            await self._db.execute(
                """INSERT INTO emergency_responders (
                    id, user_id, vehicle_id, status, latitude, longitude, address, last_update
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    responder_id,
                    body.user_id,
                    body.vehicle_id,
                    body.status,
                    body.location.latitude,
                    body.location.longitude,
                    body.location.address,
                    now,
                ),
            )
            await self._db.commit()
        return EmergencyResponder(id=responder_id, last_update=now, **body.model_dump())

    async def get_responder(self, responder_id: str) -> EmergencyResponder | None:
        with _store_call("get_responder"):
            row = await self._db.fetch_one("SELECT * FROM emergency_responders WHERE id = ?", (responder_id,))
        return _row_to_responder(row) if row else None

    async def list_responders(self, status: str | None = None) -> list[EmergencyResponder]:
        with _store_call("list_responders"):
            if status:
                rows = await self._db.fetch_all(
                    "SELECT * FROM emergency_responders WHERE status = ? ORDER BY id",
                    (status,),
                )
            else:
                rows = await self._db.fetch_all("SELECT * FROM emergency_responders ORDER BY id")
        return [_row_to_responder(r) for r in rows]

    async def reserve_responder(self, responder_id: str, expected_status: str) -> WriteOutcome:
        return await self.set_responder_status(responder_id, expected_status, "assigned")

    async def set_responder_status(
        self,
        responder_id: str,
        expected_status: str,
        new_status: str,
        location: Location | None = None,
    ) -> WriteOutcome:
        now = _now()
        with _store_call("set_responder_status"):
            if location is not None:
                return await self._conditional_write(
                    "emergency_responders",
                    responder_id,
                    """UPDATE emergency_responders
                       SET status = ?, latitude = ?, longitude = ?, address = ?, last_update = ?
                       WHERE id = ? AND status = ?""",
                    (
                        new_status,
                        location.latitude,
                        location.longitude,
                        location.address,
                        now,
                        responder_id,
                        expected_status,
                    ),
                )
            return await self._conditional_write(
                "emergency_responders",
                responder_id,
                "UPDATE emergency_responders SET status = ?, last_update = ? WHERE id = ? AND status = ?",
                (new_status, now, responder_id, expected_status),
            )

    # --- Reservation holds ---

    async def open_hold(self, case_id: str, hospital_id: str) -> str:
        hold_id = str(uuid.uuid4())
        with _store_call("open_hold"):
            await self._db.execute(
                "INSERT INTO reservation_holds (id, case_id, hospital_id, created_at) VALUES (?, ?, ?, ?)",
                (hold_id, case_id, hospital_id, _now()),
            )
            await self._db.commit()
        return hold_id

    async def attach_hold_responder(self, hold_id: str, responder_id: str) -> None:
        with _store_call("attach_hold_responder"):
            await self._db.execute(
                "UPDATE reservation_holds SET responder_id = ? WHERE id = ?",
                (responder_id, hold_id),
            )
            await self._db.commit()

    async def update_hold(self, hold_id: str, hospital_id: str | None, responder_id: str | None) -> None:
        """Narrow a hold to the resources still claimed after a partial rollback."""
        with _store_call("update_hold"):
            await self._db.execute(
                "UPDATE reservation_holds SET hospital_id = ?, responder_id = ? WHERE id = ?",
                (hospital_id, responder_id, hold_id),
            )
            await self._db.commit()

    async def close_hold(self, hold_id: str) -> None:
        with _store_call("close_hold"):
            await self._db.execute("DELETE FROM reservation_holds WHERE id = ?", (hold_id,))
            await self._db.commit()

    async def list_stale_holds(self, older_than: str) -> list[ReservationHold]:
        with _store_call("list_stale_holds"):
            rows = await self._db.fetch_all(
                "SELECT * FROM reservation_holds WHERE created_at < ? ORDER BY created_at",
                (older_than,),
            )
        return [
            ReservationHold(
                id=r["id"],
                case_id=r["case_id"],
                hospital_id=r["hospital_id"],
                responder_id=r["responder_id"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # --- Verification codes ---

    async def create_verification_code(self, role: str, created_by: str | None = None) -> VerificationCode:
        """Issue a fresh code; a collision with a live code draws a new one."""
        for attempt in range(1, CODE_ATTEMPTS + 1):
            code = VerificationCode(
                id=str(uuid.uuid4()),
                code=secrets.token_hex(4).upper(),
                role=role,
                created_at=_now(),
                created_by=created_by,
            )
            try:
                with _store_call("create_verification_code"):
                    await self._db.execute(
                        "INSERT INTO verification_codes (id, code, role, created_at, created_by)"
                        " VALUES (?, ?, ?, ?, ?)",
                        (code.id, code.code, code.role, code.created_at, code.created_by),
                    )
                    await self._db.commit()
            except StoreIntegrityError:
                if attempt == CODE_ATTEMPTS:
                    raise
                logger.info("Verification code collision, drawing another")
                continue
            return code
        raise StoreIntegrityError("create_verification_code")

    async def list_verification_codes(self) -> list[VerificationCode]:
        with _store_call("list_verification_codes"):
            rows = await self._db.fetch_all("SELECT * FROM verification_codes ORDER BY created_at DESC")
        return [
            VerificationCode(
                id=r["id"],
                code=r["code"],
                role=r["role"],
                created_at=r["created_at"],
                created_by=r["created_by"],
            )
            for r in rows
        ]

    async def consume_verification_code(self, code: str, role: str) -> bool:
        """Delete the code in one statement; only the caller whose delete hit a row may register."""
        with _store_call("consume_verification_code"):
            deleted = await self._db.execute(
                "DELETE FROM verification_codes WHERE code = ? AND role = ?",
                (code, role),
            )
            await self._db.commit()
        return deleted == 1
