"""Row builders shared by the test modules."""

from app.models.case import CaseCreate
from app.models.hospital import Capacity, HospitalCreate
from app.models.location import Location
from app.models.responder import ResponderCreate


async def add_hospital(store, name="General", lat=0.0, lon=0.0, total=10, available=1):
    return await store.create_hospital(HospitalCreate(
        name=name,
        location=Location(latitude=lat, longitude=lon),
        capacity=Capacity(total=total, available=available),
    ))


async def add_responder(store, user_id="medic-1", lat=0.0, lon=0.0, status="available", vehicle_id="AMB-1"):
    return await store.create_responder(ResponderCreate(
        user_id=user_id,
        vehicle_id=vehicle_id,
        location=Location(latitude=lat, longitude=lon),
        status=status,
    ))


async def add_case(store, patient_id="patient-1", lat=0.0, lon=0.0, severity="high"):
    return await store.create_case(CaseCreate(
        patient_id=patient_id,
        description="Chest pain",
        severity=severity,
        location=Location(latitude=lat, longitude=lon),
    ))
