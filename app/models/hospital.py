from pydantic import BaseModel, Field, model_validator

from app.models.location import Location


class Capacity(BaseModel):
    total: int = Field(ge=0)
    available: int = Field(ge=0)

    @model_validator(mode="after")
    def _available_within_total(self) -> "Capacity":
        if self.available > self.total:
            raise ValueError("available beds cannot exceed total beds")
        return self


class Resources(BaseModel):
    icu_beds: int = Field(default=0, ge=0)
    ventilators: int = Field(default=0, ge=0)


class HospitalCreate(BaseModel):
    name: str
    location: Location
    capacity: Capacity
    resources: Resources = Resources()
    specialties: list[str] = []


class Hospital(HospitalCreate):
    id: str
    updated_at: str | None = None


class CapacityUpdate(BaseModel):
    expected_available: int = Field(ge=0)
    available: int = Field(ge=0)


class ResourcesUpdate(BaseModel):
    """Staff edit of ICU beds and ventilators, applied only if ``expected`` is still current."""

    expected: Resources
    resources: Resources
