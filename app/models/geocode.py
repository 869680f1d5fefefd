from pydantic import BaseModel


class GeocodeResult(BaseModel):
    latitude: float
    longitude: float
    display_name: str
