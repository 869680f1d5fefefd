from fastapi import APIRouter, HTTPException, Query

from app.models.geocode import GeocodeResult
from app.services.geocoding import GeocodingError, reverse_geocode, search_location

router = APIRouter(prefix="/api/geocode", tags=["geocoding"])


@router.get("/search", response_model=list[GeocodeResult])
async def search(q: str = Query(..., min_length=1)):
    try:
        return await search_location(q)
    except GeocodingError as e:
        raise HTTPException(status_code=502, detail=str(e)) from None


@router.get("/reverse", response_model=GeocodeResult)
async def reverse(lat: float = Query(..., ge=-90, le=90), lon: float = Query(..., ge=-180, le=180)):
    try:
        result = await reverse_geocode(lat, lon)
    except GeocodingError as e:
        raise HTTPException(status_code=502, detail=str(e)) from None
    if result is None:
        raise HTTPException(status_code=404, detail="No address found for these coordinates")
    return result
