"""Location endpoints."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from backend import storage
from character_manager.locations import LocationService
from character_manager.models import dump

from .models import CreateLocation

router = APIRouter()


def _service() -> LocationService:
    return LocationService(storage.repository())


@router.get("/locations")
async def list_locations():
    return [dump(loc) for loc in await _service().list_locations()]


@router.post("/locations", status_code=201)
async def create_location(body: CreateLocation):
    location = await _service().create_location(
        body.name, body.description, body.image_uri, body.map_coordinates
    )
    if not location:
        raise HTTPException(409, f"Location '{body.name}' already exists")
    return dump(location)


@router.post("/locations/ensure-integrity")
async def ensure_integrity():
    """Migrate legacy locations and create placeholders for dangling references."""
    created = await _service().ensure_integrity()
    return {"created": [dump(loc) for loc in created]}


@router.get("/locations/{location_id}")
async def get_location(location_id: str):
    location = await _service().get_location(location_id)
    if not location:
        raise HTTPException(404, "Location not found")
    return dump(location)


@router.patch("/locations/{location_id}")
async def update_location(location_id: str, body: dict):
    try:
        location = await _service().update_location(location_id, body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    if not location:
        raise HTTPException(404, "Location not found")
    return dump(location)


@router.delete("/locations/{location_id}")
async def delete_location(location_id: str):
    """Delete a location and clear references to it."""
    service = _service()
    if not await service.get_location(location_id):
        raise HTTPException(404, "Location not found")
    result = await service.delete_location_completely(location_id)
    if not result.success:
        raise HTTPException(500, "Failed to delete location")
    return dump(result)
