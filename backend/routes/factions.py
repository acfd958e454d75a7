"""Faction endpoints. Edits keep relationship edges mirrored on both factions."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from backend import storage
from character_manager.factions import FactionService
from character_manager.models import dump
from character_manager.storage import StorageError

from .models import CreateFaction

router = APIRouter()


def _service() -> FactionService:
    return FactionService(storage.repository())


@router.get("/factions")
async def list_factions():
    """List all factions."""
    return [dump(f) for f in await _service().list_factions()]


@router.post("/factions", status_code=201)
async def create_faction(body: CreateFaction):
    """Create a faction and add reciprocal edges on its peers."""
    faction = await _service().create_faction(body.name, body.description, body.relationships)
    if not faction:
        raise HTTPException(409, f"Faction '{body.name}' already exists")
    return dump(faction)


@router.get("/factions/integrity")
async def faction_integrity():
    """Report one-sided and dangling relationship edges."""
    service = _service()
    return {
        "asymmetric": [
            {"faction": a, "peer": b, "relationshipType": t}
            for a, b, t in await service.find_asymmetric_edges()
        ],
        "dangling": [
            {"faction": a, "peer": b} for a, b in await service.find_dangling_edges()
        ],
    }


@router.post("/factions/migrate-descriptions")
async def migrate_descriptions():
    """Copy per-character faction descriptions into faction records."""
    return {"changed": await _service().migrate_faction_descriptions()}


@router.get("/factions/{name}")
async def get_faction(name: str):
    faction = await _service().get_faction(name)
    if not faction:
        raise HTTPException(404, "Faction not found")
    return dump(faction)


@router.patch("/factions/{name}")
async def update_faction(name: str, body: dict):
    """Update a faction. Renames propagate to peers, characters and events."""
    service = _service()
    try:
        if not await service.get_faction(name):
            raise HTTPException(404, "Faction not found")
        faction = await service.update_faction(name, body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    except StorageError as e:
        raise HTTPException(500, f"Failed to update faction: {e}")
    if not faction:
        raise HTTPException(409, "Another faction already has that name")
    return dump(faction)


@router.delete("/factions/{name}")
async def delete_faction(name: str, prune_edges: bool = False):
    """Delete a faction and remove it from every character."""
    service = _service()
    try:
        exists = await service.get_faction(name)
    except StorageError as e:
        raise HTTPException(500, f"Failed to delete faction: {e}")
    if not exists:
        raise HTTPException(404, "Faction not found")
    result = await service.delete_faction_completely(name, prune_edges=prune_edges)
    if not result.success:
        raise HTTPException(500, "Failed to delete faction")
    return dump(result)
