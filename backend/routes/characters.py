"""Character CRUD endpoints."""

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from backend import storage
from character_manager.characters import CharacterService
from character_manager.models import dump

from .models import CreateCharacter

router = APIRouter()

_PROTECTED = {"id", "createdAt", "created_at", "updatedAt", "updated_at", "name"}


def _service() -> CharacterService:
    return CharacterService(storage.repository())


@router.get("/characters")
async def list_characters():
    """List all characters."""
    return [dump(c) for c in await _service().list_characters()]


@router.post("/characters", status_code=201)
async def create_character(body: CreateCharacter):
    """Create a character with a fresh id."""
    details = {k: v for k, v in body.details.items() if k not in _PROTECTED}
    try:
        char = await _service().add_character(body.name, **details)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    return dump(char)


@router.post("/characters/reset-present")
async def reset_present():
    """Mark every character absent."""
    return {"reset": await _service().reset_all_present()}


@router.get("/characters/{character_id}")
async def get_character(character_id: str):
    """Get a single character by id."""
    char = await _service().get_character(character_id)
    if not char:
        raise HTTPException(404, "Character not found")
    return dump(char)


@router.patch("/characters/{character_id}")
async def update_character(character_id: str, body: dict):
    """Partially update a character."""
    try:
        char = await _service().update_character(character_id, body)
    except ValidationError as e:
        raise HTTPException(422, str(e))
    if not char:
        raise HTTPException(404, "Character not found")
    return dump(char)


@router.post("/characters/{character_id}/toggle-present")
async def toggle_present(character_id: str):
    """Flip the character's present flag."""
    char = await _service().toggle_present(character_id)
    if not char:
        raise HTTPException(404, "Character not found")
    return dump(char)


@router.delete("/characters/{character_id}")
async def delete_character(character_id: str):
    """Remove a character."""
    if not await _service().delete_character(character_id):
        raise HTTPException(404, "Character not found")
    return {"ok": True}
