"""Single-record character CRUD."""

from __future__ import annotations

import logging
from typing import Any

from character_manager.models import Character, apply_updates, new_character, touch
from character_manager.storage import Repository

logger = logging.getLogger(__name__)


class CharacterService:
    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def list_characters(self) -> list[Character]:
        return await self.repository.load_characters()

    async def get_character(self, character_id: str) -> Character | None:
        """Find a single character by id. Returns None if not found."""
        for char in await self.repository.load_characters():
            if char.id == character_id:
                return char
        return None

    async def add_character(self, name: str, **fields: Any) -> Character:
        character = new_character(name, **fields)
        characters = await self.repository.load_characters()
        await self.repository.save_characters([*characters, character])
        logger.info("Added character %r (%s)", name, character.id)
        return character

    async def update_character(self, character_id: str, updates: dict[str, Any]) -> Character | None:
        """Apply a partial update. Raises ValidationError on invalid values."""
        characters = await self.repository.load_characters()
        for i, char in enumerate(characters):
            if char.id == character_id:
                characters[i] = apply_updates(char, updates)
                await self.repository.save_characters(characters)
                return characters[i]
        return None

    async def delete_character(self, character_id: str) -> bool:
        characters = await self.repository.load_characters()
        filtered = [c for c in characters if c.id != character_id]
        if len(filtered) == len(characters):
            return False
        await self.repository.save_characters(filtered)
        return True

    async def toggle_present(self, character_id: str) -> Character | None:
        characters = await self.repository.load_characters()
        for i, char in enumerate(characters):
            if char.id == character_id:
                characters[i] = touch(char, present=not char.present)
                await self.repository.save_characters(characters)
                return characters[i]
        return None

    async def reset_all_present(self) -> int:
        """Mark every character absent. Returns how many were present."""
        characters = await self.repository.load_characters()
        count = sum(1 for c in characters if c.present)
        if count:
            await self.repository.save_characters(
                [touch(c, present=False) if c.present else c for c in characters]
            )
        return count
