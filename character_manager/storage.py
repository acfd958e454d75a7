"""Persistence port and repository.

The core never talks to a concrete store. It consumes a key-value port:

    async def get_item(key) -> str | None
    async def set_item(key, value: str) -> None
    async def remove_item(key) -> None

Two implementations are provided:

    MemoryStore — dict-backed; used by tests and for embedding.
    FileStore   — one ``<key>.json`` file per key under a base directory.

``Repository`` sits on top of the port and reads/writes whole collections.
Each collection is stored as one versioned JSON envelope:

    gameCharacterManager                 {"characters": [...], "version", "lastUpdated"}
    gameCharacterManager_factions        {"factions": [...], ...}
    gameCharacterManager_locations       {"locations": [...], ...}
    gameCharacterManager_events          {"events": [...], ...}
    gameCharacterManager_discord_config  DiscordConfig object
    gameCharacterManager_discord_mappings / _messages / _aliases  (envelopes)

There is no locking: a read-transform-write against the same key from two
callers is last-writer-wins. Callers serialise work per collection.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from character_manager.models import (
    DATASET_VERSION,
    Character,
    CharacterAlias,
    DiscordConfig,
    DiscordMessage,
    DiscordUserMapping,
    Faction,
    GameEvent,
    Location,
    dump,
    now_iso,
)

logger = logging.getLogger(__name__)

CHARACTERS_KEY = "gameCharacterManager"
FACTIONS_KEY = "gameCharacterManager_factions"
LOCATIONS_KEY = "gameCharacterManager_locations"
EVENTS_KEY = "gameCharacterManager_events"
DISCORD_CONFIG_KEY = "gameCharacterManager_discord_config"
DISCORD_MAPPINGS_KEY = "gameCharacterManager_discord_mappings"
DISCORD_MESSAGES_KEY = "gameCharacterManager_discord_messages"
DISCORD_ALIASES_KEY = "gameCharacterManager_discord_aliases"

GAME_KEYS = (CHARACTERS_KEY, FACTIONS_KEY, LOCATIONS_KEY, EVENTS_KEY)
DISCORD_KEYS = (DISCORD_CONFIG_KEY, DISCORD_MAPPINGS_KEY, DISCORD_MESSAGES_KEY, DISCORD_ALIASES_KEY)

M = TypeVar("M", bound=BaseModel)


class StorageError(RuntimeError):
    """Raised when the store cannot be read or written, or holds corrupt data."""


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    async def get_item(self, key: str) -> str | None: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


class MemoryStore:
    """In-memory store. ``items`` is exposed for inspection in tests."""

    def __init__(self, items: dict[str, str] | None = None) -> None:
        self.items: dict[str, str] = dict(items or {})

    async def get_item(self, key: str) -> str | None:
        return self.items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self.items[key] = value

    async def remove_item(self, key: str) -> None:
        self.items.pop(key, None)


class FileStore:
    """Flat JSON files under ``base_path``, one per key."""

    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self._base / f"{key}.json"

    async def get_item(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return path.read_text()
        except OSError as e:
            raise StorageError(f"Cannot read {path}") from e

    async def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            path.write_text(value)
        except OSError as e:
            raise StorageError(f"Cannot write {path}") from e

    async def remove_item(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Cannot remove {self._path(key)}") from e


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

class Repository:
    """Typed whole-collection access over a ``KeyValueStore``."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _read_json(self, key: str) -> Any:
        raw = await self.store.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageError(f"Stored data for {key!r} is not valid JSON") from e

    async def _load_list(self, key: str, field: str, model: type[M]) -> list[M]:
        data = await self._read_json(key)
        if data is None:
            return []
        # Older Discord collections were stored as bare arrays.
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            items = data.get(field) or []
        else:
            raise StorageError(f"Stored data for {key!r} has an unexpected shape")
        try:
            return [model.model_validate(item) for item in items]
        except ValidationError as e:
            raise StorageError(f"Stored data for {key!r} does not validate: {e}") from e

    async def _save_list(self, key: str, field: str, items: list[BaseModel]) -> None:
        envelope = {
            field: [dump(item) for item in items],
            "version": DATASET_VERSION,
            "lastUpdated": now_iso(),
        }
        await self.store.set_item(key, json.dumps(envelope))
        logger.debug("saved %s count=%d", key, len(items))

    # ------------------------------------------------------------------
    # Game collections
    # ------------------------------------------------------------------

    async def load_characters(self) -> list[Character]:
        return await self._load_list(CHARACTERS_KEY, "characters", Character)

    async def save_characters(self, characters: list[Character]) -> None:
        await self._save_list(CHARACTERS_KEY, "characters", characters)

    async def load_factions(self) -> list[Faction]:
        return await self._load_list(FACTIONS_KEY, "factions", Faction)

    async def save_factions(self, factions: list[Faction]) -> None:
        await self._save_list(FACTIONS_KEY, "factions", factions)

    async def load_locations(self) -> list[Location]:
        return await self._load_list(LOCATIONS_KEY, "locations", Location)

    async def save_locations(self, locations: list[Location]) -> None:
        await self._save_list(LOCATIONS_KEY, "locations", locations)

    async def load_events(self) -> list[GameEvent]:
        return await self._load_list(EVENTS_KEY, "events", GameEvent)

    async def save_events(self, events: list[GameEvent]) -> None:
        await self._save_list(EVENTS_KEY, "events", events)

    async def clear(self) -> None:
        for key in GAME_KEYS:
            await self.store.remove_item(key)

    # ------------------------------------------------------------------
    # Discord collections
    # ------------------------------------------------------------------

    async def load_discord_config(self) -> DiscordConfig:
        data = await self._read_json(DISCORD_CONFIG_KEY)
        if data is None:
            return DiscordConfig()
        try:
            return DiscordConfig.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"Stored Discord config does not validate: {e}") from e

    async def save_discord_config(self, config: DiscordConfig) -> None:
        await self.store.set_item(DISCORD_CONFIG_KEY, json.dumps(dump(config)))

    async def load_user_mappings(self) -> list[DiscordUserMapping]:
        return await self._load_list(DISCORD_MAPPINGS_KEY, "userMappings", DiscordUserMapping)

    async def save_user_mappings(self, mappings: list[DiscordUserMapping]) -> None:
        await self._save_list(DISCORD_MAPPINGS_KEY, "userMappings", mappings)

    async def load_messages(self) -> list[DiscordMessage]:
        return await self._load_list(DISCORD_MESSAGES_KEY, "messages", DiscordMessage)

    async def save_messages(self, messages: list[DiscordMessage]) -> None:
        await self._save_list(DISCORD_MESSAGES_KEY, "messages", messages)

    async def load_aliases(self) -> list[CharacterAlias]:
        return await self._load_list(DISCORD_ALIASES_KEY, "characterAliases", CharacterAlias)

    async def save_aliases(self, aliases: list[CharacterAlias]) -> None:
        await self._save_list(DISCORD_ALIASES_KEY, "characterAliases", aliases)

    async def clear_discord(self) -> None:
        for key in DISCORD_KEYS:
            await self.store.remove_item(key)
