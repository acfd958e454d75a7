"""Location records and referential integrity between characters and locations.

Invariant: after any import or merge, every ``Character.location_id`` resolves
to a ``Location`` in the location set.

Two passes keep it, both pure and idempotent:

  migrate_legacy_locations  characters with a free-text ``location`` and no
                            ``location_id`` are pointed at the location with the
                            same name (case-insensitive), or at a new one.
                            Characters sharing a legacy name share the new record.
  heal_orphan_locations     any referenced id with no record gets a placeholder
                            named after the id's first 8 characters, flagged for
                            manual correction.

Neither pass touches existing Location records; they return what to add.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from character_manager.models import (
    Character,
    DeleteResult,
    Location,
    MapCoordinates,
    apply_updates,
    new_location,
    now_iso,
    touch,
)
from character_manager.storage import Repository, StorageError

logger = logging.getLogger(__name__)

MIGRATED_DESCRIPTION = "Migrated from old location data: {name}"
PLACEHOLDER_NAME = "Imported Location ({short_id})"
PLACEHOLDER_DESCRIPTION = (
    "This location was automatically created during import. "
    "Please update the name and description."
)


def migrate_legacy_locations(
    characters: Iterable[Character], locations: Iterable[Location]
) -> tuple[list[Character], list[Location]]:
    """Resolve deprecated free-text locations to location ids.

    Returns (characters, created_locations). Inputs are not mutated.
    """
    name_to_id = {loc.name.strip().lower(): loc.id for loc in locations}
    created: list[Location] = []
    result: list[Character] = []

    for char in characters:
        legacy = (char.location or "").strip()
        if char.location_id:
            # already resolved; the legacy text is stale
            if char.location is not None:
                char = char.model_copy(update={"location": None})
            result.append(char)
            continue
        if not legacy:
            result.append(char)
            continue

        key = legacy.lower()
        location_id = name_to_id.get(key)
        if location_id is None:
            location = new_location(legacy, MIGRATED_DESCRIPTION.format(name=legacy))
            created.append(location)
            name_to_id[key] = location.id
            location_id = location.id
            logger.info("Created location %r (%s) from legacy data", legacy, location.id)

        logger.debug("Migrated legacy location %r for character %s", legacy, char.name)
        result.append(char.model_copy(update={"location_id": location_id, "location": None}))

    return result, created


def placeholder_location(location_id: str) -> Location:
    now = now_iso()
    return Location(
        id=location_id,
        name=PLACEHOLDER_NAME.format(short_id=location_id[:8]),
        description=PLACEHOLDER_DESCRIPTION,
        created_at=now,
        updated_at=now,
    )


def heal_orphan_locations(
    characters: Iterable[Character], locations: Iterable[Location]
) -> list[Location]:
    """Return placeholder locations for every dangling ``location_id``."""
    known = {loc.id for loc in locations}
    created: list[Location] = []
    for char in characters:
        location_id = char.location_id
        if location_id and location_id not in known:
            created.append(placeholder_location(location_id))
            known.add(location_id)
    if created:
        logger.info("Auto-created %d missing location(s)", len(created))
    return created


def ensure_location_integrity(
    characters: Iterable[Character], locations: Iterable[Location]
) -> tuple[list[Character], list[Location]]:
    """Run both passes in order. Returns (characters, created_locations)."""
    locations = list(locations)
    characters, migrated = migrate_legacy_locations(characters, locations)
    orphans = heal_orphan_locations(characters, [*locations, *migrated])
    return characters, [*migrated, *orphans]


class LocationService:
    """Location CRUD over a repository."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def list_locations(self) -> list[Location]:
        return await self.repository.load_locations()

    async def get_location(self, location_id: str) -> Location | None:
        for loc in await self.repository.load_locations():
            if loc.id == location_id:
                return loc
        return None

    async def create_location(
        self,
        name: str,
        description: str = "",
        image_uri: str | None = None,
        map_coordinates: MapCoordinates | None = None,
    ) -> Location | None:
        """Create a location. Returns None if the name is already taken."""
        locations = await self.repository.load_locations()
        if any(loc.name.lower() == name.lower() for loc in locations):
            return None
        location = new_location(
            name, description, image_uri=image_uri, map_coordinates=map_coordinates
        )
        await self.repository.save_locations([*locations, location])
        return location

    async def update_location(self, location_id: str, updates: dict[str, Any]) -> Location | None:
        locations = await self.repository.load_locations()
        for i, loc in enumerate(locations):
            if loc.id == location_id:
                locations[i] = apply_updates(loc, updates)
                await self.repository.save_locations(locations)
                return locations[i]
        return None

    async def delete_location(self, location_id: str) -> bool:
        locations = await self.repository.load_locations()
        filtered = [loc for loc in locations if loc.id != location_id]
        if len(filtered) == len(locations):
            return False
        await self.repository.save_locations(filtered)
        return True

    async def delete_location_completely(self, location_id: str) -> DeleteResult:
        """Clear the reference from characters and events, then delete the record."""
        try:
            characters = await self.repository.load_characters()
            updated = 0
            for i, char in enumerate(characters):
                if char.location_id == location_id:
                    characters[i] = touch(char, location_id=None)
                    updated += 1
            if updated:
                await self.repository.save_characters(characters)

            events = await self.repository.load_events()
            if any(e.location_id == location_id for e in events):
                await self.repository.save_events([
                    touch(e, location_id=None) if e.location_id == location_id else e
                    for e in events
                ])

            await self.delete_location(location_id)
        except StorageError as e:
            logger.error("Failed to delete location %s: %s", location_id, e)
            return DeleteResult(success=False)
        return DeleteResult(success=True, characters_updated=updated)

    async def ensure_integrity(self) -> list[Location]:
        """Repair the stored dataset in place. Returns the locations created."""
        characters = await self.repository.load_characters()
        locations = await self.repository.load_locations()
        migrated, created = ensure_location_integrity(characters, locations)
        if migrated != characters:
            await self.repository.save_characters(migrated)
        if created:
            await self.repository.save_locations([*locations, *created])
        return created
