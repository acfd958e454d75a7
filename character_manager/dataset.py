"""Import, export and merge of the whole game dataset.

Payload shape (camelCase JSON)::

    {"characters": [...], "factions": [...], "locations": [...], "events": [...],
     "version": "1.0", "lastUpdated": "..."}

Any of the four arrays may be absent.

    import_dataset  replace: every collection is overwritten; an absent array
                    clears its collection.
    merge_dataset   merge: absent arrays leave stored collections alone.

Both validate the whole payload before writing anything. A payload that does
not parse, or a storage failure, gives a report with ``success=False``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import ValidationError

from character_manager.factions import FactionGraph
from character_manager.locations import ensure_location_integrity
from character_manager.merge import apply_conflict_choice, merge
from character_manager.models import (
    Character,
    ConflictChoice,
    GameDataset,
    ImportReport,
    MergeConflict,
    MergeReport,
    dump,
    now_iso,
)
from character_manager.sorting import sort_dataset
from character_manager.storage import Repository, StorageError

logger = logging.getLogger(__name__)


def parse_dataset(payload: str | bytes | dict[str, Any]) -> GameDataset:
    """Validate a payload. Raises ValidationError if it is not a dataset."""
    if isinstance(payload, (str, bytes)):
        return GameDataset.model_validate_json(payload)
    return GameDataset.model_validate(payload)


class DatasetService:
    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def export_dataset(self, sort: bool = True) -> str:
        dataset = GameDataset(
            characters=await self.repository.load_characters(),
            factions=await self.repository.load_factions(),
            locations=await self.repository.load_locations(),
            events=await self.repository.load_events(),
            last_updated=now_iso(),
        )
        data = dump(dataset)
        if sort:
            data = sort_dataset(data)
        return json.dumps(data, indent=2)

    async def import_dataset(self, payload: str | bytes | dict[str, Any]) -> ImportReport:
        """Replace every stored collection with the payload's."""
        try:
            dataset = parse_dataset(payload)
        except ValidationError as e:
            logger.warning("Rejected dataset import: %s", e)
            return ImportReport(success=False)

        locations = dataset.locations or []
        characters, created = ensure_location_integrity(dataset.characters or [], locations)
        factions = dataset.factions or []
        events = dataset.events or []

        try:
            await self.repository.save_characters(characters)
            await self.repository.save_factions(factions)
            await self.repository.save_locations([*locations, *created])
            await self.repository.save_events(events)
        except StorageError as e:
            logger.error("Dataset import failed: %s", e)
            return ImportReport(success=False)

        logger.info(
            "Imported dataset: %d character(s), %d faction(s), %d location(s), %d event(s)",
            len(characters), len(factions), len(locations) + len(created), len(events),
        )
        return ImportReport(
            success=True,
            characters=len(characters),
            factions=len(factions),
            locations=len(locations) + len(created),
            events=len(events),
            created_locations=created,
        )

    async def merge_dataset(self, payload: str | bytes | dict[str, Any]) -> MergeReport:
        """Merge the payload into storage and report what changed.

        Conflicts do not block the merge; they are reported for
        ``resolve_conflict``. After the faction merge, relationship pairs
        left one-sided by a wholesale replace are repaired.
        """
        try:
            dataset = parse_dataset(payload)
        except ValidationError as e:
            logger.warning("Rejected dataset merge: %s", e)
            return MergeReport(success=False)

        try:
            result = merge(
                await self.repository.load_characters(),
                dataset.characters or [],
                await self.repository.load_factions(),
                dataset.factions or [],
                await self.repository.load_locations(),
                dataset.locations or [],
                await self.repository.load_events(),
                dataset.events or [],
            )

            factions = result.merged_factions
            if dataset.factions is not None:
                graph = FactionGraph(factions)
                repaired = graph.symmetrize(factions)
                if repaired:
                    logger.info("Repaired %d one-sided faction relationship(s)", repaired)
                factions = graph.apply(factions)

            if dataset.characters is not None or result.created_locations:
                await self.repository.save_characters(result.merged_characters)
            if dataset.factions is not None:
                await self.repository.save_factions(factions)
            if dataset.locations is not None or result.created_locations:
                await self.repository.save_locations(result.merged_locations)
            if dataset.events is not None:
                await self.repository.save_events(result.merged_events)
        except StorageError as e:
            logger.error("Dataset merge failed: %s", e)
            return MergeReport(success=False)

        report = MergeReport(
            success=True,
            conflicts=result.conflicts,
            added=result.added,
            updated=result.updated,
            created_locations=result.created_locations,
            factions_replaced=result.factions_replaced,
            locations_replaced=result.locations_replaced,
        )
        logger.info(
            "Merged dataset: added=%d updated=%d conflicted=%d",
            len(report.added), len(report.updated), len(report.conflicts),
        )
        return report

    async def resolve_conflict(
        self, conflict: MergeConflict, field_name: str, choice: ConflictChoice
    ) -> Character | None:
        """Apply one per-field decision to the stored character.

        Returns the stored character, or None if it no longer exists. Raises
        ValueError for a field that cannot conflict.
        """
        characters = await self.repository.load_characters()
        for i, char in enumerate(characters):
            if char.id == conflict.id:
                resolved = apply_conflict_choice(char, conflict, field_name, choice)
                if resolved is not char:
                    characters[i] = resolved
                    await self.repository.save_characters(characters)
                return resolved
        return None
