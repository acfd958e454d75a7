"""Merge engine — reconciles an imported dataset with the stored one.

Characters (keyed by id) are merged field by field:
  perk_ids, distinction_ids   union by value; existing order, new ids appended
  factions                    union by faction name; existing entries win
  relationships               keyed by character_name; imported type/description
                              win unless blank; import-only entries appended
  name, species, location_id,
  image_uri, notes            empty existing → take imported silently;
                              both set and different → conflict, keep existing
  updated_at                  the later of the two

Factions (keyed by name), locations and events (keyed by id) are
last-writer-wins on the whole record: the imported record replaces the stored
one only when its updated_at is strictly newer.

Conflicts are advisory. A merge never fails because of them; callers resolve
them one field at a time with ``apply_conflict_choice``.

Merging a dataset into itself is a no-op, and merging the same payload twice
gives the same result as merging it once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Hashable, Iterable, Sequence, TypeVar

from pydantic import BaseModel

from character_manager.locations import ensure_location_integrity, migrate_legacy_locations
from character_manager.models import (
    Character,
    CharacterRelationship,
    ConflictChoice,
    Faction,
    GameEvent,
    Location,
    MergeConflict,
    touch,
)

T = TypeVar("T")

SCALAR_FIELDS = ("name", "species", "location_id", "image_uri", "notes")


# ---------------------------------------------------------------------------
# Ordered-map helpers
# ---------------------------------------------------------------------------

def union_ids(existing: Iterable[str], imported: Iterable[str]) -> list[str]:
    """Union preserving first-seen order, no duplicates."""
    return list(dict.fromkeys([*existing, *imported]))


def union_by(existing: Iterable[T], imported: Iterable[T], key: Callable[[T], Hashable]) -> list[T]:
    """Union keyed by ``key``; the first record seen for a key is kept."""
    merged: dict[Hashable, T] = {}
    for item in [*existing, *imported]:
        merged.setdefault(key(item), item)
    return list(merged.values())


def merge_relationships(
    existing: Iterable[CharacterRelationship], imported: Iterable[CharacterRelationship]
) -> list[CharacterRelationship]:
    merged: dict[str, CharacterRelationship] = {}
    for rel in existing:
        merged.setdefault(rel.character_name, rel)
    for rel in imported:
        current = merged.get(rel.character_name)
        if current is None:
            merged[rel.character_name] = rel
            continue
        merged[rel.character_name] = current.model_copy(update={
            "relationship_type": rel.relationship_type or current.relationship_type,
            "description": rel.description or current.description,
            "custom_name": rel.custom_name or current.custom_name,
        })
    return list(merged.values())


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


def _json_name(attr: str) -> str:
    return Character.model_fields[attr].alias or attr


def _scalar_attribute(name: str) -> str:
    for attr in SCALAR_FIELDS:
        if name in (attr, _json_name(attr)):
            return attr
    raise ValueError(f"{name!r} is not a mergeable character field")


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------

def merge_character(existing: Character, imported: Character) -> tuple[Character, list[str]]:
    """Field-level merge of two versions of one character.

    Returns (merged, conflicting field names). Field names use the JSON
    spelling (``locationId``) since they are shown to the user.
    """
    updates: dict[str, Any] = {
        "perk_ids": union_ids(existing.perk_ids, imported.perk_ids),
        "distinction_ids": union_ids(existing.distinction_ids, imported.distinction_ids),
        "factions": union_by(existing.factions, imported.factions, key=lambda f: f.name),
        "relationships": merge_relationships(existing.relationships, imported.relationships),
        "updated_at": max(existing.updated_at, imported.updated_at),
    }

    conflicts: list[str] = []
    for attr in SCALAR_FIELDS:
        mine = getattr(existing, attr)
        theirs = getattr(imported, attr)
        if _is_empty(theirs) or mine == theirs:
            continue
        if _is_empty(mine):
            updates[attr] = theirs
        else:
            conflicts.append(_json_name(attr))

    return existing.model_copy(update=updates, deep=True), conflicts


@dataclass
class CharacterMerge:
    merged: list[Character]
    conflicts: list[MergeConflict] = field(default_factory=list)
    added: list[Character] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)


def merge_characters(existing: Sequence[Character], imported: Iterable[Character]) -> CharacterMerge:
    by_id: dict[str, Character] = {}
    for char in existing:
        by_id.setdefault(char.id, char)
    result = CharacterMerge(merged=[])
    added_ids: set[str] = set()

    for incoming in imported:
        current = by_id.get(incoming.id)
        if current is None:
            by_id[incoming.id] = incoming
            result.added.append(incoming)
            added_ids.add(incoming.id)
            continue

        merged, fields = merge_character(current, incoming)
        if fields:
            result.conflicts.append(
                MergeConflict(id=incoming.id, existing=current, imported=incoming, conflicts=fields)
            )
        if merged != current and incoming.id not in added_ids and incoming.id not in result.updated:
            result.updated.append(incoming.id)
        by_id[incoming.id] = merged

    result.merged = list(by_id.values())
    return result


# ---------------------------------------------------------------------------
# Factions, locations, events
# ---------------------------------------------------------------------------

R = TypeVar("R", bound=BaseModel)


@dataclass
class KeyedMerge:
    items: list[Any]
    added: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)


def merge_by_timestamp(existing: Iterable[R], imported: Iterable[R], key: Callable[[R], str]) -> KeyedMerge:
    """Whole-record last-writer-wins: strictly newer ``updated_at`` replaces."""
    by_key: dict[str, R] = {}
    for item in existing:
        by_key.setdefault(key(item), item)
    result = KeyedMerge(items=[])

    for item in imported:
        k = key(item)
        current = by_key.get(k)
        if current is None:
            by_key[k] = item
            result.added.append(k)
        elif item.updated_at > current.updated_at:
            by_key[k] = item
            if k not in result.added and k not in result.replaced:
                result.replaced.append(k)

    result.items = list(by_key.values())
    return result


# ---------------------------------------------------------------------------
# Whole dataset
# ---------------------------------------------------------------------------

@dataclass
class MergeResult:
    merged_characters: list[Character]
    merged_factions: list[Faction]
    merged_locations: list[Location]
    merged_events: list[GameEvent]
    conflicts: list[MergeConflict] = field(default_factory=list)
    added: list[Character] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    created_locations: list[Location] = field(default_factory=list)
    factions_replaced: list[str] = field(default_factory=list)
    locations_replaced: list[str] = field(default_factory=list)


def merge(
    existing_characters: Sequence[Character],
    imported_characters: Iterable[Character],
    existing_factions: Sequence[Faction],
    imported_factions: Iterable[Faction],
    existing_locations: Sequence[Location],
    imported_locations: Iterable[Location],
    existing_events: Sequence[GameEvent] = (),
    imported_events: Iterable[GameEvent] = (),
) -> MergeResult:
    """Merge an imported dataset into the existing one. Pure; never raises on conflicts.

    Legacy free-text locations on imported characters are migrated before the
    character merge so the resolved id takes part in it; afterwards the merged
    character set is checked again so every location_id resolves.
    """
    locations = merge_by_timestamp(existing_locations, imported_locations, key=lambda loc: loc.id)
    imported_characters, migrated = migrate_legacy_locations(imported_characters, locations.items)
    all_locations = [*locations.items, *migrated]

    characters = merge_characters(existing_characters, imported_characters)
    merged_characters, healed = ensure_location_integrity(characters.merged, all_locations)

    factions = merge_by_timestamp(existing_factions, imported_factions, key=lambda f: f.name)
    events = merge_by_timestamp(existing_events, imported_events, key=lambda e: e.id)

    return MergeResult(
        merged_characters=merged_characters,
        merged_factions=factions.items,
        merged_locations=[*all_locations, *healed],
        merged_events=events.items,
        conflicts=characters.conflicts,
        added=characters.added,
        updated=characters.updated,
        created_locations=[*migrated, *healed],
        factions_replaced=factions.replaced,
        locations_replaced=locations.replaced,
    )


def apply_conflict_choice(
    character: Character, conflict: MergeConflict, field_name: str, choice: ConflictChoice
) -> Character:
    """Apply one per-field decision. Only ``use_imported`` changes the character."""
    attr = _scalar_attribute(field_name)
    if choice != "use_imported":
        return character
    return touch(character, **{attr: getattr(conflict.imported, attr)})
