"""Deterministic ordering for exported datasets.

Operates on the dumped (camelCase) dicts so the exported file is sorted
without touching stored order. Keeps diffs of exported files small when they
are kept under version control.

    characters, locations   name (case-insensitive), then id
    factions                name (case-insensitive)
    events                  date, newest first, then id
    nested id/name lists    alphabetical
"""

from datetime import datetime, timezone
from typing import Any

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _by_name_then_id(item: dict[str, Any]) -> tuple[str, str]:
    return (item.get("name", "").lower(), item.get("id", ""))


def _parse_date(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sorted_list(item: dict[str, Any], key: str, by: str | None = None) -> None:
    values = item.get(key)
    if not values:
        return
    if by is None:
        item[key] = sorted(values)
    else:
        item[key] = sorted(values, key=lambda v: v.get(by, "").lower())


def sort_character(character: dict[str, Any]) -> dict[str, Any]:
    character = dict(character)
    _sorted_list(character, "factions", by="name")
    _sorted_list(character, "relationships", by="characterName")
    _sorted_list(character, "perkIds")
    _sorted_list(character, "distinctionIds")
    _sorted_list(character, "cyberware", by="name")
    _sorted_list(character, "imageUris")
    return character


def sort_faction(faction: dict[str, Any]) -> dict[str, Any]:
    faction = dict(faction)
    _sorted_list(faction, "relationships", by="factionName")
    _sorted_list(faction, "imageUris")
    return faction


def sort_location(location: dict[str, Any]) -> dict[str, Any]:
    location = dict(location)
    _sorted_list(location, "imageUris")
    return location


def sort_event(event: dict[str, Any]) -> dict[str, Any]:
    event = dict(event)
    _sorted_list(event, "characterIds")
    _sorted_list(event, "factionNames")
    return event


def sort_events(events: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # two stable passes: id ascending, then date descending
    by_id = sorted(events, key=lambda e: e.get("id", ""))
    return sorted(by_id, key=lambda e: _parse_date(e.get("date", "")), reverse=True)


def sort_dataset(data: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of a dumped dataset with every array in canonical order."""
    data = dict(data)
    if data.get("characters") is not None:
        data["characters"] = sorted(
            (sort_character(c) for c in data["characters"]), key=_by_name_then_id
        )
    if data.get("factions") is not None:
        data["factions"] = sorted(
            (sort_faction(f) for f in data["factions"]), key=lambda f: f.get("name", "").lower()
        )
    if data.get("locations") is not None:
        data["locations"] = sorted(
            (sort_location(loc) for loc in data["locations"]), key=_by_name_then_id
        )
    if data.get("events") is not None:
        data["events"] = sort_events([sort_event(e) for e in data["events"]])
    return data
