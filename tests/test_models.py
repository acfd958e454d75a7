"""Tests for character_manager.models."""

import pytest
from pydantic import ValidationError

from character_manager.models import (
    Character,
    CharacterAlias,
    GameDataset,
    MapCoordinates,
    MergeReport,
    apply_updates,
    dump,
    new_character,
    new_location,
    now_iso,
    touch,
)

OLD = "2020-01-01T00:00:00.000Z"


class TestTimestamps:
    def test_now_iso_format(self) -> None:
        ts = now_iso()
        assert ts.endswith("Z")
        assert len(ts) == len("2024-05-01T12:00:00.000Z")

    def test_new_character_stamps_equal(self) -> None:
        char = new_character("Mara")
        assert char.created_at == char.updated_at
        assert char.id

    def test_new_location_keeps_given_id(self) -> None:
        loc = new_location("Docks", id="loc-1")
        assert loc.id == "loc-1"

    def test_touch_restamps_updated_at(self) -> None:
        char = Character(id="1", name="Mara", created_at=OLD, updated_at=OLD)
        touched = touch(char, notes="hi")
        assert touched.notes == "hi"
        assert touched.updated_at > OLD
        assert touched.created_at == OLD
        assert char.notes is None


class TestSerialisation:
    def test_dump_is_camel_case_without_nones(self) -> None:
        char = Character(id="1", name="Mara", perk_ids=["p1"])
        data = dump(char)
        assert data["perkIds"] == ["p1"]
        assert "perk_ids" not in data
        assert "locationId" not in data

    def test_accepts_camel_case_input(self) -> None:
        char = Character.model_validate({"id": "1", "name": "Mara", "locationId": "L1"})
        assert char.location_id == "L1"

    def test_unknown_fields_survive(self) -> None:
        char = Character.model_validate({"id": "1", "name": "Mara", "imageUris": ["a.png"]})
        assert dump(char)["imageUris"] == ["a.png"]

    def test_dataset_arrays_default_to_absent(self) -> None:
        dataset = GameDataset.model_validate({"characters": []})
        assert dataset.characters == []
        assert dataset.factions is None

    def test_merge_report_counts(self) -> None:
        report = MergeReport(success=True, updated=["1", "2"])
        assert dump(report)["counts"] == {"added": 0, "updated": 2, "conflicted": 0}


class TestValidation:
    def test_map_coordinates_bounded(self) -> None:
        MapCoordinates(x=0, y=1)
        with pytest.raises(ValidationError):
            MapCoordinates(x=1.5, y=0.5)

    def test_alias_confidence_bounded(self) -> None:
        with pytest.raises(ValidationError):
            CharacterAlias(alias="bob", discord_user_id="u1", character_id="c1", confidence=1.2)

    def test_invalid_species_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Character(id="1", name="Mara", species="Dragon")


class TestApplyUpdates:
    def test_accepts_json_names(self) -> None:
        char = Character(id="1", name="Mara", created_at=OLD, updated_at=OLD)
        updated = apply_updates(char, {"locationId": "L1", "notes": "n"})
        assert updated.location_id == "L1"
        assert updated.notes == "n"
        assert updated.updated_at > OLD

    def test_protected_fields_ignored(self) -> None:
        char = Character(id="1", name="Mara", created_at=OLD, updated_at=OLD)
        updated = apply_updates(char, {"id": "2", "createdAt": "x"})
        assert updated.id == "1"
        assert updated.created_at == OLD

    def test_invalid_value_raises(self) -> None:
        char = Character(id="1", name="Mara")
        with pytest.raises(ValidationError):
            apply_updates(char, {"species": "Dragon"})
