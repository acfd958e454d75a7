"""Tests for character_manager.sorting."""

from character_manager.sorting import sort_dataset, sort_events


def test_characters_by_name_then_id() -> None:
    data = {"characters": [
        {"id": "b", "name": "mara"},
        {"id": "c", "name": "Alpha"},
        {"id": "a", "name": "Mara"},
    ]}
    assert [c["id"] for c in sort_dataset(data)["characters"]] == ["c", "a", "b"]


def test_nested_character_lists() -> None:
    char = {
        "id": "1",
        "name": "Mara",
        "perkIds": ["z", "a"],
        "factions": [{"name": "reds"}, {"name": "Blues"}],
        "relationships": [{"characterName": "Zed"}, {"characterName": "amy"}],
        "cyberware": [{"name": "Optics"}, {"name": "Arm"}],
    }
    sorted_char = sort_dataset({"characters": [char]})["characters"][0]
    assert sorted_char["perkIds"] == ["a", "z"]
    assert [f["name"] for f in sorted_char["factions"]] == ["Blues", "reds"]
    assert [r["characterName"] for r in sorted_char["relationships"]] == ["amy", "Zed"]
    assert [c["name"] for c in sorted_char["cyberware"]] == ["Arm", "Optics"]


def test_input_not_mutated() -> None:
    data = {"characters": [{"id": "2", "name": "b", "perkIds": ["y", "x"]}, {"id": "1", "name": "a"}]}
    sort_dataset(data)
    assert data["characters"][0]["perkIds"] == ["y", "x"]
    assert data["characters"][0]["id"] == "2"


def test_factions_and_relationships() -> None:
    data = {"factions": [
        {"name": "reds", "relationships": [{"factionName": "Greens"}, {"factionName": "blues"}]},
        {"name": "Blues"},
    ]}
    factions = sort_dataset(data)["factions"]
    assert [f["name"] for f in factions] == ["Blues", "reds"]
    assert [r["factionName"] for r in factions[1]["relationships"]] == ["blues", "Greens"]


def test_events_newest_first_then_id() -> None:
    events = [
        {"id": "b", "date": "2024-01-01", "characterIds": ["2", "1"]},
        {"id": "c", "date": "2024-03-01"},
        {"id": "a", "date": "2024-01-01"},
        {"id": "d", "date": "not a date"},
    ]
    result = sort_dataset({"events": events})["events"]
    assert [e["id"] for e in result] == ["c", "a", "b", "d"]
    assert result[2]["characterIds"] == ["1", "2"]


def test_events_with_mixed_date_precision() -> None:
    events = [{"id": "a", "date": "2024-01-01"}, {"id": "b", "date": "2024-01-01T12:00:00Z"}]
    assert [e["id"] for e in sort_events(events)] == ["b", "a"]


def test_absent_arrays_stay_absent() -> None:
    assert sort_dataset({"version": "1.0"}) == {"version": "1.0"}
