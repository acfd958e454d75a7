"""Create a demo dataset for development/testing."""

from character_manager.characters import CharacterService
from character_manager.factions import FactionService
from character_manager.locations import LocationService
from character_manager.models import CharacterRelationship, FactionMembership, FactionRelationship, MapCoordinates

from backend import storage

DEMO_LOCATIONS = [
    ("Rust Harbor", "A flooded port town built from beached container ships.", (0.21, 0.64)),
    ("The Glass Wastes", "Salt flats fused to glass; only drones cross by day.", (0.72, 0.35)),
]


async def create_demo_data() -> None:
    """Wipe the stored dataset and create fresh demo data."""
    repo = storage.repository()
    await repo.clear()
    await repo.clear_discord()

    locations = LocationService(repo)
    harbor = None
    for name, description, (x, y) in DEMO_LOCATIONS:
        loc = await locations.create_location(name, description, map_coordinates=MapCoordinates(x=x, y=y))
        harbor = harbor or loc

    factions = FactionService(repo)
    await factions.create_faction("Tide Wardens", "Keepers of the harbor locks.")
    await factions.create_faction(
        "Salt Syndicate",
        "Smugglers running glass across the wastes.",
        [FactionRelationship(faction_name="Tide Wardens", relationship_type="Hostile")],
    )

    characters = CharacterService(repo)
    await characters.add_character(
        "Mara Kell",
        species="Human",
        location_id=harbor.id,
        factions=[FactionMembership(name="Tide Wardens", standing="Allied")],
        relationships=[CharacterRelationship(character_name="Jex", relationship_type="Rival")],
        present=True,
    )
    await characters.add_character(
        "Jex",
        species="Tech-Mutant",
        factions=[FactionMembership(name="Salt Syndicate", standing="Friendly")],
    )
