"""Core domain models.

Every service and the merge engine operate on these types. Pydantic is used
for validation and serialisation at every data boundary.

Python attributes are snake_case; the persisted/exported JSON is camelCase
(`perkIds`, `locationId`, ...). Always dump with ``dump(model)`` so aliases are
applied and unset optionals are left out, matching the stored format.

Unknown keys on entities are kept (``extra="allow"``) so data this package
does not model survives a load → merge → save cycle untouched.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

DATASET_VERSION = "1.0"

Standing = Literal["Allied", "Friendly", "Neutral", "Hostile", "Enemy"]

FactionRelationshipType = Literal["Ally", "Friend", "Neutral", "Hostile", "Enemy"]

RelationshipType = Literal[
    "Family",
    "Friend",
    "Ally",
    "Enemy",
    "Rival",
    "Mentor",
    "Student",
    "Romantic",
    "Business",
    "Other",
]

Species = Literal[
    "Android",
    "Drone",
    "Human",
    "Mutant",
    "Nomad",
    "Stray",
    "Unturned",
    "Unknown",
    "Cyborg",
    "Mook",
    "Mutoid",
    "Perfect Mutant",
    "Rad-Titan",
    "Roadkill",
    "Tech-Mutant",
]

ConflictChoice = Literal["keep_existing", "use_imported", "skip"]


def now_iso() -> str:
    """UTC timestamp in the stored format: ``2024-05-01T12:00:00.000Z``.

    Fixed width and zone, so plain string comparison is chronological.
    """
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Entity(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


def dump(model: BaseModel) -> dict[str, Any]:
    """Serialise a model the way it is persisted and exported."""
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Characters
# ---------------------------------------------------------------------------

class FactionMembership(Entity):
    name: str  # foreign key into Faction.name
    standing: Standing = "Neutral"
    description: str | None = None


class CharacterRelationship(Entity):
    """``relationship_type`` may be blank in imported data; the merge then keeps the stored type."""

    character_name: str
    relationship_type: RelationshipType | None = None
    description: str | None = None
    custom_name: str | None = None

    @field_validator("relationship_type", mode="before")
    @classmethod
    def _blank_type_as_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


class Cyberware(Entity):
    name: str
    description: str = ""
    stat_modifiers: dict[str, int] = Field(default_factory=dict)


class Character(Entity):
    """A game character. Owns its own id and lifecycle."""

    id: str
    name: str
    species: Species = "Unknown"
    perk_ids: list[str] = Field(default_factory=list)
    distinction_ids: list[str] = Field(default_factory=list)
    factions: list[FactionMembership] = Field(default_factory=list)
    relationships: list[CharacterRelationship] = Field(default_factory=list)
    cyberware: list[Cyberware] = Field(default_factory=list)
    location_id: str | None = None
    location: str | None = None  # deprecated free-text location; migrated on import
    image_uri: str | None = None
    notes: str | None = None
    present: bool = False
    retired: bool = False
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Factions
# ---------------------------------------------------------------------------

class FactionRelationship(Entity):
    faction_name: str
    relationship_type: FactionRelationshipType


class Faction(Entity):
    """A faction. ``name`` is the primary key."""

    name: str
    description: str = ""
    relationships: list[FactionRelationship] = Field(default_factory=list)
    retired: bool = False
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Locations & events
# ---------------------------------------------------------------------------

class MapCoordinates(CamelModel):
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)


class Location(Entity):
    id: str
    name: str
    description: str = ""
    image_uri: str | None = None
    map_coordinates: MapCoordinates | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


class GameEvent(Entity):
    id: str
    title: str
    description: str = ""
    date: str
    character_ids: list[str] = Field(default_factory=list)
    faction_names: list[str] = Field(default_factory=list)
    location_id: str | None = None
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Discord
# ---------------------------------------------------------------------------

class CharacterAlias(CamelModel):
    """Learned mapping from an author's shorthand to a character.

    Keyed by ``(alias, discord_user_id)``; ``alias`` is stored normalised.
    """

    alias: str
    discord_user_id: str
    character_id: str
    confidence: float = Field(ge=0, le=1)
    usage_count: int = Field(default=0, ge=0)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


class DiscordAttachment(CamelModel):
    id: str
    filename: str
    url: str
    content_type: str | None = None
    size: int = 0


class DiscordMessage(Entity):
    id: str
    channel_id: str
    guild_id: str | None = None
    server_config_id: str | None = None
    author_id: str
    author_username: str = ""
    content: str = ""
    timestamp: str
    character_id: str | None = None
    extracted_character_name: str | None = None
    attachments: list[DiscordAttachment] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)


class DiscordServerConfig(CamelModel):
    id: str
    name: str
    guild_id: str = ""
    channel_id: str = ""
    bot_token: str = ""
    enabled: bool = True
    last_sync: str | None = None


class DiscordConfig(CamelModel):
    enabled: bool = False
    auto_sync: bool = True
    server_configs: list[DiscordServerConfig] = Field(default_factory=list)


class DiscordUserMapping(CamelModel):
    discord_user_id: str
    discord_username: str = ""
    character_id: str
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


# ---------------------------------------------------------------------------
# Dataset envelopes
# ---------------------------------------------------------------------------

class GameDataset(CamelModel):
    """Import/export shape. ``None`` means the array was absent from the payload."""

    characters: list[Character] | None = None
    factions: list[Faction] | None = None
    locations: list[Location] | None = None
    events: list[GameEvent] | None = None
    version: str = DATASET_VERSION
    last_updated: str | None = None


class DiscordDataset(CamelModel):
    config: DiscordConfig = Field(default_factory=DiscordConfig)
    user_mappings: list[DiscordUserMapping] = Field(default_factory=list)
    messages: list[DiscordMessage] = Field(default_factory=list)
    character_aliases: list[CharacterAlias] = Field(default_factory=list)
    version: str = DATASET_VERSION
    last_updated: str | None = None


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class MergeConflict(CamelModel):
    id: str
    existing: Character
    imported: Character
    conflicts: list[str]


class MergeReport(CamelModel):
    success: bool
    conflicts: list[MergeConflict] = Field(default_factory=list)
    added: list[Character] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    created_locations: list[Location] = Field(default_factory=list)
    factions_replaced: list[str] = Field(default_factory=list)
    locations_replaced: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "updated": len(self.updated),
            "conflicted": len(self.conflicts),
        }


class ImportReport(CamelModel):
    success: bool
    characters: int = 0
    factions: int = 0
    locations: int = 0
    events: int = 0
    created_locations: list[Location] = Field(default_factory=list)


class DeleteResult(CamelModel):
    success: bool
    characters_updated: int = 0
    edges_pruned: int = 0


# ---------------------------------------------------------------------------
# Constructors & mutation helpers
# ---------------------------------------------------------------------------

def new_character(name: str, **fields: Any) -> Character:
    """Create a character with a fresh id and createdAt == updatedAt == now."""
    now = now_iso()
    return Character(id=str(uuid4()), name=name, created_at=now, updated_at=now, **fields)


def new_faction(name: str, description: str = "", **fields: Any) -> Faction:
    now = now_iso()
    return Faction(name=name, description=description, created_at=now, updated_at=now, **fields)


def new_location(name: str, description: str = "", **fields: Any) -> Location:
    now = now_iso()
    fields.setdefault("id", str(uuid4()))
    return Location(name=name, description=description, created_at=now, updated_at=now, **fields)


def new_event(title: str, date: str, **fields: Any) -> GameEvent:
    now = now_iso()
    return GameEvent(id=str(uuid4()), title=title, date=date, created_at=now, updated_at=now, **fields)


def touch(model: Entity, **updates: Any) -> Any:
    """Copy ``model`` with ``updates`` applied and ``updated_at`` re-stamped."""
    return model.model_copy(update={**updates, "updated_at": now_iso()}, deep=True)


def apply_updates(model: Entity, updates: dict[str, Any], protected: tuple[str, ...] = ("id", "created_at")) -> Any:
    """Validate a partial update against the model and re-stamp ``updated_at``.

    ``updates`` may use attribute or JSON names. Keys in ``protected`` are ignored.
    Raises ``pydantic.ValidationError`` when the result is invalid.
    """
    data = model.model_dump()
    for key, value in updates.items():
        attr = _attribute_for(type(model), key)
        if attr in protected:
            continue
        data[attr] = value
    data["updated_at"] = now_iso()
    return type(model).model_validate(data)


def _attribute_for(model_cls: type[BaseModel], key: str) -> str:
    if key in model_cls.model_fields:
        return key
    for name, field in model_cls.model_fields.items():
        if field.alias == key:
            return name
    return key
