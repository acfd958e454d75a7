"""Pydantic request models for API endpoints.

Bodies accept either camelCase or snake_case keys.
"""

from typing import Any

from pydantic import Field

from character_manager.models import (
    CamelModel,
    ConflictChoice,
    FactionRelationship,
    MapCoordinates,
    MergeConflict,
)


class CreateCharacter(CamelModel):
    name: str
    details: dict[str, Any] = Field(default_factory=dict)


class CreateFaction(CamelModel):
    name: str
    description: str = ""
    relationships: list[FactionRelationship] = Field(default_factory=list)


class CreateLocation(CamelModel):
    name: str
    description: str = ""
    image_uri: str | None = None
    map_coordinates: MapCoordinates | None = None


class ResolveConflictBody(CamelModel):
    conflict: MergeConflict
    field: str
    choice: ConflictChoice


class ResolveNameBody(CamelModel):
    name: str
    author_id: str


class ConfirmMappingBody(CamelModel):
    name: str
    character_id: str
    author_id: str
    apply_to_messages: bool = True


class UserMappingBody(CamelModel):
    discord_user_id: str
    discord_username: str = ""
    character_id: str
