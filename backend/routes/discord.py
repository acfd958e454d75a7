"""Discord endpoints: config, sync, messages, name resolution, aliases, mappings."""

from fastapi import APIRouter, HTTPException, Response

from backend import storage
from character_manager.discord import DiscordApiError, DiscordService, HttpDiscordSource
from character_manager.identity import CharacterResolver
from character_manager.models import DiscordConfig, DiscordServerConfig, dump

from .models import ConfirmMappingBody, ResolveNameBody, UserMappingBody

router = APIRouter()


def _resolver() -> CharacterResolver:
    return CharacterResolver(storage.repository(), storage.match_thresholds())


def _service() -> DiscordService:
    config = storage.get_config()
    return DiscordService(
        storage.repository(),
        HttpDiscordSource(config["discord_api_base"]),
        _resolver(),
        page_size=config["discord_page_size"],
        max_pages=config["discord_max_pages"],
    )


# ── Config ───────────────────────────────────────────────


@router.get("/discord/config")
async def get_discord_config():
    return dump(await _service().get_config())


@router.put("/discord/config")
async def put_discord_config(body: DiscordConfig):
    await _service().save_config(body)
    return dump(body)


@router.put("/discord/servers/{server_id}")
async def put_server(server_id: str, body: DiscordServerConfig):
    """Insert or replace one server config."""
    if body.id != server_id:
        raise HTTPException(400, "Server id does not match the URL")
    return dump(await _service().save_server(body))


@router.delete("/discord/servers/{server_id}")
async def delete_server(server_id: str):
    if not await _service().remove_server(server_id):
        raise HTTPException(404, "Server config not found")
    return {"ok": True}


@router.post("/discord/servers/{server_id}/test")
async def test_server(server_id: str):
    """Check the bot token and channel access."""
    return dump(await _service().test_connection(server_id))


# ── Sync ─────────────────────────────────────────────────


@router.post("/discord/servers/{server_id}/sync")
async def sync_server(server_id: str):
    try:
        result = await _service().sync_server(server_id)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except DiscordApiError as e:
        raise HTTPException(502, str(e))
    return result.model_dump()


@router.post("/discord/sync")
async def sync_all():
    """Sync every enabled server; failed servers are listed, not fatal."""
    try:
        summary = await _service().sync_all()
    except ValueError as e:
        raise HTTPException(400, str(e))
    return summary.model_dump()


# ── Messages & identity ──────────────────────────────────


@router.get("/discord/messages")
async def list_messages(character_id: str | None = None):
    return [dump(m) for m in await _service().list_messages(character_id)]


@router.post("/discord/resolve")
async def resolve_name(body: ResolveNameBody):
    """Resolve a written character name for an author."""
    resolution = await _resolver().resolve_character_from_name(body.name, body.author_id)
    return dump(resolution)


@router.post("/discord/confirm")
async def confirm_mapping(body: ConfirmMappingBody):
    """Confirm a name → character alias and optionally re-tag past messages."""
    resolver = _resolver()
    alias = await resolver.confirm_character_mapping(body.name, body.character_id, body.author_id)
    retagged = 0
    if body.apply_to_messages:
        retagged = await resolver.apply_alias_to_messages(body.name, body.character_id, body.author_id)
    return {"alias": dump(alias), "retagged": retagged}


@router.get("/discord/aliases")
async def list_aliases():
    return [dump(a) for a in await storage.repository().load_aliases()]


# ── User mappings ────────────────────────────────────────


@router.get("/discord/mappings")
async def list_mappings():
    return [dump(m) for m in await _service().list_user_mappings()]


@router.put("/discord/mappings")
async def put_mapping(body: UserMappingBody):
    mapping = await _service().add_user_mapping(
        body.discord_user_id, body.discord_username, body.character_id
    )
    return dump(mapping)


@router.delete("/discord/mappings/{discord_user_id}")
async def delete_mapping(discord_user_id: str):
    if not await _service().remove_user_mapping(discord_user_id):
        raise HTTPException(404, "Mapping not found")
    return {"ok": True}


# ── Dataset ──────────────────────────────────────────────


@router.get("/discord/export")
async def export_discord():
    return Response(await _service().export_discord_dataset(), media_type="application/json")


@router.post("/discord/import")
async def import_discord(body: dict, merge: bool = True):
    if not await _service().import_discord_dataset(body, merge=merge):
        raise HTTPException(400, "Import failed; stored data is unchanged")
    return {"ok": True}
