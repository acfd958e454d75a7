"""Discord message ingestion.

Raw messages come from a ``MessageSource``:

    async def fetch_messages(server, limit, before) -> list[dict]

Each raw payload carries ``id, channel_id, author{id, username,
discriminator?}, content, timestamp, attachments[]``, the shape of Discord's
``GET /channels/{id}/messages``. ``HttpDiscordSource`` talks to the real API;
tests pass a stub.

``DiscordService.sync_server`` pages backwards through a channel (``before``
= last id seen, at most ``max_pages`` pages), tags each message with a
character and merges the batch into the stored collection. A message is
tagged from a direct user mapping if the author has one, otherwise from the
name marker in its content via ``CharacterResolver``.

Stored messages are merged by id. A stored ``character_id`` is never
replaced by a re-sync, so manual corrections survive; an incoming blank
``extracted_character_name`` never erases a stored one.

``sync_all`` fetches every enabled server concurrently, then tags and saves
one server at a time so alias and message writes never interleave.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from character_manager.identity import CharacterResolver, extract_character_name, merge_aliases
from character_manager.models import (
    DiscordAttachment,
    DiscordConfig,
    DiscordDataset,
    DiscordMessage,
    DiscordServerConfig,
    DiscordUserMapping,
    dump,
    now_iso,
)
from character_manager.storage import Repository

logger = logging.getLogger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"


# ---------------------------------------------------------------------------
# Source port
# ---------------------------------------------------------------------------

class MessageSource(Protocol):
    async def fetch_messages(
        self, server: DiscordServerConfig, limit: int = 100, before: str | None = None
    ) -> list[dict[str, Any]]: ...

    async def verify_token(self, token: str) -> bool: ...

    async def verify_channel(self, token: str, channel_id: str) -> bool: ...


class DiscordApiError(RuntimeError):
    """Raised when the Discord API cannot be reached or returns an error."""


class HttpDiscordSource:
    """Discord REST client.

    Args:
        base_url: API root, e.g. "https://discord.com/api/v10".
        timeout:  HTTP timeout in seconds.
    """

    def __init__(self, base_url: str = DISCORD_API_BASE, timeout: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @staticmethod
    def _headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bot {token}"}

    async def fetch_messages(
        self, server: DiscordServerConfig, limit: int = 100, before: str | None = None
    ) -> list[dict[str, Any]]:
        url = f"{self._base_url}/channels/{server.channel_id}/messages"
        params: dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        logger.debug("discord fetch server=%s before=%s", server.name, before)

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(url, params=params, headers=self._headers(server.bot_token))
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise DiscordApiError(f"Cannot connect to Discord at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise DiscordApiError(
                f"Failed to fetch messages: HTTP {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.TimeoutException as e:
            raise DiscordApiError(f"Discord timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            raise DiscordApiError(f"Discord request failed: {e}") from e

        try:
            data = resp.json()
        except ValueError as e:
            raise DiscordApiError("Discord returned a non-JSON response") from e
        if not isinstance(data, list):
            raise DiscordApiError("Unexpected response format from Discord")
        logger.debug("discord fetched %d message(s) from %s", len(data), server.name)
        return data

    async def _ok(self, path: str, token: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(f"{self._base_url}{path}", headers=self._headers(token))
        except httpx.HTTPError as e:
            logger.warning("Discord check %s failed: %s", path, e)
            return False
        return resp.is_success

    async def verify_token(self, token: str) -> bool:
        return await self._ok("/users/@me", token)

    async def verify_channel(self, token: str, channel_id: str) -> bool:
        return await self._ok(f"/channels/{channel_id}", token)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SyncResult(BaseModel):
    new_messages: int
    total_messages: int


class SyncSummary(BaseModel):
    new_messages: int = 0
    total_messages: int = 0
    servers: int = 0
    failed: list[str] = []


class ConnectionTest(BaseModel):
    success: bool
    error: str | None = None


# ---------------------------------------------------------------------------
# Message merge
# ---------------------------------------------------------------------------

def _timestamp_key(message: DiscordMessage) -> datetime:
    try:
        parsed = datetime.fromisoformat(message.timestamp.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def merge_messages(
    existing: Iterable[DiscordMessage], incoming: Iterable[DiscordMessage]
) -> list[DiscordMessage]:
    """Merge by message id, oldest first.

    A stored ``character_id`` always wins; an incoming blank extracted name
    never replaces a stored one. ``created_at`` is the first-seen time.
    """
    by_id: dict[str, DiscordMessage] = {}
    for msg in existing:
        by_id.setdefault(msg.id, msg)

    for msg in incoming:
        current = by_id.get(msg.id)
        if current is None:
            by_id[msg.id] = msg
            continue
        by_id[msg.id] = msg.model_copy(update={
            "character_id": current.character_id or msg.character_id,
            "extracted_character_name": msg.extracted_character_name or current.extracted_character_name,
            "created_at": current.created_at,
        })

    return sorted(by_id.values(), key=_timestamp_key)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class DiscordService:
    def __init__(
        self,
        repository: Repository,
        source: MessageSource,
        resolver: CharacterResolver | None = None,
        page_size: int = 100,
        max_pages: int = 10,
    ) -> None:
        self.repository = repository
        self.source = source
        self.resolver = resolver or CharacterResolver(repository)
        self.page_size = page_size
        self.max_pages = max_pages

    # ── Config ────────────────────────────────────────────

    async def get_config(self) -> DiscordConfig:
        return await self.repository.load_discord_config()

    async def save_config(self, config: DiscordConfig) -> None:
        await self.repository.save_discord_config(config)

    async def get_server(self, server_id: str) -> DiscordServerConfig | None:
        config = await self.repository.load_discord_config()
        return next((s for s in config.server_configs if s.id == server_id), None)

    async def save_server(self, server: DiscordServerConfig) -> DiscordServerConfig:
        """Insert or replace a server config by id."""
        config = await self.repository.load_discord_config()
        servers = list(config.server_configs)
        for i, current in enumerate(servers):
            if current.id == server.id:
                servers[i] = server
                break
        else:
            servers.append(server)
        await self.repository.save_discord_config(config.model_copy(update={"server_configs": servers}))
        return server

    async def remove_server(self, server_id: str) -> bool:
        config = await self.repository.load_discord_config()
        servers = [s for s in config.server_configs if s.id != server_id]
        if len(servers) == len(config.server_configs):
            return False
        await self.repository.save_discord_config(config.model_copy(update={"server_configs": servers}))
        return True

    # ── User mappings ─────────────────────────────────────

    async def list_user_mappings(self) -> list[DiscordUserMapping]:
        return await self.repository.load_user_mappings()

    async def add_user_mapping(
        self, discord_user_id: str, discord_username: str, character_id: str
    ) -> DiscordUserMapping:
        """Map an author to a character. Replaces any previous mapping for the author."""
        mappings = await self.repository.load_user_mappings()
        now = now_iso()
        existing = next((m for m in mappings if m.discord_user_id == discord_user_id), None)
        mapping = DiscordUserMapping(
            discord_user_id=discord_user_id,
            discord_username=discord_username,
            character_id=character_id,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing:
            mappings = [mapping if m is existing else m for m in mappings]
        else:
            mappings.append(mapping)
        await self.repository.save_user_mappings(mappings)
        return mapping

    async def remove_user_mapping(self, discord_user_id: str) -> bool:
        mappings = await self.repository.load_user_mappings()
        filtered = [m for m in mappings if m.discord_user_id != discord_user_id]
        if len(filtered) == len(mappings):
            return False
        await self.repository.save_user_mappings(filtered)
        return True

    async def character_for_user(self, discord_user_id: str) -> str | None:
        for mapping in await self.repository.load_user_mappings():
            if mapping.discord_user_id == discord_user_id:
                return mapping.character_id
        return None

    # ── Messages ──────────────────────────────────────────

    async def list_messages(self, character_id: str | None = None) -> list[DiscordMessage]:
        messages = await self.repository.load_messages()
        if character_id is None:
            return messages
        return [m for m in messages if m.character_id == character_id]

    async def convert_message(
        self,
        raw: dict[str, Any],
        server: DiscordServerConfig,
        mappings: dict[str, str] | None = None,
    ) -> DiscordMessage:
        """Turn a raw API payload into a tagged ``DiscordMessage``.

        ``mappings`` is author id → character id; loaded from storage if omitted.
        """
        if mappings is None:
            mappings = {m.discord_user_id: m.character_id for m in await self.repository.load_user_mappings()}

        author = raw.get("author") or {}
        author_id = str(author.get("id", ""))
        username = author.get("username", "")
        discriminator = author.get("discriminator")
        if discriminator and discriminator != "0":
            username = f"{username}#{discriminator}"
        content = raw.get("content") or ""

        character_id = mappings.get(author_id)
        extracted = None
        if character_id is None:
            extracted = extract_character_name(content)
            if extracted:
                resolution = await self.resolver.resolve_character_from_name(extracted, author_id)
                character_id = resolution.character_id

        return DiscordMessage(
            id=str(raw["id"]),
            channel_id=str(raw.get("channel_id") or server.channel_id),
            guild_id=server.guild_id or None,
            server_config_id=server.id,
            author_id=author_id,
            author_username=username,
            content=content,
            timestamp=raw["timestamp"],
            character_id=character_id,
            extracted_character_name=extracted,
            attachments=[
                DiscordAttachment(
                    id=str(a["id"]),
                    filename=a.get("filename", ""),
                    url=a.get("url", ""),
                    content_type=a.get("content_type"),
                    size=a.get("size", 0),
                )
                for a in raw.get("attachments") or []
            ],
        )

    # ── Sync ──────────────────────────────────────────────

    @staticmethod
    def _check_server(server: DiscordServerConfig | None, server_id: str) -> DiscordServerConfig:
        if server is None:
            raise ValueError(f"Server config not found: {server_id}")
        if not server.enabled or not server.bot_token or not server.channel_id:
            raise ValueError(f"Server config {server.name!r} is not properly configured or enabled")
        return server

    async def _fetch_pages(self, server: DiscordServerConfig) -> list[dict[str, Any]]:
        raw: list[dict[str, Any]] = []
        before: str | None = None
        for _ in range(self.max_pages):
            page = await self.source.fetch_messages(server, self.page_size, before)
            if not page:
                break
            raw.extend(page)
            before = str(page[-1]["id"])
        return raw

    async def _store(self, server: DiscordServerConfig, raw: list[dict[str, Any]]) -> SyncResult:
        mappings = {m.discord_user_id: m.character_id for m in await self.repository.load_user_mappings()}
        converted = [await self.convert_message(r, server, mappings) for r in raw]

        if converted and all(not m.content.strip() for m in converted):
            logger.warning(
                "All %d message(s) from %s have empty content; "
                "the bot is probably missing the MESSAGE_CONTENT intent",
                len(converted), server.name,
            )

        existing = await self.repository.load_messages()
        before_count = sum(1 for m in existing if m.server_config_id == server.id)
        merged = merge_messages(existing, converted)
        await self.repository.save_messages(merged)
        after_count = sum(1 for m in merged if m.server_config_id == server.id)

        await self.save_server(server.model_copy(update={"last_sync": now_iso()}))

        tagged = sum(1 for m in converted if m.character_id)
        logger.info(
            "Synced %s: fetched=%d tagged=%d new=%d",
            server.name, len(converted), tagged, after_count - before_count,
        )
        return SyncResult(new_messages=after_count - before_count, total_messages=after_count)

    async def sync_server(self, server_id: str) -> SyncResult:
        """Fetch, tag and store messages for one server.

        Raises ValueError for an unknown or incomplete server config and
        DiscordApiError when the API call fails.
        """
        server = self._check_server(await self.get_server(server_id), server_id)
        raw = await self._fetch_pages(server)
        return await self._store(server, raw)

    async def sync_all(self) -> SyncSummary:
        """Sync every enabled server. A server that fails is logged and skipped."""
        config = await self.repository.load_discord_config()
        servers = [s for s in config.server_configs if s.enabled]
        if not servers:
            raise ValueError("No Discord server configurations are enabled")

        summary = SyncSummary(servers=len(servers))
        ready: list[DiscordServerConfig] = []
        for server in servers:
            try:
                ready.append(self._check_server(server, server.id))
            except ValueError as e:
                logger.warning("Skipping %s: %s", server.name, e)
                summary.failed.append(server.id)

        fetched = await asyncio.gather(
            *(self._fetch_pages(server) for server in ready), return_exceptions=True
        )
        for server, raw in zip(ready, fetched):
            if isinstance(raw, DiscordApiError):
                logger.warning("Failed to sync %s: %s", server.name, raw)
                summary.failed.append(server.id)
                continue
            if isinstance(raw, BaseException):
                raise raw
            result = await self._store(server, raw)
            summary.new_messages += result.new_messages
            summary.total_messages += result.total_messages

        return summary

    async def test_connection(self, server_id: str) -> ConnectionTest:
        server = await self.get_server(server_id)
        if server is None:
            return ConnectionTest(success=False, error="Server config not found")
        if not server.bot_token:
            return ConnectionTest(success=False, error="Bot token not configured")
        if not server.channel_id:
            return ConnectionTest(success=False, error="Channel ID not configured")
        if not await self.source.verify_token(server.bot_token):
            return ConnectionTest(success=False, error="Invalid bot token")
        if not await self.source.verify_channel(server.bot_token, server.channel_id):
            return ConnectionTest(success=False, error="Cannot access channel")
        return ConnectionTest(success=True)

    # ── Dataset ───────────────────────────────────────────

    async def export_discord_dataset(self) -> str:
        dataset = DiscordDataset(
            config=await self.repository.load_discord_config(),
            user_mappings=await self.repository.load_user_mappings(),
            messages=await self.repository.load_messages(),
            character_aliases=await self.repository.load_aliases(),
            last_updated=now_iso(),
        )
        return json.dumps(dump(dataset), indent=2)

    async def import_discord_dataset(self, payload: str | dict[str, Any], merge: bool = True) -> bool:
        """Import a Discord dataset. Returns False, writing nothing, if it does not parse.

        Merging keeps the stored config unless the imported one is enabled,
        replaces mappings per author, merges messages as a sync would and
        keeps the higher confidence for each alias.
        """
        try:
            if isinstance(payload, str):
                dataset = DiscordDataset.model_validate_json(payload)
            else:
                dataset = DiscordDataset.model_validate(payload)
        except ValidationError as e:
            logger.warning("Rejected Discord dataset: %s", e)
            return False

        if not merge:
            await self.repository.save_discord_config(dataset.config)
            await self.repository.save_user_mappings(dataset.user_mappings)
            await self.repository.save_messages(merge_messages([], dataset.messages))
            await self.repository.save_aliases(merge_aliases([], dataset.character_aliases))
            logger.info("Replaced Discord data: %d message(s)", len(dataset.messages))
            return True

        config = dataset.config if dataset.config.enabled else await self.repository.load_discord_config()
        await self.repository.save_discord_config(config)

        by_user = {m.discord_user_id: m for m in await self.repository.load_user_mappings()}
        for mapping in dataset.user_mappings:
            by_user[mapping.discord_user_id] = mapping
        await self.repository.save_user_mappings(list(by_user.values()))

        messages = merge_messages(await self.repository.load_messages(), dataset.messages)
        await self.repository.save_messages(messages)

        aliases = merge_aliases(await self.repository.load_aliases(), dataset.character_aliases)
        await self.repository.save_aliases(aliases)

        logger.info(
            "Merged Discord data: %d mapping(s), %d message(s), %d alias(es)",
            len(by_user), len(messages), len(aliases),
        )
        return True
