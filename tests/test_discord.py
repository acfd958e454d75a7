"""Tests for character_manager.discord — message merge, sync and the HTTP source."""

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from character_manager.discord import (
    DiscordApiError,
    DiscordService,
    HttpDiscordSource,
    merge_messages,
)
from character_manager.models import (
    Character,
    CharacterAlias,
    DiscordConfig,
    DiscordMessage,
    DiscordServerConfig,
)
from character_manager.storage import Repository


def _msg(mid: str, timestamp: str, **fields) -> DiscordMessage:
    return DiscordMessage(id=mid, channel_id="ch1", author_id="u1", timestamp=timestamp, **fields)


def _raw(mid: str, content: str = "hello", author_id: str = "u1", **extra) -> dict[str, Any]:
    return {
        "id": mid,
        "channel_id": "ch1",
        "author": {"id": author_id, "username": "player", "discriminator": "0"},
        "content": content,
        "timestamp": f"2024-01-01T00:00:{int(mid[1:]):02d}.000000+00:00",
        "attachments": [],
        **extra,
    }


def _server(server_id: str = "s1", **fields) -> DiscordServerConfig:
    defaults = {"name": f"Server {server_id}", "guild_id": "g1", "channel_id": "ch1", "bot_token": "tok"}
    return DiscordServerConfig(id=server_id, **{**defaults, **fields})


class StubSource:
    """Serves pre-baked pages per server id and records calls."""

    def __init__(self, pages: dict[str, list[list[dict]]] | None = None,
                 failing: set[str] | None = None) -> None:
        self.pages = pages or {}
        self.failing = failing or set()
        self.calls: list[tuple[str, int, str | None]] = []
        self.token_ok = True
        self.channel_ok = True

    async def fetch_messages(self, server, limit=100, before=None):
        self.calls.append((server.id, limit, before))
        if server.id in self.failing:
            raise DiscordApiError("Failed to fetch messages: HTTP 403")
        remaining = self.pages.get(server.id, [])
        return remaining.pop(0) if remaining else []

    async def verify_token(self, token):
        return self.token_ok

    async def verify_channel(self, token, channel_id):
        return self.channel_ok


async def _setup(repo: Repository, *servers: DiscordServerConfig) -> None:
    await repo.save_discord_config(DiscordConfig(enabled=True, server_configs=list(servers)))


# ---------------------------------------------------------------------------
# merge_messages
# ---------------------------------------------------------------------------

class TestMergeMessages:
    def test_sorted_oldest_first(self) -> None:
        merged = merge_messages(
            [_msg("b", "2024-01-02T00:00:00Z")],
            [_msg("a", "2024-01-01T00:00:00.000000+00:00"), _msg("c", "2024-01-03T00:00:00Z")],
        )
        assert [m.id for m in merged] == ["a", "b", "c"]

    def test_existing_character_id_preserved(self) -> None:
        existing = [_msg("a", "2024-01-01T00:00:00Z", character_id="manual")]
        merged = merge_messages(existing, [_msg("a", "2024-01-01T00:00:00Z", character_id="auto")])
        assert merged[0].character_id == "manual"

    def test_character_id_filled_when_absent(self) -> None:
        existing = [_msg("a", "2024-01-01T00:00:00Z")]
        merged = merge_messages(existing, [_msg("a", "2024-01-01T00:00:00Z", character_id="c1")])
        assert merged[0].character_id == "c1"

    def test_blank_extracted_name_does_not_erase(self) -> None:
        existing = [_msg("a", "2024-01-01T00:00:00Z", extracted_character_name="Bob",
                         created_at="2020-01-01T00:00:00.000Z")]
        merged = merge_messages(existing, [_msg("a", "2024-01-01T00:00:00Z", content="edited")])
        assert merged[0].extracted_character_name == "Bob"
        assert merged[0].content == "edited"
        assert merged[0].created_at == "2020-01-01T00:00:00.000Z"


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

async def test_sync_server_paginates(repo: Repository) -> None:
    await _setup(repo, _server())
    source = StubSource({"s1": [[_raw("m3"), _raw("m2")], [_raw("m1")]]})
    service = DiscordService(repo, source, page_size=2)

    result = await service.sync_server("s1")

    assert [(c[1], c[2]) for c in source.calls] == [(2, None), (2, "m2"), (2, "m1")]
    assert result.new_messages == 3
    assert result.total_messages == 3
    stored = await repo.load_messages()
    assert [m.id for m in stored] == ["m1", "m2", "m3"]
    assert all(m.server_config_id == "s1" and m.guild_id == "g1" for m in stored)


async def test_sync_server_respects_max_pages(repo: Repository) -> None:
    await _setup(repo, _server())
    pages = [[_raw(f"m{i}")] for i in range(1, 10)]
    source = StubSource({"s1": pages})
    service = DiscordService(repo, source, max_pages=3)
    result = await service.sync_server("s1")
    assert len(source.calls) == 3
    assert result.new_messages == 3


async def test_resync_counts_only_new_and_stamps_last_sync(repo: Repository) -> None:
    await _setup(repo, _server())
    source = StubSource({"s1": [[_raw("m1")]]})
    service = DiscordService(repo, source)
    await service.sync_server("s1")
    source.pages["s1"] = [[_raw("m2"), _raw("m1")]]

    result = await service.sync_server("s1")

    assert result.new_messages == 1
    assert result.total_messages == 2
    server = await service.get_server("s1")
    assert server.last_sync is not None


async def test_sync_tags_from_user_mapping_first(repo: Repository) -> None:
    await _setup(repo, _server())
    await repo.save_characters([Character(id="c1", name="Bob")])
    service = DiscordService(repo, StubSource({"s1": [[_raw("m1", content=">[Bob] hi", author_id="u7")]]}))
    await service.add_user_mapping("u7", "player", "c-mapped")

    await service.sync_server("s1")

    msg = (await repo.load_messages())[0]
    assert msg.character_id == "c-mapped"
    assert msg.extracted_character_name is None


async def test_sync_tags_from_name_marker(repo: Repository) -> None:
    await _setup(repo, _server())
    await repo.save_characters([Character(id="c1", name="Bob"), Character(id="c2", name="Bobby")])
    raws = [_raw("m1", content=">[Bob] hi"), _raw("m2", content=">Bo hello"), _raw("m3", content="plain")]
    service = DiscordService(repo, StubSource({"s1": [raws]}))

    await service.sync_server("s1")

    tagged = {m.id: (m.extracted_character_name, m.character_id) for m in await repo.load_messages()}
    assert tagged == {"m1": ("Bob", "c1"), "m2": ("Bo", None), "m3": (None, None)}


async def test_resync_keeps_manual_correction(repo: Repository) -> None:
    await _setup(repo, _server())
    await repo.save_characters([Character(id="c1", name="Bob")])
    await repo.save_messages([_msg("m1", "2024-01-01T00:00:01Z", character_id="c-manual",
                                   extracted_character_name="Bob")])
    service = DiscordService(repo, StubSource({"s1": [[_raw("m1", content=">[Bob] hi")]]}))

    await service.sync_server("s1")

    assert (await repo.load_messages())[0].character_id == "c-manual"


async def test_convert_message_username_and_attachments(repo: Repository) -> None:
    service = DiscordService(repo, StubSource())
    raw = _raw("m1", attachments=[{"id": "a1", "filename": "map.png", "url": "https://x/map.png",
                                   "content_type": "image/png", "size": 42}])
    raw["author"]["discriminator"] = "1234"
    msg = await service.convert_message(raw, _server(), mappings={})
    assert msg.author_username == "player#1234"
    assert msg.attachments[0].content_type == "image/png"
    assert msg.attachments[0].size == 42


async def test_sync_server_rejects_bad_config(repo: Repository) -> None:
    await _setup(repo, _server("s1", bot_token=""), _server("s2", enabled=False))
    service = DiscordService(repo, StubSource())
    for server_id in ("s1", "s2", "missing"):
        with pytest.raises(ValueError):
            await service.sync_server(server_id)


async def test_sync_server_propagates_api_error(repo: Repository) -> None:
    await _setup(repo, _server())
    service = DiscordService(repo, StubSource(failing={"s1"}))
    with pytest.raises(DiscordApiError):
        await service.sync_server("s1")


async def test_sync_all_skips_failing_server(repo: Repository) -> None:
    await _setup(
        repo,
        _server("s1"),
        _server("s2", channel_id="ch2"),
        _server("s3", bot_token=""),
        _server("s4", enabled=False),
    )
    source = StubSource({"s1": [[_raw("m1"), _raw("m2")]]}, failing={"s2"})
    service = DiscordService(repo, source)

    summary = await service.sync_all()

    assert summary.servers == 3
    assert summary.new_messages == 2
    assert sorted(summary.failed) == ["s2", "s3"]
    assert len(await repo.load_messages()) == 2
    assert {c[0] for c in source.calls} == {"s1", "s2"}


async def test_sync_all_without_enabled_servers(repo: Repository) -> None:
    await _setup(repo, _server("s1", enabled=False))
    with pytest.raises(ValueError):
        await DiscordService(repo, StubSource()).sync_all()


# ---------------------------------------------------------------------------
# Connection test, config, mappings
# ---------------------------------------------------------------------------

class TestConnection:
    async def test_missing_server(self, repo: Repository) -> None:
        result = await DiscordService(repo, StubSource()).test_connection("nope")
        assert (result.success, result.error) == (False, "Server config not found")

    async def test_missing_token(self, repo: Repository) -> None:
        await _setup(repo, _server(bot_token=""))
        result = await DiscordService(repo, StubSource()).test_connection("s1")
        assert result.error == "Bot token not configured"

    async def test_invalid_token(self, repo: Repository) -> None:
        await _setup(repo, _server())
        source = StubSource()
        source.token_ok = False
        result = await DiscordService(repo, source).test_connection("s1")
        assert result.error == "Invalid bot token"

    async def test_channel_not_accessible(self, repo: Repository) -> None:
        await _setup(repo, _server())
        source = StubSource()
        source.channel_ok = False
        result = await DiscordService(repo, source).test_connection("s1")
        assert result.error == "Cannot access channel"

    async def test_success(self, repo: Repository) -> None:
        await _setup(repo, _server())
        result = await DiscordService(repo, StubSource()).test_connection("s1")
        assert result.success
        assert result.error is None


async def test_save_and_remove_server(repo: Repository) -> None:
    service = DiscordService(repo, StubSource())
    await service.save_server(_server("s1"))
    await service.save_server(_server("s2"))
    await service.save_server(_server("s1", name="Renamed"))
    config = await service.get_config()
    assert [(s.id, s.name) for s in config.server_configs] == [("s1", "Renamed"), ("s2", "Server s2")]
    assert await service.remove_server("s1")
    assert not await service.remove_server("s1")


async def test_user_mappings(repo: Repository) -> None:
    service = DiscordService(repo, StubSource())
    first = await service.add_user_mapping("u1", "player", "c1")
    second = await service.add_user_mapping("u1", "player", "c2")
    assert second.created_at == first.created_at
    assert len(await service.list_user_mappings()) == 1
    assert await service.character_for_user("u1") == "c2"
    assert await service.remove_user_mapping("u1")
    assert not await service.remove_user_mapping("u1")
    assert await service.character_for_user("u1") is None


async def test_list_messages_for_character(repo: Repository) -> None:
    await repo.save_messages([
        _msg("a", "2024-01-01T00:00:00Z", character_id="c1"),
        _msg("b", "2024-01-01T00:00:01Z"),
    ])
    service = DiscordService(repo, StubSource())
    assert [m.id for m in await service.list_messages("c1")] == ["a"]
    assert len(await service.list_messages()) == 2


# ---------------------------------------------------------------------------
# Discord dataset
# ---------------------------------------------------------------------------

async def test_export_discord_dataset(repo: Repository) -> None:
    await _setup(repo, _server())
    await repo.save_messages([_msg("a", "2024-01-01T00:00:00Z")])
    data = json.loads(await DiscordService(repo, StubSource()).export_discord_dataset())
    assert data["version"] == "1.0"
    assert data["config"]["serverConfigs"][0]["id"] == "s1"
    assert data["messages"][0]["id"] == "a"
    assert data["characterAliases"] == []


async def test_import_merge(repo: Repository) -> None:
    await _setup(repo, _server("s1"))
    await repo.save_messages([_msg("a", "2024-01-01T00:00:00Z", character_id="manual")])
    await repo.save_aliases([
        CharacterAlias(alias="bob", discord_user_id="u1", character_id="c1", confidence=1.0, usage_count=3)
    ])
    payload = {
        "config": {"enabled": False, "serverConfigs": []},
        "userMappings": [{"discordUserId": "u9", "characterId": "c9"}],
        "messages": [
            {"id": "a", "channelId": "ch1", "authorId": "u1", "timestamp": "2024-01-01T00:00:00Z",
             "characterId": "other"},
            {"id": "b", "channelId": "ch1", "authorId": "u1", "timestamp": "2023-12-31T00:00:00Z"},
        ],
        "characterAliases": [
            {"alias": "bob", "discordUserId": "u1", "characterId": "c2", "confidence": 0.6, "usageCount": 1}
        ],
    }
    service = DiscordService(repo, StubSource())

    assert await service.import_discord_dataset(payload)

    assert [s.id for s in (await repo.load_discord_config()).server_configs] == ["s1"]
    assert await service.character_for_user("u9") == "c9"
    messages = await repo.load_messages()
    assert [(m.id, m.character_id) for m in messages] == [("b", None), ("a", "manual")]
    alias = (await repo.load_aliases())[0]
    assert (alias.character_id, alias.confidence, alias.usage_count) == ("c1", 1.0, 3)


async def test_import_replace(repo: Repository) -> None:
    await _setup(repo, _server("s1"))
    await repo.save_messages([_msg("a", "2024-01-01T00:00:00Z")])
    service = DiscordService(repo, StubSource())
    assert await service.import_discord_dataset(json.dumps({"config": {"enabled": False}}), merge=False)
    assert await repo.load_messages() == []
    assert (await repo.load_discord_config()).server_configs == []


async def test_import_rejects_malformed(repo: Repository) -> None:
    await repo.save_messages([_msg("a", "2024-01-01T00:00:00Z")])
    service = DiscordService(repo, StubSource())
    assert not await service.import_discord_dataset("{broken")
    assert not await service.import_discord_dataset({"messages": [{"id": "x"}]})
    assert len(await repo.load_messages()) == 1


# ---------------------------------------------------------------------------
# HttpDiscordSource
# ---------------------------------------------------------------------------

def _mock_response(body: Any, status: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = ""
    resp.is_success = status < 400
    resp.json.return_value = body
    resp.raise_for_status = MagicMock(
        side_effect=None if status < 400 else httpx.HTTPStatusError(
            "", request=MagicMock(), response=resp
        )
    )
    return resp


class TestHttpDiscordSource:
    @pytest.fixture
    def source(self) -> HttpDiscordSource:
        return HttpDiscordSource(base_url="https://discord.test/api/v10/")

    async def test_fetch_sends_bot_token_and_paging(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(return_value=_mock_response([_raw("m1")]))
        with patch("httpx.AsyncClient.get", mock_get):
            messages = await source.fetch_messages(_server(), limit=50, before="m9")
        assert messages[0]["id"] == "m1"
        assert mock_get.call_args[0][0] == "https://discord.test/api/v10/channels/ch1/messages"
        assert mock_get.call_args.kwargs["params"] == {"limit": 50, "before": "m9"}
        assert mock_get.call_args.kwargs["headers"] == {"Authorization": "Bot tok"}

    async def test_first_page_has_no_before(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(return_value=_mock_response([]))
        with patch("httpx.AsyncClient.get", mock_get):
            await source.fetch_messages(_server())
        assert mock_get.call_args.kwargs["params"] == {"limit": 100}

    async def test_http_error_raises(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(return_value=_mock_response({"message": "Missing Access"}, status=403))
        with patch("httpx.AsyncClient.get", mock_get):
            with pytest.raises(DiscordApiError, match="403"):
                await source.fetch_messages(_server())

    async def test_connect_error_raises(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(side_effect=httpx.ConnectError("refused"))
        with patch("httpx.AsyncClient.get", mock_get):
            with pytest.raises(DiscordApiError, match="Cannot connect"):
                await source.fetch_messages(_server())

    async def test_timeout_raises(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(side_effect=httpx.ReadTimeout("slow"))
        with patch("httpx.AsyncClient.get", mock_get):
            with pytest.raises(DiscordApiError, match="timed out"):
                await source.fetch_messages(_server())

    async def test_read_error_raises(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(side_effect=httpx.ReadError("reset"))
        with patch("httpx.AsyncClient.get", mock_get):
            with pytest.raises(DiscordApiError, match="reset"):
                await source.fetch_messages(_server())

    async def test_non_json_body_raises(self, source: HttpDiscordSource) -> None:
        resp = _mock_response(None)
        resp.json.side_effect = ValueError("Expecting value")
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=resp)):
            with pytest.raises(DiscordApiError, match="non-JSON"):
                await source.fetch_messages(_server())

    async def test_sync_all_skips_server_on_transport_error(self, source: HttpDiscordSource,
                                                           repo: Repository) -> None:
        await _setup(repo, _server("s1"))
        service = DiscordService(repo, source)
        with patch("httpx.AsyncClient.get", AsyncMock(side_effect=httpx.RemoteProtocolError("eof"))):
            summary = await service.sync_all()
        assert summary.failed == ["s1"]
        assert summary.new_messages == 0
        assert await repo.load_messages() == []

    async def test_unexpected_body_raises(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(return_value=_mock_response({"not": "a list"}))
        with patch("httpx.AsyncClient.get", mock_get):
            with pytest.raises(DiscordApiError):
                await source.fetch_messages(_server())

    async def test_verify_token(self, source: HttpDiscordSource) -> None:
        mock_get = AsyncMock(return_value=_mock_response({"id": "bot"}))
        with patch("httpx.AsyncClient.get", mock_get):
            assert await source.verify_token("tok")
        assert mock_get.call_args[0][0] == "https://discord.test/api/v10/users/@me"

    async def test_verify_channel_failure(self, source: HttpDiscordSource) -> None:
        with patch("httpx.AsyncClient.get", AsyncMock(return_value=_mock_response({}, status=404))):
            assert not await source.verify_channel("tok", "ch1")
        with patch("httpx.AsyncClient.get", AsyncMock(side_effect=httpx.ConnectError("down"))):
            assert not await source.verify_channel("tok", "ch1")
