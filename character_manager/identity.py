"""Resolve author-written character names to canonical characters.

A chat message is tagged in three steps::

    content ──extract_character_name──▶ name
    (name, author) ──alias table──▶ character_id            AliasHit
                   └─fuzzy roster match ≥ auto_accept──▶     FuzzyResolved
                   └─otherwise──▶ ranked suggestions         NeedsManualSelection

Marker grammar, anchored at the start of the message:

    >[Name] text      bracketed; whitespace allowed between ``>`` and ``[``
    >>[Name] text     legacy bracketed form
    >Name text        bare; the name must follow ``>`` immediately, so a
                      Discord block quote (``> text``) is not a name

Aliases are keyed by ``(normalize_alias(name), author_id)``. Their confidence
only ever grows: every write keeps the max of the stored and new values.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Literal, Protocol

from pydantic import BaseModel, Field

from character_manager.models import CamelModel, CharacterAlias, now_iso
from character_manager.storage import Repository

logger = logging.getLogger(__name__)

_BRACKETED = re.compile(r"^>>?\s*\[([^\]]+)\]")
_BARE = re.compile(r"^>>?([^\s\[>]\S*)")
_BRACKETED_WITH_REST = re.compile(r"^>>?\s*\[[^\]]+\]\s*(.*)", re.DOTALL)
_BARE_WITH_REST = re.compile(r"^>>?[^\s\[>]\S*\s*(.*)", re.DOTALL)

_MARKDOWN = [
    (re.compile(r"\*\*(.+?)\*\*"), r"\1"),  # bold
    (re.compile(r"__(.+?)__"), r"\1"),  # underline
    (re.compile(r"~~(.+?)~~"), r"\1"),  # strikethrough
    (re.compile(r"\*(.+?)\*"), r"\1"),  # italic
    (re.compile(r"_(.+?)_"), r"\1"),  # italic
]

EXACT_CONFIDENCE = 1.0
PREFIX_CONFIDENCE = 0.8
SUBSTRING_CONFIDENCE = 0.6
CONFIRMED_CONFIDENCE = 1.0


class MatchThresholds(BaseModel):
    """Confidence cut-offs for name resolution."""

    auto_accept: float = Field(default=0.9, ge=0, le=1)
    alias_reuse: float = Field(default=0.5, ge=0, le=1)


class CharacterMatch(CamelModel):
    character_id: str
    name: str
    confidence: float


ResolutionState = Literal["alias_hit", "fuzzy_resolved", "needs_manual_selection"]


class Resolution(CamelModel):
    character_id: str | None = None
    needs_manual_selection: bool = False
    suggestions: list[CharacterMatch] = Field(default_factory=list)
    state: ResolutionState


class Named(Protocol):
    id: str
    name: str


# ── Extraction ────────────────────────────────────────────


def strip_markdown(text: str) -> str:
    """Remove inline emphasis markers (bold, italic, underline, strikethrough)."""
    for pattern, repl in _MARKDOWN:
        text = pattern.sub(repl, text)
    return text.strip()


def extract_character_name(content: str) -> str | None:
    """Return the character name marked at the start of ``content``, or None."""
    match = _BRACKETED.match(content) or _BARE.match(content)
    if match is None:
        return None
    name = strip_markdown(match.group(1).strip())
    return name or None


def strip_character_name(content: str) -> str:
    """Return ``content`` without its leading name marker."""
    match = _BRACKETED_WITH_REST.match(content) or _BARE_WITH_REST.match(content)
    if match and match.group(1):
        return match.group(1).strip()
    return content


def normalize_alias(name: str) -> str:
    """Lowercase with whitespace runs collapsed: ``"  Big  Bob "`` → ``"big bob"``."""
    return " ".join(name.split()).lower()


# ── Matching ──────────────────────────────────────────────


def rank_character_matches(name: str, roster: Iterable[Named]) -> list[CharacterMatch]:
    """Fuzzy-match ``name`` against the roster, best first.

    Exact (case-insensitive) scores 1.0, a roster name starting with ``name``
    0.8, containing it 0.6. Equal scores keep roster order.
    """
    candidate = normalize_alias(name)
    if not candidate:
        return []

    matches: list[CharacterMatch] = []
    for character in roster:
        canonical = normalize_alias(character.name)
        if canonical == candidate:
            confidence = EXACT_CONFIDENCE
        elif canonical.startswith(candidate):
            confidence = PREFIX_CONFIDENCE
        elif candidate in canonical:
            confidence = SUBSTRING_CONFIDENCE
        else:
            continue
        matches.append(
            CharacterMatch(character_id=character.id, name=character.name, confidence=confidence)
        )

    # sort is stable, so ties stay in roster order
    matches.sort(key=lambda m: m.confidence, reverse=True)
    return matches


# ── Alias table ───────────────────────────────────────────


def lookup_alias(
    aliases: Iterable[CharacterAlias], name: str, author_id: str, min_confidence: float
) -> CharacterAlias | None:
    """Find the alias for ``(name, author)`` whose confidence exceeds ``min_confidence``."""
    key = normalize_alias(name)
    for alias in aliases:
        if alias.alias == key and alias.discord_user_id == author_id:
            return alias if alias.confidence > min_confidence else None
    return None


def upsert_alias(
    aliases: Iterable[CharacterAlias],
    name: str,
    character_id: str,
    author_id: str,
    confidence: float,
) -> list[CharacterAlias]:
    """Record one use of an alias. Returns the new alias list.

    An existing entry takes the new character id, keeps the higher of the two
    confidences and counts one more use.
    """
    key = normalize_alias(name)
    result: list[CharacterAlias] = []
    found = False
    for alias in aliases:
        if alias.alias == key and alias.discord_user_id == author_id:
            alias = alias.model_copy(update={
                "character_id": character_id,
                "confidence": max(alias.confidence, confidence),
                "usage_count": alias.usage_count + 1,
                "updated_at": now_iso(),
            })
            found = True
        result.append(alias)

    if not found:
        now = now_iso()
        result.append(CharacterAlias(
            alias=key,
            discord_user_id=author_id,
            character_id=character_id,
            confidence=confidence,
            usage_count=1,
            created_at=now,
            updated_at=now,
        ))
    return result


def merge_aliases(
    existing: Iterable[CharacterAlias], imported: Iterable[CharacterAlias]
) -> list[CharacterAlias]:
    """Union two alias tables by key.

    Confidence and usage count take the max. The character id comes from the
    more confident side; on a tie the existing entry wins.
    """
    by_key: dict[tuple[str, str], CharacterAlias] = {}
    for alias in existing:
        by_key.setdefault((normalize_alias(alias.alias), alias.discord_user_id), alias)

    for alias in imported:
        key = (normalize_alias(alias.alias), alias.discord_user_id)
        current = by_key.get(key)
        if current is None:
            by_key[key] = alias.model_copy(update={"alias": key[0]})
            continue
        winner = alias if alias.confidence > current.confidence else current
        by_key[key] = current.model_copy(update={
            "character_id": winner.character_id,
            "confidence": max(current.confidence, alias.confidence),
            "usage_count": max(current.usage_count, alias.usage_count),
            "updated_at": max(current.updated_at, alias.updated_at),
        })
    return list(by_key.values())


# ── Resolver ──────────────────────────────────────────────


class CharacterResolver:
    """Alias-first, fuzzy-fallback resolution over the stored roster."""

    def __init__(self, repository: Repository, thresholds: MatchThresholds | None = None) -> None:
        self.repository = repository
        self.thresholds = thresholds or MatchThresholds()

    async def resolve_character_from_name(self, name: str, author_id: str) -> Resolution:
        aliases = await self.repository.load_aliases()
        hit = lookup_alias(aliases, name, author_id, self.thresholds.alias_reuse)
        if hit is not None:
            logger.debug("alias hit name=%r author=%s -> %s", name, author_id, hit.character_id)
            return Resolution(character_id=hit.character_id, state="alias_hit")

        characters = await self.repository.load_characters()
        matches = rank_character_matches(name, characters)
        logger.debug("fuzzy name=%r author=%s matches=%d", name, author_id, len(matches))

        if matches and matches[0].confidence >= self.thresholds.auto_accept:
            best = matches[0]
            await self.repository.save_aliases(
                upsert_alias(aliases, name, best.character_id, author_id, best.confidence)
            )
            logger.info("Auto-matched %r to %r (confidence %.2f)", name, best.name, best.confidence)
            return Resolution(character_id=best.character_id, suggestions=matches, state="fuzzy_resolved")

        return Resolution(
            needs_manual_selection=True, suggestions=matches, state="needs_manual_selection"
        )

    async def confirm_character_mapping(
        self, name: str, character_id: str, author_id: str
    ) -> CharacterAlias:
        """Store a human-confirmed alias at full confidence."""
        aliases = upsert_alias(
            await self.repository.load_aliases(), name, character_id, author_id, CONFIRMED_CONFIDENCE
        )
        await self.repository.save_aliases(aliases)
        key = normalize_alias(name)
        logger.info("Confirmed alias %r for author %s -> %s", key, author_id, character_id)
        return next(a for a in aliases if a.alias == key and a.discord_user_id == author_id)

    async def apply_alias_to_messages(self, name: str, character_id: str, author_id: str) -> int:
        """Tag every stored message by ``author_id`` using ``name``. Returns the count changed."""
        key = normalize_alias(name)
        messages = await self.repository.load_messages()
        changed = 0
        for i, msg in enumerate(messages):
            if (
                msg.author_id == author_id
                and msg.extracted_character_name
                and normalize_alias(msg.extracted_character_name) == key
                and msg.character_id != character_id
            ):
                messages[i] = msg.model_copy(update={"character_id": character_id})
                changed += 1
        if changed:
            await self.repository.save_messages(messages)
        logger.info("Re-tagged %d message(s) for alias %r", changed, key)
        return changed
