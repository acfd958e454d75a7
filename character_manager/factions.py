"""Factions and the symmetric faction-relationship graph.

Invariant: if faction A lists {factionName: B, relationshipType: T}, then B
lists {factionName: A, relationshipType: T}, or neither lists the other.

All edge mutations go through ``FactionGraph``, an ordered adjacency map
``name -> {peer: type}``. ``link``/``unlink`` always update both endpoints
when both exist; ``apply`` writes the adjacency back into Faction records,
re-stamping only the records whose edge lists changed.

Edges that point at a name with no faction record are "dangling". Deleting a
faction leaves them in place unless ``prune_edges`` is requested;
``find_dangling_edges`` reports them.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from character_manager.models import (
    DeleteResult,
    Faction,
    FactionRelationship,
    FactionRelationshipType,
    apply_updates,
    new_faction,
    now_iso,
    touch,
)
from character_manager.storage import Repository, StorageError

logger = logging.getLogger(__name__)


def _rename_key(mapping: dict[str, Any], old: str, new: str) -> dict[str, Any]:
    """Return ``mapping`` with key ``old`` renamed to ``new``, order preserved."""
    return {(new if k == old else k): v for k, v in mapping.items()}


class FactionGraph:
    """Adjacency view of faction relationships.

    Nodes are the faction names passed in; edges are loaded as stored, so an
    already-asymmetric dataset stays visible through ``asymmetric_edges``.
    """

    def __init__(self, factions: Iterable[Faction] = ()) -> None:
        self._edges: dict[str, dict[str, FactionRelationshipType]] = {}
        for faction in factions:
            peers = self._edges.setdefault(faction.name, {})
            for rel in faction.relationships:
                peers[rel.faction_name] = rel.relationship_type

    def __contains__(self, name: str) -> bool:
        return name in self._edges

    def nodes(self) -> list[str]:
        return list(self._edges)

    def edges(self, name: str) -> dict[str, FactionRelationshipType]:
        return dict(self._edges.get(name, {}))

    def add_node(self, name: str) -> None:
        self._edges.setdefault(name, {})

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def link(self, a: str, b: str, relationship_type: FactionRelationshipType) -> None:
        """Add or retype the edge a→b and its reciprocal b→a (if b exists)."""
        self._edges.setdefault(a, {})[b] = relationship_type
        if b in self._edges:
            self._edges[b][a] = relationship_type

    def unlink(self, a: str, b: str) -> None:
        self._edges.get(a, {}).pop(b, None)
        self._edges.get(b, {}).pop(a, None)

    def set_relationships(self, name: str, relationships: Iterable[FactionRelationship]) -> None:
        """Replace ``name``'s edges, diffing against the old ones.

        Removed peers lose their reciprocal edge, added peers gain one, and
        a changed type is mirrored onto the peer.
        """
        wanted = {rel.faction_name: rel.relationship_type for rel in relationships}
        for peer in list(self._edges.get(name, {})):
            if peer not in wanted:
                self.unlink(name, peer)
        self._edges[name] = {}
        for peer, relationship_type in wanted.items():
            self.link(name, peer, relationship_type)

    def rename(self, old: str, new: str) -> None:
        self._edges = _rename_key(self._edges, old, new)
        for name, peers in self._edges.items():
            if old in peers:
                self._edges[name] = _rename_key(peers, old, new)

    def remove(self, name: str, prune_edges: bool = False) -> int:
        """Drop a node. With ``prune_edges``, also drop edges pointing at it.

        Returns the number of edges pruned.
        """
        self._edges.pop(name, None)
        if not prune_edges:
            return 0
        pruned = 0
        for peers in self._edges.values():
            if peers.pop(name, None) is not None:
                pruned += 1
        return pruned

    def symmetrize(self, factions: Iterable[Faction]) -> int:
        """Repair pairs whose two sides disagree. Returns the number of pairs fixed.

        For each pair, the view of the more recently updated faction is
        applied to both sides: a missing reciprocal is added, or the lone edge
        removed, and a type mismatch takes the newer side's type. On equal
        timestamps an edge is kept rather than dropped, and a type mismatch
        takes the alphabetically first faction's type.
        """
        updated_at = {f.name: f.updated_at for f in factions}
        repaired = 0
        for a in list(self._edges):
            for b in list(self._edges.get(a, {})):
                if b not in self._edges or a == b:
                    continue
                forward = self._edges[a].get(b)
                backward = self._edges[b].get(a)
                if forward == backward:
                    continue
                a_time, b_time = updated_at.get(a, ""), updated_at.get(b, "")
                if a_time == b_time:
                    winner = a if backward is None or a < b else b
                else:
                    winner = a if a_time > b_time else b
                view = forward if winner == a else backward
                if view is None:
                    self.unlink(a, b)
                else:
                    self.link(a, b, view)
                repaired += 1
        return repaired

    # ------------------------------------------------------------------
    # Invariant checks
    # ------------------------------------------------------------------

    def asymmetric_edges(self) -> list[tuple[str, str, FactionRelationshipType]]:
        """Edges a→b (both nodes) without a matching b→a of the same type."""
        return [
            (a, b, t)
            for a, peers in self._edges.items()
            for b, t in peers.items()
            if b in self._edges and self._edges[b].get(a) != t
        ]

    def dangling_edges(self) -> list[tuple[str, str]]:
        """Edges a→b where b has no faction record."""
        return [
            (a, b)
            for a, peers in self._edges.items()
            for b in peers
            if b not in self._edges
        ]

    # ------------------------------------------------------------------
    # Write-back
    # ------------------------------------------------------------------

    def apply(self, factions: Iterable[Faction]) -> list[Faction]:
        """Write edges back into ``factions``; changed records are re-stamped."""
        result: list[Faction] = []
        for faction in factions:
            relationships = [
                FactionRelationship(faction_name=peer, relationship_type=t)
                for peer, t in self._edges.get(faction.name, {}).items()
            ]
            if relationships != faction.relationships:
                faction = touch(faction, relationships=relationships)
            result.append(faction)
        return result


class FactionService:
    """Faction CRUD that keeps the relationship graph and references consistent."""

    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def list_factions(self) -> list[Faction]:
        return await self.repository.load_factions()

    async def get_faction(self, name: str) -> Faction | None:
        for faction in await self.repository.load_factions():
            if faction.name == name:
                return faction
        return None

    async def create_faction(
        self,
        name: str,
        description: str = "",
        relationships: Iterable[FactionRelationship] = (),
    ) -> Faction | None:
        """Create a faction and mirror its declared edges onto existing peers.

        Edges that existing factions still hold towards ``name`` (left dangling
        by an earlier delete) are adopted by the new faction, unless it declares
        its own edge to that peer.

        Returns None if a faction with the same name (case-insensitive) exists.
        """
        factions = await self.repository.load_factions()
        if any(f.name.lower() == name.lower() for f in factions):
            return None

        incoming = {
            f.name: rel.relationship_type
            for f in factions
            for rel in f.relationships
            if rel.faction_name == name
        }

        faction = new_faction(name, description, relationships=list(relationships))
        factions.append(faction)
        graph = FactionGraph(factions)
        graph.set_relationships(name, faction.relationships)
        declared = graph.edges(name)
        adopted = [peer for peer in incoming if peer not in declared]
        for peer in adopted:
            graph.link(name, peer, incoming[peer])
        if adopted:
            logger.info("Faction %r adopted relationship(s) from %s", name, ", ".join(adopted))
        factions = graph.apply(factions)

        await self.repository.save_factions(factions)
        logger.info("Created faction %r with %d relationship(s)", name, len(faction.relationships))
        return factions[-1]

    async def update_faction(self, name: str, updates: dict[str, Any]) -> Faction | None:
        """Update a faction; renames and relationship edits propagate.

        A rename rewrites peer edges, character memberships and event
        references. Returns None if the faction is missing or the new name
        belongs to another faction.
        """
        factions = await self.repository.load_factions()
        current = next((f for f in factions if f.name == name), None)
        if current is None:
            return None

        updated = apply_updates(current, updates, protected=("created_at",))
        new_name = updated.name
        renamed = new_name != name
        if renamed and any(
            f is not current and f.name.lower() == new_name.lower() for f in factions
        ):
            logger.warning("Cannot rename faction %r to %r: name taken", name, new_name)
            return None

        graph = FactionGraph(factions)
        if renamed:
            graph.rename(name, new_name)
        if "relationships" in updates:
            graph.set_relationships(new_name, updated.relationships)

        factions = graph.apply([updated if f is current else f for f in factions])
        await self.repository.save_factions(factions)

        if renamed:
            await self._rename_references(name, new_name)
            logger.info("Renamed faction %r to %r", name, new_name)

        return next(f for f in factions if f.name == new_name)

    async def _rename_references(self, old: str, new: str) -> None:
        characters = await self.repository.load_characters()
        changed = False
        for i, char in enumerate(characters):
            if any(m.name == old for m in char.factions):
                memberships = [
                    m.model_copy(update={"name": new}) if m.name == old else m
                    for m in char.factions
                ]
                characters[i] = touch(char, factions=memberships)
                changed = True
        if changed:
            await self.repository.save_characters(characters)

        events = await self.repository.load_events()
        if any(old in e.faction_names for e in events):
            await self.repository.save_events([
                touch(e, faction_names=[new if n == old else n for n in e.faction_names])
                if old in e.faction_names else e
                for e in events
            ])

    async def delete_faction(self, name: str) -> bool:
        """Remove the faction record only."""
        factions = await self.repository.load_factions()
        filtered = [f for f in factions if f.name != name]
        if len(filtered) == len(factions):
            return False
        await self.repository.save_factions(filtered)
        return True

    async def delete_faction_completely(self, name: str, prune_edges: bool = False) -> DeleteResult:
        """Strip the faction from every character, then delete the record.

        Peer edges pointing at the deleted name are left dangling unless
        ``prune_edges`` is set.
        """
        try:
            characters = await self.repository.load_characters()
            updated = 0
            for i, char in enumerate(characters):
                memberships = [m for m in char.factions if m.name != name]
                if len(memberships) != len(char.factions):
                    characters[i] = touch(char, factions=memberships)
                    updated += 1
            if updated:
                await self.repository.save_characters(characters)

            factions = await self.repository.load_factions()
            graph = FactionGraph(factions)
            pruned = graph.remove(name, prune_edges=prune_edges)
            remaining = graph.apply([f for f in factions if f.name != name])
            await self.repository.save_factions(remaining)
        except StorageError as e:
            logger.error("Failed to delete faction %r: %s", name, e)
            return DeleteResult(success=False)

        logger.info("Deleted faction %r; %d character(s) updated", name, updated)
        return DeleteResult(success=True, characters_updated=updated, edges_pruned=pruned)

    async def find_dangling_edges(self) -> list[tuple[str, str]]:
        return FactionGraph(await self.repository.load_factions()).dangling_edges()

    async def find_asymmetric_edges(self) -> list[tuple[str, str, str]]:
        return FactionGraph(await self.repository.load_factions()).asymmetric_edges()

    async def migrate_faction_descriptions(self) -> int:
        """Copy per-character faction descriptions into faction records.

        The first non-empty description seen for a faction fills a record that
        has none; factions only known from characters are created. Returns the
        number of records created or filled.
        """
        characters = await self.repository.load_characters()
        descriptions: dict[str, str] = {}
        for char in characters:
            for membership in char.factions:
                text = (membership.description or "").strip()
                if text:
                    descriptions.setdefault(membership.name, membership.description)

        factions = await self.repository.load_factions()
        by_name = {f.name: i for i, f in enumerate(factions)}
        changed = 0
        for faction_name, description in descriptions.items():
            index = by_name.get(faction_name)
            if index is None:
                factions.append(new_faction(faction_name, description))
                changed += 1
            elif not factions[index].description:
                factions[index] = factions[index].model_copy(
                    update={"description": description, "updated_at": now_iso()}
                )
                changed += 1

        if changed:
            await self.repository.save_factions(factions)
        return changed
