"""
Merge engine reconciling per-chunk partial graphs into one graph.

Entities of the same kind are considered the same when they share an id, an
alias, or a normalized name (case-folded, trimmed, whitespace-collapsed).
Grouping uses a union-find, so merging is associative: merging partial graphs
pairwise or all at once yields the same entity ids and relationship triples.

- The survivor of a group is its first occurrence in chunk order; the other
  ids become aliases and the other names become name variants
- Scalar fields: first non-empty value wins; later differing values are
  reported as conflicts
- List fields are unioned in order
- Relationships are remapped onto survivors and deduplicated by
  (type, source, target); edges with a missing endpoint are kept as unresolved
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from networkx.utils import UnionFind

from core.entity_models import (
    RELATIONSHIP_ENDPOINTS,
    BaseEntity,
    EntityKind,
    ExtractionGraph,
    Relationship,
    normalize_name,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeConflict:
    """Two occurrences of one entity disagreed on a scalar field."""

    kind: EntityKind
    entity_id: str
    field: str
    kept: str
    discarded: str
    chunk_index: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergeConflict":
        return cls(
            kind=EntityKind(data["kind"]),
            entity_id=data["entity_id"],
            field=data["field"],
            kept=data["kept"],
            discarded=data["discarded"],
            chunk_index=data.get("chunk_index"),
        )


@dataclass
class MergeStats:
    """Counts describing one merge. Edge counts refer to distinct input triples."""

    graphs_merged: int = 0
    entities_in: int = 0
    entities_out: int = 0
    edges_total: int = 0
    edges_resolved: int = 0
    edges_remapped: int = 0
    edges_unresolved: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class MergeResult:
    graph: ExtractionGraph
    conflicts: List[MergeConflict] = field(default_factory=list)
    stats: MergeStats = field(default_factory=MergeStats)


def _order_key(item: Tuple[int, ExtractionGraph]) -> Tuple[bool, int, int]:
    position, graph = item
    return (graph.chunk_index is None, graph.chunk_index or 0, position)


def _entity_keys(entity: BaseEntity) -> List[Tuple[str, str, str]]:
    kind = entity.KIND.value
    keys = [(kind, "id", entity.id)]
    keys.extend((kind, "id", alias) for alias in entity.aliases if alias)
    names = [entity.name] + list(entity.name_variants)
    for name in names:
        normalized = normalize_name(name)
        if normalized:
            keys.append((kind, "name", normalized))
    return keys


class MergeEngine:
    """Merge partial extraction graphs."""

    def merge(self, partial_graphs: Iterable[ExtractionGraph]) -> MergeResult:
        """
        Merge partial graphs into one.

        Args:
            partial_graphs: Graphs in any order; they are processed by
                ``chunk_index`` (graphs without one last), ties by position

        Returns:
            MergeResult with the merged graph, field conflicts and stats
        """
        ordered = [graph for _, graph in sorted(enumerate(partial_graphs), key=_order_key)]
        stats = MergeStats(graphs_merged=len(ordered))

        occurrences: List[Tuple[Optional[int], BaseEntity]] = [
            (graph.chunk_index, entity) for graph in ordered for entity in graph.entities
        ]
        stats.entities_in = len(occurrences)

        groups = UnionFind()
        for position, (_, entity) in enumerate(occurrences):
            groups.union(("occurrence", position), *_entity_keys(entity))

        # group root -> occurrence positions, in first-occurrence order
        members: Dict[Any, List[int]] = {}
        for position in range(len(occurrences)):
            members.setdefault(groups[("occurrence", position)], []).append(position)

        merged = ExtractionGraph(chunk_index=self._min_chunk_index(ordered))
        conflicts: List[MergeConflict] = []
        id_map: Dict[str, Dict[EntityKind, str]] = {}
        name_map: Dict[str, Dict[EntityKind, str]] = {}

        for positions in members.values():
            survivor = occurrences[positions[0]][1].copy()
            for position in positions[1:]:
                chunk_index, other = occurrences[position]
                for field_name, kept, discarded in survivor.absorb(other):
                    conflicts.append(
                        MergeConflict(survivor.KIND, survivor.id, field_name, kept, discarded, chunk_index)
                    )
            merged.entities.append(survivor)

            for raw_id in [survivor.id] + survivor.aliases:
                id_map.setdefault(raw_id, {}).setdefault(survivor.KIND, survivor.id)
            for name in [survivor.name] + survivor.name_variants:
                normalized = normalize_name(name)
                if normalized:
                    name_map.setdefault(normalized, {}).setdefault(survivor.KIND, survivor.id)

        stats.entities_out = len(merged.entities)

        seen_inputs = set()
        for graph in ordered:
            for relationship in list(graph.relationships) + list(graph.unresolved):
                if relationship.key in seen_inputs:
                    continue
                seen_inputs.add(relationship.key)
                self._place_relationship(relationship, id_map, name_map, merged, stats)
        stats.edges_total = len(seen_inputs)

        if stats.edges_unresolved:
            logger.warning(
                f"Merge left {stats.edges_unresolved} of {stats.edges_total} relationships unresolved"
            )
        logger.info(
            f"Merged {stats.graphs_merged} graphs: {stats.entities_in} -> {stats.entities_out} entities, "
            f"{len(merged.relationships)} relationships, {len(conflicts)} field conflicts"
        )
        return MergeResult(graph=merged, conflicts=conflicts, stats=stats)

    @staticmethod
    def _min_chunk_index(graphs: List[ExtractionGraph]) -> Optional[int]:
        indexes = [g.chunk_index for g in graphs if g.chunk_index is not None]
        return min(indexes) if indexes else None

    @staticmethod
    def _resolve(
        raw_id: str,
        allowed: Iterable[EntityKind],
        id_map: Dict[str, Dict[EntityKind, str]],
        name_map: Dict[str, Dict[EntityKind, str]],
    ) -> Optional[str]:
        candidates = id_map.get(raw_id) or name_map.get(normalize_name(raw_id))
        if not candidates:
            return None
        if len(candidates) == 1:
            return next(iter(candidates.values()))
        # the same id under several kinds: prefer a kind the edge type accepts
        for kind in EntityKind:
            if kind in allowed and kind in candidates:
                return candidates[kind]
        return next(iter(candidates.values()))

    def _place_relationship(
        self,
        relationship: Relationship,
        id_map: Dict[str, Dict[EntityKind, str]],
        name_map: Dict[str, Dict[EntityKind, str]],
        merged: ExtractionGraph,
        stats: MergeStats,
    ) -> None:
        source_kinds, target_kinds = RELATIONSHIP_ENDPOINTS[relationship.type]
        source = self._resolve(relationship.source_id, source_kinds, id_map, name_map)
        target = self._resolve(relationship.target_id, target_kinds, id_map, name_map)

        if source is None or target is None:
            dangling = Relationship(
                relationship.type,
                source or relationship.source_id,
                target or relationship.target_id,
            )
            if dangling not in merged.unresolved:
                merged.unresolved.append(dangling)
            stats.edges_unresolved += 1
            return

        remapped = Relationship(relationship.type, source, target)
        if remapped not in merged.relationships:
            merged.relationships.append(remapped)
        if remapped == relationship:
            stats.edges_resolved += 1
        else:
            stats.edges_remapped += 1


# Global merge engine instance
merge_engine = MergeEngine()
