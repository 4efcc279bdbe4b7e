"""
Tests for the merge engine (entity_graph.py).
"""

from core.entity_graph import MergeConflict, MergeEngine
from core.entity_models import (
    EntityKind,
    ExtractionGraph,
    Relationship,
    RelationshipType,
    Requirement,
    Role,
)

OWNED_BY = RelationshipType.OWNED_BY


def _graph(chunk_index, entities, relationships=()):
    graph = ExtractionGraph(chunk_index=chunk_index)
    for entity in entities:
        graph.add_entity(entity)
    for rel_type, source, target in relationships:
        graph.add_relationship(Relationship(rel_type, source, target))
    return graph


def _login_chunks():
    first = _graph(
        0,
        [Requirement(id="r1", name="Login", priority="high")],
        [(OWNED_BY, "r1", "role-x")],
    )
    second = _graph(
        1,
        [Requirement(id="r2", name="login", priority="low", tags=["auth"]), Role(id="role-x", name="Admin")],
    )
    return first, second


def _summary(graph):
    return (
        sorted((e.KIND.value, e.id) for e in graph.entities),
        sorted(r.key for r in graph.relationships),
        sorted(r.key for r in graph.unresolved),
    )


class TestMergeEntities:
    def test_same_name_merges_across_chunks(self):
        result = MergeEngine().merge(_login_chunks())
        graph = result.graph

        requirements = graph.entities_of(EntityKind.REQUIREMENT)
        assert len(requirements) == 1
        survivor = requirements[0]
        assert survivor.id == "r1"
        assert survivor.aliases == ["r2"]
        assert survivor.priority == "high"
        assert survivor.tags == ["auth"]
        assert len(graph.entities_of(EntityKind.ROLE)) == 1

    def test_dangling_edge_resolves_after_merge(self):
        result = MergeEngine().merge(_login_chunks())
        assert [r.key for r in result.graph.relationships] == [("OWNED_BY", "r1", "role-x")]
        assert result.graph.unresolved == []
        assert result.stats.edges_total == 1
        assert result.stats.edges_resolved == 1
        assert result.stats.edges_unresolved == 0

    def test_conflicts_are_reported(self):
        result = MergeEngine().merge(_login_chunks())
        assert result.conflicts == [
            MergeConflict(EntityKind.REQUIREMENT, "r1", "priority", "high", "low", 1)
        ]

    def test_stats(self):
        stats = MergeEngine().merge(_login_chunks()).stats
        assert stats.graphs_merged == 2
        assert stats.entities_in == 3
        assert stats.entities_out == 2

    def test_survivor_follows_chunk_order_not_input_order(self):
        first, second = _login_chunks()
        result = MergeEngine().merge([second, first])
        assert result.graph.entities_of(EntityKind.REQUIREMENT)[0].id == "r1"
        assert result.graph.chunk_index == 0

    def test_inputs_are_not_modified(self):
        first, second = _login_chunks()
        MergeEngine().merge([first, second])
        assert first.entities[0].aliases == []
        assert second.entities[0].priority == "low"

    def test_different_kinds_never_merge(self):
        graph = _graph(0, [Requirement(id="X-1", name="Audit"), Role(id="X-1", name="Audit")])
        result = MergeEngine().merge([graph])
        assert len(result.graph.entities) == 2

    def test_empty_input(self):
        result = MergeEngine().merge([])
        assert result.graph.entities == []
        assert result.graph.chunk_index is None
        assert result.stats.graphs_merged == 0


class TestMergeRelationships:
    def test_edges_are_remapped_to_survivors(self):
        first, second = _login_chunks()
        second.add_relationship(Relationship(OWNED_BY, "r2", "role-x"))
        result = MergeEngine().merge([first, second])

        assert [r.key for r in result.graph.relationships] == [("OWNED_BY", "r1", "role-x")]
        assert result.stats.edges_total == 2
        assert result.stats.edges_resolved == 1
        assert result.stats.edges_remapped == 1

    def test_unresolved_edges_are_kept(self):
        first, second = _login_chunks()
        second.add_relationship(Relationship(RelationshipType.SUPPORTS, "r2", "biz-9"))
        result = MergeEngine().merge([first, second])

        assert [r.key for r in result.graph.unresolved] == [("SUPPORTS", "r1", "biz-9")]
        assert result.stats.edges_unresolved == 1
        stats = result.stats
        assert stats.edges_total == stats.edges_resolved + stats.edges_remapped + stats.edges_unresolved

    def test_duplicate_edges_collapse(self):
        graphs = [
            _graph(i, [Requirement(id="r1", name="Login"), Role(id="role-x", name="Admin")], [(OWNED_BY, "r1", "role-x")])
            for i in range(3)
        ]
        result = MergeEngine().merge(graphs)
        assert len(result.graph.relationships) == 1
        assert result.stats.edges_total == 1

    def test_id_shared_by_two_kinds_resolves_by_edge_type(self):
        first = _graph(0, [Requirement(id="R-0", name="Audit"), Requirement(id="R-5", name="Trace")])
        second = _graph(
            1,
            [Requirement(id="X-1", name="audit"), Role(id="X-1", name="Auditor")],
            [(OWNED_BY, "R-0", "X-1"), (RelationshipType.REFINES, "R-5", "X-1")],
        )
        result = MergeEngine().merge([first, second])

        keys = sorted(r.key for r in result.graph.relationships)
        assert keys == [("OWNED_BY", "R-0", "X-1"), ("REFINES", "R-5", "R-0")]

    def test_endpoint_given_as_name(self):
        first = _graph(0, [Requirement(id="r1", name="Login")], [(OWNED_BY, "r1", "Admin")])
        second = _graph(1, [Role(id="role-x", name="Admin")])
        result = MergeEngine().merge([first, second])
        assert [r.key for r in result.graph.relationships] == [("OWNED_BY", "r1", "role-x")]


class TestMergeAlgebra:
    def _chunks(self):
        first, second = _login_chunks()
        third = _graph(
            2,
            [Requirement(id="r3", name="LOGIN "), Role(id="role-y", name="Auditor")],
            [(RelationshipType.RELATES_TO, "r3", "role-y"), (OWNED_BY, "r2", "role-y")],
        )
        return [first, second, third]

    def test_merge_is_associative(self):
        engine = MergeEngine()
        a, b, c = self._chunks()
        all_at_once = engine.merge([a, b, c]).graph

        a, b, c = self._chunks()
        left = engine.merge([engine.merge([a, b]).graph, c]).graph

        a, b, c = self._chunks()
        right = engine.merge([a, engine.merge([b, c]).graph]).graph

        assert _summary(all_at_once) == _summary(left) == _summary(right)

    def test_merge_is_idempotent(self):
        engine = MergeEngine()
        once = engine.merge(self._chunks()).graph
        twice = engine.merge([once]).graph
        assert _summary(once) == _summary(twice)
