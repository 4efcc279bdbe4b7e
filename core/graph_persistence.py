"""
Graph persistence collaborators.

Writes are idempotent: entities are merged by (label, id) and relationships by
(type, source id, target id), so persisting the same graph twice leaves the
store unchanged.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from neo4j import Driver, GraphDatabase
from neo4j.exceptions import ConstraintError, DriverError, Neo4jError, ServiceUnavailable, SessionExpired

from config.settings import settings
from core.entity_models import BaseEntity, EntityKind, Relationship, RelationshipType
from core.exceptions import ConstraintViolationError, PersistenceError, PersistenceUnavailableError

logger = logging.getLogger(__name__)

# Label shared by every extracted node, used to match relationship endpoints
ENTITY_LABEL = "Entity"


@runtime_checkable
class GraphPersistence(Protocol):
    def merge_entities(self, entities: Sequence[BaseEntity], project_name: str = "") -> int:
        """Upsert entities by id; returns the number written."""
        ...

    def merge_relationships(self, relationships: Sequence[Relationship], project_name: str = "") -> int:
        """Upsert relationships by (type, source, target); returns the number written."""
        ...


def entity_properties(entity: BaseEntity, project_name: str = "") -> Dict[str, Any]:
    properties = entity.to_record()
    properties["aliases"] = list(entity.aliases)
    properties["nameVariants"] = list(entity.name_variants)
    if project_name:
        properties["project"] = project_name
    return properties


class Neo4jGraphPersistence:
    """Persist graphs into Neo4j with batched ``UNWIND ... MERGE`` queries."""

    def __init__(
        self,
        driver: Optional[Driver] = None,
        uri: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        database: Optional[str] = None,
    ):
        self.driver = driver or GraphDatabase.driver(
            uri or settings.neo4j_uri,
            auth=(username or settings.neo4j_username, password or settings.neo4j_password),
        )
        self.database = database

    def close(self) -> None:
        if self.driver:
            self.driver.close()
            logger.info("Neo4j connection closed")

    def _run(self, query: str, params: Dict[str, Any]) -> int:
        try:
            with self.driver.session(database=self.database) as session:
                record = session.run(query, params).single()
        except ConstraintError as e:
            raise ConstraintViolationError(f"Neo4j constraint violated: {e}") from e
        except (ServiceUnavailable, SessionExpired) as e:
            raise PersistenceUnavailableError(f"Neo4j unavailable: {e}") from e
        except (Neo4jError, DriverError) as e:
            raise PersistenceError(f"Neo4j write failed: {e}") from e
        return int(record["count"]) if record is not None else 0

    @staticmethod
    def entity_query(kind: EntityKind) -> str:
        return f"""
        UNWIND $entities AS entity
        MERGE (e:{ENTITY_LABEL}:{kind.value} {{id: entity.id}})
        ON CREATE SET e.created_at = datetime()
        SET e += entity
        RETURN count(e) AS count
        """

    @staticmethod
    def relationship_query(rel_type: RelationshipType) -> str:
        return f"""
        UNWIND $relationships AS rel
        MATCH (source:{ENTITY_LABEL} {{id: rel.source}})
        MATCH (target:{ENTITY_LABEL} {{id: rel.target}})
        MERGE (source)-[r:{rel_type.value}]->(target)
        ON CREATE SET r.created_at = datetime()
        SET r.project = rel.project
        RETURN count(r) AS count
        """

    def ensure_constraints(self) -> None:
        """Create one uniqueness constraint on ``id`` per entity label."""
        for kind in EntityKind:
            self._run(
                f"CREATE CONSTRAINT {kind.value.lower()}_id IF NOT EXISTS "
                f"FOR (e:{kind.value}) REQUIRE e.id IS UNIQUE",
                {},
            )

    def merge_entities(self, entities: Sequence[BaseEntity], project_name: str = "") -> int:
        by_kind: Dict[EntityKind, List[Dict[str, Any]]] = defaultdict(list)
        for entity in entities:
            by_kind[entity.KIND].append(entity_properties(entity, project_name))

        written = 0
        for kind, rows in by_kind.items():
            written += self._run(self.entity_query(kind), {"entities": rows})
        logger.info(f"Merged {written} entities into Neo4j ({len(by_kind)} labels)")
        return written

    def merge_relationships(self, relationships: Sequence[Relationship], project_name: str = "") -> int:
        by_type: Dict[RelationshipType, List[Dict[str, Any]]] = defaultdict(list)
        for relationship in relationships:
            row = relationship.to_record()
            row["project"] = project_name
            by_type[relationship.type].append(row)

        written = 0
        for rel_type, rows in by_type.items():
            written += self._run(self.relationship_query(rel_type), {"relationships": rows})
        logger.info(f"Merged {written} relationships into Neo4j ({len(by_type)} types)")
        return written


class InMemoryGraphPersistence:
    """Dictionary-backed persistence for development and tests."""

    def __init__(self):
        self.nodes: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.edges: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def merge_entities(self, entities: Sequence[BaseEntity], project_name: str = "") -> int:
        with self._lock:
            for entity in entities:
                key = (entity.KIND.value, entity.id)
                self.nodes.setdefault(key, {}).update(entity_properties(entity, project_name))
        return len(entities)

    def merge_relationships(self, relationships: Sequence[Relationship], project_name: str = "") -> int:
        written = 0
        with self._lock:
            known_ids = {node_id for _, node_id in self.nodes}
            for relationship in relationships:
                # MATCH semantics: edges need both endpoints stored
                if relationship.source_id not in known_ids or relationship.target_id not in known_ids:
                    continue
                self.edges[relationship.key] = {"project": project_name}
                written += 1
        return written
