"""
Entity, Relationship and graph data models for requirements extraction.

Entities are a closed set of IRREB variants sharing ``id``, ``name`` and a
kind discriminant. Records exchanged with the model use the camelCase field
names of the wire format (``acceptanceCriteria``); attributes are snake_case.
Extracted separately to avoid circular imports.
"""

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Type

import networkx as nx

LIST_SPLIT_PATTERN = re.compile(r"\s*[;|]\s*")
_INTERNAL_FIELDS = ("id", "aliases", "name_variants")


class EntityKind(str, Enum):
    REQUIREMENT = "Requirement"
    ROLE = "Role"
    ENVIRONMENT = "Environment"
    BUSINESS = "Business"
    INFRASTRUCTURE = "Infrastructure"
    SOFTWARE_APPLICATION = "SoftwareApplication"

    @property
    def table_name(self) -> str:
        return _TABLE_NAMES[self]

    @property
    def id_prefix(self) -> str:
        return _ID_PREFIXES[self]


_TABLE_NAMES = {
    EntityKind.REQUIREMENT: "requirements",
    EntityKind.ROLE: "roles",
    EntityKind.ENVIRONMENT: "environments",
    EntityKind.BUSINESS: "businesses",
    EntityKind.INFRASTRUCTURE: "infrastructures",
    EntityKind.SOFTWARE_APPLICATION: "softwareApplications",
}

_ID_PREFIXES = {
    EntityKind.REQUIREMENT: "REQ",
    EntityKind.ROLE: "ROLE",
    EntityKind.ENVIRONMENT: "ENV",
    EntityKind.BUSINESS: "BIZ",
    EntityKind.INFRASTRUCTURE: "INFRA",
    EntityKind.SOFTWARE_APPLICATION: "SW",
}

RELATIONSHIPS_TABLE = "relationships"


def normalize_name(name: Optional[str]) -> str:
    """Case-fold, trim and collapse internal whitespace."""
    return re.sub(r"\s+", " ", (name or "").strip()).casefold()


def table_key(name: str) -> str:
    """Key used to match table and field names regardless of case and separators."""
    return re.sub(r"[\s_\-]", "", name or "").lower()


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [str(v).strip() for v in value]
    else:
        items = LIST_SPLIT_PATTERN.split(str(value).strip())
    return unique([item for item in items if item])


def unique(items: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


@dataclass
class BaseEntity:
    """Fields shared by every entity variant."""

    id: str
    name: str = ""
    aliases: List[str] = field(default_factory=list)
    name_variants: List[str] = field(default_factory=list)

    KIND: ClassVar[EntityKind]
    # normalized allowed values per scalar field; unknown values fall back
    ALLOWED_VALUES: ClassVar[Dict[str, Dict[str, str]]] = {}
    FALLBACK_VALUES: ClassVar[Dict[str, str]] = {}

    @property
    def kind(self) -> EntityKind:
        return self.KIND

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    @property
    def key(self) -> Tuple[EntityKind, str]:
        return (self.KIND, self.id)

    @classmethod
    def attribute_names(cls) -> List[str]:
        return [f.name for f in fields(cls) if f.name not in _INTERNAL_FIELDS]

    @classmethod
    def list_fields(cls) -> List[str]:
        return [
            f.name for f in fields(cls)
            if f.name not in _INTERNAL_FIELDS and f.default_factory is list
        ]

    @classmethod
    def scalar_fields(cls) -> List[str]:
        list_fields = set(cls.list_fields())
        return [name for name in cls.attribute_names() if name not in list_fields]

    @classmethod
    def record_fields(cls) -> List[str]:
        """Wire field order: id first, then attributes in declaration order."""
        return ["id"] + [to_camel(name) for name in cls.attribute_names()]

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"id": self.id}
        for name in self.attribute_names():
            record[to_camel(name)] = getattr(self, name)
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Tuple["BaseEntity", List[str]]:
        """Build an entity from a decoded record.

        Returns the entity and a list of field warnings. The caller is
        responsible for supplying an id when the record has none.
        """
        by_key = {table_key(k): v for k, v in record.items()}
        warnings: List[str] = []
        values: Dict[str, Any] = {"id": str(by_key.get("id") or "").strip()}
        list_fields = set(cls.list_fields())
        for name in cls.attribute_names():
            raw = by_key.get(table_key(name))
            if name in list_fields:
                values[name] = split_list(raw)
                continue
            text = "" if raw is None else str(raw).strip()
            allowed = cls.ALLOWED_VALUES.get(name)
            if text and allowed is not None:
                normalized = allowed.get(table_key(text))
                if normalized is None:
                    warnings.append(
                        f"{cls.KIND.value} '{values['id'] or text}': unknown {name} '{text}'"
                    )
                    text = cls.FALLBACK_VALUES.get(name, "")
                else:
                    text = normalized
            values[name] = text
        return cls(**values), warnings

    def absorb(self, other: "BaseEntity") -> List[Tuple[str, str, str]]:
        """Fold ``other`` into this entity.

        Empty scalar fields take the other value, list fields are unioned and
        the other id and name are kept as aliases. Returns
        ``(field, kept, discarded)`` for every scalar disagreement.
        """
        conflicts = []
        for name in self.scalar_fields():
            mine, theirs = getattr(self, name), getattr(other, name)
            if not theirs:
                continue
            if not mine:
                setattr(self, name, theirs)
            elif mine != theirs and not (name == "name" and normalize_name(mine) == normalize_name(theirs)):
                conflicts.append((name, mine, theirs))
        for name in self.list_fields():
            setattr(self, name, unique(getattr(self, name) + getattr(other, name)))

        self.aliases = unique(
            [a for a in self.aliases + [other.id] + other.aliases if a and a != self.id]
        )
        variants = [other.name] + other.name_variants
        self.name_variants = unique(
            [v for v in self.name_variants + variants
             if v and normalize_name(v) != self.normalized_name]
        )
        return conflicts

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.KIND.value}
        data.update(self.to_record())
        data["aliases"] = list(self.aliases)
        data["nameVariants"] = list(self.name_variants)
        return data

    def copy(self) -> "BaseEntity":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for name, value in values.items():
            if isinstance(value, list):
                values[name] = list(value)
        return type(self)(**values)


def _choices(*values: str) -> Dict[str, str]:
    return {table_key(v): v for v in values}


@dataclass
class Requirement(BaseEntity):
    KIND: ClassVar[EntityKind] = EntityKind.REQUIREMENT
    ALLOWED_VALUES: ClassVar[Dict[str, Dict[str, str]]] = {
        "type": _choices("functional", "non-functional", "constraint"),
        "priority": _choices("low", "medium", "high", "critical"),
    }
    FALLBACK_VALUES: ClassVar[Dict[str, str]] = {"type": "functional", "priority": "medium"}

    description: str = ""
    type: str = ""
    priority: str = ""
    status: str = ""
    source: str = ""
    rationale: str = ""
    acceptance_criteria: str = ""
    dependencies: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)


@dataclass
class Role(BaseEntity):
    KIND: ClassVar[EntityKind] = EntityKind.ROLE

    description: str = ""
    department: str = ""
    level: str = ""
    responsibilities: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)
    interests: List[str] = field(default_factory=list)


@dataclass
class Environment(BaseEntity):
    KIND: ClassVar[EntityKind] = EntityKind.ENVIRONMENT

    type: str = ""
    description: str = ""
    location: str = ""
    constraints: List[str] = field(default_factory=list)
    specifications: List[str] = field(default_factory=list)
    availability: List[str] = field(default_factory=list)
    security_requirements: List[str] = field(default_factory=list)


@dataclass
class Business(BaseEntity):
    KIND: ClassVar[EntityKind] = EntityKind.BUSINESS

    goal: str = ""
    objective: str = ""
    business_case: str = ""
    roi: str = ""
    timeframe: str = ""
    kpis: List[str] = field(default_factory=list)
    success_criteria: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)


@dataclass
class Infrastructure(BaseEntity):
    KIND: ClassVar[EntityKind] = EntityKind.INFRASTRUCTURE

    type: str = ""
    description: str = ""
    provider: str = ""
    location: str = ""
    capacity: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    specifications: List[str] = field(default_factory=list)
    scalability: List[str] = field(default_factory=list)
    redundancy: List[str] = field(default_factory=list)


@dataclass
class SoftwareApplication(BaseEntity):
    KIND: ClassVar[EntityKind] = EntityKind.SOFTWARE_APPLICATION

    version: str = ""
    description: str = ""
    operating_system: str = ""
    category: str = ""
    download_url: str = ""
    license: str = ""
    release_date: str = ""
    features: List[str] = field(default_factory=list)
    software_requirements: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


ENTITY_TYPES: Dict[EntityKind, Type[BaseEntity]] = {
    EntityKind.REQUIREMENT: Requirement,
    EntityKind.ROLE: Role,
    EntityKind.ENVIRONMENT: Environment,
    EntityKind.BUSINESS: Business,
    EntityKind.INFRASTRUCTURE: Infrastructure,
    EntityKind.SOFTWARE_APPLICATION: SoftwareApplication,
}

# table_key(table name or kind) -> kind; accepts "softwareApplications",
# "software_applications", "SoftwareApplication", ...
TABLE_KINDS: Dict[str, EntityKind] = {}
for _kind in EntityKind:
    TABLE_KINDS[table_key(_kind.table_name)] = _kind
    TABLE_KINDS[table_key(_kind.value)] = _kind


def entity_from_dict(data: Mapping[str, Any]) -> BaseEntity:
    kind = EntityKind(data["kind"])
    entity, _ = ENTITY_TYPES[kind].from_record(data)
    entity.aliases = list(data.get("aliases") or [])
    entity.name_variants = list(data.get("nameVariants") or [])
    return entity


class RelationshipType(str, Enum):
    OWNED_BY = "OWNED_BY"
    APPLIES_TO = "APPLIES_TO"
    SUPPORTS = "SUPPORTS"
    DEPENDS_ON = "DEPENDS_ON"
    USES_SOFTWARE = "USES_SOFTWARE"
    RELATES_TO = "RELATES_TO"
    REFINES = "REFINES"
    CONFLICTS_WITH = "CONFLICTS_WITH"


_ANY_KIND = frozenset(EntityKind)
_REQ = frozenset({EntityKind.REQUIREMENT})

# (allowed source kinds, allowed target kinds)
RELATIONSHIP_ENDPOINTS: Dict[RelationshipType, Tuple[FrozenSet[EntityKind], FrozenSet[EntityKind]]] = {
    RelationshipType.OWNED_BY: (_REQ, frozenset({EntityKind.ROLE})),
    RelationshipType.APPLIES_TO: (_REQ, frozenset({EntityKind.ENVIRONMENT})),
    RelationshipType.SUPPORTS: (_REQ, frozenset({EntityKind.BUSINESS})),
    RelationshipType.DEPENDS_ON: (
        _ANY_KIND,
        frozenset({EntityKind.INFRASTRUCTURE, EntityKind.REQUIREMENT, EntityKind.SOFTWARE_APPLICATION}),
    ),
    RelationshipType.USES_SOFTWARE: (_ANY_KIND, frozenset({EntityKind.SOFTWARE_APPLICATION})),
    RelationshipType.RELATES_TO: (_ANY_KIND, _ANY_KIND),
    RelationshipType.REFINES: (_REQ, _REQ),
    RelationshipType.CONFLICTS_WITH: (_REQ, _REQ),
}


def normalize_relationship_type(value: Any) -> Optional[RelationshipType]:
    """Map free-form type text (``"owned by"``, ``"Depends-On"``) to the vocabulary."""
    text = re.sub(r"[\s\-]+", "_", str(value or "").strip()).upper()
    try:
        return RelationshipType(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class Relationship:
    """Directed, typed edge identified by (type, source_id, target_id)."""

    type: RelationshipType
    source_id: str
    target_id: str

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.type.value, self.source_id, self.target_id)

    def to_record(self) -> Dict[str, str]:
        return {"type": self.type.value, "source": self.source_id, "target": self.target_id}

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Relationship":
        """Raises ValueError for unknown types or missing endpoints."""
        by_key = {table_key(k): v for k, v in record.items()}
        rel_type = normalize_relationship_type(by_key.get("type"))
        if rel_type is None:
            raise ValueError(f"unknown relationship type '{by_key.get('type')}'")
        source = str(by_key.get("source") or by_key.get("sourceid") or "").strip()
        target = str(by_key.get("target") or by_key.get("targetid") or "").strip()
        if not source or not target:
            raise ValueError(f"{rel_type.value} relationship without source or target")
        return cls(rel_type, source, target)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ExtractionGraph:
    """Entities and relationships extracted from one chunk or merged from many."""

    entities: List[BaseEntity] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    unresolved: List[Relationship] = field(default_factory=list)
    chunk_index: Optional[int] = None
    extracted_at: str = field(default_factory=_now_iso)

    def get(self, kind: EntityKind, entity_id: str) -> Optional[BaseEntity]:
        for entity in self.entities:
            if entity.KIND == kind and entity.id == entity_id:
                return entity
        return None

    def entities_of(self, kind: EntityKind) -> List[BaseEntity]:
        return [e for e in self.entities if e.KIND == kind]

    def entity_ids(self) -> set:
        return {e.id for e in self.entities}

    def add_entity(self, entity: BaseEntity) -> List[Tuple[str, str, str]]:
        """Add an entity; a second entity with the same (kind, id) is folded
        into the first. Returns the scalar conflicts of that fold."""
        existing = self.get(entity.KIND, entity.id)
        if existing is None:
            self.entities.append(entity)
            return []
        return existing.absorb(entity)

    def add_relationship(self, relationship: Relationship) -> bool:
        """Add an edge to the resolved set when both endpoints are present,
        otherwise to ``unresolved``. Returns True when it resolved."""
        ids = self.entity_ids()
        resolved = relationship.source_id in ids and relationship.target_id in ids
        bucket = self.relationships if resolved else self.unresolved
        if relationship not in bucket:
            bucket.append(relationship)
        return resolved

    @property
    def metadata(self) -> Dict[str, Any]:
        counts = {kind.table_name: len(self.entities_of(kind)) for kind in EntityKind}
        return {
            "extractedAt": self.extracted_at,
            "chunkIndex": self.chunk_index,
            "counts": counts,
            "totalEntities": len(self.entities),
            "totalRelationships": len(self.relationships),
            "totalUnresolved": len(self.unresolved),
        }

    def to_tables(self) -> Dict[str, List[Dict[str, Any]]]:
        """Tables keyed by wire table name, as consumed by the TOON codec."""
        tables: Dict[str, List[Dict[str, Any]]] = {}
        for kind in EntityKind:
            entities = self.entities_of(kind)
            if entities:
                tables[kind.table_name] = [e.to_record() for e in entities]
        if self.relationships:
            tables[RELATIONSHIPS_TABLE] = [r.to_record() for r in self.relationships]
        return tables

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entities": [e.to_dict() for e in self.entities],
            "relationships": [r.to_record() for r in self.relationships],
            "unresolved": [r.to_record() for r in self.unresolved],
            "chunkIndex": self.chunk_index,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExtractionGraph":
        metadata = data.get("metadata") or {}
        return cls(
            entities=[entity_from_dict(e) for e in data.get("entities", [])],
            relationships=[Relationship.from_record(r) for r in data.get("relationships", [])],
            unresolved=[Relationship.from_record(r) for r in data.get("unresolved", [])],
            chunk_index=data.get("chunkIndex"),
            extracted_at=metadata.get("extractedAt") or _now_iso(),
        )

    def to_networkx(self) -> nx.MultiDiGraph:
        """Resolved part of the graph as a NetworkX multigraph keyed by entity id."""
        graph = nx.MultiDiGraph()
        for entity in self.entities:
            graph.add_node(entity.id, kind=entity.KIND.value, **entity.to_record())
        for rel in self.relationships:
            graph.add_edge(rel.source_id, rel.target_id, key=rel.type.value, type=rel.type.value)
        return graph
