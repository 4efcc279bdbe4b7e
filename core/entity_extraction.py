"""
Per-chunk requirements extraction: prompt construction, model invocation with
retries, decoding and mapping of decoded tables onto the entity model.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from config.settings import ExtractionOptions, settings
from core.chunking import Chunk
from core.entity_models import (
    ENTITY_TYPES,
    RELATIONSHIPS_TABLE,
    TABLE_KINDS,
    EntityKind,
    ExtractionGraph,
    Relationship,
    RelationshipType,
    normalize_name,
    table_key,
)
from core.exceptions import ErrorKind, TransientExternalError
from core.id_generator import IdGenerator
from core.toon_codec import ToonCodec, encode, encode_tables, toon_codec
from core.token_counter import TokenEstimatorRegistry, token_estimator

logger = logging.getLogger(__name__)


async def retry_async(
    call: Callable[[], Awaitable[Any]],
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    max_delay: Optional[float] = None,
    description: str = "call",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
):
    """
    Await ``call()`` and retry it with exponential backoff on transient failures.

    Only ``TransientExternalError`` is retried; anything else propagates on the
    first attempt.

    Args:
        call: Zero-argument coroutine factory
        max_retries: Maximum number of retry attempts
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds (before jitter)
        description: Label used in log messages
        sleep: Awaitable sleep, replaceable in tests
    """
    max_retries = settings.llm_max_retries if max_retries is None else max_retries
    base_delay = settings.llm_retry_base_delay if base_delay is None else base_delay
    max_delay = settings.llm_retry_max_delay if max_delay is None else max_delay

    for attempt in range(max_retries + 1):
        try:
            return await call()
        except TransientExternalError as e:
            if attempt == max_retries:
                logger.error(f"Max retries ({max_retries}) exceeded for {description}")
                raise
            logger.warning(
                f"{type(e).__name__} in {description}, attempt {attempt + 1}/{max_retries}: {e}"
            )
            delay = min(base_delay * (2**attempt), max_delay)
            jitter = random.uniform(0.2, 0.5) * delay  # 20-50% jitter
            total_delay = delay + jitter
            logger.info(f"Retrying in {total_delay:.2f} seconds...")
            await sleep(total_delay)


EXAMPLE_TABLES: Dict[str, List[Dict[str, Any]]] = {
    "requirements": [
        {
            "id": "REQ-001",
            "name": "User Authentication",
            "type": "functional",
            "priority": "critical",
            "status": "approved",
            "source": "Security Doc v2.1",
        },
        {
            "id": "REQ-002",
            "name": "Data Encryption",
            "type": "non-functional",
            "priority": "high",
            "status": "draft",
            "source": "Compliance Requirements",
        },
    ],
    "roles": [
        {
            "id": "ROLE-001",
            "name": "Security Officer",
            "level": "manager",
            "responsibilities": ["Security", "Compliance", "Data Protection"],
        },
    ],
    "relationships": [
        {"type": "OWNED_BY", "source": "REQ-001", "target": "ROLE-001"},
        {"type": "OWNED_BY", "source": "REQ-002", "target": "ROLE-001"},
    ],
}

RELATIONSHIP_FIELDS = ["type", "source", "target"]


class PromptBuilder:
    """Builds the system prompt and the per-chunk extraction prompt."""

    def system_prompt(self) -> str:
        relationship_lines = "\n".join(
            f"   - {rel_type.value}" for rel_type in RelationshipType
        )
        return f"""You are an expert in requirements engineering following the IREB/IRREB standard.

Your task is to extract structured requirements from documents and return them in TOON format.

TOON (Token-Oriented Object Notation) is compact and tabular:
- Header: name[N]{{field1,field2}}: followed by N data rows
- Data rows are indented by 2 spaces
- Values are comma-separated in header order
- Quote a value only when it contains a comma, a quote or a line break
- Separate list values inside a cell with ;

IMPORTANT:
1. Use IRREB categories for requirements
2. Identify every relevant entity: requirements, roles, environments, business context, infrastructure, software
3. Connect entities with these relationship types:
{relationship_lines}
4. Answer ONLY with TOON tables inside a ```toon code block
5. Give every entity a unique id
6. [N] must equal the number of rows
"""

    def example_block(self) -> str:
        return encode_tables(EXAMPLE_TABLES)

    def expected_headers(self) -> str:
        headers = [
            encode(kind.table_name, ENTITY_TYPES[kind].record_fields(), []).replace("[0]", "[N]")
            for kind in EntityKind
        ]
        headers.append(encode(RELATIONSHIPS_TABLE, RELATIONSHIP_FIELDS, []).replace("[0]", "[N]"))
        return "\n".join(headers)

    def build_chunk_prompt(self, text: str, chunk_index: int = 0, total_chunks: int = 1) -> str:
        """
        Build the extraction prompt for one chunk.

        Args:
            text: Chunk text
            chunk_index: Zero-based chunk index
            total_chunks: Number of chunks in the document

        Returns:
            Prompt text; documents with several chunks get a note with the part
            number and a per-part id scheme.
        """
        prompt = f"""Analyse the following text and extract all requirements following the IRREB standard.

Return the result in TOON format.

**TOON example:**
```toon
{self.example_block()}
```

**Expected tables** (fill in N, omit tables without rows):
```toon
{self.expected_headers()}
```

**TEXT TO ANALYSE:**

{text}

**IMPORTANT:**
- Answer ONLY with TOON tables inside a ```toon code block
- [N] must equal the number of rows
- Indent data rows by 2 spaces
- No explanations outside the code block
"""
        if total_chunks > 1:
            part = chunk_index + 1
            prompt += (
                f"\nNOTE: This is part {part} of {total_chunks} of a larger document.\n"
                f"Extract ONLY the requirements in this part.\n"
                f"Use unique ids of the form REQ-{part}XX (e.g. REQ-{part}01, REQ-{part}02 for part {part}).\n"
            )
        return prompt


def _resolve_endpoint(value: str, ids: set, names: Dict[str, str]) -> str:
    """Map an endpoint to an entity id of the chunk; names are accepted too."""
    if value in ids:
        return value
    return names.get(normalize_name(value), value)


def records_to_graph(
    tables: Mapping[str, Sequence[Mapping[str, Any]]],
    chunk_index: Optional[int] = None,
    id_generator: Optional[IdGenerator] = None,
) -> Tuple[ExtractionGraph, List[Tuple[ErrorKind, str]]]:
    """
    Map decoded tables onto a partial graph.

    Table names are matched ignoring case and separators. Rows without an id
    get a generated one; rows with neither id nor name are skipped. Relationship
    endpoints may be ids or names of entities in the same tables; edges whose
    endpoints are not in the tables are kept as unresolved.

    Returns:
        (graph, warnings) where each warning is an (ErrorKind, message) pair;
        fields given twice with different values for one id are MERGE_CONFLICT,
        everything else DECODE_FAILURE.
    """
    id_generator = id_generator or IdGenerator()
    graph = ExtractionGraph(chunk_index=chunk_index)
    warnings: List[Tuple[ErrorKind, str]] = []
    relationship_rows: List[Mapping[str, Any]] = []
    relationships_key = table_key(RELATIONSHIPS_TABLE)

    for table_name, rows in tables.items():
        key = table_key(table_name)
        if key in (relationships_key, "relationship", "edges"):
            relationship_rows.extend(rows)
            continue
        kind = TABLE_KINDS.get(key)
        if kind is None:
            message = f"Ignoring unknown table '{table_name}' ({len(rows)} rows)"
            warnings.append((ErrorKind.DECODE_FAILURE, message))
            continue

        entity_type = ENTITY_TYPES[kind]
        for position, row in enumerate(rows, start=1):
            entity, field_warnings = entity_type.from_record(row)
            warnings.extend((ErrorKind.DECODE_FAILURE, w) for w in field_warnings)
            if not entity.id and not entity.name:
                message = f"{table_name} row {position}: skipped, no id or name"
                warnings.append((ErrorKind.DECODE_FAILURE, message))
                continue
            if not entity.id:
                entity.id = id_generator.generate(kind, entity.name)
            for field_name, kept, discarded in graph.add_entity(entity):
                warnings.append((
                    ErrorKind.MERGE_CONFLICT,
                    f"{kind.value} '{entity.id}' listed twice with different {field_name}: "
                    f"kept '{kept}', ignored '{discarded}'",
                ))

    ids = graph.entity_ids()
    names: Dict[str, str] = {}
    for entity in graph.entities:
        if entity.normalized_name:
            names.setdefault(entity.normalized_name, entity.id)

    for position, row in enumerate(relationship_rows, start=1):
        try:
            relationship = Relationship.from_record(row)
        except ValueError as e:
            warnings.append((ErrorKind.DECODE_FAILURE, f"relationships row {position}: {e}"))
            continue
        relationship = Relationship(
            relationship.type,
            _resolve_endpoint(relationship.source_id, ids, names),
            _resolve_endpoint(relationship.target_id, ids, names),
        )
        if not graph.add_relationship(relationship):
            logger.debug(
                f"Chunk {chunk_index}: {relationship.type.value} "
                f"{relationship.source_id}->{relationship.target_id} left unresolved"
            )

    return graph, warnings


@dataclass
class ChunkExtraction:
    """Outcome of extracting one chunk."""

    chunk_index: int
    graph: ExtractionGraph
    warnings: List[Tuple[ErrorKind, str]] = field(default_factory=list)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    used_fallback: bool = False


class ChunkExtractor:
    """Runs prompt -> model -> decode -> record mapping for single chunks."""

    def __init__(
        self,
        model_service,
        prompt_builder: Optional[PromptBuilder] = None,
        codec: Optional[ToonCodec] = None,
        registry: Optional[TokenEstimatorRegistry] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.model_service = model_service
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.codec = codec or toon_codec
        self.registry = registry or token_estimator
        self.sleep = sleep

    async def extract(
        self,
        chunk: Chunk,
        total_chunks: int,
        options: ExtractionOptions,
        id_generator: Optional[IdGenerator] = None,
    ) -> ChunkExtraction:
        """
        Extract a partial graph from one chunk.

        Transient model failures are retried; decode failures are not.

        Raises:
            TransientExternalError: retries exhausted
            InvalidModelError: the model service rejected the model
            DecodeError: the response could not be decoded
        """
        system_prompt = self.prompt_builder.system_prompt()
        prompt = self.prompt_builder.build_chunk_prompt(chunk.text, chunk.index, total_chunks)
        invoke_options = {
            "system": system_prompt,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        loop = asyncio.get_running_loop()

        async def _invoke():
            return await loop.run_in_executor(
                None,
                functools.partial(self.model_service.invoke, prompt, options.model, invoke_options),
            )

        logger.debug(f"Prompting chunk {chunk.index + 1}/{total_chunks} ({chunk.token_count} tokens)")
        response = await retry_async(
            _invoke,
            max_retries=options.max_retries,
            base_delay=options.retry_base_delay,
            max_delay=options.retry_max_delay,
            description=f"chunk {chunk.index}",
            sleep=self.sleep,
        )

        decoded = self.codec.decode(response)
        graph, warnings = records_to_graph(decoded.tables, chunk.index, id_generator)
        warnings = [(ErrorKind.DECODE_FAILURE, w) for w in decoded.warnings] + warnings
        if decoded.used_fallback:
            warnings.insert(0, (ErrorKind.DECODE_FAILURE, "response was not TOON; decoded as JSON"))

        estimator = self.registry.resolve(options.model)
        result = ChunkExtraction(
            chunk_index=chunk.index,
            graph=graph,
            warnings=warnings,
            prompt_tokens=estimator.count(system_prompt) + estimator.count(prompt),
            completion_tokens=estimator.count(response),
            used_fallback=decoded.used_fallback,
        )
        logger.debug(
            f"Chunk {chunk.index}: {len(graph.entities)} entities, "
            f"{len(graph.relationships)} relationships, {len(graph.unresolved)} unresolved"
        )
        return result
