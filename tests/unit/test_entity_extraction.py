"""
Tests for per-chunk extraction (entity_extraction.py) and id generation.
"""

import pytest

from config.settings import ExtractionOptions
from core.chunking import Chunk
from core.entity_extraction import ChunkExtractor, PromptBuilder, records_to_graph, retry_async
from core.entity_models import EntityKind, RelationshipType
from core.exceptions import DecodeError, ErrorKind, InvalidModelError, ModelTimeoutError, ModelUnavailableError
from core.id_generator import IdGenerator

TOON_RESPONSE = """Here you go:
```toon
requirements[1]{id,name,priority}:
  REQ-101,Login,high
roles[1]{id,name}:
  ROLE-1,Admin
relationships[1]{type,source,target}:
  OWNED_BY,REQ-101,ROLE-1
```
"""


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _chunk(text="The portal shall support login.", index=0):
    return Chunk(index=index, text=text, token_count=8, start_offset=0, end_offset=len(text))


def _options(**overrides):
    values = {
        "model": "llama3.2",
        "max_retries": 2,
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
    }
    values.update(overrides)
    return ExtractionOptions(**values)


class TestIdGenerator:
    def test_named_ids_are_stable(self):
        first = IdGenerator(scope="a").generate(EntityKind.ROLE, "Security  Officer")
        second = IdGenerator(scope="b").generate(EntityKind.ROLE, "security officer")
        assert first == second
        assert first.startswith("ROLE-")

    def test_kind_is_part_of_the_id(self):
        generator = IdGenerator()
        assert generator.generate(EntityKind.ROLE, "Admin") != generator.generate(EntityKind.BUSINESS, "Admin")

    def test_nameless_ids_use_scoped_counter(self):
        generator = IdGenerator(scope="job1")
        assert generator.generate(EntityKind.REQUIREMENT) == "REQ-job1-0001"
        assert generator.generate(EntityKind.ROLE, "  ") == "ROLE-job1-0002"


class TestPromptBuilder:
    def test_single_chunk_prompt(self):
        prompt = PromptBuilder().build_chunk_prompt("The portal shall support login.")
        assert "The portal shall support login." in prompt
        assert "part 1 of" not in prompt
        assert "requirements[2]{id,name,type,priority,status,source}:" in prompt

    def test_multi_chunk_prompt_has_part_note(self):
        prompt = PromptBuilder().build_chunk_prompt("text", chunk_index=1, total_chunks=3)
        assert "part 2 of 3" in prompt
        assert "REQ-201" in prompt

    def test_expected_headers_list_every_table(self):
        headers = PromptBuilder().expected_headers().splitlines()
        assert headers[0].startswith("requirements[N]{id,name,description,")
        assert headers[-1] == "relationships[N]{type,source,target}:"
        assert len(headers) == len(EntityKind) + 1

    def test_system_prompt_lists_relationship_types(self):
        system = PromptBuilder().system_prompt()
        for rel_type in RelationshipType:
            assert rel_type.value in system


class TestRecordsToGraph:
    def test_maps_tables_and_resolves_names(self):
        tables = {
            "Requirements": [{"name": "Login", "priority": "urgent"}, {"id": "", "name": ""}],
            "roles": [{"id": "ROLE-1", "name": "Admin"}],
            "relationships": [
                {"type": "owned by", "source": "Login", "target": "Admin"},
                {"type": "SUPPORTS", "source": "Login", "target": "BIZ-9"},
                {"type": "LIKES", "source": "a", "target": "b"},
            ],
            "glossary": [{"term": "x"}],
        }
        graph, warnings = records_to_graph(tables, chunk_index=3)

        login_id = IdGenerator().generate(EntityKind.REQUIREMENT, "Login")
        requirement = graph.get(EntityKind.REQUIREMENT, login_id)
        assert requirement is not None
        assert requirement.priority == "medium"
        assert graph.chunk_index == 3

        assert [r.key for r in graph.relationships] == [("OWNED_BY", login_id, "ROLE-1")]
        assert [r.key for r in graph.unresolved] == [("SUPPORTS", login_id, "BIZ-9")]

        assert {kind for kind, _ in warnings} == {ErrorKind.DECODE_FAILURE}
        messages = [message for _, message in warnings]
        assert any("unknown priority" in m for m in messages)
        assert any("no id or name" in m for m in messages)
        assert any("LIKES" in m for m in messages)
        assert any("glossary" in m for m in messages)

    def test_duplicate_rows_are_folded_as_merge_conflict(self):
        tables = {
            "requirements": [
                {"id": "REQ-1", "name": "Login", "priority": "high"},
                {"id": "REQ-1", "name": "Login", "priority": "low", "source": "Workshop v2"},
            ]
        }
        graph, warnings = records_to_graph(tables)
        assert len(graph.entities) == 1
        assert graph.entities[0].priority == "high"
        assert graph.entities[0].source == "Workshop v2"
        assert len(warnings) == 1
        kind, message = warnings[0]
        assert kind == ErrorKind.MERGE_CONFLICT
        assert "listed twice with different priority" in message

    def test_empty_tables(self):
        graph, warnings = records_to_graph({})
        assert graph.entities == []
        assert warnings == []


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_retries_transient_failures(self):
        attempts = []
        sleep = RecordingSleep()

        async def call():
            attempts.append(1)
            if len(attempts) < 3:
                raise ModelTimeoutError("slow")
            return "ok"

        result = await retry_async(call, max_retries=3, base_delay=1.0, max_delay=10.0, sleep=sleep)
        assert result == "ok"
        assert len(attempts) == 3
        assert len(sleep.delays) == 2
        assert 1.2 <= sleep.delays[0] <= 1.5
        assert 2.4 <= sleep.delays[1] <= 3.0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        sleep = RecordingSleep()

        async def call():
            raise ModelUnavailableError("down")

        with pytest.raises(ModelUnavailableError):
            await retry_async(call, max_retries=2, base_delay=0.0, max_delay=0.0, sleep=sleep)
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_non_transient_errors_are_not_retried(self):
        attempts = []

        async def call():
            attempts.append(1)
            raise InvalidModelError("no such model")

        with pytest.raises(InvalidModelError):
            await retry_async(call, max_retries=5, sleep=RecordingSleep())
        assert len(attempts) == 1


class TestChunkExtractor:
    @pytest.mark.asyncio
    async def test_extracts_partial_graph(self, scripted_model):
        model = scripted_model(default=TOON_RESPONSE)
        extractor = ChunkExtractor(model, sleep=RecordingSleep())

        result = await extractor.extract(_chunk(index=1), 2, _options())

        assert result.chunk_index == 1
        assert result.graph.chunk_index == 1
        assert {e.id for e in result.graph.entities} == {"REQ-101", "ROLE-1"}
        assert [r.key for r in result.graph.relationships] == [("OWNED_BY", "REQ-101", "ROLE-1")]
        assert result.warnings == []
        assert result.used_fallback is False
        assert result.prompt_tokens > 0
        assert result.completion_tokens == -(-len(TOON_RESPONSE) // 4)

        call = model.calls[0]
        assert call["model_id"] == "llama3.2"
        assert call["options"]["system"].startswith("You are an expert")
        assert "part 2 of 2" in call["prompt"]

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, scripted_model):
        model = scripted_model(default=[ModelUnavailableError("busy"), TOON_RESPONSE])
        extractor = ChunkExtractor(model, sleep=RecordingSleep())

        result = await extractor.extract(_chunk(), 1, _options())

        assert len(model.calls) == 2
        assert len(result.graph.entities) == 2

    @pytest.mark.asyncio
    async def test_decode_failure_is_not_retried(self, scripted_model):
        model = scripted_model(default="Sorry, I cannot help with that.")
        extractor = ChunkExtractor(model, sleep=RecordingSleep())

        with pytest.raises(DecodeError):
            await extractor.extract(_chunk(), 1, _options())
        assert len(model.calls) == 1

    @pytest.mark.asyncio
    async def test_json_fallback_is_reported(self, scripted_model):
        model = scripted_model(default='```json\n{"roles": [{"id": "ROLE-1", "name": "Admin"}]}\n```')
        extractor = ChunkExtractor(model, sleep=RecordingSleep())

        result = await extractor.extract(_chunk(), 1, _options())

        assert result.used_fallback is True
        assert result.warnings[0] == (ErrorKind.DECODE_FAILURE, "response was not TOON; decoded as JSON")
        assert result.graph.get(EntityKind.ROLE, "ROLE-1").name == "Admin"
