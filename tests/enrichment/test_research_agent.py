"""Tests for the bounded research loop."""

from __future__ import annotations

import pytest

from codelore.enrichment.config import ResearchAgentConfig
from codelore.enrichment.exceptions import (
    ChunkNotFoundError,
    EnrichmentParseError,
    LLMRequestError,
)
from codelore.enrichment.models import Relationship, StopReason
from codelore.enrichment.research_agent import (
    STEERING_MESSAGE,
    ResearchAgent,
    signals_done,
)
from tests.enrichment.fakes import FailingLLM, ScriptedLLM, make_payload

FIVE_CALLS = (
    'read_chunk("chunk-charge")\n'
    'read_chunk("chunk-validate")\n'
    'get_callers("chunk-checkout", 1)\n'
    'get_callees("chunk-checkout", 1)\n'
    'get_file_siblings("chunk-checkout")'
)
THREE_CALLS = (
    'read_chunk("chunk-charge")\n'
    'read_chunk("chunk-validate")\n'
    'read_chunk("chunk-handler")'
)


@pytest.mark.parametrize(
    "reply,expected",
    [
        ("DONE", True),
        ("I am done.", True),
        ("Done - the purpose is clear", True),
        ("abandoned", False),
        ("doneness", False),
        ("keep going", False),
    ],
)
def test_signals_done(reply: str, expected: bool) -> None:
    assert signals_done(reply) is expected


class TestResearchLoop:
    @pytest.mark.asyncio()
    async def test_model_that_never_calls_tools_still_terminates(self, seeded_store) -> None:
        llm = ScriptedLLM(["I would like to think about this some more."])
        agent = ResearchAgent(seeded_store, llm, ResearchAgentConfig(max_tool_calls=4))

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert llm.chat_calls == 4
        assert session.tool_call_count == 0
        assert session.stop_reason == StopReason.MAX_TOOL_CALLS
        assert session.history[-1].content == STEERING_MESSAGE

    @pytest.mark.asyncio()
    async def test_done_before_any_tool_call_is_ignored(self, seeded_store) -> None:
        llm = ScriptedLLM(["DONE"])
        agent = ResearchAgent(seeded_store, llm, ResearchAgentConfig(max_tool_calls=3))

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert llm.chat_calls == 3
        assert session.stop_reason == StopReason.MAX_TOOL_CALLS

    @pytest.mark.asyncio()
    async def test_one_call_then_done(self, seeded_store) -> None:
        llm = ScriptedLLM(['read_chunk("chunk-charge")', "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert session.tool_call_count == 1
        assert session.stop_reason == StopReason.AGENT_DONE
        assert llm.chat_calls == 2
        assert '"tool": "read_chunk"' in llm.prompts[1]

    @pytest.mark.asyncio()
    async def test_calls_beyond_per_turn_limit_are_deferred(self, seeded_store) -> None:
        llm = ScriptedLLM([FIVE_CALLS, "Let me look at those results.", "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert session.deferred_calls == 2
        assert session.tool_call_count == 5
        assert session.dropped_calls == 0
        assert session.stop_reason == StopReason.AGENT_DONE

    @pytest.mark.asyncio()
    async def test_deferred_calls_are_discarded_on_done(self, seeded_store) -> None:
        llm = ScriptedLLM([FIVE_CALLS, "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert session.tool_call_count == 3
        assert session.stop_reason == StopReason.AGENT_DONE

    @pytest.mark.asyncio()
    async def test_calls_beyond_budget_are_dropped(self, seeded_store) -> None:
        llm = ScriptedLLM([THREE_CALLS, THREE_CALLS])
        agent = ResearchAgent(seeded_store, llm, ResearchAgentConfig(max_tool_calls=4))

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert session.tool_call_count == 4
        assert session.dropped_calls == 2
        assert session.stop_reason == StopReason.MAX_TOOL_CALLS
        assert llm.chat_calls == 2

    @pytest.mark.asyncio()
    async def test_discoveries_are_tagged(self, seeded_store) -> None:
        reply = (
            'get_callees("chunk-checkout")\n'
            'read_chunk("chunk-charge")\n'
            'read_chunk("chunk-handler")'
        )
        llm = ScriptedLLM([reply, 'get_callers("chunk-charge")', "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        tags = {cid: found.relationship for cid, found in session.discovered.items()}
        assert tags == {
            "chunk-charge": Relationship.CALLEE,
            "chunk-validate": Relationship.CALLEE,
            "chunk-handler": Relationship.SIMILAR,
        }
        assert "chunk-checkout" not in session.discovered

    @pytest.mark.asyncio()
    async def test_read_of_same_file_chunk_is_sibling(self, seeded_store) -> None:
        llm = ScriptedLLM(['read_chunk("chunk-validate")', "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert session.discovered["chunk-validate"].relationship == Relationship.SIBLING

    @pytest.mark.asyncio()
    async def test_tool_errors_do_not_abort_the_loop(self, seeded_store) -> None:
        llm = ScriptedLLM(['read_chunk("missing")', "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        session = await agent.run_research_loop(seeded_store.get_chunk("chunk-checkout"))

        assert session.tool_call_count == 1
        assert session.discovered == {}
        assert "Chunk not found: missing" in llm.prompts[1]

    @pytest.mark.asyncio()
    async def test_system_prompt_describes_target(self, seeded_store) -> None:
        llm = ScriptedLLM(['read_chunk("chunk-charge")', "DONE"])
        await ResearchAgent(seeded_store, llm).run_research_loop(
            seeded_store.get_chunk("chunk-checkout")
        )

        prompt = llm.prompts[0]
        assert "- ID: chunk-checkout" in prompt
        assert "def checkout(cart)" in prompt
        assert "get_callers(chunk_id, depth)" in prompt
        assert "search_grep" not in prompt


class TestEnrich:
    @pytest.mark.asyncio()
    async def test_output_carries_sources_and_partials(self, seeded_store) -> None:
        llm = ScriptedLLM(['get_callees("chunk-checkout")', "DONE"])
        agent = ResearchAgent(seeded_store, llm)

        output = await agent.enrich("chunk-checkout")

        assert output.target_chunk_id == "chunk-checkout"
        assert output.tool_call_count == 1
        assert output.stop_reason == StopReason.AGENT_DONE
        assert output.research_sources == ["chunk-charge", "chunk-validate"]
        assert [p.chunk_id for p in output.research_captured] == ["chunk-charge", "chunk-validate"]
        assert all(p.confidence == 0.6 for p in output.research_captured)
        assert all(p.source_chunk_id == "chunk-checkout" for p in output.research_captured)
        assert llm.structured_calls == 1
        assert output.enrichment == make_payload()

    @pytest.mark.asyncio()
    async def test_every_discovery_is_recorded(self, store) -> None:
        file_id = store.upsert_file("src/big.py", "hash-big")
        for index in range(41):
            store.upsert_chunk(f"chunk-{index}", file_id, name=f"fn_{index}", code="pass")
        neighbors = [f'read_chunk("chunk-{index}")' for index in range(1, 41)]
        turns = ["\n".join(neighbors[start : start + 3]) for start in range(0, 40, 3)]
        agent = ResearchAgent(
            store, ScriptedLLM(turns + ["DONE"]), ResearchAgentConfig(max_tool_calls=40)
        )

        output = await agent.enrich("chunk-0")

        assert output.tool_call_count == 40
        assert output.research_sources == [f"chunk-{index}" for index in range(1, 41)]
        assert len(output.research_captured) == 40
        assert all(p.relationship == Relationship.SIBLING for p in output.research_captured)

    @pytest.mark.asyncio()
    async def test_missing_chunk(self, seeded_store) -> None:
        with pytest.raises(ChunkNotFoundError):
            await ResearchAgent(seeded_store, ScriptedLLM(["DONE"])).enrich("nope")

    @pytest.mark.asyncio()
    async def test_model_failure_propagates(self, seeded_store) -> None:
        with pytest.raises(LLMRequestError):
            await ResearchAgent(seeded_store, FailingLLM()).enrich("chunk-checkout")

    @pytest.mark.asyncio()
    async def test_invalid_structured_output_propagates(self, seeded_store) -> None:
        llm = ScriptedLLM(
            ['read_chunk("chunk-charge")', "DONE"],
            structured_error=EnrichmentParseError("summary missing"),
        )
        with pytest.raises(EnrichmentParseError):
            await ResearchAgent(seeded_store, llm).enrich("chunk-checkout")


class TestStoreResults:
    @pytest.mark.asyncio()
    async def test_enrichment_confidence_comes_from_config(self, seeded_store) -> None:
        config = ResearchAgentConfig(enrichment_confidence=0.9, partial_confidence=0.4)
        agent = ResearchAgent(seeded_store, ScriptedLLM(['read_chunk("chunk-charge")', "DONE"]), config)
        output = await agent.enrich("chunk-checkout")

        await agent.store_results(
            output, file_id=1, content_hash="hash-services", analysis_version="v1.0"
        )

        assert seeded_store.get_enrichment("chunk-checkout").confidence == pytest.approx(0.9)
        (partial,) = seeded_store.get_partial_enrichments("chunk-charge")
        assert partial.confidence == pytest.approx(0.4)

    @pytest.mark.asyncio()
    async def test_persists_enrichment_and_partials(self, seeded_store) -> None:
        agent = ResearchAgent(seeded_store, ScriptedLLM(['get_callees("chunk-checkout")', "DONE"]))
        output = await agent.enrich("chunk-checkout")

        enrichment = await agent.store_results(
            output, file_id=1, content_hash="hash-services", analysis_version="v1.0"
        )

        stored = seeded_store.get_enrichment("chunk-checkout")
        assert stored.confidence == pytest.approx(0.8)
        assert stored.model_used == "scripted-model"
        assert stored.research_sources == ["chunk-charge", "chunk-validate"]
        assert enrichment.summary == stored.summary
        assert len(seeded_store.get_partial_enrichments("chunk-charge")) == 1
        assert len(seeded_store.get_partial_enrichments("chunk-validate")) == 1

    @pytest.mark.asyncio()
    async def test_partial_write_failure_is_skipped(self, seeded_store, monkeypatch) -> None:
        agent = ResearchAgent(seeded_store, ScriptedLLM(['get_callees("chunk-checkout")', "DONE"]))
        output = await agent.enrich("chunk-checkout")

        original = seeded_store.add_partial_enrichment

        def flaky(partial):
            if partial.chunk_id == "chunk-charge":
                raise RuntimeError("disk full")
            original(partial)

        monkeypatch.setattr(seeded_store, "add_partial_enrichment", flaky)

        await agent.store_results(
            output, file_id=1, content_hash="hash-services", analysis_version="v1.0"
        )

        assert seeded_store.get_enrichment("chunk-checkout") is not None
        assert seeded_store.get_partial_enrichments("chunk-charge") == []
        assert len(seeded_store.get_partial_enrichments("chunk-validate")) == 1
