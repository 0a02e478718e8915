"""Bounded, tool-augmented research loop that produces chunk enrichments.

The agent explores the code around a target chunk with read-only tools,
then asks the model for one schema-validated enrichment. Every neighbor it
touched on the way is captured as a low-confidence partial enrichment so
later searches benefit from the exploration too.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, List, Optional

from .config import ResearchAgentConfig
from .exceptions import ChunkNotFoundError
from .interfaces import EmbeddingService, GraphStore, LLMClient, TextSearchService
from .models import (
    ChunkRecord,
    Enrichment,
    Message,
    PartialEnrichment,
    Relationship,
    ResearchOutput,
    ResearchSession,
    StopReason,
)
from .schemas import EnrichmentPayload
from .tools import (
    RequestOrInvalid,
    ResearchTools,
    iter_discoveries,
    request_arguments,
    truncate_code,
)

logger = logging.getLogger(__name__)

_DONE_PATTERN = re.compile(r"\bdone\b", re.IGNORECASE)

KICKOFF_MESSAGE = "Begin your research. Call tools to explore the codebase."
STEERING_MESSAGE = (
    "Please call a tool to continue research, or say DONE if you have "
    "sufficient understanding."
)


def render_history(history: List[Message]) -> str:
    return "\n\n".join(f"{message.role}: {message.content}" for message in history)


def signals_done(response: str) -> bool:
    return bool(_DONE_PATTERN.search(response))


class ResearchAgent:
    """Runs the research loop for one chunk at a time."""

    def __init__(
        self,
        store: GraphStore,
        llm: LLMClient,
        config: Optional[ResearchAgentConfig] = None,
        *,
        embedder: Optional[EmbeddingService] = None,
        text_search: Optional[TextSearchService] = None,
    ) -> None:
        self._store = store
        self._llm = llm
        self._config = config or ResearchAgentConfig()
        self._tools = ResearchTools(
            store, self._config, embedder=embedder, text_search=text_search
        )
        self._parser = self._tools.parser()

    @property
    def tools(self) -> ResearchTools:
        return self._tools

    @property
    def model_name(self) -> str:
        return self._llm.model_name

    async def enrich(self, chunk_id: str) -> ResearchOutput:
        """Research a chunk and produce its enrichment.

        Raises:
            ChunkNotFoundError: If the chunk doesn't exist
            LLMRequestError: If a model call fails
            EnrichmentParseError: If the final structured output is invalid
        """
        chunk = self._store.get_chunk(chunk_id)
        if chunk is None:
            raise ChunkNotFoundError(chunk_id)

        session = await self.run_research_loop(chunk)
        payload = await self._generate_enrichment(chunk, session)

        captured: List[PartialEnrichment] = []
        for discovered in session.discovered.values():
            captured.append(
                PartialEnrichment(
                    chunk_id=discovered.chunk_id,
                    learned=f"Explored during research of {chunk.display_name}"[:200],
                    relationship=discovered.relationship,
                    confidence=self._config.partial_confidence,
                    source_chunk_id=chunk.id,
                )
            )

        logger.info(
            "Research complete",
            extra={
                "chunk_id": chunk.id,
                "tool_call_count": session.tool_call_count,
                "stop_reason": session.stop_reason.value,
                "discovered": len(session.discovered),
            },
        )
        return ResearchOutput(
            target_chunk_id=chunk.id,
            enrichment=payload,
            research_captured=captured,
            research_sources=list(session.discovered),
            tool_call_count=session.tool_call_count,
            stop_reason=session.stop_reason,
        )

    async def run_research_loop(self, chunk: ChunkRecord) -> ResearchSession:
        """Explore around ``chunk`` until the model is done or the budget runs out.

        The loop never runs more than ``max_tool_calls`` turns, so a model
        that neither calls tools nor says DONE still terminates.
        """
        cfg = self._config
        session = ResearchSession(target_chunk_id=chunk.id)
        session.add_message("system", self._build_system_prompt(chunk))
        session.add_message("user", KICKOFF_MESSAGE)
        deferred: List[RequestOrInvalid] = []

        while session.tool_call_count < cfg.max_tool_calls and session.turns < cfg.max_tool_calls:
            session.turns += 1
            response = await self._llm.chat(render_history(session.history))
            session.add_message("assistant", response)

            if session.tool_call_count >= 1 and signals_done(response):
                session.stop_reason = StopReason.AGENT_DONE
                if deferred:
                    logger.debug(
                        "Discarding deferred tool calls after DONE",
                        extra={"chunk_id": chunk.id, "deferred": len(deferred)},
                    )
                deferred = []
                break

            requests = deferred + self._parser.parse(response)
            if not requests:
                session.add_message("user", STEERING_MESSAGE)
                continue

            this_turn = requests[: cfg.max_calls_per_turn]
            deferred = requests[cfg.max_calls_per_turn :]
            if deferred:
                session.deferred_calls += len(deferred)
                logger.debug(
                    "Deferring tool calls to next turn",
                    extra={"chunk_id": chunk.id, "deferred": len(deferred)},
                )

            results: List[dict] = []
            for index, request in enumerate(this_turn):
                if session.tool_call_count >= cfg.max_tool_calls:
                    dropped = len(this_turn) - index + len(deferred)
                    session.dropped_calls += dropped
                    deferred = []
                    logger.debug(
                        "Tool budget exhausted, dropping calls",
                        extra={"chunk_id": chunk.id, "dropped": dropped},
                    )
                    break
                session.tool_call_count += 1
                result = await self._tools.execute(request)
                results.append(
                    {
                        "tool": request.tool,
                        "args": request_arguments(request),
                        "result": result,
                    }
                )
                self._record_discoveries(session, chunk, result)

            session.add_message(
                "user",
                "Tool results:\n"
                + json.dumps(results, indent=2, default=str)
                + "\n\nContinue research or say DONE.",
            )

        if session.stop_reason is None:
            session.stop_reason = StopReason.MAX_TOOL_CALLS
            if deferred:
                session.dropped_calls += len(deferred)
                logger.debug(
                    "Tool budget exhausted, dropping deferred calls",
                    extra={"chunk_id": chunk.id, "dropped": len(deferred)},
                )
        return session

    def _record_discoveries(
        self, session: ResearchSession, chunk: ChunkRecord, result: Any
    ) -> None:
        for chunk_id, name, relationship in iter_discoveries(result):
            if relationship is None:
                known = session.discovered.get(chunk_id)
                if known is not None:
                    relationship = known.relationship
                elif isinstance(result, dict) and result.get("file") == chunk.file_path:
                    relationship = Relationship.SIBLING
                else:
                    relationship = Relationship.SIMILAR
            session.remember(chunk_id, name, relationship)

    def _build_system_prompt(self, chunk: ChunkRecord) -> str:
        cfg = self._config
        code_block = ""
        if chunk.code:
            code_block = f"CODE:\n```\n{truncate_code(chunk.code, cfg.max_code_chars)}\n```\n"
        return (
            "You are a Research Agent analyzing code to understand its purpose and context.\n\n"
            "TARGET CHUNK:\n"
            f"- ID: {chunk.id}\n"
            f"- Name: {chunk.display_name}\n"
            f"- Type: {chunk.type or 'unknown'}\n"
            f"- File: {chunk.file_path}\n\n"
            f"{code_block}\n"
            "YOUR TASK:\n"
            "Research this code to understand what it does and why it exists, "
            "how it fits into the larger system, and its relationships with other code.\n\n"
            "AVAILABLE TOOLS:\n"
            f"{self._tools.describe()}\n\n"
            "Call tools either as JSON objects such as "
            '{"tool": "get_callers", "chunk_id": "<id>", "depth": 1} '
            'or as calls such as get_callers("<id>", 1).\n\n'
            "CONSTRAINTS:\n"
            f"- Max {cfg.max_tool_calls} tool calls, at most {cfg.max_calls_per_turn} per reply\n"
            f"- Max {cfg.max_hops} hops from target\n"
            "- Stop when you have sufficient understanding\n\n"
            "As you research, note what you learn about OTHER chunks too.\n\n"
            "When ready, respond with DONE."
        )

    async def _generate_enrichment(
        self, chunk: ChunkRecord, session: ResearchSession
    ) -> EnrichmentPayload:
        prompt = (
            f"Based on your research of {chunk.display_name}, provide a structured enrichment.\n\n"
            "RESEARCH SUMMARY:\n"
            f"- Tool calls made: {session.tool_call_count}\n"
            f"- Chunks explored: {len(session.discovered)}\n"
            f"- Stop reason: {session.stop_reason.value}\n\n"
            "Provide: a one-sentence summary, a one-sentence purpose, 3-5 key "
            "operations, side effects, state changes, implicit dependencies, "
            "patterns, concerns, complexity, business rules and 5-10 searchable tags."
        )
        session.add_message("user", prompt)
        return await self._llm.generate_structured(
            render_history(session.history), EnrichmentPayload
        )

    async def store_results(
        self,
        output: ResearchOutput,
        *,
        file_id: int,
        content_hash: str,
        analysis_version: str,
        model_used: Optional[str] = None,
    ) -> Enrichment:
        """Persist the target enrichment, then each partial enrichment.

        A failing partial write is logged and skipped; it never undoes the
        primary write or stops the remaining partials.
        """
        enrichment = Enrichment.from_payload(
            output.enrichment,
            chunk_id=output.target_chunk_id,
            file_id=file_id,
            content_hash=content_hash,
            analysis_version=analysis_version,
            model_used=model_used or self.model_name,
            research_sources=output.research_sources,
            confidence=self._config.enrichment_confidence,
        )
        self._store.upsert_enrichment(enrichment)

        for partial in output.research_captured:
            try:
                self._store.add_partial_enrichment(partial)
            except Exception as exc:
                logger.warning(
                    "Failed to store partial enrichment",
                    extra={
                        "chunk_id": partial.chunk_id,
                        "source_chunk_id": output.target_chunk_id,
                        "error": str(exc),
                    },
                )
        return enrichment
