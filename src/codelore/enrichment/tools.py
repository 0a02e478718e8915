"""Read-only tool surface for the research agent.

Tool calls are a closed set of request variants discriminated by ``tool``.
``ToolCallParser`` turns a model reply into those variants, preferring JSON
requests and falling back to call-like text such as
``get_callers("chunk-id", 2)``. ``ResearchTools`` executes them against the
graph store and optional embedding/text-search services; every failure is
returned as ``{"error": message}`` so the loop can carry on.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import (
    Annotated,
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Literal,
    Optional,
    Tuple,
    Union,
)

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .config import ResearchAgentConfig
from .interfaces import EmbeddingService, GraphStore, TextSearchService
from .models import Relationship

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n... (truncated)"


def truncate_code(code: Optional[str], max_chars: int) -> str:
    if not code:
        return ""
    if len(code) <= max_chars:
        return code
    return code[:max_chars] + TRUNCATION_MARKER


class ReadChunkRequest(BaseModel):
    tool: Literal["read_chunk"] = "read_chunk"
    chunk_id: str = Field(..., min_length=1)


class GetCallersRequest(BaseModel):
    tool: Literal["get_callers"] = "get_callers"
    chunk_id: str = Field(..., min_length=1)
    depth: int = Field(default=1, ge=1)


class GetCalleesRequest(BaseModel):
    tool: Literal["get_callees"] = "get_callees"
    chunk_id: str = Field(..., min_length=1)
    depth: int = Field(default=1, ge=1)


class GetFileSiblingsRequest(BaseModel):
    tool: Literal["get_file_siblings"] = "get_file_siblings"
    chunk_id: str = Field(..., min_length=1)


class SearchSimilarRequest(BaseModel):
    tool: Literal["search_similar"] = "search_similar"
    query: str = Field(..., min_length=1)
    limit: int = Field(default=5, ge=1)


class SearchGrepRequest(BaseModel):
    tool: Literal["search_grep"] = "search_grep"
    pattern: str = Field(..., min_length=1)
    limit: int = Field(default=50, ge=1)


ToolRequest = Annotated[
    Union[
        ReadChunkRequest,
        GetCallersRequest,
        GetCalleesRequest,
        GetFileSiblingsRequest,
        SearchSimilarRequest,
        SearchGrepRequest,
    ],
    Field(discriminator="tool"),
]

_TOOL_REQUEST_ADAPTER: TypeAdapter = TypeAdapter(ToolRequest)


@dataclass(frozen=True)
class InvalidToolRequest:
    """A tool call that could not be turned into a known request variant."""

    tool: str
    error: str

    def arguments(self) -> Dict[str, Any]:
        return {}


def request_arguments(request: Union[BaseModel, InvalidToolRequest]) -> Dict[str, Any]:
    if isinstance(request, InvalidToolRequest):
        return request.arguments()
    return request.model_dump(exclude={"tool"})


# name -> (signature, description), in prompt order
TOOL_CATALOG: Dict[str, Tuple[str, str]] = {
    "read_chunk": ("read_chunk(chunk_id)", "Get full code and metadata of a chunk"),
    "get_callers": (
        "get_callers(chunk_id, depth)",
        "Get chunks that call this (depth 1-{max_hops})",
    ),
    "get_callees": (
        "get_callees(chunk_id, depth)",
        "Get chunks this calls (depth 1-{max_hops})",
    ),
    "get_file_siblings": (
        "get_file_siblings(chunk_id)",
        "Get other chunks in the same file",
    ),
    "search_similar": (
        "search_similar(query, limit)",
        "Find semantically similar code (conceptual search)",
    ),
    "search_grep": (
        "search_grep(pattern, limit)",
        "Search for literal patterns in the codebase (default limit {max_grep_results})",
    ),
}

RequestOrInvalid = Union[
    ReadChunkRequest,
    GetCallersRequest,
    GetCalleesRequest,
    GetFileSiblingsRequest,
    SearchSimilarRequest,
    SearchGrepRequest,
    InvalidToolRequest,
]


class FreeTextToolCallParser:
    """Recognises call-like text: ``name("arg")`` or ``name("arg", 2)``."""

    _SINGLE_ARG = r'\s*\(\s*["\']([^"\']+)["\']\s*\)'
    _OPTIONAL_INT = r'\s*\(\s*["\']([^"\']+)["\']\s*(?:,\s*(\d+))?\s*\)'

    def __init__(self, available_tools: Iterable[str]) -> None:
        available = set(available_tools)
        specs = {
            "read_chunk": (self._SINGLE_ARG, "chunk_id", None),
            "get_callers": (self._OPTIONAL_INT, "chunk_id", "depth"),
            "get_callees": (self._OPTIONAL_INT, "chunk_id", "depth"),
            "get_file_siblings": (self._SINGLE_ARG, "chunk_id", None),
            "search_similar": (self._OPTIONAL_INT, "query", "limit"),
            "search_grep": (self._OPTIONAL_INT, "pattern", "limit"),
        }
        self._patterns = [
            (name, re.compile(r"\b" + name + pattern), first, second)
            for name, (pattern, first, second) in specs.items()
            if name in available
        ]

    def parse(self, text: str) -> List[RequestOrInvalid]:
        found: List[Tuple[int, RequestOrInvalid]] = []
        for name, pattern, first, second in self._patterns:
            for match in pattern.finditer(text):
                payload: Dict[str, Any] = {"tool": name, first: match.group(1)}
                if second and match.lastindex and match.lastindex >= 2 and match.group(2):
                    payload[second] = int(match.group(2))
                found.append((match.start(), _validate_request(payload)))
        found.sort(key=lambda pair: pair[0])
        return [request for _, request in found]


_FENCED_BLOCK = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL)


class StructuredToolCallParser:
    """Reads JSON tool requests: an object, an array, or ``{"tool_calls": [...]}``."""

    def __init__(self, available_tools: Iterable[str]) -> None:
        self._available = set(available_tools)

    def parse(self, text: str) -> List[RequestOrInvalid]:
        requests: List[RequestOrInvalid] = []
        for payload in self._iter_payloads(text):
            if payload.get("tool") not in self._available:
                requests.append(
                    InvalidToolRequest(
                        tool=str(payload.get("tool")),
                        error=f"Unknown tool: {payload.get('tool')}",
                    )
                )
                continue
            requests.append(_validate_request(payload))
        return requests

    @staticmethod
    def _iter_payloads(text: str) -> Iterator[Dict[str, Any]]:
        blocks = [block.strip() for block in _FENCED_BLOCK.findall(text)]
        stripped = text.strip()
        if stripped.startswith(("{", "[")):
            blocks.append(stripped)

        for block in blocks:
            try:
                data = json.loads(block)
            except ValueError:
                continue
            if isinstance(data, dict) and isinstance(data.get("tool_calls"), list):
                data = data["tool_calls"]
            items = data if isinstance(data, list) else [data]
            for item in items:
                if isinstance(item, dict) and "tool" in item:
                    # Accept {"tool": ..., "args": {...}} as well as flat objects
                    args = item.get("args") or item.get("arguments")
                    if isinstance(args, dict):
                        item = {"tool": item["tool"], **args}
                    yield item


def _validate_request(payload: Dict[str, Any]) -> RequestOrInvalid:
    try:
        return _TOOL_REQUEST_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        location = ".".join(str(part) for part in first["loc"][1:]) or "arguments"
        return InvalidToolRequest(
            tool=str(payload.get("tool")),
            error=f"Invalid arguments for {payload.get('tool')}: {location}: {first['msg']}",
        )


class ToolCallParser:
    """Extracts tool requests from a model reply.

    JSON requests win; call-like text is only consulted when the reply
    carries no JSON requests at all.
    """

    def __init__(self, available_tools: Iterable[str]) -> None:
        available = list(available_tools)
        self._structured = StructuredToolCallParser(available)
        self._free_text = FreeTextToolCallParser(available)

    def parse(self, text: str) -> List[RequestOrInvalid]:
        structured = self._structured.parse(text)
        if structured:
            return structured
        return self._free_text.parse(text)


class ResearchTools:
    """Executes tool requests for one research agent."""

    def __init__(
        self,
        store: GraphStore,
        config: Optional[ResearchAgentConfig] = None,
        *,
        embedder: Optional[EmbeddingService] = None,
        text_search: Optional[TextSearchService] = None,
    ) -> None:
        self._store = store
        self._config = config or ResearchAgentConfig()
        self._embedder = embedder
        self._text_search = text_search

    @property
    def available_tools(self) -> List[str]:
        names = list(TOOL_CATALOG)
        if self._text_search is None:
            names.remove("search_grep")
        return names

    def describe(self) -> str:
        """Tool catalog lines for the system prompt."""
        lines = []
        for name in self.available_tools:
            signature, description = TOOL_CATALOG[name]
            description = description.format(
                max_hops=self._config.max_hops,
                max_grep_results=self._config.max_grep_results,
            )
            lines.append(f"- {signature}: {description}")
        return "\n".join(lines)

    def parser(self) -> ToolCallParser:
        return ToolCallParser(self.available_tools)

    async def execute(self, request: RequestOrInvalid) -> Any:
        if isinstance(request, InvalidToolRequest):
            return {"error": request.error}
        if request.tool not in self.available_tools:
            return {"error": f"Unknown tool: {request.tool}"}

        handler = getattr(self, f"_{request.tool}")
        try:
            return await handler(request)
        except Exception as exc:  # tool errors are data for the model
            logger.debug(
                "Research tool failed",
                extra={"tool": request.tool, "error": str(exc)},
            )
            return {"error": str(exc) or type(exc).__name__}

    async def _read_chunk(self, request: ReadChunkRequest) -> Dict[str, Any]:
        chunk = self._store.get_chunk(request.chunk_id)
        if chunk is None:
            return {"error": f"Chunk not found: {request.chunk_id}"}
        enrichment = self._store.get_enrichment(chunk.id)
        return {
            "id": chunk.id,
            "name": chunk.name,
            "type": chunk.type,
            "file": chunk.file_path,
            "code": truncate_code(chunk.code, self._config.max_tool_code_chars),
            "signature": chunk.signature,
            "docstring": chunk.docstring,
            "existing_enrichment": enrichment.summary if enrichment else None,
        }

    async def _get_callers(self, request: GetCallersRequest) -> List[Dict[str, Any]]:
        depth = min(request.depth, self._config.max_hops)
        callers = self._store.get_callers(request.chunk_id, depth)
        return [
            {**neighbor.to_dict(), "relationship": Relationship.CALLER.value}
            for neighbor in callers[: self._config.max_files_per_hop]
        ]

    async def _get_callees(self, request: GetCalleesRequest) -> List[Dict[str, Any]]:
        depth = min(request.depth, self._config.max_hops)
        callees = self._store.get_callees(request.chunk_id, depth)
        return [
            {**neighbor.to_dict(), "relationship": Relationship.CALLEE.value}
            for neighbor in callees[: self._config.max_files_per_hop]
        ]

    async def _get_file_siblings(self, request: GetFileSiblingsRequest) -> List[Dict[str, Any]]:
        siblings = self._store.get_file_siblings(request.chunk_id)
        return [
            {**neighbor.to_dict(), "relationship": Relationship.SIBLING.value}
            for neighbor in siblings[: self._config.max_files_per_hop]
        ]

    async def _search_similar(self, request: SearchSimilarRequest) -> Any:
        if self._embedder is None:
            return {"error": "Semantic search not available"}
        vector = await self._embedder.embed(request.query)
        limit = min(request.limit, self._config.max_files_per_hop)
        return [
            {
                **neighbor.to_dict(),
                "score": round(score, 4),
                "relationship": Relationship.SIMILAR.value,
            }
            for neighbor, score in self._store.similarity_search(vector, limit)
        ]

    async def _search_grep(self, request: SearchGrepRequest) -> Any:
        if self._text_search is None:
            return {"error": "Grep search not available"}
        limit = min(request.limit, self._config.max_grep_results)
        matches = await self._text_search.search(
            request.pattern, limit=limit, case_sensitive=False
        )
        results = []
        for match in matches[:limit]:
            entry: Dict[str, Any] = {
                "path": match.path,
                "line": match.line,
                "text": match.text,
                "relationship": Relationship.GREP_MATCH.value,
            }
            chunk = self._store.find_chunk_at(match.path, match.line)
            if chunk is not None:
                entry["id"] = chunk.id
                entry["name"] = chunk.name
            results.append(entry)
        return results


def iter_discoveries(result: Any) -> Iterator[Tuple[str, Optional[str], Optional[Relationship]]]:
    """Chunk ids surfaced by a successful tool result.

    Yields ``(chunk_id, name, relationship)``; ``relationship`` is None for
    ``read_chunk`` results, which carry no relationship of their own.
    """
    if isinstance(result, dict):
        if "error" in result or "id" not in result:
            return
        yield result["id"], result.get("name"), None
        return
    if isinstance(result, list):
        for entry in result:
            if not isinstance(entry, dict) or "id" not in entry:
                continue
            relationship = entry.get("relationship")
            yield (
                entry["id"],
                entry.get("name"),
                Relationship(relationship) if relationship else None,
            )
