"""Domain models for the enrichment subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .schemas import EnrichmentPayload


def utc_now() -> datetime:
    """Timezone-aware UTC timestamp used for every persisted datetime."""
    return datetime.now(timezone.utc)


class QueueStatus(str, Enum):
    """Queue item lifecycle states."""

    PENDING = "pending"  # Waiting for dispatch (possibly behind a retry timer)
    PROCESSING = "processing"  # Research in flight
    COMPLETE = "complete"  # Enrichment persisted
    FAILED = "failed"  # Retries exhausted


class Relationship(str, Enum):
    """How a neighbor chunk was reached during research."""

    CALLER = "caller"
    CALLEE = "callee"
    SIBLING = "sibling"
    SIMILAR = "similar"
    GREP_MATCH = "grep_match"


class StopReason(str, Enum):
    AGENT_DONE = "agent_done"
    MAX_TOOL_CALLS = "max_tool_calls"


class ContextTier(str, Enum):
    """Richness of the text handed to the embedding service."""

    STRUCTURAL = "structural"
    PARTIAL = "partial"
    FULL = "full"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(slots=True)
class QueueItem:
    """A durable request to enrich one chunk."""

    id: int
    chunk_id: str
    file_id: int
    priority: int
    status: QueueStatus = QueueStatus.PENDING
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    processed_at: Optional[datetime] = None


@dataclass(slots=True)
class Enrichment:
    """Persisted semantic analysis of a chunk.

    ``content_hash`` is the hash of the owning file at the time the analysis
    started; together with ``analysis_version`` it decides validity.
    """

    chunk_id: str
    file_id: int
    content_hash: str
    analysis_version: str
    summary: str
    purpose: str
    key_operations: List[str] = field(default_factory=list)
    side_effects: List[str] = field(default_factory=list)
    state_changes: List[str] = field(default_factory=list)
    implicit_dependencies: List[str] = field(default_factory=list)
    design_patterns: List[str] = field(default_factory=list)
    architectural_patterns: List[str] = field(default_factory=list)
    anti_patterns: List[str] = field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM
    security_concerns: List[str] = field(default_factory=list)
    performance_concerns: List[str] = field(default_factory=list)
    business_rules: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    model_used: Optional[str] = None
    confidence: float = 1.0
    research_sources: List[str] = field(default_factory=list)
    enriched_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_payload(
        cls,
        payload: EnrichmentPayload,
        *,
        chunk_id: str,
        file_id: int,
        content_hash: str,
        analysis_version: str,
        model_used: Optional[str] = None,
        research_sources: Optional[List[str]] = None,
        confidence: float = 1.0,
    ) -> "Enrichment":
        return cls(
            chunk_id=chunk_id,
            file_id=file_id,
            content_hash=content_hash,
            analysis_version=analysis_version,
            summary=payload.summary,
            purpose=payload.purpose,
            key_operations=list(payload.key_operations),
            side_effects=list(payload.side_effects),
            state_changes=list(payload.state_changes),
            implicit_dependencies=list(payload.implicit_dependencies),
            design_patterns=list(payload.design_patterns),
            architectural_patterns=list(payload.architectural_patterns),
            anti_patterns=list(payload.anti_patterns),
            complexity=Complexity(payload.complexity),
            security_concerns=list(payload.security_concerns),
            performance_concerns=list(payload.performance_concerns),
            business_rules=list(payload.business_rules),
            tags=list(payload.tags),
            model_used=model_used,
            confidence=confidence,
            research_sources=list(research_sources or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "file_id": self.file_id,
            "content_hash": self.content_hash,
            "analysis_version": self.analysis_version,
            "summary": self.summary,
            "purpose": self.purpose,
            "key_operations": list(self.key_operations),
            "side_effects": list(self.side_effects),
            "state_changes": list(self.state_changes),
            "implicit_dependencies": list(self.implicit_dependencies),
            "design_patterns": list(self.design_patterns),
            "architectural_patterns": list(self.architectural_patterns),
            "anti_patterns": list(self.anti_patterns),
            "complexity": self.complexity.value,
            "security_concerns": list(self.security_concerns),
            "performance_concerns": list(self.performance_concerns),
            "business_rules": list(self.business_rules),
            "tags": list(self.tags),
            "model_used": self.model_used,
            "confidence": self.confidence,
            "research_sources": list(self.research_sources),
            "enriched_at": self.enriched_at.isoformat(),
        }


@dataclass(slots=True)
class PartialEnrichment:
    """Lightweight knowledge about a neighbor, captured while researching another chunk."""

    chunk_id: str
    learned: str
    relationship: Relationship
    confidence: float
    source_chunk_id: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class ChunkRecord:
    """A chunk joined with its owning file, as the indexer stored it."""

    id: str
    file_id: int
    file_path: str
    file_hash: str
    name: Optional[str] = None
    type: Optional[str] = None
    code: str = ""
    signature: Optional[str] = None
    docstring: Optional[str] = None
    start_line: Optional[int] = None
    end_line: Optional[int] = None
    token_count: int = 0
    centrality: float = 0.0
    exported: bool = False
    fan_in: int = 0
    fan_out: int = 0

    @property
    def display_name(self) -> str:
        return self.name or "anonymous"


@dataclass(slots=True)
class ChunkCandidate:
    """Static and graph signals the priority ranker scores."""

    chunk_id: str
    file_id: int
    path: Optional[str]
    centrality: float = 0.0
    fan_in: int = 0
    fan_out: int = 0
    token_count: int = 0
    exported: bool = False


@dataclass(slots=True)
class NeighborChunk:
    """Compact view of a chunk returned by graph traversals."""

    id: str
    name: Optional[str]
    type: Optional[str]
    file_path: str
    summary: Optional[str] = None
    hops: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "file": self.file_path,
            "summary": self.summary,
        }


@dataclass(slots=True)
class EnrichmentState:
    """Validity inputs for a stored enrichment.

    ``current_hash`` is None when the chunk no longer exists.
    """

    chunk_id: str
    file_id: int
    content_hash: str
    analysis_version: str
    current_hash: Optional[str]

    @property
    def is_orphaned(self) -> bool:
        return self.current_hash is None

    def is_valid(self, analysis_version: str) -> bool:
        return (
            self.current_hash is not None
            and self.content_hash == self.current_hash
            and self.analysis_version == analysis_version
        )


@dataclass(slots=True)
class GrepMatch:
    path: str
    line: int
    text: str


@dataclass(slots=True)
class Message:
    role: str
    content: str


@dataclass(slots=True)
class DiscoveredChunk:
    chunk_id: str
    name: Optional[str]
    relationship: Relationship


@dataclass
class ResearchSession:
    """Transient state of one research run."""

    target_chunk_id: str
    history: List[Message] = field(default_factory=list)
    discovered: Dict[str, DiscoveredChunk] = field(default_factory=dict)
    tool_call_count: int = 0
    turns: int = 0
    deferred_calls: int = 0
    dropped_calls: int = 0
    stop_reason: Optional[StopReason] = None

    def add_message(self, role: str, content: str) -> None:
        self.history.append(Message(role=role, content=content))

    def remember(self, chunk_id: str, name: Optional[str], relationship: Relationship) -> None:
        """Record a discovered chunk; re-discovery updates the tag but keeps its position."""
        if chunk_id == self.target_chunk_id:
            return
        existing = self.discovered.get(chunk_id)
        if existing is None:
            self.discovered[chunk_id] = DiscoveredChunk(chunk_id, name, relationship)
            return
        existing.relationship = relationship
        if name:
            existing.name = name


@dataclass
class ResearchOutput:
    target_chunk_id: str
    enrichment: EnrichmentPayload
    research_captured: List[PartialEnrichment]
    research_sources: List[str]
    tool_call_count: int
    stop_reason: StopReason


@dataclass(slots=True)
class BatchResult:
    """Outcome of one queue runner batch.

    ``reason`` explains an empty batch: ``daily_limit``, ``disabled`` or
    ``idle``.
    """

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    reason: Optional[str] = None


@dataclass(slots=True)
class EnrichResult:
    chunk_id: str
    success: bool
    enrichment: Optional[Enrichment] = None
    error: Optional[str] = None
