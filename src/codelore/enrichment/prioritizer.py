"""Priority ranking for background enrichment.

Scores chunks from static and graph signals so the expensive research loop
is spent on code that matters most: hub functions first, then core
directories and entry points. Tests, type declarations, declarative config
and tiny chunks are never queued.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Any, Dict, Optional

from .config import PrioritizerConfig
from .interfaces import GraphStore
from .models import ChunkCandidate

logger = logging.getLogger(__name__)

_TEST_DIRECTORIES = ("/test/", "/tests/", "/__tests__/")
_TEST_MARKERS = (".test.", ".spec.")
_DECLARATION_SUFFIXES = (".d.ts", ".pyi")
_DECLARATIVE_SUFFIXES = (".json", ".yaml", ".yml", ".toml")


def is_test_path(path: str) -> bool:
    if any(marker in path for marker in _TEST_DIRECTORIES + _TEST_MARKERS):
        return True
    basename = posixpath.basename(path)
    return basename.endswith(".py") and (
        basename.startswith("test_") or basename.endswith("_test.py")
    )


def should_skip_path(path: Optional[str]) -> bool:
    """Whether a path is excluded from enrichment regardless of its signals."""
    if not path:
        return True
    normalized = path.replace("\\", "/")
    if is_test_path(normalized):
        return True
    if normalized.endswith(_DECLARATION_SUFFIXES):
        return True
    if "/config/" in normalized and normalized.endswith(_DECLARATIVE_SUFFIXES):
        return True
    return False


class EnrichmentPrioritizer:
    """Scores candidates and inserts queue items for the ones worth enriching."""

    def __init__(
        self,
        store: GraphStore,
        config: Optional[PrioritizerConfig] = None,
        *,
        analysis_version: str = "v1.0",
    ) -> None:
        self._store = store
        self._config = config or PrioritizerConfig()
        self._analysis_version = analysis_version

    @property
    def config(self) -> PrioritizerConfig:
        return self._config

    def score(self, candidate: ChunkCandidate) -> int:
        """Priority for a candidate; 0 means never queue.

        Skip rules are checked before any arithmetic, so a skipped chunk
        scores 0 whatever its centrality.
        """
        cfg = self._config
        if should_skip_path(candidate.path):
            return 0
        if candidate.token_count < cfg.min_tokens:
            return 0

        path = candidate.path.replace("\\", "/")
        priority = cfg.base_score

        # Only the highest centrality tier counts
        if candidate.centrality > cfg.centrality_high:
            priority += cfg.centrality_high_bonus
        elif candidate.centrality > cfg.centrality_medium:
            priority += cfg.centrality_medium_bonus
        elif candidate.centrality > cfg.centrality_low:
            priority += cfg.centrality_low_bonus

        if candidate.fan_in > cfg.fan_in_threshold:
            priority += cfg.fan_in_bonus
        if candidate.fan_out > cfg.fan_out_threshold:
            priority += cfg.fan_out_bonus

        if any(directory in path for directory in cfg.core_directories):
            priority += cfg.core_directory_bonus

        # Entry point: exported but imported by nobody
        if candidate.fan_in == 0 and candidate.exported:
            priority += cfg.entry_point_bonus

        if candidate.token_count > cfg.large_tokens:
            priority += cfg.size_bonus
        if candidate.token_count > cfg.very_large_tokens:
            priority += cfg.size_bonus

        return max(0, priority)

    def calculate_priority(self, chunk_id: str) -> int:
        candidate = self._store.get_candidate(chunk_id)
        if candidate is None:
            return 0
        return self.score(candidate)

    def select_and_queue(self, limit: Optional[int] = None) -> int:
        """Queue the best unenriched chunks.

        Candidates are chunks with no open queue item and no valid
        enrichment, highest centrality first. Running this twice without
        intervening changes queues nothing the second time.

        Returns:
            Number of chunks newly queued
        """
        candidates = self._store.list_enrichment_candidates(
            limit or self._config.candidate_limit, self._analysis_version
        )
        queued = 0
        skipped = 0
        for candidate in candidates:
            priority = self.score(candidate)
            if priority <= 0:
                skipped += 1
                continue
            if self._store.queue_for_enrichment(
                candidate.chunk_id, candidate.file_id, priority
            ):
                queued += 1

        logger.info(
            "Queued chunks for enrichment",
            extra={
                "candidates": len(candidates),
                "queued": queued,
                "skipped": skipped,
            },
        )
        return queued

    def stats(self, max_retries: int = 3) -> Dict[str, Any]:
        queue = self._store.queue_status_counts(max_retries)
        total_chunks = self._store.count_chunks()
        enriched = self._store.count_enriched_chunks()
        hubs = self._store.count_hub_chunks(self._config.centrality_medium)
        rate = (enriched / total_chunks * 100) if total_chunks else 0.0
        return {
            "queue": queue,
            "enriched_chunks": enriched,
            "total_chunks": total_chunks,
            "hub_chunks": hubs,
            "enrichment_rate": f"{rate:.1f}%",
        }
