"""Staleness oracle for stored enrichments.

An enrichment is valid only while the hash of its chunk's owning file and
the configured analysis version both match what was recorded when it was
produced. Invalid enrichments are deleted and their chunks re-queued.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from .config import CacheConfig
from .interfaces import GraphStore
from .models import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CacheStats:
    total: int
    valid: int
    stale: int
    orphaned: int
    analysis_version: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EnrichmentCacheManager:
    """Validity checks, invalidation and cleanup for enrichments."""

    def __init__(
        self,
        store: GraphStore,
        config: Optional[CacheConfig] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._config = config or CacheConfig()
        self._clock = clock or utc_now

    @property
    def analysis_version(self) -> str:
        return self._config.analysis_version

    def is_valid(self, chunk_id: str) -> bool:
        states = self._store.list_enrichment_validity(chunk_id=chunk_id)
        return bool(states) and states[0].is_valid(self._config.analysis_version)

    def invalidate_stale(self) -> int:
        """Delete every stale enrichment and re-queue its chunk.

        Orphans (chunk gone) are not re-queued; ``cleanup_orphans`` removes them.

        Returns:
            Number of enrichments invalidated
        """
        invalidated = 0
        for state in self._store.list_enrichment_validity():
            if state.is_orphaned or state.is_valid(self._config.analysis_version):
                continue
            self._store.delete_enrichment_and_requeue(
                state.chunk_id, state.file_id, self._config.stale_priority
            )
            invalidated += 1

        if invalidated:
            logger.info(
                "Invalidated stale enrichments",
                extra={
                    "invalidated": invalidated,
                    "analysis_version": self._config.analysis_version,
                },
            )
        return invalidated

    def invalidate_file(self, file_id: int) -> int:
        """Discard every enrichment in a file known to have changed.

        Returns:
            Number of enrichments invalidated
        """
        invalidated = 0
        for state in self._store.list_enrichment_validity(file_id=file_id):
            if state.is_orphaned:
                continue
            self._store.delete_enrichment_and_requeue(
                state.chunk_id, file_id, self._config.file_priority
            )
            invalidated += 1

        logger.debug(
            "Invalidated file enrichments",
            extra={"file_id": file_id, "invalidated": invalidated},
        )
        return invalidated

    def cleanup_orphans(self) -> Dict[str, int]:
        cutoff = self._clock() - timedelta(days=self._config.retention_days)
        removed = self._store.cleanup_orphans(completed_before=cutoff)
        logger.info("Cleaned up enrichment data", extra={"removed": removed})
        return removed

    def stats(self) -> CacheStats:
        valid = stale = orphaned = 0
        states = self._store.list_enrichment_validity()
        for state in states:
            if state.is_orphaned:
                orphaned += 1
            elif state.is_valid(self._config.analysis_version):
                valid += 1
            else:
                stale += 1
        return CacheStats(
            total=len(states),
            valid=valid,
            stale=stale,
            orphaned=orphaned,
            analysis_version=self._config.analysis_version,
        )
