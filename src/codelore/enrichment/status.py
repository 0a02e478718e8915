"""Enrichment status collection for operator dashboards."""

from __future__ import annotations

from typing import Any, Dict, Optional

from .cache import EnrichmentCacheManager
from .prioritizer import EnrichmentPrioritizer
from .queue_runner import BackgroundEnrichmentQueue


def collect_enrichment_status(
    queue: BackgroundEnrichmentQueue,
    cache: EnrichmentCacheManager,
    prioritizer: Optional[EnrichmentPrioritizer] = None,
    *,
    max_retries: int = 3,
) -> Dict[str, Any]:
    """Collect enrichment status for the CLI and dashboards.

    Args:
        queue: Background runner whose session and quota counters are reported
        cache: Staleness oracle for valid/stale/orphaned counts
        prioritizer: Optional ranker for coverage figures

    Returns:
        Status report dict with keys:
        - runner: Runner stats (enabled flag, session counters, quota)
        - cache: Cache validity counts and analysis version
        - coverage: Enriched/total chunks and hub count (when a prioritizer is given)
    """
    report: Dict[str, Any] = {
        "runner": queue.get_stats(),
        "cache": cache.stats().to_dict(),
    }
    if prioritizer is not None:
        report["coverage"] = prioritizer.stats(max_retries)
    return report
