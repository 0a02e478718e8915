"""Tests for enrichment validity and invalidation."""

from __future__ import annotations

from datetime import datetime, timezone

from codelore.enrichment.cache import EnrichmentCacheManager
from codelore.enrichment.config import CacheConfig
from codelore.enrichment.models import Enrichment, QueueStatus


def _store_enrichment(store, chunk_id: str, content_hash: str, version: str = "v1.0") -> None:
    file_id = store.get_chunk(chunk_id).file_id
    store.upsert_enrichment(
        Enrichment(
            chunk_id=chunk_id,
            file_id=file_id,
            content_hash=content_hash,
            analysis_version=version,
            summary="s",
            purpose="p",
        )
    )


def test_fresh_enrichment_is_valid(seeded_store) -> None:
    cache = EnrichmentCacheManager(seeded_store)
    _store_enrichment(seeded_store, "chunk-checkout", "hash-services")

    assert cache.is_valid("chunk-checkout")
    assert not cache.is_valid("chunk-charge")


def test_file_edit_invalidates_and_requeues_once(seeded_store) -> None:
    cache = EnrichmentCacheManager(seeded_store)
    _store_enrichment(seeded_store, "chunk-checkout", "hash-services")
    seeded_store.upsert_file("src/services/checkout.py", "hash-edited", fan_in=12)

    assert not cache.is_valid("chunk-checkout")
    assert cache.invalidate_stale() == 1
    assert cache.invalidate_stale() == 0

    assert seeded_store.get_enrichment("chunk-checkout") is None
    items = [i for i in seeded_store.list_queue_items() if i.chunk_id == "chunk-checkout"]
    assert len(items) == 1
    assert items[0].status == QueueStatus.PENDING
    assert items[0].priority == 50


def test_version_bump_invalidates_everything(seeded_store) -> None:
    _store_enrichment(seeded_store, "chunk-checkout", "hash-services")
    _store_enrichment(seeded_store, "chunk-handler", "hash-routes")

    cache = EnrichmentCacheManager(seeded_store, CacheConfig(analysis_version="v2.0"))
    assert cache.stats().stale == 2
    assert cache.invalidate_stale() == 2
    assert seeded_store.count_enriched_chunks() == 0


def test_invalidate_file_uses_file_priority(seeded_store) -> None:
    _store_enrichment(seeded_store, "chunk-checkout", "hash-services")
    _store_enrichment(seeded_store, "chunk-charge", "hash-services")
    _store_enrichment(seeded_store, "chunk-handler", "hash-routes")
    file_id = seeded_store.get_chunk("chunk-checkout").file_id

    cache = EnrichmentCacheManager(seeded_store)
    assert cache.invalidate_file(file_id) == 2

    queued = {item.chunk_id: item.priority for item in seeded_store.list_queue_items()}
    assert queued == {"chunk-checkout": 75, "chunk-charge": 75}
    assert seeded_store.get_enrichment("chunk-handler") is not None


def test_orphans_are_not_requeued(seeded_store) -> None:
    _store_enrichment(seeded_store, "chunk-validate", "hash-services")
    seeded_store.delete_chunk("chunk-validate")

    cache = EnrichmentCacheManager(seeded_store)
    assert cache.invalidate_stale() == 0
    assert seeded_store.list_queue_items() == []
    assert cache.stats().orphaned == 1


def test_stats(seeded_store) -> None:
    _store_enrichment(seeded_store, "chunk-checkout", "hash-services")
    _store_enrichment(seeded_store, "chunk-handler", "old-hash")

    stats = EnrichmentCacheManager(seeded_store).stats()
    assert stats.to_dict() == {
        "total": 2,
        "valid": 1,
        "stale": 1,
        "orphaned": 0,
        "analysis_version": "v1.0",
    }


def test_cleanup_uses_retention_window(seeded_store) -> None:
    seeded_store.queue_for_enrichment("chunk-charge", 1, 10)
    item = seeded_store.get_queue_item_for_chunk("chunk-charge")
    seeded_store.update_queue_item(item.id, QueueStatus.PROCESSING)
    seeded_store.update_queue_item(
        item.id,
        QueueStatus.COMPLETE,
        processed_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
    )

    recent = EnrichmentCacheManager(
        seeded_store, clock=lambda: datetime(2024, 3, 5, tzinfo=timezone.utc)
    )
    assert recent.cleanup_orphans()["completed_queue_items"] == 0

    later = EnrichmentCacheManager(
        seeded_store, clock=lambda: datetime(2024, 3, 20, tzinfo=timezone.utc)
    )
    assert later.cleanup_orphans()["completed_queue_items"] == 1
    assert seeded_store.list_queue_items() == []
