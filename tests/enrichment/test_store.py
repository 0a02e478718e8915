"""Tests for the SQLite graph store and enrichment queue persistence."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from codelore.enrichment.exceptions import (
    InvalidStateTransitionError,
    QueueItemNotFoundError,
    StateTransitionRaceError,
)
from codelore.enrichment.models import (
    Enrichment,
    PartialEnrichment,
    QueueStatus,
    Relationship,
)


def _enrichment(chunk_id: str, file_id: int, content_hash: str, version: str = "v1.0") -> Enrichment:
    return Enrichment(
        chunk_id=chunk_id,
        file_id=file_id,
        content_hash=content_hash,
        analysis_version=version,
        summary=f"Summary of {chunk_id}.",
        purpose="Exists for tests.",
        key_operations=["one", "two"],
        tags=["a", "b", "c"],
        model_used="scripted-model",
        confidence=0.8,
        research_sources=["chunk-charge"],
    )


class TestGraph:
    def test_get_chunk_joins_file(self, seeded_store) -> None:
        chunk = seeded_store.get_chunk("chunk-checkout")
        assert chunk.file_path == "src/services/checkout.py"
        assert chunk.file_hash == "hash-services"
        assert chunk.fan_in == 12
        assert chunk.token_count == 600
        assert seeded_store.get_chunk("missing") is None

    def test_callers_and_callees(self, seeded_store) -> None:
        callees = seeded_store.get_callees("chunk-checkout")
        assert {c.id for c in callees} == {"chunk-charge", "chunk-validate"}
        callers = seeded_store.get_callers("chunk-checkout")
        assert [c.id for c in callers] == ["chunk-handler"]

    def test_multi_hop_traversal_respects_depth(self, seeded_store) -> None:
        assert {c.id for c in seeded_store.get_callees("chunk-handler", 1)} == {"chunk-checkout"}
        two_hops = seeded_store.get_callees("chunk-handler", 2)
        assert {c.id: c.hops for c in two_hops} == {
            "chunk-checkout": 1,
            "chunk-charge": 2,
            "chunk-validate": 2,
        }

    def test_traversal_handles_cycles(self, seeded_store) -> None:
        seeded_store.add_call_edge("chunk-charge", "chunk-handler")
        reachable = seeded_store.get_callees("chunk-checkout", 5)
        assert "chunk-checkout" not in {c.id for c in reachable}
        assert len(reachable) == 3

    def test_file_siblings(self, seeded_store) -> None:
        siblings = seeded_store.get_file_siblings("chunk-checkout")
        assert [s.id for s in siblings] == ["chunk-charge", "chunk-validate"]

    def test_find_chunk_at_matches_relative_suffix(self, seeded_store) -> None:
        assert seeded_store.find_chunk_at("services/checkout.py", 6).id == "chunk-charge"
        assert seeded_store.find_chunk_at("src/api/routes.py", 1).id == "chunk-handler"
        assert seeded_store.find_chunk_at("services/checkout.py", 4) is None

    def test_similarity_search_prefers_enriched_vectors(self, seeded_store) -> None:
        seeded_store.upsert_chunk_embedding("chunk-charge", [1.0, 0.0])
        seeded_store.upsert_chunk_embedding("chunk-validate", [0.0, 1.0])
        seeded_store.upsert_enriched_embedding("chunk-validate", [0.9, 0.1])

        results = seeded_store.similarity_search([1.0, 0.0], limit=2)
        assert [neighbor.id for neighbor, _ in results] == ["chunk-charge", "chunk-validate"]
        assert results[0][1] == pytest.approx(1.0)

    def test_similarity_search_skips_mismatched_dimensions(self, seeded_store) -> None:
        seeded_store.upsert_chunk_embedding("chunk-charge", [1.0, 0.0, 0.0])
        assert seeded_store.similarity_search([1.0, 0.0], limit=5) == []
        assert seeded_store.similarity_search([0.0, 0.0], limit=5) == []


class TestQueue:
    def test_queue_is_deduplicated_per_chunk(self, seeded_store) -> None:
        assert seeded_store.queue_for_enrichment("chunk-charge", 1, 50) is True
        assert seeded_store.queue_for_enrichment("chunk-charge", 1, 40) is False
        items = seeded_store.list_queue_items()
        assert len(items) == 1
        assert items[0].priority == 50

    def test_requeue_raises_pending_priority(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        seeded_store.queue_for_enrichment("chunk-charge", 1, 75)
        assert seeded_store.get_queue_item_for_chunk("chunk-charge").priority == 75

    def test_processing_item_is_left_alone(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        seeded_store.update_queue_item(item.id, QueueStatus.PROCESSING)

        assert seeded_store.queue_for_enrichment("chunk-charge", 1, 99) is False
        assert seeded_store.get_queue_item(item.id).status == QueueStatus.PROCESSING

    def test_terminal_item_is_revived_with_fresh_budget(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        seeded_store.update_queue_item(item.id, QueueStatus.PROCESSING)
        seeded_store.update_queue_item(
            item.id, QueueStatus.FAILED, attempts=3, error_message="boom"
        )

        assert seeded_store.queue_for_enrichment("chunk-charge", 1, 60) is True
        revived = seeded_store.get_queue_item(item.id)
        assert revived.status == QueueStatus.PENDING
        assert revived.attempts == 0
        assert revived.error_message is None
        assert revived.priority == 60

    def test_update_writes_all_fields_atomically(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        retry_at = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)

        seeded_store.update_queue_item(item.id, QueueStatus.PROCESSING)
        updated = seeded_store.update_queue_item(
            item.id,
            QueueStatus.PENDING,
            expected_status=QueueStatus.PROCESSING,
            attempts=1,
            next_retry_at=retry_at,
            error_message="timeout",
        )
        assert updated.status == QueueStatus.PENDING
        assert updated.attempts == 1
        assert updated.next_retry_at == retry_at
        assert updated.error_message == "timeout"

    def test_update_rejects_illegal_transition(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        with pytest.raises(InvalidStateTransitionError):
            seeded_store.update_queue_item(item.id, QueueStatus.COMPLETE)
        assert seeded_store.get_queue_item(item.id).status == QueueStatus.PENDING

    def test_update_detects_stale_expectation(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        seeded_store.update_queue_item(item.id, QueueStatus.PROCESSING)
        with pytest.raises(StateTransitionRaceError):
            seeded_store.update_queue_item(
                item.id, QueueStatus.PROCESSING, expected_status=QueueStatus.PENDING
            )

    def test_update_missing_item(self, seeded_store) -> None:
        with pytest.raises(QueueItemNotFoundError):
            seeded_store.update_queue_item(999, QueueStatus.PROCESSING)

    def test_batch_ordering_and_retry_timer(self, seeded_store) -> None:
        now = datetime(2024, 1, 1, 12, tzinfo=timezone.utc)
        seeded_store.queue_for_enrichment("chunk-validate", 1, 10)
        seeded_store.queue_for_enrichment("chunk-charge", 1, 90)
        seeded_store.queue_for_enrichment("chunk-handler", 2, 10)
        seeded_store.queue_for_enrichment("chunk-checkout", 1, 300)

        checkout = seeded_store.get_queue_item_for_chunk("chunk-checkout")
        seeded_store.update_queue_item(checkout.id, QueueStatus.PROCESSING)
        seeded_store.update_queue_item(
            checkout.id,
            QueueStatus.PENDING,
            attempts=1,
            next_retry_at=now + timedelta(minutes=2),
        )

        batch = seeded_store.get_queue_batch(10, now=now)
        assert [item.chunk_id for item in batch] == [
            "chunk-charge",
            "chunk-validate",
            "chunk-handler",
        ]
        later = seeded_store.get_queue_batch(1, now=now + timedelta(minutes=3))
        assert [item.chunk_id for item in later] == ["chunk-checkout"]
        assert seeded_store.get_queue_batch(0, now=now) == []

    def test_recover_processing_items_keeps_attempts(self, seeded_store) -> None:
        seeded_store.queue_for_enrichment("chunk-charge", 1, 50)
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        seeded_store.update_queue_item(item.id, QueueStatus.PROCESSING, attempts=2)

        assert seeded_store.recover_processing_items() == 1
        recovered = seeded_store.get_queue_item(item.id)
        assert recovered.status == QueueStatus.PENDING
        assert recovered.attempts == 2
        assert seeded_store.recover_processing_items() == 0

    def test_status_counts(self, seeded_store) -> None:
        for chunk_id in ("chunk-charge", "chunk-validate", "chunk-handler"):
            seeded_store.queue_for_enrichment(chunk_id, 1, 10)
        charge = seeded_store.get_queue_item_for_chunk("chunk-charge")
        seeded_store.update_queue_item(charge.id, QueueStatus.PROCESSING)
        seeded_store.update_queue_item(charge.id, QueueStatus.FAILED, attempts=3)
        validate = seeded_store.get_queue_item_for_chunk("chunk-validate")
        seeded_store.update_queue_item(validate.id, QueueStatus.PROCESSING)
        seeded_store.update_queue_item(validate.id, QueueStatus.PENDING, attempts=1)

        counts = seeded_store.queue_status_counts(max_retries=3)
        assert counts["pending"] == 2
        assert counts["failed"] == 1
        assert counts["retrying"] == 1
        assert counts["permanently_failed"] == 1
        assert counts["total"] == 3


class TestEnrichments:
    def test_round_trip(self, seeded_store) -> None:
        file_id = seeded_store.get_chunk("chunk-checkout").file_id
        seeded_store.upsert_enrichment(_enrichment("chunk-checkout", file_id, "hash-services"))

        stored = seeded_store.get_enrichment("chunk-checkout")
        assert stored.summary == "Summary of chunk-checkout."
        assert stored.key_operations == ["one", "two"]
        assert stored.tags == ["a", "b", "c"]
        assert stored.research_sources == ["chunk-charge"]
        assert stored.confidence == pytest.approx(0.8)
        assert seeded_store.count_enriched_chunks() == 1

    def test_validity_tracks_current_file_hash(self, seeded_store) -> None:
        file_id = seeded_store.get_chunk("chunk-checkout").file_id
        seeded_store.upsert_enrichment(_enrichment("chunk-checkout", file_id, "hash-services"))
        seeded_store.upsert_file("src/services/checkout.py", "hash-changed", fan_in=12)

        (state,) = seeded_store.list_enrichment_validity(chunk_id="chunk-checkout")
        assert state.current_hash == "hash-changed"
        assert not state.is_valid("v1.0")

    def test_delete_and_requeue_is_one_operation(self, seeded_store) -> None:
        file_id = seeded_store.get_chunk("chunk-charge").file_id
        seeded_store.upsert_enrichment(_enrichment("chunk-charge", file_id, "hash-services"))
        seeded_store.upsert_enriched_embedding("chunk-charge", [1.0, 0.0])

        seeded_store.delete_enrichment_and_requeue("chunk-charge", file_id, 50)

        assert seeded_store.get_enrichment("chunk-charge") is None
        assert seeded_store.get_enriched_embedding("chunk-charge") is None
        item = seeded_store.get_queue_item_for_chunk("chunk-charge")
        assert item.status == QueueStatus.PENDING
        assert item.priority == 50

    def test_partials_sorted_by_confidence(self, seeded_store) -> None:
        for confidence in (0.4, 0.9, 0.6):
            seeded_store.add_partial_enrichment(
                PartialEnrichment(
                    chunk_id="chunk-charge",
                    learned=f"learned at {confidence}",
                    relationship=Relationship.CALLEE,
                    confidence=confidence,
                    source_chunk_id="chunk-checkout",
                )
            )
        partials = seeded_store.get_partial_enrichments("chunk-charge")
        assert [p.confidence for p in partials] == [0.9, 0.6, 0.4]
        assert partials[0].relationship == Relationship.CALLEE

    def test_cleanup_orphans(self, seeded_store) -> None:
        file_id = seeded_store.get_chunk("chunk-charge").file_id
        seeded_store.upsert_enrichment(_enrichment("chunk-charge", file_id, "hash-services"))
        seeded_store.queue_for_enrichment("chunk-charge", file_id, 10)
        seeded_store.queue_for_enrichment("chunk-validate", file_id, 10)
        validate = seeded_store.get_queue_item_for_chunk("chunk-validate")
        old = datetime(2020, 1, 1, tzinfo=timezone.utc)
        seeded_store.update_queue_item(validate.id, QueueStatus.PROCESSING)
        seeded_store.update_queue_item(validate.id, QueueStatus.COMPLETE, processed_at=old)

        seeded_store.delete_chunk("chunk-charge")
        removed = seeded_store.cleanup_orphans(completed_before=datetime(2021, 1, 1, tzinfo=timezone.utc))

        assert removed["enrichment"] == 1
        assert removed["enrichment_queue"] == 1
        assert removed["completed_queue_items"] == 1
        assert seeded_store.list_queue_items() == []

    def test_maintenance(self, seeded_store) -> None:
        seeded_store.checkpoint()
        assert seeded_store.integrity_errors() == []
