"""Tests for tier-aware embedding representations."""

from __future__ import annotations

from codelore.enrichment.models import (
    ChunkRecord,
    Complexity,
    ContextTier,
    Enrichment,
    PartialEnrichment,
    Relationship,
)
from codelore.enrichment.representation import (
    MAX_CODE_CHARS,
    MAX_CONTEXT_CHARS,
    build_enrichment_text,
    build_tier_aware_representation,
    clean_docstring,
)


def _chunk(**overrides) -> ChunkRecord:
    data = dict(
        id="chunk-1",
        file_id=1,
        file_path="src/services/checkout.py",
        file_hash="h",
        name="checkout",
        type="function",
        code="def checkout(cart):\n    return charge(cart)\n",
        signature="def checkout(cart)",
        fan_in=12,
    )
    data.update(overrides)
    return ChunkRecord(**data)


def _enrichment(**overrides) -> Enrichment:
    data = dict(
        chunk_id="chunk-1",
        file_id=1,
        content_hash="h",
        analysis_version="v1.0",
        summary="Charges the customer for a cart.",
        purpose="Central payment entry point.",
        key_operations=["validate cart", "charge card"],
        tags=["checkout", "payments", "billing"],
    )
    data.update(overrides)
    return Enrichment(**data)


def test_clean_docstring() -> None:
    assert clean_docstring('"""Run a checkout."""') == "Run a checkout."
    assert clean_docstring("/**\n * Charge the card.\n * Retries once.\n */") == (
        "Charge the card.\nRetries once."
    )
    assert clean_docstring(None) == ""


def test_structural_tier() -> None:
    text, tier = build_tier_aware_representation(_chunk())

    assert tier == ContextTier.STRUCTURAL
    first_line = text.splitlines()[0]
    assert first_line == (
        "File: src/services/checkout.py | Function: checkout | (imported by 12 files)"
    )
    assert "Signature: def checkout(cart)" in text
    assert text.endswith("return charge(cart)\n")


def test_docstring_wins_over_signature() -> None:
    text, _ = build_tier_aware_representation(_chunk(docstring='"""Run a checkout."""'))
    assert "Run a checkout." in text
    assert "Signature:" not in text


def test_full_tier_uses_enrichment() -> None:
    partial = PartialEnrichment(
        chunk_id="chunk-1",
        learned="Called by the routes handler",
        relationship=Relationship.CALLER,
        confidence=0.9,
        source_chunk_id="chunk-2",
    )
    text, tier = build_tier_aware_representation(_chunk(), _enrichment(), [partial])

    assert tier == ContextTier.FULL
    assert "Charges the customer for a cart." in text
    assert "Operations: validate cart, charge card." in text
    assert "Called by the routes handler" not in text


def test_partial_tier_filters_low_confidence() -> None:
    partials = [
        PartialEnrichment("chunk-1", "Called by routes", Relationship.CALLER, 0.9, "a"),
        PartialEnrichment("chunk-1", "Guess", Relationship.SIMILAR, 0.3, "b"),
    ]
    text, tier = build_tier_aware_representation(_chunk(), None, partials)

    assert tier == ContextTier.PARTIAL
    assert "Context: [caller] Called by routes" in text
    assert "Guess" not in text


def test_enrichment_text() -> None:
    text = build_enrichment_text(
        _enrichment(
            purpose="Charges the customer for a cart.",
            design_patterns=["Facade"],
            complexity=Complexity.HIGH,
        )
    )
    assert text.count("Charges the customer for a cart.") == 1
    assert "Patterns: Facade." in text
    assert text.endswith("High complexity.")


def test_long_code_is_truncated_to_budget() -> None:
    text, _ = build_tier_aware_representation(_chunk(code="x" * 10_000))
    assert len(text) <= MAX_CONTEXT_CHARS + MAX_CODE_CHARS
    assert text.endswith("... (truncated)")
