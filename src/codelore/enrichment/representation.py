"""Text representations of chunks for embedding.

Context is prepended to the raw code before embedding: location, the
cleaned docstring or signature, and whatever enrichment is available. The
tier records how much model-generated context went in:

* ``structural`` - location, docstring/signature and code only
* ``partial`` - structural plus knowledge captured while researching neighbors
* ``full`` - structural plus the chunk's own enrichment
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Tuple

from .models import ChunkRecord, ContextTier, Enrichment, PartialEnrichment

MAX_CONTEXT_CHARS = 1500
MAX_CODE_CHARS = 2000
MIN_PARTIAL_CONFIDENCE = 0.5
MAX_PARTIALS = 3

_TRUNCATED = "\n... (truncated)"


def clean_docstring(docstring: Optional[str]) -> str:
    """Strip comment delimiters and collapse blank runs."""
    if not docstring:
        return ""
    text = docstring.strip()
    text = re.sub(r'^(?:/\*\*|"""|\'\'\')\s*', "", text)
    text = re.sub(r'\s*(?:\*/|"""|\'\'\')$', "", text)
    text = re.sub(r"^\s*\*\s?", "", text, flags=re.MULTILINE)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _location_line(chunk: ChunkRecord) -> str:
    parts = [f"File: {chunk.file_path}"]
    if chunk.type and chunk.type != "module":
        parts.append(f"{chunk.type.capitalize()}: {chunk.display_name}")
    if chunk.fan_in > 5:
        parts.append(f"(imported by {chunk.fan_in} files)")
    return " | ".join(parts)


def _structural_parts(chunk: ChunkRecord) -> List[str]:
    parts = [_location_line(chunk)]
    docstring = clean_docstring(chunk.docstring)
    if docstring:
        parts.append(docstring)
    elif chunk.signature:
        parts.append(f"Signature: {chunk.signature}")
    return parts


def _append_code(parts: List[str], code: str) -> str:
    context_length = len("\n\n".join(parts)) + len("\n\n")
    budget = MAX_CONTEXT_CHARS + MAX_CODE_CHARS - context_length
    if len(code) > budget:
        code = code[: max(0, budget - len(_TRUNCATED))] + _TRUNCATED
    return "\n\n".join(parts + [code])


def build_enrichment_text(enrichment: Enrichment) -> str:
    sentences: List[str] = []
    if enrichment.summary:
        sentences.append(enrichment.summary)
    if enrichment.purpose and enrichment.purpose != enrichment.summary:
        sentences.append(enrichment.purpose)
    if enrichment.key_operations:
        sentences.append(f"Operations: {', '.join(enrichment.key_operations[:5])}.")
    if enrichment.side_effects:
        sentences.append(f"Side effects: {', '.join(enrichment.side_effects[:4])}.")
    patterns = list(enrichment.design_patterns) + list(enrichment.architectural_patterns)
    if patterns:
        sentences.append(f"Patterns: {', '.join(patterns)}.")
    if enrichment.tags:
        sentences.append(f"Tags: {', '.join(enrichment.tags[:10])}.")
    if enrichment.complexity.value == "high":
        sentences.append("High complexity.")
    return " ".join(sentences)


def build_embedding_representation(
    chunk: ChunkRecord, enrichment: Optional[Enrichment] = None
) -> str:
    """Structural representation, plus the enrichment text when given."""
    parts = _structural_parts(chunk)
    if enrichment is not None:
        text = build_enrichment_text(enrichment)
        if text:
            parts.append(text)
    return _append_code(parts, chunk.code)


def build_partial_representation(
    chunk: ChunkRecord, partials: Sequence[PartialEnrichment]
) -> str:
    parts = _structural_parts(chunk)
    learned = " ".join(
        f"[{partial.relationship.value}] {partial.learned}"
        for partial in [p for p in partials if p.confidence >= MIN_PARTIAL_CONFIDENCE][
            :MAX_PARTIALS
        ]
    )
    if learned:
        parts.append(f"Context: {learned}")
    return _append_code(parts, chunk.code)


def build_tier_aware_representation(
    chunk: ChunkRecord,
    enrichment: Optional[Enrichment] = None,
    partials: Optional[Sequence[PartialEnrichment]] = None,
) -> Tuple[str, ContextTier]:
    """Pick the richest representation the available data supports."""
    if enrichment is not None and enrichment.summary:
        return build_embedding_representation(chunk, enrichment), ContextTier.FULL
    if partials:
        return build_partial_representation(chunk, partials), ContextTier.PARTIAL
    return build_embedding_representation(chunk), ContextTier.STRUCTURAL
