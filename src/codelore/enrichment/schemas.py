"""Model-facing schema for structured enrichment output.

The limits keep enrichments short enough to be folded into embedding
representations without crowding out the code itself.
"""

from __future__ import annotations

from typing import Annotated, List, Literal

from pydantic import BaseModel, Field, StringConstraints

Phrase = Annotated[str, StringConstraints(max_length=50)]
PatternName = Annotated[str, StringConstraints(max_length=30)]
Concern = Annotated[str, StringConstraints(max_length=80)]
Rule = Annotated[str, StringConstraints(max_length=100)]
Tag = Annotated[str, StringConstraints(max_length=30)]


class EnrichmentPayload(BaseModel):
    """Semantic fields the language model must produce for a chunk."""

    summary: str = Field(
        ..., max_length=150, description="Exactly 1 sentence. What does this code do?"
    )
    purpose: str = Field(
        ..., max_length=200, description="Exactly 1 sentence. Why does this code exist?"
    )

    key_operations: List[Phrase] = Field(
        default_factory=list, max_length=5, description="3-5 short phrases of main actions"
    )
    side_effects: List[Phrase] = Field(
        default_factory=list,
        max_length=5,
        description="Database writes, API calls, emails, etc.",
    )
    state_changes: List[Phrase] = Field(
        default_factory=list, max_length=5, description="What data/state does this modify?"
    )
    implicit_dependencies: List[Phrase] = Field(
        default_factory=list,
        max_length=5,
        description="Env vars, external services required",
    )

    design_patterns: List[PatternName] = Field(
        default_factory=list, max_length=3, description="Factory, Singleton, Observer, etc."
    )
    architectural_patterns: List[PatternName] = Field(
        default_factory=list,
        max_length=3,
        description="MVC, Service Layer, Repository, etc.",
    )
    anti_patterns: List[Phrase] = Field(
        default_factory=list, max_length=3, description="God class, tight coupling, etc."
    )

    complexity: Literal["low", "medium", "high"] = Field(
        ..., description="Based on cyclomatic complexity"
    )
    security_concerns: List[Concern] = Field(
        default_factory=list, max_length=3, description="Only real security issues"
    )
    performance_concerns: List[Concern] = Field(
        default_factory=list, max_length=3, description="Only real performance issues"
    )

    business_rules: List[Rule] = Field(
        default_factory=list, max_length=5, description="Domain logic encoded in code"
    )

    tags: List[Tag] = Field(
        ..., min_length=3, max_length=10, description="5-10 searchable keywords"
    )

    class Config:
        extra = "ignore"
