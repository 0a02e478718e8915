"""Enrichment configuration management with validation.

Settings are pydantic models loaded from YAML
(``~/.codelore/config/enrichment.yaml`` by default). Missing files fall
back to defaults; invalid files raise ``ConfigurationError`` naming each
offending field.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigurationError
from .retry_policy import BackoffPolicy

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".codelore"


class EnrichmentQueueConfig(BaseModel):
    """Background queue and admission control configuration.

    Attributes:
        enabled: Master switch for model-backed enrichment
        background_queue: Run the durable background loop
        on_demand: Allow synchronous enrichment requests
        daily_limit: Maximum successful enrichments per calendar day
        batch_size: Items dequeued per batch
        max_retries: Failed attempts before an item becomes terminal
        idle_delay_seconds: Wait when nothing was eligible
        item_delay_seconds: Pause between items inside a batch
        batch_delay_seconds: Pause between consecutive non-empty batches
        on_demand_item_delay_seconds: Pause between items of an on-demand batch
        backoff: Retry timing for failed attempts
    """

    enabled: bool = Field(default=True, description="Enable model-backed enrichment")
    background_queue: bool = Field(
        default=True, description="Run the background enrichment loop"
    )
    on_demand: bool = Field(default=True, description="Allow on-demand enrichment")
    daily_limit: int = Field(
        default=1000, ge=0, le=1_000_000, description="Maximum enrichments per day"
    )
    batch_size: int = Field(default=5, ge=1, le=100, description="Items per batch")
    max_retries: int = Field(
        default=3, ge=1, le=20, description="Failed attempts before giving up"
    )
    idle_delay_seconds: float = Field(
        default=30.0, ge=0.0, le=3600.0, description="Idle wait when queue is empty"
    )
    item_delay_seconds: float = Field(
        default=0.5, ge=0.0, le=60.0, description="Pause between items"
    )
    batch_delay_seconds: float = Field(
        default=1.0, ge=0.0, le=300.0, description="Pause between batches"
    )
    on_demand_item_delay_seconds: float = Field(
        default=0.2, ge=0.0, le=60.0, description="Pause between on-demand items"
    )
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)


class ResearchAgentConfig(BaseModel):
    """Budgets for the research loop.

    Attributes:
        max_tool_calls: Tool executions per research run (also the turn cap)
        max_hops: Maximum traversal depth for caller/callee tools
        max_files_per_hop: Maximum neighbors returned per traversal
        max_grep_results: Maximum text search hits returned
        max_calls_per_turn: Tool executions per model turn
        max_code_chars: Source characters included in the target prompt
        max_tool_code_chars: Source characters returned by read_chunk
        enrichment_confidence: Confidence assigned to the target enrichment
        partial_confidence: Confidence assigned to captured neighbor knowledge
    """

    max_tool_calls: int = Field(default=12, ge=1, le=50)
    max_hops: int = Field(default=2, ge=1, le=5)
    max_files_per_hop: int = Field(default=5, ge=1, le=20)
    max_grep_results: int = Field(default=50, ge=1, le=500)
    max_calls_per_turn: int = Field(default=3, ge=1, le=10)
    max_code_chars: int = Field(default=2000, ge=100, le=20000)
    max_tool_code_chars: int = Field(default=1500, ge=100, le=20000)
    enrichment_confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    partial_confidence: float = Field(default=0.6, ge=0.0, le=1.0)


class PrioritizerConfig(BaseModel):
    """Thresholds and bonuses for the priority ranker."""

    base_score: int = Field(default=10, ge=0)
    min_tokens: int = Field(default=50, ge=0)
    candidate_limit: int = Field(default=100, ge=1, le=10_000)
    centrality_high: float = Field(default=0.01, ge=0.0)
    centrality_medium: float = Field(default=0.005, ge=0.0)
    centrality_low: float = Field(default=0.001, ge=0.0)
    centrality_high_bonus: int = Field(default=150, ge=0)
    centrality_medium_bonus: int = Field(default=100, ge=0)
    centrality_low_bonus: int = Field(default=50, ge=0)
    fan_in_threshold: int = Field(default=10, ge=0)
    fan_in_bonus: int = Field(default=100, ge=0)
    fan_out_threshold: int = Field(default=15, ge=0)
    fan_out_bonus: int = Field(default=75, ge=0)
    core_directories: List[str] = Field(
        default_factory=lambda: ["/services/", "/core/", "/lib/"]
    )
    core_directory_bonus: int = Field(default=50, ge=0)
    entry_point_bonus: int = Field(default=25, ge=0)
    large_tokens: int = Field(default=500, ge=0)
    very_large_tokens: int = Field(default=1000, ge=0)
    size_bonus: int = Field(default=25, ge=0)

    @field_validator("centrality_medium")
    @classmethod
    def _medium_below_high(cls, value: float, info) -> float:
        high = info.data.get("centrality_high")
        if high is not None and value > high:
            raise ValueError("centrality_medium must not exceed centrality_high")
        return value

    @field_validator("centrality_low")
    @classmethod
    def _low_below_medium(cls, value: float, info) -> float:
        medium = info.data.get("centrality_medium")
        if medium is not None and value > medium:
            raise ValueError("centrality_low must not exceed centrality_medium")
        return value


class CacheConfig(BaseModel):
    """Staleness oracle configuration.

    Attributes:
        analysis_version: Current prompt/schema revision; older results are stale
        stale_priority: Queue priority for re-enrichment after invalidation
        file_priority: Queue priority for re-enrichment after a known file edit
        retention_days: Age after which completed queue items are purged
    """

    analysis_version: str = Field(default="v1.0", min_length=1)
    stale_priority: int = Field(default=50, ge=0)
    file_priority: int = Field(default=75, ge=0)
    retention_days: int = Field(default=7, ge=0, le=365)


class StoreConfig(BaseModel):
    """SQLite store configuration."""

    database_path: Path = Field(
        default=DEFAULT_HOME / "enrichment.db",
        description="SQLite database path",
    )
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL mode")


class LLMConfig(BaseModel):
    """Language model service configuration."""

    provider: Literal["ollama", "openai_compatible"] = "ollama"
    base_url: str = Field(default="http://localhost:11434")
    api_key: Optional[str] = Field(default=None, description="Bearer token, if required")
    model: str = Field(default="llama3.1:8b", min_length=1)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must be an http(s) URL")
        return value.rstrip("/")


class EmbeddingConfig(BaseModel):
    """Optional embedding service used for re-embedding and similarity search."""

    enabled: bool = False
    model_name: str = Field(default="sentence-transformers/all-MiniLM-L6-v2")
    device: Optional[str] = Field(default=None, description="cpu, cuda, mps or auto")


class TelemetryConfig(BaseModel):
    enabled: bool = True
    output_dir: Path = Field(default=DEFAULT_HOME / "telemetry")


class EnrichmentSettings(BaseModel):
    """Top-level enrichment settings.

    Attributes:
        version: Configuration schema version
        workspace_dir: Directory for recovery markers and other runtime state
        queue: Background queue configuration
        research: Research agent budgets
        prioritizer: Priority ranker thresholds
        cache: Staleness oracle configuration
        store: SQLite store configuration
        llm: Language model service
        embeddings: Optional embedding service
        telemetry: Telemetry output
    """

    version: int = Field(default=1, description="Configuration schema version")
    workspace_dir: Path = Field(default=DEFAULT_HOME / "workspace")
    queue: EnrichmentQueueConfig = Field(default_factory=EnrichmentQueueConfig)
    research: ResearchAgentConfig = Field(default_factory=ResearchAgentConfig)
    prioritizer: PrioritizerConfig = Field(default_factory=PrioritizerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    embeddings: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)

    class Config:
        """Pydantic configuration."""
        validate_assignment = True  # Validate on field assignment
        extra = "forbid"  # Reject unknown fields

    def warnings(self) -> List[str]:
        """Describe settings that are overridden by other settings."""
        messages: List[str] = []
        if not self.queue.enabled:
            if self.queue.background_queue:
                messages.append(
                    "queue.background_queue is ignored because queue.enabled is false"
                )
            if self.queue.on_demand:
                messages.append(
                    "queue.on_demand is ignored because queue.enabled is false"
                )
        return messages

    def effective(self) -> "EnrichmentSettings":
        """Return a copy with dependent switches turned off when enrichment is disabled."""
        if self.queue.enabled:
            return self
        queue = self.queue.model_copy(update={"background_queue": False, "on_demand": False})
        return self.model_copy(update={"queue": queue})


class ConfigurationManager:
    """Loads and saves enrichment settings.

    Attributes:
        config_path: Path to configuration file
    """

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_path: Path to config file (default: ~/.codelore/config/enrichment.yaml)
        """
        self._config_path = config_path or (DEFAULT_HOME / "config" / "enrichment.yaml")
        self._config: Optional[EnrichmentSettings] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self) -> EnrichmentSettings:
        """Load and validate configuration.

        Returns:
            Validated settings with dependent switches resolved

        Raises:
            ConfigurationError: If configuration is invalid
        """
        if self._config_path.exists():
            try:
                with open(self._config_path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Invalid YAML in {self._config_path}: {exc}"
                ) from exc
            if not isinstance(data, dict):
                raise ConfigurationError(
                    f"Invalid configuration: expected a mapping in {self._config_path}"
                )

            try:
                settings = EnrichmentSettings(**data)
            except ValidationError as exc:
                error_details = [
                    f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
                    for err in exc.errors()
                ]
                raise ConfigurationError(
                    f"Invalid configuration: {'; '.join(error_details)}"
                ) from exc
        else:
            logger.debug(
                "No enrichment config found, using defaults",
                extra={"config_path": str(self._config_path)},
            )
            settings = EnrichmentSettings()

        for message in settings.warnings():
            logger.warning(message)

        self._config = settings.effective()
        return self._config

    def save(self, settings: EnrichmentSettings) -> None:
        """Save configuration to file.

        Args:
            settings: Settings to save
        """
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        # Convert to dict and serialize Path objects as strings
        data = settings.model_dump(mode="json")

        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate configuration without loading.

        Args:
            config_path: Optional path to config file to validate

        Returns:
            List of validation errors (empty if valid)
        """
        path = config_path or self._config_path
        errors: List[str] = []

        if not path.exists():
            errors.append(f"Configuration file not found: {path}")
            return errors

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            EnrichmentSettings(**data)
        except ValidationError as exc:
            for error in exc.errors():
                loc = ".".join(str(part) for part in error["loc"])
                errors.append(f"{loc}: {error['msg']}")
        except (OSError, TypeError, yaml.YAMLError) as exc:
            errors.append(f"Failed to load configuration: {exc}")

        return errors
