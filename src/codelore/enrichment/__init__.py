"""Enrichment scheduling and research package."""

from .cache import CacheStats, EnrichmentCacheManager
from .config import (
    CacheConfig,
    ConfigurationManager,
    EnrichmentQueueConfig,
    EnrichmentSettings,
    LLMConfig,
    PrioritizerConfig,
    ResearchAgentConfig,
)
from .crash_recovery import (
    CrashRecoveryManager,
    CrashRecoveryReport,
    RecoveryStateTracker,
)
from .exceptions import (
    ChunkNotFoundError,
    ConfigurationError,
    EnrichmentError,
    EnrichmentParseError,
    FeatureDisabledError,
    InvalidStateTransitionError,
    LLMRequestError,
    QueueItemNotFoundError,
    StateTransitionRaceError,
)
from .models import (
    BatchResult,
    Enrichment,
    EnrichResult,
    QueueItem,
    QueueStatus,
    Relationship,
    StopReason,
)
from .on_demand import OnDemandEnricher
from .pipeline import EnrichmentPipeline
from .prioritizer import EnrichmentPrioritizer
from .queue_runner import BackgroundEnrichmentQueue
from .rate_limiter import DailyQuota
from .research_agent import ResearchAgent
from .retry_policy import BackoffPolicy
from .schemas import EnrichmentPayload
from .state_machine import (
    VALID_TRANSITIONS,
    StateMachineInvariants,
    StateMachineValidator,
    StateTransition,
)
from .status import collect_enrichment_status
from .store import SQLiteGraphStore

__all__ = [
    "BackgroundEnrichmentQueue",
    "BackoffPolicy",
    "BatchResult",
    "CacheConfig",
    "CacheStats",
    "ChunkNotFoundError",
    "ConfigurationError",
    "ConfigurationManager",
    "CrashRecoveryManager",
    "CrashRecoveryReport",
    "DailyQuota",
    "Enrichment",
    "EnrichmentCacheManager",
    "EnrichmentError",
    "EnrichmentParseError",
    "EnrichmentPayload",
    "EnrichmentPipeline",
    "EnrichmentPrioritizer",
    "EnrichmentQueueConfig",
    "EnrichmentSettings",
    "EnrichResult",
    "FeatureDisabledError",
    "InvalidStateTransitionError",
    "LLMConfig",
    "LLMRequestError",
    "OnDemandEnricher",
    "PrioritizerConfig",
    "QueueItem",
    "QueueItemNotFoundError",
    "QueueStatus",
    "RecoveryStateTracker",
    "Relationship",
    "ResearchAgent",
    "ResearchAgentConfig",
    "SQLiteGraphStore",
    "StateMachineInvariants",
    "StateMachineValidator",
    "StateTransition",
    "StateTransitionRaceError",
    "StopReason",
    "VALID_TRANSITIONS",
    "collect_enrichment_status",
]
