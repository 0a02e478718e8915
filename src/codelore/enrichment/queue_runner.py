"""Durable background loop that drains the enrichment queue.

One asyncio task dequeues pending items in priority order, runs each
through the research pipeline, and records the outcome with a single atomic
status update: ``complete``, ``pending`` behind a backoff timer, or
``failed`` once ``max_retries`` attempts have failed. A per-day quota caps
successful enrichments.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import EnrichmentQueueConfig
from .crash_recovery import CrashRecoveryManager, CrashRecoveryReport
from .exceptions import QueueItemNotFoundError, StateTransitionRaceError
from .interfaces import GraphStore
from .models import BatchResult, QueueItem, QueueStatus, utc_now
from .pipeline import EnrichmentPipeline
from .rate_limiter import DailyQuota
from .telemetry import TelemetryRecorder

logger = logging.getLogger(__name__)


class BackgroundEnrichmentQueue:
    """Background queue runner.

    When constructed without a pipeline, or with ``background_queue``
    disabled, the runner is inert: ``start`` does nothing and
    ``process_once`` reports ``reason="disabled"``.
    """

    def __init__(
        self,
        store: GraphStore,
        pipeline: Optional[EnrichmentPipeline],
        config: Optional[EnrichmentQueueConfig] = None,
        *,
        workspace_dir: Optional[Path] = None,
        telemetry: Optional[TelemetryRecorder] = None,
        clock: Optional[Callable[[], datetime]] = None,
        quota_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._pipeline = pipeline
        self._config = config or EnrichmentQueueConfig()
        self._telemetry = telemetry
        self._clock = clock or utc_now
        self._quota = DailyQuota(self._config.daily_limit, clock=quota_clock)
        self._recovery = CrashRecoveryManager(
            store=store,
            workspace_dir=workspace_dir,
            max_retries=self._config.max_retries,
        )

        self._stop_event = asyncio.Event()
        self._batch_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._started_at: Optional[datetime] = None
        self._processed_this_session = 0
        self._failed_this_session = 0
        self._last_recovery: Optional[CrashRecoveryReport] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def disabled_reason(self) -> Optional[str]:
        if self._pipeline is None:
            return "no research agent configured"
        if not self._config.enabled:
            return "enrichment disabled"
        if not self._config.background_queue:
            return "background queue disabled"
        return None

    @property
    def enabled(self) -> bool:
        return self.disabled_reason is None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def quota(self) -> DailyQuota:
        return self._quota

    def start(self) -> None:
        """Recover interrupted items and start the loop task (idempotent)."""
        if self._running:
            return
        if not self.enabled:
            logger.warning(
                "Background enrichment queue not started",
                extra={"disabled_reason": self.disabled_reason},
            )
            return

        self._last_recovery = self._recovery.recover_from_crash()
        if self._recovery.tracker:
            self._recovery.tracker.mark_running()

        self._stop_event.clear()
        self._running = True
        self._started_at = self._clock()
        self._processed_this_session = 0
        self._failed_this_session = 0
        self._task = asyncio.get_running_loop().create_task(self._run_loop())
        logger.info(
            "Background enrichment queue started",
            extra={
                "batch_size": self._config.batch_size,
                "daily_limit": self._config.daily_limit,
                "items_reset": self._last_recovery.items_reset_to_pending,
            },
        )

    async def stop(self) -> None:
        """Signal the loop and wait for it to exit (idempotent).

        The item in flight finishes first; the loop then observes the
        signal at its next check.
        """
        if not self._running:
            return
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._recovery.tracker:
            self._recovery.tracker.clear_recovery_marker()
        self._running = False
        logger.info(
            "Background enrichment queue stopped",
            extra={
                "processed": self._processed_this_session,
                "failed": self._failed_this_session,
            },
        )

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                result = await self.process_once()
            except Exception:
                logger.exception("Background enrichment batch failed")
                result = BatchResult(reason="error")

            if result.processed == 0:
                await self._wait(self._config.idle_delay_seconds)
            else:
                await self._wait(self._config.batch_delay_seconds)

    async def _wait(self, seconds: float) -> None:
        """Sleep that returns early when stop is requested."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def process_once(self) -> BatchResult:
        """Process one batch of eligible items.

        Returns ``BatchResult(processed=0, reason="daily_limit")`` without
        touching the store when today's quota is used up.
        """
        if not self.enabled:
            return BatchResult(reason="disabled")

        async with self._batch_lock:
            remaining = self._quota.remaining
            if remaining <= 0:
                logger.debug(
                    "Daily enrichment limit reached",
                    extra={"daily_limit": self._quota.limit},
                )
                return BatchResult(reason="daily_limit")

            batch_size = min(self._config.batch_size, remaining)
            batch = self._store.get_queue_batch(batch_size, now=self._clock())
            if not batch:
                return BatchResult(reason="idle")

            result = BatchResult()
            for index, item in enumerate(batch):
                if self._stop_event.is_set():
                    break
                if index > 0:
                    await self._wait(self._config.item_delay_seconds)
                    if self._stop_event.is_set():
                        break
                outcome = await self._process_item(item)
                if outcome is None:
                    continue
                result.processed += 1
                if outcome:
                    result.succeeded += 1
                else:
                    result.failed += 1
            return result

    async def _process_item(self, item: QueueItem) -> Optional[bool]:
        """Run one item; None means the row changed elsewhere and the item was skipped."""
        try:
            self._store.update_queue_item(
                item.id,
                QueueStatus.PROCESSING,
                expected_status=QueueStatus.PENDING,
                attempts=item.attempts,
            )
        except (QueueItemNotFoundError, StateTransitionRaceError):
            logger.debug(
                "Queue item changed before dispatch, skipping",
                extra={"queue_item_id": item.id, "chunk_id": item.chunk_id},
            )
            return None

        started = time.perf_counter()
        try:
            _, output = await self._pipeline.run(item.chunk_id)
        except Exception as exc:
            if not self._handle_failure(item, exc, time.perf_counter() - started):
                return None
            return False

        now = self._clock()
        if not self._record_outcome(
            item, QueueStatus.COMPLETE, attempts=item.attempts, processed_at=now
        ):
            return None
        self._quota.consume()
        self._processed_this_session += 1
        duration = time.perf_counter() - started

        logger.info(
            "Enriched chunk",
            extra={
                "chunk_id": item.chunk_id,
                "queue_item_id": item.id,
                "tool_call_count": output.tool_call_count,
                "stop_reason": output.stop_reason.value,
                "duration_seconds": duration,
            },
        )
        if self._telemetry:
            self._telemetry.record(
                item.chunk_id,
                duration,
                "complete",
                attempts=item.attempts,
                tool_call_count=output.tool_call_count,
                stop_reason=output.stop_reason.value,
            )
        return True

    def _record_outcome(self, item: QueueItem, status: QueueStatus, **fields: Any) -> bool:
        """Apply the final status update; False when the row moved or vanished mid-run."""
        try:
            self._store.update_queue_item(
                item.id, status, expected_status=QueueStatus.PROCESSING, **fields
            )
        except (QueueItemNotFoundError, StateTransitionRaceError) as exc:
            logger.warning(
                "Queue item changed during processing, skipping outcome",
                extra={
                    "chunk_id": item.chunk_id,
                    "queue_item_id": item.id,
                    "outcome": status.value,
                    "error": str(exc),
                },
            )
            return False
        return True

    def _handle_failure(self, item: QueueItem, exc: Exception, duration: float) -> bool:
        attempts = item.attempts + 1
        error_message = str(exc) or type(exc).__name__
        now = self._clock()

        if attempts >= self._config.max_retries:
            if not self._record_outcome(
                item,
                QueueStatus.FAILED,
                attempts=attempts,
                error_message=error_message,
                processed_at=now,
            ):
                return False
            logger.error(
                "Enrichment failed permanently",
                extra={
                    "chunk_id": item.chunk_id,
                    "queue_item_id": item.id,
                    "attempts": attempts,
                    "error": error_message,
                },
            )
            status = "failed"
            delay = 0
        else:
            delay = self._config.backoff.calculate_delay(attempts)
            if not self._record_outcome(
                item,
                QueueStatus.PENDING,
                attempts=attempts,
                next_retry_at=self._config.backoff.next_retry_at(attempts, now),
                error_message=error_message,
            ):
                return False
            logger.warning(
                "Enrichment failed, retry scheduled",
                extra={
                    "chunk_id": item.chunk_id,
                    "queue_item_id": item.id,
                    "attempts": attempts,
                    "retry_delay_seconds": delay,
                    "error": error_message,
                },
            )
            status = "retry_scheduled"

        self._failed_this_session += 1
        if self._telemetry:
            self._telemetry.record(
                item.chunk_id,
                duration,
                status,
                attempts=attempts,
                metadata={"delay_seconds": delay, "error": error_message},
            )
        return True

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        if not self.enabled:
            return {
                "enabled": False,
                "disabled_reason": self.disabled_reason,
                "is_processing": False,
            }
        return {
            "enabled": True,
            "is_processing": self._running,
            "processed_this_session": self._processed_this_session,
            "failed_this_session": self._failed_this_session,
            "processed_today": self._quota.used,
            "daily_limit": self._quota.limit,
            "remaining_today": self._quota.remaining,
            "queue": self._store.queue_status_counts(self._config.max_retries),
            "started_at": self._started_at.isoformat() if self._started_at else None,
        }
