"""Crash detection and recovery for the enrichment queue.

A marker file is written when the queue runner starts and removed on a
graceful stop. Recovery always resets interrupted ``processing`` items to
``pending`` (keeping their attempts), then checkpoints the WAL and checks
database and queue invariants.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .interfaces import GraphStore
from .models import QueueStatus, utc_now
from .state_machine import StateMachineInvariants

logger = logging.getLogger(__name__)


@dataclass
class CrashRecoveryReport:
    """Report of one recovery pass.

    Attributes:
        recovered_at: Timestamp when recovery completed
        crash_detected: Whether a marker from an unclean shutdown was found
        items_pending: Pending items after recovery
        items_reset_to_pending: Items moved from processing back to pending
        recovery_duration_seconds: Time taken to complete recovery
        errors: Integrity problems or invariant violations found
    """

    recovered_at: datetime
    crash_detected: bool
    items_pending: int
    items_reset_to_pending: int
    recovery_duration_seconds: float
    errors: List[str] = field(default_factory=list)

    def was_successful(self) -> bool:
        return len(self.errors) == 0


class RecoveryStateTracker:
    """Marker file used to detect an unclean shutdown of the queue runner."""

    def __init__(self, workspace_dir: Path) -> None:
        self._recovery_marker = workspace_dir / ".enrichment_queue_running"

    @property
    def marker_path(self) -> Path:
        return self._recovery_marker

    def mark_running(self) -> None:
        """Create the marker; it survives only if the runner never stops cleanly."""
        self._recovery_marker.parent.mkdir(parents=True, exist_ok=True)
        self._recovery_marker.write_text(
            json.dumps({"started_at": utc_now().isoformat(), "pid": os.getpid()})
        )
        logger.debug(
            "Created recovery marker",
            extra={"marker_path": str(self._recovery_marker)},
        )

    def is_recovering_from_crash(self) -> bool:
        return self._recovery_marker.exists()

    def get_crash_info(self) -> Optional[Dict[str, Any]]:
        if not self._recovery_marker.exists():
            return None
        try:
            return json.loads(self._recovery_marker.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning(
                "Failed to read crash info from marker",
                extra={"error": str(exc)},
            )
            return None

    def clear_recovery_marker(self) -> None:
        if self._recovery_marker.exists():
            self._recovery_marker.unlink()
            logger.debug(
                "Cleared recovery marker",
                extra={"marker_path": str(self._recovery_marker)},
            )


class CrashRecoveryManager:
    """Runs the recovery procedure against the enrichment store."""

    def __init__(
        self,
        *,
        store: GraphStore,
        workspace_dir: Optional[Path] = None,
        max_retries: int = 3,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._tracker = RecoveryStateTracker(workspace_dir) if workspace_dir else None

    @property
    def tracker(self) -> Optional[RecoveryStateTracker]:
        return self._tracker

    def recover_from_crash(self) -> CrashRecoveryReport:
        """Reset interrupted items and verify the store.

        Returns:
            CrashRecoveryReport with counts and any errors
        """
        start_time = time.perf_counter()

        crash_detected = bool(self._tracker and self._tracker.is_recovering_from_crash())
        if crash_detected:
            crash_info = self._tracker.get_crash_info() or {}
            logger.warning(
                "Unclean shutdown detected, recovering enrichment queue",
                extra={"previous_start": crash_info.get("started_at"), "pid": crash_info.get("pid")},
            )

        items_reset = self._store.recover_processing_items()
        if items_reset:
            logger.info(
                "Reset interrupted queue items",
                extra={"count": items_reset},
            )

        self._checkpoint_wal()
        errors = self._store.integrity_errors()
        errors.extend(
            StateMachineInvariants.check_all(self._store.list_queue_items(), self._max_retries)
        )
        if errors:
            logger.error(
                "Enrichment store integrity issues detected",
                extra={"error_count": len(errors), "errors": errors},
            )

        duration = time.perf_counter() - start_time
        report = CrashRecoveryReport(
            recovered_at=utc_now(),
            crash_detected=crash_detected,
            items_pending=len(self._store.list_queue_items(QueueStatus.PENDING)),
            items_reset_to_pending=items_reset,
            recovery_duration_seconds=duration,
            errors=errors,
        )

        if self._tracker:
            self._tracker.clear_recovery_marker()

        logger.info(
            "Crash recovery completed",
            extra={
                "items_reset": items_reset,
                "duration_seconds": duration,
                "success": report.was_successful(),
            },
        )
        return report

    def _checkpoint_wal(self) -> None:
        try:
            self._store.checkpoint()
        except Exception as exc:
            logger.error("WAL checkpoint failed", exc_info=exc)
