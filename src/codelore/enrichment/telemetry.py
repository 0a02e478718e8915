"""Simple telemetry recorder for enrichment attempts.

Persists one JSON line per attempt and an aggregated summary that operators
can inspect locally.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .models import utc_now


def _empty_bucket() -> Dict[str, float]:
    return {"count": 0, "duration": 0.0, "tool_calls": 0}


@dataclass
class TelemetryRecorder:
    output_dir: Path
    metrics_file: str = "telemetry.log"
    summary_file: str = "telemetry_summary.json"
    _stats: Dict[str, Dict[str, float]] = field(
        default_factory=lambda: {
            "complete": _empty_bucket(),
            "retry_scheduled": _empty_bucket(),
            "failed": _empty_bucket(),
        }
    )
    _stop_reasons: Dict[str, int] = field(default_factory=dict)
    _retry_stats: Dict[str, Any] = field(
        default_factory=lambda: {"total_retries": 0, "total_delay_seconds": 0, "attempts": []}
    )

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        chunk_id: str,
        duration: float,
        status: str,
        *,
        attempts: Optional[int] = None,
        tool_call_count: Optional[int] = None,
        stop_reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "chunk_id": chunk_id,
            "duration": duration,
            "status": status,
            "timestamp": utc_now().isoformat(),
        }
        if attempts is not None:
            entry["attempts"] = attempts
        if tool_call_count is not None:
            entry["tool_call_count"] = tool_call_count
        if stop_reason is not None:
            entry["stop_reason"] = stop_reason
        metadata_payload: Dict[str, Any] = metadata.copy() if metadata else {}
        if metadata_payload:
            entry["metadata"] = metadata_payload

        bucket = self._stats.setdefault(status, _empty_bucket())
        bucket["count"] += 1
        bucket["duration"] += duration
        if tool_call_count is not None:
            bucket["tool_calls"] += tool_call_count
        if stop_reason is not None:
            self._stop_reasons[stop_reason] = self._stop_reasons.get(stop_reason, 0) + 1

        if status == "retry_scheduled":
            self._retry_stats["total_retries"] += 1
            self._retry_stats["total_delay_seconds"] += metadata_payload.get(
                "delay_seconds", 0
            )
            self._retry_stats["attempts"].append(attempts or 0)

        path = self.output_dir / self.metrics_file
        with path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(entry) + "\n")

        summary_path = self.output_dir / self.summary_file
        summary_path.write_text(json.dumps(self._build_summary(), indent=2))

    def _build_summary(self) -> Dict[str, Any]:
        statuses: Dict[str, Any] = {}
        total = 0
        total_duration = 0.0
        for status, stats in self._stats.items():
            count = int(stats.get("count", 0))
            duration = stats.get("duration", 0.0)
            statuses[status] = {
                "count": count,
                "avg_duration": duration / count if count else 0.0,
                "avg_tool_calls": stats.get("tool_calls", 0) / count if count else 0.0,
            }
            total += count
            total_duration += duration

        summary: Dict[str, Any] = {
            "overall": {
                "attempts": total,
                "avg_duration": total_duration / total if total else 0.0,
            },
            "statuses": statuses,
            "stop_reasons": dict(self._stop_reasons),
        }

        total_retries = self._retry_stats["total_retries"]
        if total_retries:
            attempts = self._retry_stats["attempts"]
            summary["retry_metrics"] = {
                "total_retries": total_retries,
                "avg_attempts_per_retry": round(sum(attempts) / len(attempts), 2),
                "total_delay_seconds": self._retry_stats["total_delay_seconds"],
                "avg_delay_seconds": round(
                    self._retry_stats["total_delay_seconds"] / total_retries, 2
                ),
            }
        return summary
