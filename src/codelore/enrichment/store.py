"""SQLite-backed graph store, enrichment queue and enrichment cache."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .exceptions import QueueItemNotFoundError, StateTransitionRaceError
from .models import (
    ChunkCandidate,
    ChunkRecord,
    Complexity,
    Enrichment,
    EnrichmentState,
    NeighborChunk,
    PartialEnrichment,
    QueueItem,
    QueueStatus,
    Relationship,
    utc_now,
)
from .state_machine import StateMachineValidator

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL UNIQUE,
    hash TEXT NOT NULL,
    fan_in INTEGER NOT NULL DEFAULT 0,
    fan_out INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    file_id INTEGER NOT NULL,
    name TEXT,
    type TEXT,
    code TEXT NOT NULL DEFAULT '',
    signature TEXT,
    docstring TEXT,
    start_line INTEGER,
    end_line INTEGER,
    token_count INTEGER NOT NULL DEFAULT 0,
    centrality REAL NOT NULL DEFAULT 0,
    exported INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_id);
CREATE INDEX IF NOT EXISTS idx_chunks_centrality ON chunks(centrality DESC);

CREATE TABLE IF NOT EXISTS call_edges (
    source_chunk_id TEXT NOT NULL,
    target_chunk_id TEXT NOT NULL,
    line INTEGER,
    PRIMARY KEY (source_chunk_id, target_chunk_id)
);
CREATE INDEX IF NOT EXISTS idx_call_edges_target ON call_edges(target_chunk_id);

CREATE TABLE IF NOT EXISTS chunk_embeddings (
    chunk_id TEXT PRIMARY KEY,
    vector TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS enriched_embeddings (
    chunk_id TEXT PRIMARY KEY,
    vector TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS enrichment (
    chunk_id TEXT PRIMARY KEY,
    file_id INTEGER NOT NULL,
    content_hash TEXT NOT NULL,
    analysis_version TEXT NOT NULL,
    summary TEXT NOT NULL,
    purpose TEXT NOT NULL,
    complexity TEXT NOT NULL,
    details TEXT NOT NULL,
    model_used TEXT,
    confidence REAL NOT NULL DEFAULT 1.0,
    research_sources TEXT NOT NULL DEFAULT '[]',
    enriched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS partial_enrichment (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id TEXT NOT NULL,
    learned TEXT NOT NULL,
    relationship TEXT NOT NULL,
    confidence REAL NOT NULL,
    source_chunk_id TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_partial_chunk ON partial_enrichment(chunk_id);

CREATE TABLE IF NOT EXISTS enrichment_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    chunk_id TEXT NOT NULL UNIQUE,
    file_id INTEGER NOT NULL,
    priority INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    next_retry_at TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_queue_dispatch ON enrichment_queue(status, priority DESC, created_at);
"""

# Semantic list fields serialised into enrichment.details
_DETAIL_FIELDS = (
    "key_operations",
    "side_effects",
    "state_changes",
    "implicit_dependencies",
    "design_patterns",
    "architectural_patterns",
    "anti_patterns",
    "security_concerns",
    "performance_concerns",
    "business_rules",
    "tags",
)

_QUEUE_COLUMNS = (
    "id, chunk_id, file_id, priority, status, attempts, next_retry_at, "
    "error_message, created_at, processed_at"
)

_CHUNK_COLUMNS = (
    "c.id, c.file_id, f.path, f.hash, c.name, c.type, c.code, c.signature, "
    "c.docstring, c.start_line, c.end_line, c.token_count, c.centrality, "
    "c.exported, f.fan_in, f.fan_out"
)


def _ts(value: Optional[datetime]) -> Optional[str]:
    """Normalise to a fixed-width UTC ISO string so SQL text comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteGraphStore:
    """SQLite implementation of the ``GraphStore`` protocol.

    Holds the indexer's chunk graph (files, chunks, call edges, base
    embeddings) alongside the enrichment queue, enrichments, partial
    enrichments and enriched embeddings. All access is serialised through
    one lock; each mutating method is a single transaction.
    """

    def __init__(self, path: Path, *, wal_mode: bool = True) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path, check_same_thread=False)
        if wal_mode:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._validator = StateMachineValidator()

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Indexer-facing writes
    # ------------------------------------------------------------------

    def upsert_file(
        self, path: str, content_hash: str, *, fan_in: int = 0, fan_out: int = 0
    ) -> int:
        """Insert or update a file row and return its id."""
        now = _ts(utc_now())
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO files(path, hash, fan_in, fan_out, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        hash = excluded.hash,
                        fan_in = excluded.fan_in,
                        fan_out = excluded.fan_out,
                        updated_at = excluded.updated_at
                    """,
                    (path, content_hash, fan_in, fan_out, now),
                )
                row = self._conn.execute(
                    "SELECT id FROM files WHERE path = ?", (path,)
                ).fetchone()
        return int(row[0])

    def upsert_chunk(
        self,
        chunk_id: str,
        file_id: int,
        *,
        name: Optional[str] = None,
        type: Optional[str] = None,
        code: str = "",
        signature: Optional[str] = None,
        docstring: Optional[str] = None,
        start_line: Optional[int] = None,
        end_line: Optional[int] = None,
        token_count: int = 0,
        centrality: float = 0.0,
        exported: bool = False,
    ) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO chunks(
                        id, file_id, name, type, code, signature, docstring,
                        start_line, end_line, token_count, centrality, exported
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk_id,
                        file_id,
                        name,
                        type,
                        code,
                        signature,
                        docstring,
                        start_line,
                        end_line,
                        token_count,
                        centrality,
                        int(exported),
                    ),
                )

    def add_call_edge(
        self, source_chunk_id: str, target_chunk_id: str, line: Optional[int] = None
    ) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO call_edges(source_chunk_id, target_chunk_id, line) VALUES (?, ?, ?)",
                    (source_chunk_id, target_chunk_id, line),
                )

    def upsert_chunk_embedding(self, chunk_id: str, vector: Sequence[float]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    "INSERT OR REPLACE INTO chunk_embeddings(chunk_id, vector) VALUES (?, ?)",
                    (chunk_id, json.dumps([float(v) for v in vector])),
                )

    def delete_chunk(self, chunk_id: str) -> None:
        """Remove a chunk and its edges; enrichment data is left for orphan cleanup."""
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM chunks WHERE id = ?", (chunk_id,))
                self._conn.execute(
                    "DELETE FROM call_edges WHERE source_chunk_id = ? OR target_chunk_id = ?",
                    (chunk_id, chunk_id),
                )
                self._conn.execute(
                    "DELETE FROM chunk_embeddings WHERE chunk_id = ?", (chunk_id,)
                )

    # ------------------------------------------------------------------
    # Chunk lookup and traversal
    # ------------------------------------------------------------------

    def get_chunk(self, chunk_id: str) -> Optional[ChunkRecord]:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN files f ON f.id = c.file_id
                WHERE c.id = ?
                """,
                (chunk_id,),
            ).fetchone()
        if row is None:
            return None
        return ChunkRecord(
            id=row[0],
            file_id=row[1],
            file_path=row[2],
            file_hash=row[3],
            name=row[4],
            type=row[5],
            code=row[6] or "",
            signature=row[7],
            docstring=row[8],
            start_line=row[9],
            end_line=row[10],
            token_count=row[11] or 0,
            centrality=row[12] or 0.0,
            exported=bool(row[13]),
            fan_in=row[14] or 0,
            fan_out=row[15] or 0,
        )

    def get_file_hash(self, file_id: int) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT hash FROM files WHERE id = ?", (file_id,)
            ).fetchone()
        return row[0] if row else None

    def list_file_chunk_ids(self, file_id: int) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM chunks WHERE file_id = ? ORDER BY start_line, id",
                (file_id,),
            ).fetchall()
        return [row[0] for row in rows]

    def _walk_calls(self, chunk_id: str, depth: int, *, towards: str) -> List[NeighborChunk]:
        # towards="source" walks callers, towards="target" walks callees
        if towards == "source":
            start_col, next_col = "target_chunk_id", "source_chunk_id"
        else:
            start_col, next_col = "source_chunk_id", "target_chunk_id"
        depth = max(1, depth)
        with self._lock:
            rows = self._conn.execute(
                f"""
                WITH RECURSIVE walk(chunk_id, hops) AS (
                    SELECT {next_col}, 1 FROM call_edges WHERE {start_col} = ?
                    UNION
                    SELECT e.{next_col}, walk.hops + 1
                    FROM call_edges e JOIN walk ON e.{start_col} = walk.chunk_id
                    WHERE walk.hops < ?
                )
                SELECT c.id, c.name, c.type, f.path, en.summary, MIN(walk.hops) AS hops
                FROM walk
                JOIN chunks c ON c.id = walk.chunk_id
                JOIN files f ON f.id = c.file_id
                LEFT JOIN enrichment en ON en.chunk_id = c.id
                WHERE c.id != ?
                GROUP BY c.id
                ORDER BY hops, c.name, c.id
                """,
                (chunk_id, depth, chunk_id),
            ).fetchall()
        return [
            NeighborChunk(id=r[0], name=r[1], type=r[2], file_path=r[3], summary=r[4], hops=r[5])
            for r in rows
        ]

    def get_callers(self, chunk_id: str, depth: int = 1) -> List[NeighborChunk]:
        return self._walk_calls(chunk_id, depth, towards="source")

    def get_callees(self, chunk_id: str, depth: int = 1) -> List[NeighborChunk]:
        return self._walk_calls(chunk_id, depth, towards="target")

    def get_file_siblings(self, chunk_id: str) -> List[NeighborChunk]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.id, c.name, c.type, f.path, en.summary
                FROM chunks target
                JOIN chunks c ON c.file_id = target.file_id AND c.id != target.id
                JOIN files f ON f.id = c.file_id
                LEFT JOIN enrichment en ON en.chunk_id = c.id
                WHERE target.id = ?
                ORDER BY c.start_line, c.id
                """,
                (chunk_id,),
            ).fetchall()
        return [
            NeighborChunk(id=r[0], name=r[1], type=r[2], file_path=r[3], summary=r[4])
            for r in rows
        ]

    def find_chunk_at(self, path: str, line: int) -> Optional[NeighborChunk]:
        """Innermost chunk whose line span covers ``path:line``.

        ``path`` may be relative; it matches any stored path ending with it.
        """
        with self._lock:
            row = self._conn.execute(
                """
                SELECT c.id, c.name, c.type, f.path, en.summary
                FROM chunks c
                JOIN files f ON f.id = c.file_id
                LEFT JOIN enrichment en ON en.chunk_id = c.id
                WHERE (f.path = ? OR f.path LIKE '%/' || ?)
                  AND c.start_line <= ? AND c.end_line >= ?
                ORDER BY (c.end_line - c.start_line) ASC, c.id
                LIMIT 1
                """,
                (path, path, line, line),
            ).fetchone()
        if row is None:
            return None
        return NeighborChunk(id=row[0], name=row[1], type=row[2], file_path=row[3], summary=row[4])

    def similarity_search(
        self, vector: Sequence[float], limit: int
    ) -> List[Tuple[NeighborChunk, float]]:
        """Cosine similarity over stored vectors, preferring enriched ones."""
        query = np.asarray(vector, dtype=np.float32)
        query_norm = float(np.linalg.norm(query))
        if query.size == 0 or query_norm == 0.0 or limit <= 0:
            return []

        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.id, c.name, c.type, f.path, en.summary,
                       COALESCE(ee.vector, ce.vector) AS vector
                FROM chunks c
                JOIN files f ON f.id = c.file_id
                LEFT JOIN chunk_embeddings ce ON ce.chunk_id = c.id
                LEFT JOIN enriched_embeddings ee ON ee.chunk_id = c.id
                LEFT JOIN enrichment en ON en.chunk_id = c.id
                WHERE ce.vector IS NOT NULL OR ee.vector IS NOT NULL
                """
            ).fetchall()

        neighbors: List[NeighborChunk] = []
        vectors: List[List[float]] = []
        for row in rows:
            candidate = json.loads(row[5])
            if len(candidate) != query.size:
                continue
            neighbors.append(
                NeighborChunk(id=row[0], name=row[1], type=row[2], file_path=row[3], summary=row[4])
            )
            vectors.append(candidate)
        if not vectors:
            return []

        matrix = np.asarray(vectors, dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        scores = (matrix @ query) / (norms * query_norm)
        order = np.argsort(-scores)[:limit]
        return [(neighbors[i], float(scores[i])) for i in order]

    # ------------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------------

    def list_enrichment_candidates(
        self, limit: int, analysis_version: str
    ) -> List[ChunkCandidate]:
        """Chunks without an open or failed queue item and without a valid enrichment."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT c.id, c.file_id, f.path, c.centrality, f.fan_in, f.fan_out,
                       c.token_count, c.exported
                FROM chunks c
                JOIN files f ON f.id = c.file_id
                LEFT JOIN enrichment_queue q
                    ON q.chunk_id = c.id AND q.status IN ('pending', 'processing', 'failed')
                LEFT JOIN enrichment e
                    ON e.chunk_id = c.id
                   AND e.content_hash = f.hash
                   AND e.analysis_version = ?
                WHERE q.id IS NULL AND e.chunk_id IS NULL
                ORDER BY c.centrality DESC, c.id
                LIMIT ?
                """,
                (analysis_version, limit),
            ).fetchall()
        return [self._row_to_candidate(row) for row in rows]

    def get_candidate(self, chunk_id: str) -> Optional[ChunkCandidate]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT c.id, c.file_id, f.path, c.centrality, f.fan_in, f.fan_out,
                       c.token_count, c.exported
                FROM chunks c LEFT JOIN files f ON f.id = c.file_id
                WHERE c.id = ?
                """,
                (chunk_id,),
            ).fetchone()
        return self._row_to_candidate(row) if row else None

    @staticmethod
    def _row_to_candidate(row: Tuple[Any, ...]) -> ChunkCandidate:
        return ChunkCandidate(
            chunk_id=row[0],
            file_id=row[1],
            path=row[2],
            centrality=row[3] or 0.0,
            fan_in=row[4] or 0,
            fan_out=row[5] or 0,
            token_count=row[6] or 0,
            exported=bool(row[7]),
        )

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def _queue_in_transaction(
        self, chunk_id: str, file_id: int, priority: int, now: str
    ) -> bool:
        row = self._conn.execute(
            "SELECT id, status, priority FROM enrichment_queue WHERE chunk_id = ?",
            (chunk_id,),
        ).fetchone()
        if row is None:
            self._conn.execute(
                """
                INSERT INTO enrichment_queue(chunk_id, file_id, priority, status, attempts, created_at)
                VALUES (?, ?, ?, 'pending', 0, ?)
                """,
                (chunk_id, file_id, priority, now),
            )
            return True

        item_id, status, current_priority = row[0], QueueStatus(row[1]), row[2]
        if status == QueueStatus.PROCESSING:
            return False
        if status == QueueStatus.PENDING:
            if priority > current_priority:
                self._conn.execute(
                    "UPDATE enrichment_queue SET priority = ? WHERE id = ?",
                    (priority, item_id),
                )
            return False

        # Terminal items are revived with a fresh retry budget
        self._validator.validate_transition(
            item_id, status, QueueStatus.PENDING, reason="requeue"
        )
        self._conn.execute(
            """
            UPDATE enrichment_queue
            SET status = 'pending', file_id = ?, priority = ?, attempts = 0,
                next_retry_at = NULL, error_message = NULL,
                created_at = ?, processed_at = NULL
            WHERE id = ?
            """,
            (file_id, priority, now, item_id),
        )
        return True

    def queue_for_enrichment(self, chunk_id: str, file_id: int, priority: int) -> bool:
        """Insert a pending item unless one is already open for the chunk.

        Returns:
            True if the chunk now has a newly pending item
        """
        now = _ts(utc_now())
        with self._lock:
            with self._conn:
                return self._queue_in_transaction(chunk_id, file_id, priority, now)

    def update_queue_item(
        self,
        item_id: int,
        status: QueueStatus,
        *,
        expected_status: Optional[QueueStatus] = None,
        attempts: Optional[int] = None,
        next_retry_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> QueueItem:
        """Atomically move a queue item to ``status``.

        Status, attempts, retry time, error and processed time are written in
        one UPDATE guarded by the expected current status.

        Raises:
            QueueItemNotFoundError: If the item doesn't exist
            InvalidStateTransitionError: If the move is not allowed
            StateTransitionRaceError: If the status changed underneath us
        """
        with self._lock:
            with self._conn:
                row = self._conn.execute(
                    "SELECT status FROM enrichment_queue WHERE id = ?", (item_id,)
                ).fetchone()
                if row is None:
                    raise QueueItemNotFoundError(item_id)
                current = QueueStatus(row[0])
                if expected_status is not None and current != expected_status:
                    raise StateTransitionRaceError(
                        f"Queue item {item_id} is {current.value}, expected {expected_status.value}"
                    )
                self._validator.validate_transition(item_id, current, status)

                cursor = self._conn.execute(
                    """
                    UPDATE enrichment_queue
                    SET status = ?,
                        attempts = COALESCE(?, attempts),
                        next_retry_at = ?,
                        error_message = ?,
                        processed_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        status.value,
                        attempts,
                        _ts(next_retry_at),
                        error_message,
                        _ts(processed_at),
                        item_id,
                        current.value,
                    ),
                )
                if cursor.rowcount == 0:
                    raise StateTransitionRaceError(
                        f"Queue item {item_id} changed during update"
                    )
                updated = self._conn.execute(
                    f"SELECT {_QUEUE_COLUMNS} FROM enrichment_queue WHERE id = ?",
                    (item_id,),
                ).fetchone()
        return self._row_to_queue_item(updated)

    def get_queue_batch(self, limit: int, now: Optional[datetime] = None) -> List[QueueItem]:
        """Pending items whose retry timer elapsed, highest priority first."""
        if limit <= 0:
            return []
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_QUEUE_COLUMNS}
                FROM enrichment_queue
                WHERE status = 'pending'
                  AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY priority DESC, created_at ASC, id ASC
                LIMIT ?
                """,
                (_ts(now or utc_now()), limit),
            ).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    def get_queue_item(self, item_id: int) -> Optional[QueueItem]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_QUEUE_COLUMNS} FROM enrichment_queue WHERE id = ?",
                (item_id,),
            ).fetchone()
        return self._row_to_queue_item(row) if row else None

    def get_queue_item_for_chunk(self, chunk_id: str) -> Optional[QueueItem]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_QUEUE_COLUMNS} FROM enrichment_queue WHERE chunk_id = ?",
                (chunk_id,),
            ).fetchone()
        return self._row_to_queue_item(row) if row else None

    def list_queue_items(self, status: Optional[QueueStatus] = None) -> List[QueueItem]:
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    f"SELECT {_QUEUE_COLUMNS} FROM enrichment_queue ORDER BY id"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    f"SELECT {_QUEUE_COLUMNS} FROM enrichment_queue WHERE status = ? ORDER BY id",
                    (status.value,),
                ).fetchall()
        return [self._row_to_queue_item(row) for row in rows]

    def recover_processing_items(self) -> int:
        """Reset every ``processing`` item to ``pending`` keeping its attempts."""
        with self._lock:
            with self._conn:
                rows = self._conn.execute(
                    "SELECT id FROM enrichment_queue WHERE status = 'processing'"
                ).fetchall()
                for (item_id,) in rows:
                    self._validator.validate_transition(
                        item_id,
                        QueueStatus.PROCESSING,
                        QueueStatus.PENDING,
                        reason="crash_recovery",
                    )
                self._conn.execute(
                    "UPDATE enrichment_queue SET status = 'pending' WHERE status = 'processing'"
                )
        return len(rows)

    def queue_status_counts(self, max_retries: int) -> Dict[str, int]:
        counts = {
            "pending": 0,
            "processing": 0,
            "complete": 0,
            "failed": 0,
            "retrying": 0,
            "permanently_failed": 0,
        }
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT status,
                       COUNT(*),
                       SUM(CASE WHEN attempts > 0 THEN 1 ELSE 0 END),
                       SUM(CASE WHEN attempts >= ? THEN 1 ELSE 0 END)
                FROM enrichment_queue
                GROUP BY status
                """,
                (max_retries,),
            ).fetchall()
        for status, total, with_attempts, exhausted in rows:
            counts[status] = int(total)
            if status == QueueStatus.PENDING.value:
                counts["retrying"] = int(with_attempts or 0)
            elif status == QueueStatus.FAILED.value:
                counts["permanently_failed"] = int(exhausted or 0)
        counts["total"] = sum(
            counts[s.value] for s in QueueStatus
        )
        return counts

    @staticmethod
    def _row_to_queue_item(row: Tuple[Any, ...]) -> QueueItem:
        return QueueItem(
            id=row[0],
            chunk_id=row[1],
            file_id=row[2],
            priority=row[3],
            status=QueueStatus(row[4]),
            attempts=row[5],
            next_retry_at=_parse_ts(row[6]),
            error_message=row[7],
            created_at=_parse_ts(row[8]),
            processed_at=_parse_ts(row[9]),
        )

    # ------------------------------------------------------------------
    # Enrichments
    # ------------------------------------------------------------------

    def upsert_enrichment(self, enrichment: Enrichment) -> None:
        details = {name: list(getattr(enrichment, name)) for name in _DETAIL_FIELDS}
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO enrichment(
                        chunk_id, file_id, content_hash, analysis_version, summary,
                        purpose, complexity, details, model_used, confidence,
                        research_sources, enriched_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        enrichment.chunk_id,
                        enrichment.file_id,
                        enrichment.content_hash,
                        enrichment.analysis_version,
                        enrichment.summary,
                        enrichment.purpose,
                        enrichment.complexity.value,
                        json.dumps(details),
                        enrichment.model_used,
                        enrichment.confidence,
                        json.dumps(enrichment.research_sources),
                        _ts(enrichment.enriched_at),
                    ),
                )

    def get_enrichment(self, chunk_id: str) -> Optional[Enrichment]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT chunk_id, file_id, content_hash, analysis_version, summary, purpose,
                       complexity, details, model_used, confidence, research_sources, enriched_at
                FROM enrichment WHERE chunk_id = ?
                """,
                (chunk_id,),
            ).fetchone()
        if row is None:
            return None
        details = json.loads(row[7])
        return Enrichment(
            chunk_id=row[0],
            file_id=row[1],
            content_hash=row[2],
            analysis_version=row[3],
            summary=row[4],
            purpose=row[5],
            complexity=Complexity(row[6]),
            model_used=row[8],
            confidence=row[9],
            research_sources=json.loads(row[10]),
            enriched_at=_parse_ts(row[11]),
            **{name: details.get(name, []) for name in _DETAIL_FIELDS},
        )

    def delete_enrichment_and_requeue(self, chunk_id: str, file_id: int, priority: int) -> None:
        """Discard an enrichment and queue the chunk again, in one transaction."""
        now = _ts(utc_now())
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM enrichment WHERE chunk_id = ?", (chunk_id,))
                self._conn.execute(
                    "DELETE FROM enriched_embeddings WHERE chunk_id = ?", (chunk_id,)
                )
                self._queue_in_transaction(chunk_id, file_id, priority, now)

    def list_enrichment_validity(
        self, *, chunk_id: Optional[str] = None, file_id: Optional[int] = None
    ) -> List[EnrichmentState]:
        query = """
            SELECT e.chunk_id, COALESCE(c.file_id, e.file_id), e.content_hash,
                   e.analysis_version, f.hash
            FROM enrichment e
            LEFT JOIN chunks c ON c.id = e.chunk_id
            LEFT JOIN files f ON f.id = c.file_id
        """
        params: Tuple[Any, ...] = ()
        if chunk_id is not None:
            query += " WHERE e.chunk_id = ?"
            params = (chunk_id,)
        elif file_id is not None:
            query += " WHERE COALESCE(c.file_id, e.file_id) = ?"
            params = (file_id,)
        query += " ORDER BY e.chunk_id"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            EnrichmentState(
                chunk_id=r[0],
                file_id=r[1],
                content_hash=r[2],
                analysis_version=r[3],
                current_hash=r[4],
            )
            for r in rows
        ]

    def add_partial_enrichment(self, partial: PartialEnrichment) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT INTO partial_enrichment(
                        chunk_id, learned, relationship, confidence, source_chunk_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        partial.chunk_id,
                        partial.learned,
                        partial.relationship.value,
                        partial.confidence,
                        partial.source_chunk_id,
                        _ts(partial.created_at),
                    ),
                )

    def get_partial_enrichments(self, chunk_id: str) -> List[PartialEnrichment]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT chunk_id, learned, relationship, confidence, source_chunk_id, created_at
                FROM partial_enrichment
                WHERE chunk_id = ?
                ORDER BY confidence DESC, created_at DESC, id DESC
                """,
                (chunk_id,),
            ).fetchall()
        return [
            PartialEnrichment(
                chunk_id=r[0],
                learned=r[1],
                relationship=Relationship(r[2]),
                confidence=r[3],
                source_chunk_id=r[4],
                created_at=_parse_ts(r[5]),
            )
            for r in rows
        ]

    def upsert_enriched_embedding(self, chunk_id: str, vector: Sequence[float]) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR REPLACE INTO enriched_embeddings(chunk_id, vector, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (chunk_id, json.dumps([float(v) for v in vector]), _ts(utc_now())),
                )

    def get_enriched_embedding(self, chunk_id: str) -> Optional[List[float]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT vector FROM enriched_embeddings WHERE chunk_id = ?", (chunk_id,)
            ).fetchone()
        return json.loads(row[0]) if row else None

    # ------------------------------------------------------------------
    # Maintenance and aggregates
    # ------------------------------------------------------------------

    def cleanup_orphans(self, completed_before: datetime) -> Dict[str, int]:
        """Drop data for chunks that no longer exist and old completed queue items."""
        removed: Dict[str, int] = {}
        with self._lock:
            with self._conn:
                for table in (
                    "enrichment",
                    "partial_enrichment",
                    "enriched_embeddings",
                    "enrichment_queue",
                ):
                    cursor = self._conn.execute(
                        f"DELETE FROM {table} WHERE chunk_id NOT IN (SELECT id FROM chunks)"
                    )
                    removed[table] = cursor.rowcount
                cursor = self._conn.execute(
                    """
                    DELETE FROM enrichment_queue
                    WHERE status = 'complete' AND processed_at IS NOT NULL AND processed_at < ?
                    """,
                    (_ts(completed_before),),
                )
                removed["completed_queue_items"] = cursor.rowcount
        return removed

    def _scalar(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        with self._lock:
            row = self._conn.execute(query, params).fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def count_chunks(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM chunks")

    def count_enriched_chunks(self) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM enrichment e JOIN chunks c ON c.id = e.chunk_id"
        )

    def count_hub_chunks(self, centrality_threshold: float) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM chunks WHERE centrality > ?", (centrality_threshold,)
        )

    def checkpoint(self) -> None:
        """Merge the WAL into the main database file."""
        with self._lock:
            self._conn.execute("PRAGMA wal_checkpoint(FULL)")

    def integrity_errors(self) -> List[str]:
        errors: List[str] = []
        with self._lock:
            row = self._conn.execute("PRAGMA integrity_check").fetchone()
        if row is None or row[0] != "ok":
            errors.append(f"Integrity check failed: {row[0] if row else 'no result'}")
        return errors
