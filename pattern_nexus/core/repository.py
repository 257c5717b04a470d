"""
Pattern Storage - persisted pattern rows and Fisher state.

Default: SQLite (zero external services). ":memory:" when no path is given.

Owns the storage invariants: one row per pattern with a fixed-length
float32 embedding, a singleton slot for the serialized Fisher matrix,
and an append-only consolidation history. Filters run in SQL so a query
never loads rows it will discard.
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .errors import PatternValidationError, PersistenceError
from .models import ConsolidationResult, OutcomeType, StoredPattern
from .schemas import PatternOutcome, PatternQuery, RecommendationContext, SkillFeatures

logger = logging.getLogger(__name__)

_EMBEDDING_DTYPE = np.dtype("<f4")


class ScoringRow(NamedTuple):
    """The columns consolidation needs to rescore a pattern."""
    pattern_id: str
    embedding: np.ndarray
    reward: float
    access_count: int
    created_at: datetime


class FisherState(NamedTuple):
    matrix_data: bytes
    update_count: int
    dimensions: int
    last_decay_at: Optional[datetime]


def _to_ts(value: datetime) -> float:
    return value.timestamp()


def _from_ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class PatternRepository(ABC):
    """Abstract base for pattern storage backends."""

    @abstractmethod
    def transaction(self):
        """Context manager; everything inside commits or rolls back together."""
        pass

    @abstractmethod
    def insert(self, pattern: StoredPattern) -> None:
        pass

    @abstractmethod
    def get(self, pattern_id: str) -> Optional[StoredPattern]:
        pass

    @abstractmethod
    def exists(self, pattern_id: str) -> bool:
        pass

    @abstractmethod
    def reinforce(
        self,
        pattern_id: str,
        importance_delta: float,
        accessed_at: datetime,
    ) -> None:
        """Merge an observation: bump importance and access stats."""
        pass

    @abstractmethod
    def record_access(
        self,
        pattern_ids: Sequence[str],
        accessed_at: datetime,
        importance_boost: float = 0.0,
    ) -> None:
        pass

    @abstractmethod
    def scan(self, query: Optional[PatternQuery] = None) -> List[StoredPattern]:
        """Patterns passing the query's filters (context is ignored)."""
        pass

    @abstractmethod
    def get_importance(self, pattern_id: str) -> Optional[float]:
        pass

    @abstractmethod
    def update_importances(self, scores: Sequence[Tuple[str, float]]) -> None:
        pass

    @abstractmethod
    def delete_many(self, pattern_ids: Sequence[str]) -> int:
        pass

    @abstractmethod
    def list_ids(self) -> List[str]:
        pass

    @abstractmethod
    def get_embeddings(self, pattern_ids: Sequence[str]) -> List[np.ndarray]:
        pass

    @abstractmethod
    def iter_scoring_rows(self, batch_size: int = 500) -> Iterator[ScoringRow]:
        pass

    @abstractmethod
    def mean_embedding(self) -> np.ndarray:
        pass

    @abstractmethod
    def count(self) -> int:
        pass

    @abstractmethod
    def count_created_since(self, since: datetime) -> int:
        pass

    @abstractmethod
    def count_by_outcome(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def importances(self) -> np.ndarray:
        pass

    # Fisher state slot and consolidation history

    @abstractmethod
    def load_fisher_state(self) -> Optional[FisherState]:
        pass

    @abstractmethod
    def save_fisher_state(
        self,
        matrix_data: bytes,
        update_count: int,
        last_decay_at: Optional[datetime] = None,
    ) -> None:
        pass

    @abstractmethod
    def append_consolidation(self, result: ConsolidationResult) -> None:
        pass

    @abstractmethod
    def consolidation_history(self, limit: int = 10) -> List[ConsolidationResult]:
        pass

    @abstractmethod
    def consolidation_summary(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def size_bytes(self) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class SQLitePatternRepository(PatternRepository):
    """
    SQLite-based pattern storage.

    One connection shared across threads behind a re-entrant lock, so a
    transaction opened by consolidation excludes every other access until
    it commits. Nested transaction() blocks join the outer one.
    """

    def __init__(self, db_path: Optional[str] = None, dimensions: int = 384):
        self.dimensions = dimensions
        if db_path and db_path != ":memory:":
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        else:
            self.db_path = ":memory:"

        self._lock = threading.RLock()
        self._depth = 0
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        except sqlite3.Error as e:
            raise PersistenceError(f"Cannot open pattern database {self.db_path}: {e}") from e
        self._conn.row_factory = sqlite3.Row
        self._closed = False
        self._init_db()

        logger.info(f"SQLite pattern repository initialized at {self.db_path} (dim={dimensions})")

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._guard():
            self._conn.executescript("""
                CREATE TABLE IF NOT EXISTS patterns (
                    pattern_id TEXT PRIMARY KEY,
                    context_embedding BLOB NOT NULL,
                    skill_id TEXT NOT NULL,
                    skill_features TEXT NOT NULL,
                    context_data TEXT NOT NULL,
                    outcome_type TEXT NOT NULL,
                    outcome_reward REAL NOT NULL,
                    importance REAL NOT NULL DEFAULT 0.1 CHECK (importance >= 0),
                    original_score REAL NOT NULL,
                    source TEXT NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    last_accessed_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_patterns_skill_id ON patterns(skill_id);
                CREATE INDEX IF NOT EXISTS idx_patterns_outcome_type ON patterns(outcome_type);
                CREATE INDEX IF NOT EXISTS idx_patterns_importance ON patterns(importance DESC);
                CREATE INDEX IF NOT EXISTS idx_patterns_created_at ON patterns(created_at DESC);

                CREATE TABLE IF NOT EXISTS fisher_info (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    matrix_data BLOB NOT NULL,
                    update_count INTEGER NOT NULL DEFAULT 0,
                    dimensions INTEGER NOT NULL,
                    last_decay_at REAL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS consolidation_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL NOT NULL,
                    patterns_processed INTEGER NOT NULL,
                    patterns_preserved INTEGER NOT NULL,
                    patterns_pruned INTEGER NOT NULL,
                    preservation_rate REAL NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    average_importance REAL NOT NULL
                );
            """)

    # =========================================================================
    # Transactions
    # =========================================================================

    @contextmanager
    def _guard(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock and translate sqlite errors."""
        with self._lock:
            if self._closed:
                raise PersistenceError("Pattern repository is closed")
            try:
                yield self._conn
            except sqlite3.Error as e:
                raise PersistenceError(f"Pattern storage failed: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._guard() as conn:
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._depth = 0

    # =========================================================================
    # Pattern rows
    # =========================================================================

    def insert(self, pattern: StoredPattern) -> None:
        embedding = self._embedding_bytes(pattern.context_embedding)
        if pattern.importance < 0:
            raise PatternValidationError("importance must be >= 0")

        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO patterns (
                       pattern_id, context_embedding, skill_id, skill_features,
                       context_data, outcome_type, outcome_reward, importance,
                       original_score, source, access_count, created_at,
                       last_accessed_at
                   ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    pattern.id,
                    embedding,
                    pattern.skill.skill_id,
                    pattern.skill.model_dump_json(),
                    pattern.context.model_dump_json(),
                    pattern.outcome.type.value,
                    pattern.outcome.reward,
                    pattern.importance,
                    pattern.original_score,
                    pattern.source,
                    pattern.access_count,
                    _to_ts(pattern.created_at),
                    _to_ts(pattern.last_accessed_at),
                ),
            )

    def get(self, pattern_id: str) -> Optional[StoredPattern]:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT * FROM patterns WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        return self._row_to_pattern(row) if row else None

    def exists(self, pattern_id: str) -> bool:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT 1 FROM patterns WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        return row is not None

    def get_importance(self, pattern_id: str) -> Optional[float]:
        with self._guard() as conn:
            row = conn.execute(
                "SELECT importance FROM patterns WHERE pattern_id = ?", (pattern_id,)
            ).fetchone()
        return float(row["importance"]) if row else None

    def reinforce(
        self,
        pattern_id: str,
        importance_delta: float,
        accessed_at: datetime,
    ) -> None:
        with self.transaction() as conn:
            cursor = conn.execute(
                """UPDATE patterns
                   SET importance = MAX(0, importance + ?),
                       access_count = access_count + 1,
                       last_accessed_at = ?
                   WHERE pattern_id = ?""",
                (importance_delta, _to_ts(accessed_at), pattern_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Pattern {pattern_id} disappeared during merge")

    def record_access(
        self,
        pattern_ids: Sequence[str],
        accessed_at: datetime,
        importance_boost: float = 0.0,
    ) -> None:
        if not pattern_ids:
            return
        ts = _to_ts(accessed_at)
        with self.transaction() as conn:
            conn.executemany(
                """UPDATE patterns
                   SET access_count = access_count + 1,
                       last_accessed_at = ?,
                       importance = importance * ?
                   WHERE pattern_id = ?""",
                [(ts, 1.0 + importance_boost, pid) for pid in pattern_ids],
            )

    def update_importances(self, scores: Sequence[Tuple[str, float]]) -> None:
        with self.transaction() as conn:
            conn.executemany(
                "UPDATE patterns SET importance = ? WHERE pattern_id = ?",
                [(max(0.0, float(score)), pid) for pid, score in scores],
            )

    def delete_many(self, pattern_ids: Sequence[str]) -> int:
        if not pattern_ids:
            return 0
        with self.transaction() as conn:
            cursor = conn.executemany(
                "DELETE FROM patterns WHERE pattern_id = ?",
                [(pid,) for pid in pattern_ids],
            )
            return cursor.rowcount

    def scan(self, query: Optional[PatternQuery] = None) -> List[StoredPattern]:
        clauses: List[str] = []
        params: List[Any] = []

        if query is not None:
            if query.skill_id:
                clauses.append("skill_id = ?")
                params.append(query.skill_id)
            if query.category:
                clauses.append("json_extract(skill_features, '$.category') = ?")
                params.append(query.category)
            if query.min_importance is not None:
                clauses.append("importance >= ?")
                params.append(query.min_importance)
            if query.outcome_type is not None:
                clauses.append("outcome_type = ?")
                params.append(query.outcome_type.value)
            if query.positive_only:
                clauses.append("outcome_reward > 0")

        sql = "SELECT * FROM patterns"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, pattern_id"

        with self._guard() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_pattern(row) for row in rows]

    def list_ids(self) -> List[str]:
        with self._guard() as conn:
            rows = conn.execute("SELECT pattern_id FROM patterns ORDER BY pattern_id").fetchall()
        return [row["pattern_id"] for row in rows]

    def get_embeddings(self, pattern_ids: Sequence[str]) -> List[np.ndarray]:
        embeddings = []
        with self._guard() as conn:
            for pid in pattern_ids:
                row = conn.execute(
                    "SELECT context_embedding FROM patterns WHERE pattern_id = ?", (pid,)
                ).fetchone()
                if row:
                    embeddings.append(self._embedding_from_bytes(row["context_embedding"]))
        return embeddings

    def iter_scoring_rows(self, batch_size: int = 500) -> Iterator[ScoringRow]:
        """Stream the columns consolidation needs, batch_size rows at a time."""
        with self._guard() as conn:
            cursor = conn.execute(
                """SELECT pattern_id, context_embedding, outcome_reward,
                          access_count, created_at
                   FROM patterns ORDER BY pattern_id"""
            )
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                for row in rows:
                    yield ScoringRow(
                        pattern_id=row["pattern_id"],
                        embedding=self._embedding_from_bytes(row["context_embedding"]),
                        reward=float(row["outcome_reward"]),
                        access_count=int(row["access_count"]),
                        created_at=_from_ts(row["created_at"]),
                    )

    def mean_embedding(self, batch_size: int = 500) -> np.ndarray:
        """Exact mean of all stored embeddings (zeros when empty)."""
        total = np.zeros(self.dimensions, dtype=np.float64)
        n = 0
        with self._guard() as conn:
            cursor = conn.execute("SELECT context_embedding FROM patterns")
            while True:
                rows = cursor.fetchmany(batch_size)
                if not rows:
                    break
                for row in rows:
                    total += self._embedding_from_bytes(row["context_embedding"])
                    n += 1
        if n == 0:
            return total
        return total / n

    def count(self) -> int:
        with self._guard() as conn:
            return conn.execute("SELECT COUNT(*) AS count FROM patterns").fetchone()["count"]

    def count_created_since(self, since: datetime) -> int:
        with self._guard() as conn:
            return conn.execute(
                "SELECT COUNT(*) AS count FROM patterns WHERE created_at > ?",
                (_to_ts(since),),
            ).fetchone()["count"]

    def count_by_outcome(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in OutcomeType}
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT outcome_type, COUNT(*) AS count FROM patterns GROUP BY outcome_type"
            ).fetchall()
        for row in rows:
            counts[row["outcome_type"]] = row["count"]
        return counts

    def importances(self) -> np.ndarray:
        with self._guard() as conn:
            rows = conn.execute("SELECT importance FROM patterns").fetchall()
        return np.array([row["importance"] for row in rows], dtype=np.float64)

    # =========================================================================
    # Fisher state and consolidation history
    # =========================================================================

    def load_fisher_state(self) -> Optional[FisherState]:
        with self._guard() as conn:
            row = conn.execute(
                """SELECT matrix_data, update_count, dimensions, last_decay_at
                   FROM fisher_info WHERE id = 1"""
            ).fetchone()
        if not row:
            return None
        return FisherState(
            matrix_data=bytes(row["matrix_data"]),
            update_count=int(row["update_count"]),
            dimensions=int(row["dimensions"]),
            last_decay_at=_from_ts(row["last_decay_at"]),
        )

    def save_fisher_state(
        self,
        matrix_data: bytes,
        update_count: int,
        last_decay_at: Optional[datetime] = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO fisher_info
                       (id, matrix_data, update_count, dimensions, last_decay_at, updated_at)
                   VALUES (1, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       matrix_data = excluded.matrix_data,
                       update_count = excluded.update_count,
                       dimensions = excluded.dimensions,
                       last_decay_at = COALESCE(excluded.last_decay_at, fisher_info.last_decay_at),
                       updated_at = excluded.updated_at""",
                (
                    sqlite3.Binary(matrix_data),
                    update_count,
                    self.dimensions,
                    _to_ts(last_decay_at) if last_decay_at else None,
                    _to_ts(now),
                ),
            )

    def append_consolidation(self, result: ConsolidationResult) -> None:
        timestamp = result.timestamp or datetime.now(timezone.utc)
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO consolidation_history (
                       timestamp, patterns_processed, patterns_preserved,
                       patterns_pruned, preservation_rate, duration_ms,
                       average_importance
                   ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    _to_ts(timestamp),
                    result.patterns_processed,
                    result.patterns_preserved,
                    result.patterns_pruned,
                    result.preservation_rate,
                    result.duration_ms,
                    result.average_importance,
                ),
            )

    def consolidation_history(self, limit: int = 10) -> List[ConsolidationResult]:
        """Most recent runs first."""
        with self._guard() as conn:
            rows = conn.execute(
                "SELECT * FROM consolidation_history ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
        return [
            ConsolidationResult(
                consolidated=True,
                patterns_processed=row["patterns_processed"],
                patterns_preserved=row["patterns_preserved"],
                patterns_pruned=row["patterns_pruned"],
                preservation_rate=row["preservation_rate"],
                duration_ms=row["duration_ms"],
                average_importance=row["average_importance"],
                timestamp=_from_ts(row["timestamp"]),
            )
            for row in rows
        ]

    def consolidation_summary(self) -> Dict[str, Any]:
        with self._guard() as conn:
            row = conn.execute(
                """SELECT COUNT(*) AS total,
                          MAX(timestamp) AS last,
                          AVG(preservation_rate) AS avg_rate,
                          COALESCE(SUM(patterns_pruned), 0) AS pruned
                   FROM consolidation_history"""
            ).fetchone()
        return {
            "total_consolidations": row["total"],
            "last_consolidation": _from_ts(row["last"]),
            "average_preservation_rate": row["avg_rate"] or 0.0,
            "patterns_pruned": row["pruned"],
        }

    def size_bytes(self) -> int:
        with self._guard() as conn:
            page_count = conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = conn.execute("PRAGMA page_size").fetchone()[0]
        return page_count * page_size

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True

    # =========================================================================
    # Row conversion
    # =========================================================================

    def _embedding_bytes(self, embedding: np.ndarray) -> bytes:
        vec = np.asarray(embedding, dtype=_EMBEDDING_DTYPE)
        if vec.shape != (self.dimensions,):
            raise PatternValidationError(
                f"Embedding must have shape ({self.dimensions},), got {vec.shape}"
            )
        return vec.tobytes()

    def _embedding_from_bytes(self, blob: bytes) -> np.ndarray:
        if len(blob) != self.dimensions * _EMBEDDING_DTYPE.itemsize:
            raise PatternValidationError(
                f"Stored embedding has {len(blob) // _EMBEDDING_DTYPE.itemsize} dims, "
                f"expected {self.dimensions}"
            )
        return np.frombuffer(blob, dtype=_EMBEDDING_DTYPE)

    def _row_to_pattern(self, row: sqlite3.Row) -> StoredPattern:
        return StoredPattern(
            id=row["pattern_id"],
            context=RecommendationContext.model_validate(json.loads(row["context_data"])),
            skill=SkillFeatures.model_validate(json.loads(row["skill_features"])),
            outcome=PatternOutcome(type=OutcomeType(row["outcome_type"])),
            context_embedding=self._embedding_from_bytes(row["context_embedding"]),
            original_score=row["original_score"],
            source=row["source"],
            importance=row["importance"],
            access_count=row["access_count"],
            created_at=_from_ts(row["created_at"]),
            last_accessed_at=_from_ts(row["last_accessed_at"]),
        )


def create_pattern_repository(
    backend: str = "sqlite",
    dimensions: int = 384,
    **kwargs
) -> PatternRepository:
    """
    Factory function to create pattern storage.

    Args:
        backend: "sqlite", "sqlite://<path>" or "memory"
        dimensions: Embedding dimensions
        **kwargs: db_path for the sqlite backend

    Returns:
        PatternRepository instance
    """
    if backend == "memory":
        return SQLitePatternRepository(None, dimensions=dimensions)

    elif backend == "sqlite" or backend.startswith("sqlite://"):
        db_path = kwargs.get("db_path")
        if backend.startswith("sqlite://"):
            db_path = backend.replace("sqlite://", "")
        return SQLitePatternRepository(db_path, dimensions=dimensions)

    else:
        raise ValueError(f"Unknown pattern storage backend: {backend}")
