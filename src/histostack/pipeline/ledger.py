"""SQLite-based registration ledger.

Records every registration the pipeline runs (pairwise, volume match,
iterative refinement) and the lifecycle of each stage run. The checkpoint
store remains the source of truth for what is done; the ledger is the
queryable history used for progress reports and QC plots.
"""

import sqlite3
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Optional, Dict, List
import threading

import pandas as pd

logger = logging.getLogger(__name__)

__all__ = ['RegistrationLedger', 'VALID_STAGES']

VALID_STAGES = ('init', 'recon', 'pairwise', 'volmatch', 'voliter')


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RegistrationLedger:
    """Tracks registrations and stage runs of one project.

    **Database Schema:**

    SQLite table `registrations`, one row per engine run:

    - stage: 'pairwise', 'volmatch' or 'voliter'
    - slice_id: moving slice
    - partner_id: reference slice (pairwise only)
    - iteration: refinement iteration (voliter only)
    - total_metric, vol_metric, nbr_metric
    - created_at: ISO timestamp

    SQLite table `stage_runs`, one row per stage invocation:

    - stage, started_at, finished_at
    - status: running, completed, failed
    - error_message

    **Thread Safety:**

    All methods are thread-safe via internal locking.

    **Typical Usage:**

    ::

        with RegistrationLedger(db_path) as ledger:
            run_id = ledger.start_stage("recon")
            ledger.record("pairwise", "s2", partner_id="s1", total_metric=0.93)
            ledger.finish_stage(run_id)
            print(ledger.get_statistics())
    """

    def __init__(self, db_path: Path | str):
        """Initialize ledger.

        Parameters
        ----------
        db_path : Path or str
            Path to SQLite database file. Created if doesn't exist.
            Typically: <project>/config/ledger.db
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = None
        self._lock = threading.Lock()

        self._init_database()
        logger.info(f"Registration ledger initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        """Create database schema if it doesn't exist."""
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS registrations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stage TEXT NOT NULL,
                    slice_id TEXT NOT NULL,
                    partner_id TEXT,
                    iteration INTEGER,

                    total_metric REAL,
                    vol_metric REAL,
                    nbr_metric REAL,

                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stage_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stage TEXT NOT NULL,
                    status TEXT DEFAULT 'running',
                    error_message TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_reg_stage ON registrations(stage)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_reg_iteration ON registrations(iteration)")

            conn.commit()

    @staticmethod
    def _check_stage(stage: str):
        if stage not in VALID_STAGES:
            raise ValueError(f"Invalid stage: {stage}. Must be one of {list(VALID_STAGES)}")

    def record(self, stage: str, slice_id: str,
               partner_id: Optional[str] = None,
               iteration: Optional[int] = None,
               total_metric: Optional[float] = None,
               vol_metric: Optional[float] = None,
               nbr_metric: Optional[float] = None) -> None:
        """Record one completed registration.

        Raises
        ------
        ValueError
            If stage is not a known pipeline stage.
        """
        self._check_stage(stage)
        conn = self._get_connection()

        with self._lock:
            conn.execute("""
                INSERT INTO registrations
                (stage, slice_id, partner_id, iteration, total_metric, vol_metric, nbr_metric, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                stage,
                slice_id,
                partner_id,
                iteration,
                None if total_metric is None else float(total_metric),
                None if vol_metric is None else float(vol_metric),
                None if nbr_metric is None else float(nbr_metric),
                _now(),
            ))
            conn.commit()

        logger.debug(f"Recorded {stage} registration of {slice_id}")

    def start_stage(self, stage: str) -> int:
        """Open a stage run and return its id."""
        self._check_stage(stage)
        conn = self._get_connection()

        with self._lock:
            cursor = conn.execute(
                "INSERT INTO stage_runs (stage, started_at) VALUES (?, ?)", (stage, _now())
            )
            conn.commit()
            return cursor.lastrowid

    def finish_stage(self, run_id: int, error: Optional[str] = None) -> None:
        """Close a stage run as completed, or as failed when ``error`` is given."""
        conn = self._get_connection()
        status = 'failed' if error else 'completed'

        with self._lock:
            conn.execute("""
                UPDATE stage_runs
                SET status = ?, error_message = ?, finished_at = ?
                WHERE id = ?
            """, (status, error, _now(), run_id))
            conn.commit()

    def stage_runs(self, stage: Optional[str] = None) -> List[Dict]:
        """Stage runs, oldest first."""
        conn = self._get_connection()
        query = "SELECT * FROM stage_runs"
        params = []
        if stage:
            query += " WHERE stage = ?"
            params.append(stage)
        query += " ORDER BY id"

        with self._lock:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def registrations(self, stage: Optional[str] = None) -> List[Dict]:
        """Recorded registrations, oldest first."""
        conn = self._get_connection()
        query = "SELECT * FROM registrations"
        params = []
        if stage:
            query += " WHERE stage = ?"
            params.append(stage)
        query += " ORDER BY id"

        with self._lock:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def get_statistics(self) -> Dict:
        """Summary counts.

        Returns
        -------
        dict
            - `total`: registrations recorded
            - `pairwise`, `volmatch`, `voliter`: registrations per stage
            - `iterations`: distinct refinement iterations seen
            - `failed_stages`: stage runs that ended in failure
        """
        conn = self._get_connection()

        with self._lock:
            row = conn.execute("""
                SELECT
                    COUNT(*) as total,
                    SUM(CASE WHEN stage = 'pairwise' THEN 1 ELSE 0 END) as pairwise,
                    SUM(CASE WHEN stage = 'volmatch' THEN 1 ELSE 0 END) as volmatch,
                    SUM(CASE WHEN stage = 'voliter' THEN 1 ELSE 0 END) as voliter,
                    COUNT(DISTINCT iteration) as iterations
                FROM registrations
            """).fetchone()
            stats = dict(row) if row else {}
            failed = conn.execute(
                "SELECT COUNT(*) FROM stage_runs WHERE status = 'failed'"
            ).fetchone()[0]

        for key in ('pairwise', 'volmatch', 'voliter'):
            stats[key] = stats.get(key) or 0
        stats['failed_stages'] = failed
        return stats

    def iteration_metrics(self) -> pd.DataFrame:
        """Per-iteration metric totals of the refinement stage.

        Columns: iteration, n_slices, total_vol_metric, total_nbr_metric.
        When an iteration was run more than once, only its latest record
        per slice counts.
        """
        conn = self._get_connection()
        query = """
            SELECT iteration,
                   COUNT(*) AS n_slices,
                   SUM(vol_metric) AS total_vol_metric,
                   SUM(nbr_metric) AS total_nbr_metric
            FROM registrations
            WHERE id IN (
                SELECT MAX(id) FROM registrations
                WHERE stage = 'voliter'
                GROUP BY iteration, slice_id
            )
            GROUP BY iteration
            ORDER BY iteration
        """
        with self._lock:
            return pd.read_sql_query(query, conn)

    def close(self):
        """Close database connection. Safe to call multiple times."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
