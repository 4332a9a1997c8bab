"""
Database module for ceebalancer

Handles SQLite persistence for:
- Policy change audit log (fee rate / HTLC max applied per channel)
- Rebalance run history (one row per RunReport)
- Runtime configuration overrides
"""

import sqlite3
import os
import time
import json
from typing import Dict, List, Optional, Any


class Database:
    """
    SQLite database manager for the ceebalancer plugin.

    Provides persistence for:
    - Policy change audit log
    - Rebalance run reports
    - Config overrides and version counter
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file
            plugin: Reference to the pyln Plugin for logging
        """
        self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            # Ensure directory exists
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        conn = self._get_connection()

        # Policy changes audit log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS policy_changes (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                fee_ppm INTEGER NOT NULL,
                htlc_max_msat INTEGER NOT NULL,
                our_amount_msat INTEGER NOT NULL,
                amount_msat INTEGER NOT NULL,
                trigger_source TEXT NOT NULL,  -- 'timer', 'manual'
                timestamp INTEGER NOT NULL
            )
        """)

        # Rebalance run history
        conn.execute("""
            CREATE TABLE IF NOT EXISTS rebalance_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                trigger_source TEXT NOT NULL,
                status TEXT NOT NULL,  -- 'success', 'failed'
                evaluated INTEGER NOT NULL DEFAULT 0,
                applied INTEGER NOT NULL DEFAULT 0,
                skipped INTEGER NOT NULL DEFAULT 0,
                failed INTEGER NOT NULL DEFAULT 0,
                failures TEXT,  -- JSON list of {channel_id, error}
                error_message TEXT,
                started_at INTEGER NOT NULL,
                finished_at INTEGER NOT NULL
            )
        """)

        # Runtime config overrides
        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_overrides (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS config_version (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("INSERT OR IGNORE INTO config_version (id, version) VALUES (1, 0)")

        # Create indexes for common queries
        conn.execute("CREATE INDEX IF NOT EXISTS idx_policy_changes_channel ON policy_changes(channel_id, timestamp)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_rebalance_runs_time ON rebalance_runs(started_at)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Policy Change Methods
    # =========================================================================

    def record_policy_change(self, channel_id: str, fee_ppm: int, htlc_max_msat: int,
                             our_amount_msat: int, amount_msat: int,
                             trigger: str = "timer"):
        """Record an applied policy for audit purposes."""
        conn = self._get_connection()
        now = int(time.time())

        conn.execute("""
            INSERT INTO policy_changes
            (channel_id, fee_ppm, htlc_max_msat, our_amount_msat, amount_msat, trigger_source, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (channel_id, fee_ppm, htlc_max_msat, our_amount_msat, amount_msat, trigger, now))

    def get_recent_policy_changes(self, limit: int = 10, channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent policy changes, optionally filtered by channel."""
        conn = self._get_connection()

        if channel_id:
            rows = conn.execute("""
                SELECT * FROM policy_changes
                WHERE channel_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (channel_id, limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM policy_changes
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()

        return [dict(row) for row in rows]

    # =========================================================================
    # Run History Methods
    # =========================================================================

    def record_run(self, report: Dict[str, Any]) -> int:
        """Record a finished rebalance run and return its ID."""
        conn = self._get_connection()

        cursor = conn.execute("""
            INSERT INTO rebalance_runs
            (trigger_source, status, evaluated, applied, skipped, failed, failures,
             error_message, started_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            report.get("trigger", "manual"),
            report.get("status", "success"),
            report.get("evaluated", 0),
            report.get("applied", 0),
            report.get("skipped", 0),
            report.get("failed", 0),
            json.dumps(report.get("failures", [])),
            report.get("error"),
            int(report.get("started_at", 0)),
            int(report.get("finished_at", 0)),
        ))

        return cursor.lastrowid

    def get_recent_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent rebalance runs, newest first."""
        conn = self._get_connection()
        rows = conn.execute("""
            SELECT * FROM rebalance_runs
            ORDER BY started_at DESC, id DESC
            LIMIT ?
        """, (limit,)).fetchall()

        runs = []
        for row in rows:
            run = dict(row)
            run["failures"] = json.loads(run["failures"]) if run.get("failures") else []
            runs.append(run)
        return runs

    # =========================================================================
    # Config Override Methods
    # =========================================================================

    def set_config_override(self, key: str, value: str) -> int:
        """Persist an override and return the new config version."""
        conn = self._get_connection()
        now = int(time.time())

        conn.execute("""
            INSERT OR REPLACE INTO config_overrides (key, value, updated_at)
            VALUES (?, ?, ?)
        """, (key, value, now))
        conn.execute("UPDATE config_version SET version = version + 1 WHERE id = 1")

        return self.get_config_version()

    def get_config_override(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT value FROM config_overrides WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def get_all_config_overrides(self) -> Dict[str, str]:
        conn = self._get_connection()
        rows = conn.execute("SELECT key, value FROM config_overrides").fetchall()
        return {row["key"]: row["value"] for row in rows}

    def delete_config_override(self, key: str) -> bool:
        """Remove an override. Returns False if none existed."""
        conn = self._get_connection()
        cursor = conn.execute("DELETE FROM config_overrides WHERE key = ?", (key,))
        if cursor.rowcount > 0:
            conn.execute("UPDATE config_version SET version = version + 1 WHERE id = 1")
            return True
        return False

    def get_config_version(self) -> int:
        conn = self._get_connection()
        row = conn.execute("SELECT version FROM config_version WHERE id = 1").fetchone()
        return row["version"] if row else 0

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_old_data(self, days_to_keep: int = 30):
        """
        Remove old audit and run rows to prevent database bloat.

        Args:
            days_to_keep: Number of days of data to retain (default 30)
        """
        conn = self._get_connection()
        cutoff = int(time.time()) - (days_to_keep * 86400)

        changes_count = conn.execute(
            "SELECT COUNT(*) as cnt FROM policy_changes WHERE timestamp < ?", (cutoff,)
        ).fetchone()["cnt"]
        runs_count = conn.execute(
            "SELECT COUNT(*) as cnt FROM rebalance_runs WHERE started_at < ?", (cutoff,)
        ).fetchone()["cnt"]

        conn.execute("DELETE FROM policy_changes WHERE timestamp < ?", (cutoff,))
        conn.execute("DELETE FROM rebalance_runs WHERE started_at < ?", (cutoff,))

        if changes_count > 0 or runs_count > 0:
            self.plugin.log(
                f"Cleaned up data older than {days_to_keep} days: "
                f"{changes_count} policy_changes rows, {runs_count} rebalance_runs rows"
            )

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
