"""
Database module for stable-channels

Handles SQLite persistence for:
- Peg state of each stable channel (target, role, risk level, last balances)
- Stability payment audit log

Price samples are not stored; every cycle fetches fresh prices.
"""

import sqlite3
import os
import time
from typing import Dict, List, Optional, Any


class Database:
    """
    SQLite database manager for the Stable Channels plugin.

    Provides persistence for:
    - Peg state, so the risk counter and last balances survive restarts
    - Payments issued by the controller, successful or not
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
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

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

        # Peg state - one row per stabilized channel
        conn.execute("""
            CREATE TABLE IF NOT EXISTS stable_channels (
                channel_id TEXT PRIMARY KEY,
                counterparty TEXT NOT NULL,
                is_stable_receiver INTEGER NOT NULL,
                expected_usd REAL NOT NULL,
                risk_level INTEGER NOT NULL DEFAULT 0,
                stable_receiver_sats INTEGER NOT NULL DEFAULT 0,
                stable_provider_sats INTEGER NOT NULL DEFAULT 0,
                balances_known INTEGER NOT NULL DEFAULT 0,
                last_action TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                updated_at INTEGER NOT NULL
            )
        """)

        # Stability payments audit log
        conn.execute("""
            CREATE TABLE IF NOT EXISTS stability_payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel_id TEXT NOT NULL,
                counterparty TEXT NOT NULL,
                amount_msat INTEGER NOT NULL,
                usd_amount REAL NOT NULL,
                status TEXT NOT NULL,  -- 'success', 'failed', 'dry_run'
                payment_id TEXT,
                error_message TEXT,
                timestamp INTEGER NOT NULL
            )
        """)

        conn.execute("CREATE INDEX IF NOT EXISTS idx_stability_payments_channel ON stability_payments(channel_id, timestamp)")

        self.plugin.log("Database initialized successfully")

    # =========================================================================
    # Peg State Methods
    # =========================================================================

    def save_stable_channel(self, state) -> None:
        """Insert or replace the persisted peg state for a channel."""
        conn = self._get_connection()
        now = int(time.time())

        conn.execute("""
            INSERT OR REPLACE INTO stable_channels
            (channel_id, counterparty, is_stable_receiver, expected_usd, risk_level,
             stable_receiver_sats, stable_provider_sats, balances_known, last_action, active, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (state.channel_id, state.counterparty, 1 if state.is_stable_receiver else 0,
              state.expected_usd.amount, state.risk_level,
              state.stable_receiver_btc.sats, state.stable_provider_btc.sats,
              1 if state.balances_known else 0,
              state.last_action.value if state.last_action else None,
              1 if state.active else 0, now))

    def get_stable_channel(self, channel_id: str) -> Optional[Dict[str, Any]]:
        """Get the persisted peg state of a channel."""
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM stable_channels WHERE channel_id = ?",
            (channel_id,)
        ).fetchone()

        if row:
            return dict(row)
        return None

    def get_all_stable_channels(self) -> List[Dict[str, Any]]:
        """Get all persisted peg states, active first."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM stable_channels ORDER BY active DESC, updated_at DESC"
        ).fetchall()
        return [dict(row) for row in rows]

    def deactivate_stable_channel(self, channel_id: str) -> None:
        """Mark a channel as closed; it will not be restored on startup."""
        conn = self._get_connection()
        conn.execute(
            "UPDATE stable_channels SET active = 0, updated_at = ? WHERE channel_id = ?",
            (int(time.time()), channel_id)
        )

    # =========================================================================
    # Payment Log Methods
    # =========================================================================

    def record_payment(self, channel_id: str, counterparty: str, amount_msat: int,
                       usd_amount: float, status: str,
                       payment_id: Optional[str] = None,
                       error_message: Optional[str] = None) -> int:
        """Record a stability payment attempt and return its ID."""
        conn = self._get_connection()
        now = int(time.time())

        cursor = conn.execute("""
            INSERT INTO stability_payments
            (channel_id, counterparty, amount_msat, usd_amount, status,
             payment_id, error_message, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (channel_id, counterparty, amount_msat, usd_amount, status,
              payment_id, error_message, now))

        return cursor.lastrowid

    def get_recent_payments(self, limit: int = 10,
                            channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent stability payments, optionally filtered by channel."""
        conn = self._get_connection()

        if channel_id:
            rows = conn.execute("""
                SELECT * FROM stability_payments
                WHERE channel_id = ?
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (channel_id, limit)).fetchall()
        else:
            rows = conn.execute("""
                SELECT * FROM stability_payments
                ORDER BY timestamp DESC, id DESC
                LIMIT ?
            """, (limit,)).fetchall()

        return [dict(row) for row in rows]

    def get_total_paid_msat(self, channel_id: str, since_timestamp: int = 0) -> int:
        """Sum of successful stability payments for a channel since a timestamp."""
        conn = self._get_connection()
        row = conn.execute("""
            SELECT COALESCE(SUM(amount_msat), 0) as total
            FROM stability_payments
            WHERE channel_id = ? AND status = 'success' AND timestamp >= ?
        """, (channel_id, since_timestamp)).fetchone()

        return row['total'] if row else 0

    # =========================================================================
    # Cleanup Methods
    # =========================================================================

    def cleanup_old_data(self, days_to_keep: int = 90):
        """
        Remove old payment log rows to prevent database bloat.

        Args:
            days_to_keep: Number of days of payment history to retain
        """
        conn = self._get_connection()
        cutoff = int(time.time()) - (days_to_keep * 86400)

        count = conn.execute(
            "SELECT COUNT(*) as cnt FROM stability_payments WHERE timestamp < ?", (cutoff,)
        ).fetchone()["cnt"]

        conn.execute("DELETE FROM stability_payments WHERE timestamp < ?", (cutoff,))

        if count > 0:
            self.plugin.log(
                f"Cleaned up {count} stability_payments rows older than {days_to_keep} days"
            )

    def close(self):
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
