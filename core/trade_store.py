"""
perpbot Core: Trade Store

SQLite persistence for trades and the balance/transfer ledgers.

Trade lifecycle:
1. Entry: row inserted with status open (or paper)
2. While open: peak_pnl_pct only ever rises, trailing_activated only 0 -> 1
3. Close: terminal fields written once, by a single UPDATE that only matches
   a still-open row

Timestamps are ISO-8601 UTC strings, so "today" is a prefix match on the date.
"""

import sqlite3
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("open", "paper")
TRADE_STATUSES = ("open", "paper", "closed", "cancelled")
SIDES = ("LONG", "SHORT")


@dataclass
class Trade:
    """One position, from entry to close."""
    trade_id: str
    symbol: str
    side: str
    entry_price: float
    size: float
    leverage: float
    timestamp_open: str = ""
    status: str = "open"
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    peak_pnl_pct: float = 0.0
    trailing_activated: int = 0
    signal_confidence: Optional[float] = None
    fees: float = 0.0
    timestamp_close: Optional[str] = None
    exit_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    exit_reason: Optional[str] = None

    def __post_init__(self):
        if self.side not in SIDES:
            raise ValueError(f"side must be one of {SIDES}, got {self.side!r}")
        if self.status not in TRADE_STATUSES:
            raise ValueError(f"status must be one of {TRADE_STATUSES}, got {self.status!r}")
        if not self.timestamp_open:
            self.timestamp_open = utc_now_iso()

    @property
    def direction(self) -> int:
        return 1 if self.side == "LONG" else -1

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Trade":
        names = {f.name for f in fields(cls)}
        return cls(**{k: row[k] for k in row.keys() if k in names})


TRADE_COLUMNS = tuple(f.name for f in fields(Trade))
# Columns a generic field merge may touch; the guarded mutators own the rest
MERGEABLE_COLUMNS = frozenset(TRADE_COLUMNS) - {"trade_id", "peak_pnl_pct", "trailing_activated"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class TradeStore:
    """
    Thin repository over a SQLite file.

    A connection is opened per operation so the runner, the position monitor
    and the pipeline steps can all share the same file from separate processes.
    """

    def __init__(self, db_path: str = "data/trades.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    trade_id TEXT NOT NULL UNIQUE,
                    timestamp_open TEXT NOT NULL,
                    timestamp_close TEXT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL CHECK (side IN ('LONG', 'SHORT')),
                    entry_price REAL NOT NULL,
                    exit_price REAL,
                    size REAL NOT NULL,
                    leverage REAL NOT NULL,
                    stop_loss REAL,
                    take_profit REAL,
                    peak_pnl_pct REAL NOT NULL DEFAULT 0,
                    trailing_activated INTEGER NOT NULL DEFAULT 0,
                    pnl REAL,
                    pnl_pct REAL,
                    fees REAL NOT NULL DEFAULT 0,
                    exit_reason TEXT,
                    signal_confidence REAL,
                    status TEXT NOT NULL DEFAULT 'open'
                        CHECK (status IN ('open', 'paper', 'closed', 'cancelled'))
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_open_time ON trades(timestamp_open)")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS balance_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    venue TEXT NOT NULL,
                    balance REAL NOT NULL,
                    mode TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS wallet_transfers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    from_venue TEXT NOT NULL,
                    to_venue TEXT NOT NULL,
                    amount REAL NOT NULL,
                    asset TEXT NOT NULL DEFAULT 'USDC',
                    tx_ref TEXT,
                    status TEXT NOT NULL DEFAULT 'completed'
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    # ----- trades -----
    def insert_trade(self, trade: Trade) -> None:
        record = trade.to_dict()
        columns = ", ".join(record)
        placeholders = ", ".join("?" for _ in record)
        conn = self._connect()
        try:
            conn.execute(f"INSERT INTO trades ({columns}) VALUES ({placeholders})", tuple(record.values()))
            conn.commit()
        finally:
            conn.close()
        logger.info(
            f"Trade recorded: {trade.trade_id} {trade.side} {trade.size:g} {trade.symbol} "
            f"@ {trade.entry_price} (status={trade.status})"
        )

    def update_trade(self, trade_id: str, **changes: Any) -> bool:
        """
        Field-level merge: only the given columns change.

        peak_pnl_pct and trailing_activated are not accepted here; use
        raise_peak() / latch_trailing(), which enforce their monotonicity.

        Returns:
            True if a row was updated
        """
        if not changes:
            return False
        illegal = set(changes) - MERGEABLE_COLUMNS
        if illegal:
            raise ValueError(f"update_trade cannot set {sorted(illegal)}")
        assignments = ", ".join(f"{col} = ?" for col in changes)
        conn = self._connect()
        try:
            cur = conn.execute(
                f"UPDATE trades SET {assignments} WHERE trade_id = ?",
                (*changes.values(), trade_id),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def raise_peak(self, trade_id: str, peak_pnl_pct: float) -> bool:
        """Persist a new peak only if it exceeds the stored one."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE trades SET peak_pnl_pct = ? "
                "WHERE trade_id = ? AND status IN ('open', 'paper') AND peak_pnl_pct < ?",
                (peak_pnl_pct, trade_id, peak_pnl_pct),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def latch_trailing(self, trade_id: str) -> bool:
        """Set trailing_activated to 1. There is no way back to 0."""
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE trades SET trailing_activated = 1 "
                "WHERE trade_id = ? AND status IN ('open', 'paper') AND trailing_activated = 0",
                (trade_id,),
            )
            conn.commit()
            return cur.rowcount > 0
        finally:
            conn.close()

    def close_trade(
        self,
        trade_id: str,
        exit_price: float,
        pnl: float,
        pnl_pct: float,
        fees: float,
        exit_reason: str,
        timestamp_close: Optional[str] = None,
    ) -> bool:
        """
        Write the terminal fields in one statement.

        Returns:
            False if the trade was already closed (or does not exist)
        """
        conn = self._connect()
        try:
            cur = conn.execute(
                "UPDATE trades SET status = 'closed', exit_price = ?, pnl = ?, pnl_pct = ?, "
                "fees = ?, exit_reason = ?, timestamp_close = ? "
                "WHERE trade_id = ? AND status IN ('open', 'paper')",
                (exit_price, pnl, pnl_pct, fees, exit_reason, timestamp_close or utc_now_iso(), trade_id),
            )
            conn.commit()
            closed = cur.rowcount > 0
        finally:
            conn.close()
        if not closed:
            logger.warning(f"close_trade({trade_id}) matched no open trade")
        return closed

    def get_trade(self, trade_id: str) -> Optional[Trade]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM trades WHERE trade_id = ?", (trade_id,)).fetchone()
        finally:
            conn.close()
        return Trade.from_row(row) if row else None

    def get_open_trades(self) -> List[Trade]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM trades WHERE status IN ('open', 'paper') ORDER BY timestamp_open"
            ).fetchall()
        finally:
            conn.close()
        return [Trade.from_row(r) for r in rows]

    def get_today_trade_count(self) -> int:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM trades WHERE substr(timestamp_open, 1, 10) = ? "
                "AND status != 'cancelled'",
                (utc_today(),),
            ).fetchone()
        finally:
            conn.close()
        return int(row[0])

    def get_today_pnl(self) -> float:
        """Realized PnL of trades closed today (UTC)."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(pnl), 0) FROM trades WHERE status = 'closed' "
                "AND substr(timestamp_close, 1, 10) = ?",
                (utc_today(),),
            ).fetchone()
        finally:
            conn.close()
        return float(row[0])

    def get_daily_summary(self, date: Optional[str] = None) -> Dict[str, Any]:
        date = date or utc_today()
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS closed,
                       COALESCE(SUM(CASE WHEN pnl > 0 THEN 1 ELSE 0 END), 0) AS wins,
                       COALESCE(SUM(pnl), 0) AS pnl,
                       COALESCE(SUM(fees), 0) AS fees
                FROM trades WHERE status = 'closed' AND substr(timestamp_close, 1, 10) = ?
                """,
                (date,),
            ).fetchone()
        finally:
            conn.close()
        closed = int(row["closed"])
        return {
            "date": date,
            "closed_trades": closed,
            "wins": int(row["wins"]),
            "win_rate": (row["wins"] / closed) if closed else 0.0,
            "pnl": float(row["pnl"]),
            "fees": float(row["fees"]),
        }

    # ----- ledgers (append-only) -----
    def insert_balance_snapshot(self, venue: str, balance: float, mode: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO balance_snapshots (timestamp, venue, balance, mode) VALUES (?, ?, ?, ?)",
                (utc_now_iso(), venue, float(balance), mode),
            )
            conn.commit()
        finally:
            conn.close()

    def get_latest_balance(self, venue: str, mode: Optional[str] = None) -> Optional[float]:
        query = "SELECT balance FROM balance_snapshots WHERE venue = ?"
        params: List[Any] = [venue]
        if mode:
            query += " AND mode = ?"
            params.append(mode)
        query += " ORDER BY id DESC LIMIT 1"
        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()
        return float(row[0]) if row else None

    def get_day_start_balance(self, venue: str, mode: Optional[str] = None) -> Optional[float]:
        """First balance snapshot recorded today, the base for daily-loss checks."""
        query = "SELECT balance FROM balance_snapshots WHERE venue = ? AND substr(timestamp, 1, 10) = ?"
        params: List[Any] = [venue, utc_today()]
        if mode:
            query += " AND mode = ?"
            params.append(mode)
        query += " ORDER BY id ASC LIMIT 1"
        conn = self._connect()
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()
        return float(row[0]) if row else None

    def insert_wallet_transfer(
        self,
        from_venue: str,
        to_venue: str,
        amount: float,
        asset: str = "USDC",
        tx_ref: Optional[str] = None,
        status: str = "completed",
    ) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO wallet_transfers (timestamp, from_venue, to_venue, amount, asset, tx_ref, status) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (utc_now_iso(), from_venue, to_venue, float(amount), asset, tx_ref, status),
            )
            conn.commit()
        finally:
            conn.close()

    def get_today_transfer_total(self) -> float:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM wallet_transfers "
                "WHERE substr(timestamp, 1, 10) = ? AND status = 'completed'",
                (utc_today(),),
            ).fetchone()
        finally:
            conn.close()
        return float(row[0])
