"""State Store Service - Async SQLite persistence layer.

This service:
- Persists trades, their orders (legs) and emergency-stop audit events
- Applies trade status transitions conditionally so terminal trades stay terminal
- Reads the latest risk-regime reading and user plan tiers written by
  external collaborators
- Uses a single locked connection in WAL mode for concurrent access
"""

import asyncio
import hashlib
import json
import time
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from janus.core.config import ConfigManager
from janus.core.events import EventEncoder
from janus.domain.emergency import EmergencyEvent
from janus.domain.order import ORDER_UPDATABLE_FIELDS, Order, OrderStatus
from janus.domain.risk import PlanTier, RegimeReading, RiskRegime, UserAccount
from janus.domain.trade import Side, Trade, TradeStatus, Venue

log = structlog.get_logger()

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    market_pair_id TEXT NOT NULL,
    venue TEXT NOT NULL,
    side TEXT NOT NULL,
    size REAL NOT NULL,
    entry_price REAL NOT NULL,
    exit_price REAL,
    pnl REAL,
    status TEXT NOT NULL DEFAULT 'open',
    tx_hash TEXT,
    emergency_reason TEXT,
    opened_at TEXT NOT NULL,
    closed_at TEXT
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    trade_id TEXT REFERENCES trades(id),
    user_id TEXT NOT NULL,
    market_pair_id TEXT NOT NULL,
    venue TEXT NOT NULL,
    side TEXT NOT NULL,
    size REAL NOT NULL,
    price REAL NOT NULL,
    filled_size REAL NOT NULL DEFAULT 0,
    filled_price REAL,
    status TEXT NOT NULL DEFAULT 'pending',
    external_order_id TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS emergency_events (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    trigger_reason TEXT NOT NULL,
    trades_closed INTEGER NOT NULL DEFAULT 0,
    metadata TEXT NOT NULL DEFAULT '{}',
    triggered_at TEXT NOT NULL,
    resolved_at TEXT
);

-- Written by the alpha pipeline; the core only reads the latest row
CREATE TABLE IF NOT EXISTS alpha_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    regime TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

-- Owned by the auth service; the core only reads plan and key hash
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    plan TEXT NOT NULL DEFAULT 'free',
    api_key_hash TEXT UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_trades_user_status ON trades(user_id, status);
CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);
CREATE INDEX IF NOT EXISTS idx_orders_trade ON orders(trade_id);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id);
CREATE INDEX IF NOT EXISTS idx_emergency_active ON emergency_events(user_id, resolved_at);
CREATE INDEX IF NOT EXISTS idx_alpha_created ON alpha_metrics(created_at);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
INSERT OR IGNORE INTO schema_version (version) VALUES (1);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dec(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _float(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest under which API keys are stored."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


class ConnectionPool:
    """Single-connection pool for SQLite.

    aiosqlite runs each connection on its own thread; writes are serialized
    with an asyncio lock and WAL mode keeps reads concurrent.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._connected = False

    async def connect(self) -> None:
        async with self._lock:
            if self._connected:
                return

            if self._db_path != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

            self._connection = await aiosqlite.connect(self._db_path)
            self._connection.row_factory = aiosqlite.Row

            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")

            self._connected = True

    async def close(self) -> None:
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None
            self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def acquire(self) -> aiosqlite.Connection:
        """Return the connection.

        Raises:
            RuntimeError: If pool is not connected.
        """
        if not self._connected or not self._connection:
            raise RuntimeError("Connection pool not connected")
        return self._connection

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock


class StateStore:
    """SQLite-based persistence for trades, orders and emergency events.

    Trade status changes go through transition_trade(), which only moves a
    trade out of ``open``: a terminal trade is never overwritten, whichever
    writer (coordinator, emergency stop, manual close) gets there first.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config: Optional[ConfigManager] = None,
    ):
        """Initialize the state store.

        Args:
            db_path: Direct path to database file (takes precedence).
            config: Configuration manager for default settings.
        """
        self._log = log.bind(component="state_store")

        if db_path:
            self._db_path = db_path
        elif config:
            self._db_path = config.get("database.path", "./data/janus.db")
        else:
            self._db_path = "./data/janus.db"

        self._pool = ConnectionPool(self._db_path)
        self._start_time: Optional[float] = None

    @property
    def is_connected(self) -> bool:
        return self._pool.is_connected

    @property
    def db_path(self) -> str:
        return self._db_path

    async def connect(self) -> None:
        """Connect to database and apply the schema."""
        self._start_time = time.time()
        self._log.info("connecting_state_store", db_path=str(self._db_path))

        await self._pool.connect()

        conn = await self._pool.acquire()
        async with self._pool.lock:
            await conn.executescript(SCHEMA_SQL)
            await conn.commit()

        self._log.info("state_store_connected", schema_version=SCHEMA_VERSION)

    async def close(self) -> None:
        await self._pool.close()
        self._log.info("state_store_closed")

    async def _execute_write(self, sql: str, params: tuple | list) -> int:
        """Run one write statement under the lock; returns rowcount."""
        conn = await self._pool.acquire()
        async with self._pool.lock:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            rowcount = cursor.rowcount
            await cursor.close()
        return rowcount

    async def _fetch_one(self, sql: str, params: tuple | list = ()) -> Optional[aiosqlite.Row]:
        conn = await self._pool.acquire()
        async with conn.execute(sql, params) as cursor:
            return await cursor.fetchone()

    async def _fetch_all(self, sql: str, params: tuple | list = ()) -> list[aiosqlite.Row]:
        conn = await self._pool.acquire()
        async with conn.execute(sql, params) as cursor:
            return list(await cursor.fetchall())

    # ============ Trade Operations ============

    async def save_trade(self, trade: Trade) -> None:
        """Insert or fully replace a trade record."""
        await self._execute_write(
            """
            INSERT OR REPLACE INTO trades
            (id, user_id, market_pair_id, venue, side, size, entry_price,
             exit_price, pnl, status, tx_hash, emergency_reason, opened_at, closed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.id,
                trade.user_id,
                trade.market_pair_id,
                trade.venue.value,
                trade.side.value,
                float(trade.size),
                float(trade.entry_price),
                _float(trade.exit_price),
                _float(trade.pnl),
                trade.status.value,
                trade.tx_hash,
                trade.emergency_reason,
                _ts(trade.opened_at),
                _ts(trade.closed_at),
            ),
        )
        self._log.debug("trade_saved", trade_id=trade.id, status=trade.status.value)

    async def get_trade(self, trade_id: str) -> Optional[Trade]:
        row = await self._fetch_one("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return self._row_to_trade(row) if row else None

    async def get_trades(
        self,
        user_id: Optional[str] = None,
        status: Optional[TradeStatus] = None,
        limit: int = 100,
    ) -> list[Trade]:
        """Get trades with optional filters, newest first."""
        query = "SELECT * FROM trades WHERE 1=1"
        params: list[Any] = []

        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)

        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY opened_at DESC LIMIT ?"
        params.append(limit)

        return [self._row_to_trade(row) for row in await self._fetch_all(query, params)]

    async def get_open_trades(self, user_id: Optional[str] = None) -> list[Trade]:
        """All open trades, optionally restricted to one user."""
        query = "SELECT * FROM trades WHERE status = 'open'"
        params: list[Any] = []
        if user_id:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY opened_at"
        return [self._row_to_trade(row) for row in await self._fetch_all(query, params)]

    async def get_open_exposure(
        self,
        user_id: str,
        exclude_trade_id: Optional[str] = None,
    ) -> Decimal:
        """Sum of open trade sizes for a user, optionally leaving one trade out."""
        row = await self._fetch_one(
            "SELECT COALESCE(SUM(size), 0) AS exposure FROM trades "
            "WHERE user_id = ? AND status = 'open' AND id != ?",
            (user_id, exclude_trade_id or ""),
        )
        return Decimal(str(row["exposure"])) if row else Decimal("0")

    async def transition_trade(
        self,
        trade_id: str,
        status: TradeStatus,
        closed_at: Optional[datetime] = None,
        exit_price: Optional[Decimal] = None,
        pnl: Optional[Decimal] = None,
        emergency_reason: Optional[str] = None,
    ) -> bool:
        """Move an open trade to a terminal status.

        Returns:
            True if the trade was open and is now ``status``; False if it
            does not exist or was already terminal.
        """
        if not status.is_terminal:
            raise ValueError(f"cannot transition a trade to {status.value}")

        rowcount = await self._execute_write(
            """
            UPDATE trades
            SET status = ?,
                closed_at = ?,
                exit_price = COALESCE(?, exit_price),
                pnl = COALESCE(?, pnl),
                emergency_reason = COALESCE(?, emergency_reason)
            WHERE id = ? AND status = 'open'
            """,
            (
                status.value,
                _ts(closed_at or datetime.now(timezone.utc)),
                _float(exit_price),
                _float(pnl),
                emergency_reason,
                trade_id,
            ),
        )
        if rowcount:
            self._log.info("trade_transitioned", trade_id=trade_id, status=status.value)
        return rowcount > 0

    def _row_to_trade(self, row: aiosqlite.Row) -> Trade:
        return Trade(
            id=row["id"],
            user_id=row["user_id"],
            market_pair_id=row["market_pair_id"],
            venue=Venue(row["venue"]),
            side=Side(row["side"]),
            size=Decimal(str(row["size"])),
            entry_price=Decimal(str(row["entry_price"])),
            exit_price=_dec(row["exit_price"]),
            pnl=_dec(row["pnl"]),
            status=TradeStatus(row["status"]),
            tx_hash=row["tx_hash"],
            emergency_reason=row["emergency_reason"],
            opened_at=_parse_ts(row["opened_at"]) or datetime.now(timezone.utc),
            closed_at=_parse_ts(row["closed_at"]),
        )

    # ============ Order Operations ============

    async def save_order(self, order: Order) -> None:
        """Insert or fully replace an order record."""
        await self._execute_write(
            """
            INSERT OR REPLACE INTO orders
            (id, trade_id, user_id, market_pair_id, venue, side, size, price,
             filled_size, filled_price, status, external_order_id, error_message,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.id,
                order.trade_id,
                order.user_id,
                order.market_pair_id,
                order.venue.value,
                order.side.value,
                float(order.size),
                float(order.price),
                float(order.filled_size),
                _float(order.filled_price),
                order.status.value,
                order.external_order_id,
                order.error_message,
                _ts(order.created_at),
                _ts(order.updated_at),
            ),
        )
        self._log.debug("order_saved", order_id=order.id, status=order.status.value)

    async def get_order(self, order_id: str) -> Optional[Order]:
        row = await self._fetch_one("SELECT * FROM orders WHERE id = ?", (order_id,))
        return self._row_to_order(row) if row else None

    async def get_orders(self, user_id: Optional[str] = None, limit: int = 100) -> list[Order]:
        query = "SELECT * FROM orders"
        params: list[Any] = []
        if user_id:
            query += " WHERE user_id = ?"
            params.append(user_id)
        query += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        params.append(limit)
        return [self._row_to_order(row) for row in await self._fetch_all(query, params)]

    async def get_orders_for_trade(self, trade_id: str) -> list[Order]:
        """Leg timeline of a trade, oldest first."""
        rows = await self._fetch_all(
            "SELECT * FROM orders WHERE trade_id = ? ORDER BY created_at, rowid",
            (trade_id,),
        )
        return [self._row_to_order(row) for row in rows]

    async def update_order(
        self,
        order_id: str,
        fields: dict[str, Any],
        updated_at: datetime,
    ) -> None:
        """Overwrite the named columns of one order."""
        unknown = set(fields) - ORDER_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown order fields: {sorted(unknown)}")

        assignments = []
        params: list[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = ?")
            if isinstance(value, OrderStatus):
                value = value.value
            elif isinstance(value, Decimal):
                value = float(value)
            params.append(value)

        assignments.append("updated_at = ?")
        params.append(_ts(updated_at))
        params.append(order_id)

        await self._execute_write(
            f"UPDATE orders SET {', '.join(assignments)} WHERE id = ?",
            params,
        )

    def _row_to_order(self, row: aiosqlite.Row) -> Order:
        return Order(
            id=row["id"],
            trade_id=row["trade_id"],
            user_id=row["user_id"],
            market_pair_id=row["market_pair_id"],
            venue=Venue(row["venue"]),
            side=Side(row["side"]),
            size=Decimal(str(row["size"])),
            price=Decimal(str(row["price"])),
            filled_size=Decimal(str(row["filled_size"])),
            filled_price=_dec(row["filled_price"]),
            status=OrderStatus(row["status"]),
            external_order_id=row["external_order_id"],
            error_message=row["error_message"],
            created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
            updated_at=_parse_ts(row["updated_at"]) or datetime.now(timezone.utc),
        )

    # ============ Emergency Events ============

    async def save_emergency_event(self, event: EmergencyEvent) -> None:
        await self._execute_write(
            """
            INSERT OR REPLACE INTO emergency_events
            (id, user_id, trigger_reason, trades_closed, metadata, triggered_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.user_id,
                event.trigger_reason,
                event.trades_closed,
                json.dumps(event.metadata, cls=EventEncoder),
                _ts(event.triggered_at),
                _ts(event.resolved_at),
            ),
        )

    async def get_emergency_event(self, event_id: str) -> Optional[EmergencyEvent]:
        row = await self._fetch_one("SELECT * FROM emergency_events WHERE id = ?", (event_id,))
        return self._row_to_event(row) if row else None

    async def get_active_emergency_event(self, user_id: str) -> Optional[EmergencyEvent]:
        """The most recent unresolved event stored under exactly this scope owner."""
        row = await self._fetch_one(
            "SELECT * FROM emergency_events WHERE user_id = ? AND resolved_at IS NULL "
            "ORDER BY triggered_at DESC LIMIT 1",
            (user_id,),
        )
        return self._row_to_event(row) if row else None

    async def get_active_emergency_events(self) -> list[EmergencyEvent]:
        rows = await self._fetch_all(
            "SELECT * FROM emergency_events WHERE resolved_at IS NULL ORDER BY triggered_at"
        )
        return [self._row_to_event(row) for row in rows]

    async def has_unresolved_emergency(self, user_ids: list[str]) -> bool:
        """True if any listed scope owner has an unresolved event."""
        if not user_ids:
            return False
        placeholders = ", ".join("?" for _ in user_ids)
        row = await self._fetch_one(
            f"SELECT 1 FROM emergency_events WHERE resolved_at IS NULL "
            f"AND user_id IN ({placeholders}) LIMIT 1",
            user_ids,
        )
        return row is not None

    async def add_trades_closed(self, event_id: str, count: int) -> None:
        await self._execute_write(
            "UPDATE emergency_events SET trades_closed = trades_closed + ? WHERE id = ?",
            (count, event_id),
        )

    async def resolve_emergency_event(self, event_id: str, resolved_at: datetime) -> bool:
        """Stamp resolved_at if still unresolved. Returns True on change."""
        rowcount = await self._execute_write(
            "UPDATE emergency_events SET resolved_at = ? WHERE id = ? AND resolved_at IS NULL",
            (_ts(resolved_at), event_id),
        )
        return rowcount > 0

    def _row_to_event(self, row: aiosqlite.Row) -> EmergencyEvent:
        return EmergencyEvent(
            id=row["id"],
            user_id=row["user_id"],
            trigger_reason=row["trigger_reason"],
            trades_closed=int(row["trades_closed"]),
            metadata=json.loads(row["metadata"] or "{}"),
            triggered_at=_parse_ts(row["triggered_at"]) or datetime.now(timezone.utc),
            resolved_at=_parse_ts(row["resolved_at"]),
        )

    # ============ Regime and Users (external collaborators) ============

    async def record_regime(self, reading: RegimeReading) -> None:
        await self._execute_write(
            "INSERT INTO alpha_metrics (regime, confidence, created_at) VALUES (?, ?, ?)",
            (reading.regime.value, float(reading.confidence), _ts(reading.created_at)),
        )

    async def get_latest_regime(self) -> Optional[RegimeReading]:
        row = await self._fetch_one(
            "SELECT * FROM alpha_metrics ORDER BY created_at DESC, id DESC LIMIT 1"
        )
        if row is None:
            return None
        return RegimeReading(
            regime=RiskRegime(row["regime"]),
            confidence=Decimal(str(row["confidence"])),
            created_at=_parse_ts(row["created_at"]) or datetime.now(timezone.utc),
        )

    async def save_user(self, account: UserAccount, api_key: Optional[str] = None) -> None:
        await self._execute_write(
            "INSERT OR REPLACE INTO users (id, email, plan, api_key_hash) VALUES (?, ?, ?, ?)",
            (
                account.id,
                account.email,
                account.plan.value,
                hash_api_key(api_key) if api_key else None,
            ),
        )

    async def get_user(self, user_id: str) -> Optional[UserAccount]:
        row = await self._fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def get_user_by_api_key(self, api_key: str) -> Optional[UserAccount]:
        row = await self._fetch_one(
            "SELECT * FROM users WHERE api_key_hash = ?", (hash_api_key(api_key),)
        )
        return self._row_to_user(row) if row else None

    def _row_to_user(self, row: aiosqlite.Row) -> UserAccount:
        return UserAccount(
            id=row["id"],
            email=row["email"],
            plan=PlanTier.parse(row["plan"], default=PlanTier.FREE),
        )

    # ============ Health Check ============

    async def health_check(self) -> dict[str, Any]:
        """Check database health."""
        if not self.is_connected:
            return {"status": "unhealthy", "message": "Database not connected"}

        try:
            await self._fetch_one("SELECT 1")
        except Exception as e:
            return {"status": "unhealthy", "message": f"Database error: {e}"}

        return {"status": "healthy", "message": "Database connected", "db_path": self._db_path}
