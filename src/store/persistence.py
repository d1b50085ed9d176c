"""
Store Adapter for commerce rows (SQLite).

Generic find / create / update / destroy over the StoreModel tables, plus the
few webhook and reporting queries processors need.

A StoreSession wraps one write transaction (BEGIN IMMEDIATE). Reconciliation
runs each entity's find-then-upsert inside one session, so concurrent workers
touching the same remote id serialize instead of losing updates.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, TypeVar

from src.queueing.entities import generate_uuid, to_iso, utc_now

from .models import Customer, Order, OrderItem, Product, StoreModel, WebhookRecord


logger = logging.getLogger(__name__)


ModelT = TypeVar("ModelT", bound=StoreModel)


class StoreSession:
    """Table operations bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], datetime]):
        self._conn = conn
        self._clock = clock

    def _now(self) -> str:
        return to_iso(self._clock())

    @staticmethod
    def _encode(model: type[StoreModel], values: dict[str, Any]) -> dict[str, Any]:
        unknown = set(values) - set(model.columns())
        if unknown:
            raise ValueError(f"Unknown columns for {model.table}: {sorted(unknown)}")

        encoded = {}
        for key, value in values.items():
            if key in model.JSON_FIELDS:
                value = json.dumps(value if value is not None else {})
            elif isinstance(value, bool):
                value = int(value)
            encoded[key] = value
        return encoded

    @staticmethod
    def _row_to_model(model: type[ModelT], row: sqlite3.Row) -> ModelT:
        """Convert database row to a model instance."""
        values = {}
        for name in model.columns():
            value = row[name]
            if name in model.JSON_FIELDS:
                value = json.loads(value) if value else {}
            values[name] = value
        if model is WebhookRecord:
            values["processed"] = bool(values["processed"])
        return model(**values)

    def get(self, model: type[ModelT], row_id: str) -> Optional[ModelT]:
        return self.find_one(model, id=row_id)

    def find_one(self, model: type[ModelT], **criteria) -> Optional[ModelT]:
        rows = self.find_all(model, limit=1, **criteria)
        return rows[0] if rows else None

    def find_all(
        self,
        model: type[ModelT],
        order_by: str = "created_at ASC",
        limit: Optional[int] = None,
        **criteria,
    ) -> list[ModelT]:
        where, params = self._where(model, criteria)
        sql = f"SELECT * FROM {model.table}{where} ORDER BY {order_by}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_model(model, row) for row in rows]

    def count(self, model: type[StoreModel], **criteria) -> int:
        where, params = self._where(model, criteria)
        row = self._conn.execute(f"SELECT COUNT(*) FROM {model.table}{where}", params).fetchone()
        return row[0]

    def _where(self, model: type[StoreModel], criteria: dict) -> tuple[str, list]:
        encoded = self._encode(model, criteria)
        clauses, params = [], []
        for key, value in encoded.items():
            if value is None:
                clauses.append(f"{key} IS NULL")
            else:
                clauses.append(f"{key} = ?")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def create(self, model: type[ModelT], **values) -> ModelT:
        now = self._now()
        values = {"id": generate_uuid(), "created_at": now, "updated_at": now, **values}
        encoded = self._encode(model, values)

        columns = ", ".join(encoded)
        placeholders = ", ".join("?" for _ in encoded)
        self._conn.execute(
            f"INSERT INTO {model.table} ({columns}) VALUES ({placeholders})",
            list(encoded.values()),
        )
        return self.get(model, values["id"])

    def update(self, model: type[ModelT], row_id: str, **values) -> ModelT:
        """
        Update columns on one row.

        Raises:
            LookupError: If the row does not exist
        """
        values["updated_at"] = self._now()
        encoded = self._encode(model, values)
        assignments = ", ".join(f"{key} = ?" for key in encoded)

        cursor = self._conn.execute(
            f"UPDATE {model.table} SET {assignments} WHERE id = ?",
            [*encoded.values(), row_id],
        )
        if cursor.rowcount == 0:
            raise LookupError(f"{model.table} row not found: {row_id}")
        return self.get(model, row_id)

    def destroy(self, model: type[StoreModel], row_id: str) -> bool:
        cursor = self._conn.execute(f"DELETE FROM {model.table} WHERE id = ?", (row_id,))
        return cursor.rowcount > 0


class StoreAdapter:
    """
    SQLite persistence for customers, products, orders, order items and
    webhook records.
    """

    def __init__(self, db_path: str | Path, clock: Callable[[], datetime] = utc_now):
        """
        Initialize store adapter.

        Args:
            db_path: Path to SQLite database file
            clock: Returns the current aware UTC datetime
        """
        self.db_path = str(db_path)
        self.clock = clock
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """One write transaction; committed on success, rolled back on error."""
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield StoreSession(conn, self.clock)
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.session() as session:
            conn = session._conn
            conn.execute("""
                CREATE TABLE IF NOT EXISTS customers (
                    id TEXT PRIMARY KEY,
                    shop_domain TEXT NOT NULL,
                    shopify_customer_id TEXT,
                    email TEXT,
                    first_name TEXT,
                    last_name TEXT,
                    phone TEXT,
                    address TEXT,
                    city TEXT,
                    province TEXT,
                    country TEXT,
                    zip TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (shopify_customer_id, shop_domain)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_customers_email
                ON customers (email, shop_domain)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS products (
                    id TEXT PRIMARY KEY,
                    shop_domain TEXT NOT NULL,
                    shopify_product_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    price TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (shopify_product_id, shop_domain)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    shop_domain TEXT NOT NULL,
                    shopify_order_id TEXT,
                    order_number TEXT,
                    total_price TEXT NOT NULL DEFAULT '0.00',
                    currency TEXT NOT NULL DEFAULT 'USD',
                    financial_status TEXT,
                    fulfillment_status TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    customer_id TEXT,
                    cancel_reason TEXT,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (shopify_order_id, shop_domain),
                    FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE SET NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS order_items (
                    id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    shopify_line_item_id TEXT NOT NULL,
                    product_id TEXT,
                    shopify_product_id TEXT,
                    shopify_variant_id TEXT,
                    product_title TEXT NOT NULL,
                    product_variant_title TEXT,
                    sku TEXT,
                    quantity INTEGER NOT NULL DEFAULT 1,
                    unit_price TEXT NOT NULL DEFAULT '0.00',
                    total_price TEXT NOT NULL DEFAULT '0.00',
                    currency TEXT NOT NULL DEFAULT 'USD',
                    discount_amount TEXT NOT NULL DEFAULT '0.00',
                    tax_amount TEXT NOT NULL DEFAULT '0.00',
                    product_metadata TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (order_id, shopify_line_item_id),
                    FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE,
                    FOREIGN KEY (product_id) REFERENCES products(id) ON DELETE SET NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS webhooks (
                    id TEXT PRIMARY KEY,
                    topic TEXT NOT NULL,
                    shop_domain TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_webhooks_processed
                ON webhooks (processed, processed_at)
            """)

    # =========================================================================
    # Single-operation shortcuts
    # =========================================================================

    def get(self, model: type[ModelT], row_id: str) -> Optional[ModelT]:
        with self.session() as session:
            return session.get(model, row_id)

    def find_one(self, model: type[ModelT], **criteria) -> Optional[ModelT]:
        with self.session() as session:
            return session.find_one(model, **criteria)

    def find_all(self, model: type[ModelT], **criteria) -> list[ModelT]:
        with self.session() as session:
            return session.find_all(model, **criteria)

    def count(self, model: type[StoreModel], **criteria) -> int:
        with self.session() as session:
            return session.count(model, **criteria)

    def create(self, model: type[ModelT], **values) -> ModelT:
        with self.session() as session:
            return session.create(model, **values)

    def update(self, model: type[ModelT], row_id: str, **values) -> ModelT:
        with self.session() as session:
            return session.update(model, row_id, **values)

    def destroy(self, model: type[StoreModel], row_id: str) -> bool:
        with self.session() as session:
            return session.destroy(model, row_id)

    # =========================================================================
    # Webhook audit trail
    # =========================================================================

    def record_webhook(self, topic: str, shop_domain: str, payload: str) -> WebhookRecord:
        """Write-ahead record of a received webhook, before any processing."""
        record = self.create(
            WebhookRecord,
            topic=topic,
            shop_domain=shop_domain,
            payload=payload,
            processed=False,
        )
        logger.info(f"Webhook recorded: {record.id} ({topic} from {shop_domain})")
        return record

    def mark_webhook_processed(self, webhook_id: str) -> WebhookRecord:
        """
        Raises:
            LookupError: If the record does not exist
        """
        now = to_iso(self.clock())
        return self.update(WebhookRecord, webhook_id, processed=True, processed_at=now)

    def delete_processed_webhooks(self, older_than: datetime) -> int:
        """Delete processed webhook records processed before `older_than`."""
        with self.session() as session:
            cursor = session._conn.execute(
                "DELETE FROM webhooks WHERE processed = 1 AND processed_at < ?",
                (to_iso(older_than),),
            )
            deleted = cursor.rowcount
        logger.info(f"Deleted {deleted} processed webhook records")
        return deleted

    # =========================================================================
    # Reporting
    # =========================================================================

    def order_report(
        self,
        start: datetime,
        end: datetime,
        shop_domain: Optional[str] = None,
        top_n: int = 5,
    ) -> dict:
        """
        Order totals for orders created in [start, end).

        Revenue excludes cancelled orders and is summed per currency.
        """
        params: list[Any] = [to_iso(start), to_iso(end)]
        shop_clause = ""
        if shop_domain:
            shop_clause = " AND shop_domain = ?"
            params.append(shop_domain)

        with self.session() as session:
            conn = session._conn
            orders = conn.execute(
                "SELECT status, currency, total_price FROM orders "
                f"WHERE created_at >= ? AND created_at < ?{shop_clause}",
                params,
            ).fetchall()
            top_products = conn.execute(
                "SELECT oi.product_title AS title, SUM(oi.quantity) AS quantity "
                "FROM order_items oi JOIN orders o ON o.id = oi.order_id "
                f"WHERE o.created_at >= ? AND o.created_at < ?"
                f"{shop_clause.replace('shop_domain', 'o.shop_domain')} "
                "AND o.status != 'cancelled' "
                "GROUP BY oi.product_title ORDER BY quantity DESC, title ASC LIMIT ?",
                [*params, top_n],
            ).fetchall()

        revenue: dict[str, Decimal] = {}
        by_status: dict[str, int] = {}
        for row in orders:
            by_status[row["status"]] = by_status.get(row["status"], 0) + 1
            if row["status"] == "cancelled":
                continue
            revenue[row["currency"]] = revenue.get(row["currency"], Decimal("0")) + _to_decimal(
                row["total_price"]
            )

        return {
            "period": {"start": to_iso(start), "end": to_iso(end)},
            "shop_domain": shop_domain,
            "order_count": len(orders),
            "orders_by_status": by_status,
            "revenue": {currency: str(amount) for currency, amount in sorted(revenue.items())},
            "top_products": [
                {"title": row["title"], "quantity": row["quantity"]} for row in top_products
            ],
        }


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


DEFAULT_STORE_DB_PATH = "data/store.db"


def create_store(db_path: Optional[str] = None) -> StoreAdapter:
    """Open the store at db_path (default: STORE_DB_PATH)."""
    path = Path(db_path or os.getenv("STORE_DB_PATH", DEFAULT_STORE_DB_PATH))
    path.parent.mkdir(parents=True, exist_ok=True)
    return StoreAdapter(path)
