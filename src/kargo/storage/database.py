import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from kargo.models.order import Order, ShipmentStatus


class OrderStore:
    """JSON-document order store on sqlite.

    The storefront owns the order aggregate; this service only reads orders and
    writes its own `shipping_*` / `yurtici_*` fields through partial updates.
    """

    def __init__(self, data_dir: str | Path):
        self.db_path = Path(data_dir) / "kargo.db"

    def init_db(self) -> None:
        """Initialize database with required tables."""
        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id TEXT PRIMARY KEY,
                    data JSON NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()

    @contextmanager
    def get_connection(self):
        """Get a database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def save(self, order: Order) -> None:
        """Insert or replace a whole order document."""
        now = datetime.now(timezone.utc).isoformat()
        data = order.model_dump(mode="json")

        with self.get_connection() as conn:
            existing = conn.execute("SELECT id FROM orders WHERE id = ?", (order.id,)).fetchone()
            if existing:
                conn.execute(
                    "UPDATE orders SET data = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(data), now, order.id),
                )
            else:
                conn.execute(
                    "INSERT INTO orders (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    (order.id, json.dumps(data), now, now),
                )
            conn.commit()

    def get(self, order_id: str) -> Order | None:
        """Load an order by ID."""
        with self.get_connection() as conn:
            row = conn.execute("SELECT data FROM orders WHERE id = ?", (order_id,)).fetchone()
            if row:
                return Order.model_validate_json(row["data"])
            return None

    def update(self, order_id: str, fields: dict[str, Any]) -> bool:
        """Merge `fields` into the stored order in a single statement.

        Values are validated through the Order model first so the stored
        document always round-trips.
        """
        if not fields:
            return True
        patch = Order.model_validate({"id": order_id, **fields}).model_dump(
            mode="json", include=set(fields)
        )
        now = datetime.now(timezone.utc).isoformat()

        with self.get_connection() as conn:
            cursor = conn.execute(
                "UPDATE orders SET data = json_patch(data, ?), updated_at = ? WHERE id = ?",
                (json.dumps(patch), now, order_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def list_by_shipping_status(self, statuses: Iterable[ShipmentStatus]) -> list[Order]:
        values = [ShipmentStatus(s).value for s in statuses]
        if not values:
            return []
        placeholders = ", ".join("?" for _ in values)
        with self.get_connection() as conn:
            rows = conn.execute(
                f"SELECT data FROM orders WHERE json_extract(data, '$.shipping_status') IN ({placeholders}) "
                "ORDER BY created_at ASC",
                values,
            ).fetchall()
            return [Order.model_validate_json(row["data"]) for row in rows]
