"""
Read-only access to back-office business data.

The CRUD layer owns the relational schema; the AI core only needs a few
reads from it. `BusinessDataReader` is that contract. Every method is
synchronous and returns plain dicts (or None when the entity does not
exist):

    item:    id, title, category, publisher, authors, publish_year,
             price, stock, active
    order:   order_id, customer_id, customer_name, status, placed_at,
             delivery_date, receiver_name, shipping_address, note,
             total_quantity, total_amount, lines[item_id, title, qty, unit_price]
    invoice: invoice_id, order_id, created_at, total_amount, tax_amount,
             sub_total, status
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import mysql.connector

from . import config

logger = logging.getLogger(__name__)

CONNECT_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 1

ORDER_STATUS_LABELS = {
    0: "Pending confirmation",
    1: "Confirmed",
    2: "Delivered",
    3: "Cancelled",
}
DELIVERED_STATUS = 2


class BusinessDataReader(ABC):
    """Synchronous read interface consumed by the indexer and function dispatcher."""

    @abstractmethod
    def list_sellable_items(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def search_items(self, keyword: str, limit: int = 10) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def list_recent_orders(self, customer_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def get_invoice_by_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        ...

    def best_seller_quantities(self, since: datetime) -> Dict[str, int]:
        """Quantity sold per item id over delivered orders placed at or after `since`."""
        sold: Dict[str, int] = {}
        for order in self.list_recent_orders(limit=config.INDEX_MAX_ORDERS):
            if order.get("status") != ORDER_STATUS_LABELS[DELIVERED_STATUS]:
                continue
            placed_at = order.get("placed_at")
            if placed_at is None or placed_at < since:
                continue
            for line in order.get("lines") or []:
                sold[line["item_id"]] = sold.get(line["item_id"], 0) + int(line.get("qty") or 0)
        return sold

    def get_invoice(self, invoice_id: int) -> Optional[Dict[str, Any]]:
        for invoice in self.list_invoices():
            if invoice["invoice_id"] == int(invoice_id):
                return invoice
        return None

    def list_invoices(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Invoices for the orders returned by list_recent_orders(); override for a direct query."""
        invoices = []
        for order in self.list_recent_orders(limit=limit or config.INDEX_MAX_ORDERS):
            invoice = self.get_invoice_by_order(order["order_id"])
            if invoice:
                invoices.append(invoice)
        return invoices


def order_status_label(status: Any) -> str:
    if isinstance(status, str) and not status.isdigit():
        return status
    try:
        return ORDER_STATUS_LABELS.get(int(status), f"Unknown ({status})")
    except (TypeError, ValueError):
        return f"Unknown ({status})"


def _money(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, Decimal):
        return float(value.quantize(Decimal("0.01")))
    return round(float(value), 2)


def get_db_connection():
    """Connect to the back-office MySQL database, retrying a few times with backoff."""
    delay = RETRY_DELAY_SECONDS
    for attempt in range(1, CONNECT_ATTEMPTS + 1):
        try:
            conn = mysql.connector.connect(
                host=config.DB_HOST,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                database=config.DB_NAME
            )
            if attempt > 1:
                logger.info(f"[DB] Connected after {attempt - 1} retries")
            return conn
        except mysql.connector.Error as err:
            if attempt == CONNECT_ATTEMPTS:
                logger.error(f"[DB] Connection attempt #{attempt} failed: {err}. Giving up.")
                raise
            logger.error(f"[DB] Connection attempt #{attempt} failed: {err}. Retrying in {delay}s...")
            time.sleep(delay)
            delay *= 2


class MySQLBusinessReader(BusinessDataReader):
    """BusinessDataReader over the bookstore MySQL schema."""

    def __init__(self, connect=get_db_connection):
        self._connect = connect

    def _fetch_all(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        conn = self._connect()
        cursor = None
        try:
            cursor = conn.cursor(dictionary=True)
            cursor.execute(query, params)
            return cursor.fetchall()
        finally:
            if cursor is not None:
                cursor.close()
            conn.close()

    def _fetch_one(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    ITEM_SELECT = """
        SELECT b.isbn, b.title, b.average_price, b.stock, b.status, b.publish_year,
               c.name AS category_name, p.name AS publisher_name,
               GROUP_CONCAT(TRIM(CONCAT(a.first_name, ' ', a.last_name))
                            ORDER BY a.last_name, a.first_name SEPARATOR ', ') AS authors
        FROM book b
        LEFT JOIN category c ON c.category_id = b.category_id
        LEFT JOIN publisher p ON p.publisher_id = b.publisher_id
        LEFT JOIN author_book ab ON ab.isbn = b.isbn
        LEFT JOIN author a ON a.author_id = ab.author_id
    """

    @staticmethod
    def _item_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
        authors = [a for a in (row.get("authors") or "").split(", ") if a]
        return {
            "id": str(row["isbn"]),
            "title": row.get("title") or "",
            "category": row.get("category_name"),
            "publisher": row.get("publisher_name"),
            "authors": authors,
            "publish_year": row.get("publish_year"),
            "price": _money(row.get("average_price")),
            "stock": int(row.get("stock") or 0),
            "active": bool(row.get("status")),
        }

    def list_sellable_items(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = limit or config.INDEX_MAX_BOOKS
        rows = self._fetch_all(
            self.ITEM_SELECT + " WHERE b.status = 1 GROUP BY b.isbn ORDER BY b.updated_at DESC LIMIT %s",
            (limit,),
        )
        return [self._item_from_row(r) for r in rows]

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        row = self._fetch_one(self.ITEM_SELECT + " WHERE b.isbn = %s GROUP BY b.isbn", (item_id,))
        return self._item_from_row(row) if row else None

    def search_items(self, keyword: str, limit: int = 10) -> List[Dict[str, Any]]:
        pattern = f"%{keyword.strip()}%"
        rows = self._fetch_all(
            self.ITEM_SELECT
            + """
            WHERE b.status = 1 AND (
                b.title LIKE %s OR b.isbn LIKE %s OR c.name LIKE %s OR p.name LIKE %s
                OR EXISTS (
                    SELECT 1 FROM author_book ab2
                    JOIN author a2 ON a2.author_id = ab2.author_id
                    WHERE ab2.isbn = b.isbn AND CONCAT(a2.first_name, ' ', a2.last_name) LIKE %s
                )
            )
            GROUP BY b.isbn ORDER BY b.title LIMIT %s
            """,
            (pattern,) * 5 + (limit,),
        )
        return [self._item_from_row(r) for r in rows]

    def best_seller_quantities(self, since: datetime) -> Dict[str, int]:
        rows = self._fetch_all(
            """
            SELECT ol.isbn, SUM(ol.qty) AS sold
            FROM order_line ol
            JOIN `order` o ON o.order_id = ol.order_id
            WHERE o.status = %s AND o.placed_at >= %s
            GROUP BY ol.isbn
            """,
            (DELIVERED_STATUS, since),
        )
        return {str(r["isbn"]): int(r.get("sold") or 0) for r in rows}

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    ORDER_SELECT = """
        SELECT o.order_id, o.customer_id, o.placed_at, o.delivery_date, o.status, o.note,
               o.receiver_name, o.shipping_address,
               TRIM(CONCAT(cu.first_name, ' ', cu.last_name)) AS customer_name
        FROM `order` o
        LEFT JOIN customer cu ON cu.customer_id = o.customer_id
    """

    def _order_lines(self, order_ids: List[int]) -> Dict[int, List[Dict[str, Any]]]:
        if not order_ids:
            return {}
        placeholders = ",".join(["%s"] * len(order_ids))
        rows = self._fetch_all(
            f"""
            SELECT ol.order_id, ol.isbn, ol.qty, ol.unit_price, b.title
            FROM order_line ol
            LEFT JOIN book b ON b.isbn = ol.isbn
            WHERE ol.order_id IN ({placeholders})
            ORDER BY ol.order_id, ol.order_line_id
            """,
            tuple(order_ids),
        )
        lines: Dict[int, List[Dict[str, Any]]] = {}
        for r in rows:
            lines.setdefault(int(r["order_id"]), []).append({
                "item_id": str(r["isbn"]),
                "title": r.get("title") or str(r["isbn"]),
                "qty": int(r.get("qty") or 0),
                "unit_price": _money(r.get("unit_price")),
            })
        return lines

    @staticmethod
    def _order_from_row(row: Dict[str, Any], lines: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "order_id": int(row["order_id"]),
            "customer_id": int(row["customer_id"]) if row.get("customer_id") is not None else None,
            "customer_name": row.get("customer_name") or row.get("receiver_name") or "",
            "status": order_status_label(row.get("status")),
            "placed_at": row.get("placed_at"),
            "delivery_date": row.get("delivery_date"),
            "receiver_name": row.get("receiver_name") or "",
            "shipping_address": row.get("shipping_address") or "",
            "note": row.get("note"),
            "total_quantity": sum(line["qty"] for line in lines),
            "total_amount": round(sum(line["qty"] * line["unit_price"] for line in lines), 2),
            "lines": lines,
        }

    def list_recent_orders(self, customer_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        if customer_id is None:
            rows = self._fetch_all(self.ORDER_SELECT + " ORDER BY o.placed_at DESC LIMIT %s", (limit,))
        else:
            rows = self._fetch_all(
                self.ORDER_SELECT + " WHERE o.customer_id = %s ORDER BY o.placed_at DESC LIMIT %s",
                (customer_id, limit),
            )
        lines = self._order_lines([int(r["order_id"]) for r in rows])
        return [self._order_from_row(r, lines.get(int(r["order_id"]), [])) for r in rows]

    def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetch_one(self.ORDER_SELECT + " WHERE o.order_id = %s", (order_id,))
        if row is None:
            return None
        lines = self._order_lines([int(order_id)])
        return self._order_from_row(row, lines.get(int(order_id), []))

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    @staticmethod
    def _invoice_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
        total = _money(row.get("total_amount"))
        tax = _money(row.get("tax_amount"))
        return {
            "invoice_id": int(row["invoice_id"]),
            "order_id": int(row["order_id"]),
            "created_at": row.get("created_at"),
            "total_amount": total,
            "tax_amount": tax,
            "sub_total": round(total - tax, 2),
            "status": order_status_label(row.get("order_status")),
        }

    def get_invoice_by_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetch_one(
            """
            SELECT i.invoice_id, i.order_id, i.created_at, i.total_amount, i.tax_amount,
                   o.status AS order_status
            FROM invoice i
            JOIN `order` o ON o.order_id = i.order_id
            WHERE i.order_id = %s
            ORDER BY i.created_at DESC
            LIMIT 1
            """,
            (order_id,),
        )
        return self._invoice_from_row(row) if row else None

    def get_invoice(self, invoice_id: int) -> Optional[Dict[str, Any]]:
        row = self._fetch_one(
            """
            SELECT i.invoice_id, i.order_id, i.created_at, i.total_amount, i.tax_amount,
                   o.status AS order_status
            FROM invoice i
            JOIN `order` o ON o.order_id = i.order_id
            WHERE i.invoice_id = %s
            """,
            (invoice_id,),
        )
        return self._invoice_from_row(row) if row else None

    def list_invoices(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = self._fetch_all(
            """
            SELECT i.invoice_id, i.order_id, i.created_at, i.total_amount, i.tax_amount,
                   o.status AS order_status
            FROM invoice i
            JOIN `order` o ON o.order_id = i.order_id
            ORDER BY i.created_at DESC
            LIMIT %s
            """,
            (limit or config.INDEX_MAX_ORDERS,),
        )
        return [self._invoice_from_row(r) for r in rows]
