"""
Canonical text for indexable business entities.

Each builder emits "Label: value" lines in a fixed order with fixed
number and date formatting, so the same entity always yields the same
text and re-indexing unchanged data is a no-op on `content`.
"""

from datetime import date, datetime
from typing import Any, Callable, Dict

REF_BOOK = "book"
REF_ORDER = "order"
REF_INVOICE = "invoice"

SUPPORTED_REF_TYPES = (REF_BOOK, REF_ORDER, REF_INVOICE)


def format_money(value: Any) -> str:
    try:
        return f"{float(value or 0):,.2f}"
    except (TypeError, ValueError):
        return "0.00"


def format_timestamp(value: Any) -> str:
    if value is None or value == "":
        return "n/a"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M")
    if isinstance(value, date):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _text(value: Any, default: str = "n/a") -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def book_text(item: Dict[str, Any]) -> str:
    authors = item.get("authors") or []
    lines = [
        "Type: BOOK",
        f"ISBN: {_text(item.get('id'))}",
        f"Title: {_text(item.get('title'))}",
        f"Category: {_text(item.get('category'))}",
        f"Publisher: {_text(item.get('publisher'))}",
        f"Authors: {', '.join(authors) if authors else 'Unknown'}",
        f"Publish year: {_text(item.get('publish_year'))}",
        f"Price: {format_money(item.get('price'))}",
        f"Stock: {int(item.get('stock') or 0)}",
        f"Status: {'On sale' if item.get('active', True) else 'Suspended'}",
    ]
    return "\n".join(lines)


def order_text(order: Dict[str, Any]) -> str:
    lines = [
        "Type: ORDER",
        f"Order ID: {order['order_id']}",
        f"Customer: {_text(order.get('customer_name'))} (ID {_text(order.get('customer_id'))})",
        f"Status: {_text(order.get('status'))}",
        f"Placed at: {format_timestamp(order.get('placed_at'))}",
        f"Receiver: {_text(order.get('receiver_name'))}",
        f"Shipping address: {_text(order.get('shipping_address'))}",
    ]
    if order.get("delivery_date"):
        lines.append(f"Delivery date: {format_timestamp(order['delivery_date'])}")
    if order.get("note") and str(order["note"]).strip():
        lines.append(f"Note: {str(order['note']).strip()}")
    lines.append(f"Total items: {int(order.get('total_quantity') or 0)}")
    lines.append(f"Order value: {format_money(order.get('total_amount'))}")
    order_lines = order.get("lines") or []
    if order_lines:
        lines.append("Items:")
        for line in order_lines:
            lines.append(
                f"- {_text(line.get('title'))} (ISBN {_text(line.get('item_id'))}): "
                f"{int(line.get('qty') or 0)} x {format_money(line.get('unit_price'))}"
            )
    return "\n".join(lines)


def invoice_text(invoice: Dict[str, Any]) -> str:
    lines = [
        "Type: INVOICE",
        f"Invoice ID: {invoice['invoice_id']}",
        f"Order ID: {invoice['order_id']}",
        f"Issued at: {format_timestamp(invoice.get('created_at'))}",
        f"Subtotal: {format_money(invoice.get('sub_total'))}",
        f"Tax: {format_money(invoice.get('tax_amount'))}",
        f"Total: {format_money(invoice.get('total_amount'))}",
        f"Order status: {_text(invoice.get('status'))}",
    ]
    return "\n".join(lines)


def ref_id_for(ref_type: str, entity: Dict[str, Any]) -> str:
    if ref_type == REF_BOOK:
        return str(entity["id"])
    if ref_type == REF_ORDER:
        return str(entity["order_id"])
    if ref_type == REF_INVOICE:
        return str(entity["invoice_id"])
    raise ValueError(f"Unsupported ref_type: {ref_type}")


BUILDERS: Dict[str, Callable[[Dict[str, Any]], str]] = {
    REF_BOOK: book_text,
    REF_ORDER: order_text,
    REF_INVOICE: invoice_text,
}


def canonical_text(ref_type: str, entity: Dict[str, Any]) -> str:
    try:
        builder = BUILDERS[ref_type]
    except KeyError:
        raise ValueError(f"Unsupported ref_type: {ref_type}") from None
    return builder(entity)
