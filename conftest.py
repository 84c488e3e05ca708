"""Shared fixtures: in-memory business data, Gemini response builders and a mocked gateway."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from backoffice_ai.business_data import BusinessDataReader
from backoffice_ai.concurrency_gate import ConcurrencyGate
from backoffice_ai.gemini_gateway import GeminiGateway
from backoffice_ai.rag.document_store import DocumentStore

TEST_API_KEY = "test-key-0123456789"


class InMemoryBusinessReader(BusinessDataReader):
    """BusinessDataReader over plain lists, mutable from tests."""

    def __init__(self, items=None, orders=None, invoices=None):
        self.items: List[Dict[str, Any]] = list(items or [])
        self.orders: List[Dict[str, Any]] = list(orders or [])
        self.invoices: List[Dict[str, Any]] = list(invoices or [])
        self.calls: List[str] = []

    def list_sellable_items(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self.calls.append("list_sellable_items")
        active = [i for i in self.items if i.get("active", True)]
        return active[:limit] if limit else active

    def get_item(self, item_id: str) -> Optional[Dict[str, Any]]:
        self.calls.append(f"get_item:{item_id}")
        return next((i for i in self.items if i["id"] == str(item_id)), None)

    def search_items(self, keyword: str, limit: int = 10) -> List[Dict[str, Any]]:
        self.calls.append(f"search_items:{keyword}")
        needle = keyword.lower()
        hits = [
            i for i in self.items
            if needle in i["title"].lower() or needle in i["id"]
            or needle in (i.get("category") or "").lower() or needle in (i.get("publisher") or "").lower()
            or any(needle in a.lower() for a in i.get("authors") or [])
        ]
        return hits[:limit]

    def list_recent_orders(self, customer_id: Optional[int] = None, limit: int = 20) -> List[Dict[str, Any]]:
        self.calls.append(f"list_recent_orders:{customer_id}")
        orders = [o for o in self.orders if customer_id is None or o["customer_id"] == customer_id]
        orders.sort(key=lambda o: o["placed_at"], reverse=True)
        return orders[:limit]

    def get_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        self.calls.append(f"get_order:{order_id}")
        return next((o for o in self.orders if o["order_id"] == order_id), None)

    def get_invoice_by_order(self, order_id: int) -> Optional[Dict[str, Any]]:
        self.calls.append(f"get_invoice_by_order:{order_id}")
        return next((i for i in self.invoices if i["order_id"] == order_id), None)

    def list_invoices(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return self.invoices[:limit] if limit else list(self.invoices)


def make_order(order_id: int, customer_id: int = 7, status: str = "Delivered", days_ago: int = 1) -> Dict[str, Any]:
    placed = datetime(2024, 5, 20, 10, 30) - timedelta(days=days_ago)
    lines = [{"item_id": "9780000000001", "title": "Dune", "qty": 2, "unit_price": 12.5}]
    return {
        "order_id": order_id,
        "customer_id": customer_id,
        "customer_name": "Linh Tran",
        "status": status,
        "placed_at": placed,
        "delivery_date": None,
        "receiver_name": "Linh Tran",
        "shipping_address": "12 Hang Bai, Hanoi",
        "note": None,
        "total_quantity": 2,
        "total_amount": 25.0,
        "lines": lines,
    }


@pytest.fixture
def reader():
    items = [
        {"id": "9780000000001", "title": "Dune", "category": "Science Fiction", "publisher": "Ace",
         "authors": ["Frank Herbert"], "publish_year": 1965, "price": 12.5, "stock": 14, "active": True},
        {"id": "9780000000002", "title": "Emma", "category": "Classics", "publisher": "Penguin",
         "authors": ["Jane Austen"], "publish_year": 1815, "price": 8.0, "stock": 0, "active": True},
        {"id": "9780000000003", "title": "Old Atlas", "category": "Reference", "publisher": "Collins",
         "authors": [], "publish_year": 1990, "price": 30.0, "stock": 2, "active": False},
    ]
    orders = [make_order(42), make_order(43, status="Confirmed", days_ago=0), make_order(50, customer_id=9)]
    invoices = [{
        "invoice_id": 900, "order_id": 42, "created_at": datetime(2024, 5, 19, 11, 0),
        "total_amount": 27.5, "tax_amount": 2.5, "sub_total": 25.0, "status": "Delivered",
    }]
    return InMemoryBusinessReader(items, orders, invoices)


@pytest.fixture
def store(tmp_path):
    return DocumentStore(str(tmp_path / "chroma"))


# ----------------------------------------------------------------------
# Gemini wire fixtures
# ----------------------------------------------------------------------

def text_response(text: str) -> Dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def function_call_response(name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    return {"candidates": [{"content": {"role": "model", "parts": [{"functionCall": {"name": name, "args": args}}]}}]}


def embedding_response(values: List[float]) -> Dict[str, Any]:
    return {"embedding": {"values": values}}


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content.decode("utf-8"))


class RecordingSleep:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def make_gateway():
    """Factory: make_gateway(handler, **overrides) -> GeminiGateway over an httpx.MockTransport."""

    def _make(handler, gate: Optional[ConcurrencyGate] = None, **overrides) -> GeminiGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        options = {
            "api_key": TEST_API_KEY,
            "model": "gemini-test",
            "embedding_model": "embed-test",
            "base_url": "https://gemini.test",
            "upload_base_url": "https://upload.gemini.test",
            "gate": gate or ConcurrencyGate(3),
            "http_client": client,
            "timeout": 5.0,
            "sleep": RecordingSleep(),
        }
        options.update(overrides)
        return GeminiGateway(**options)

    return _make


class FixedClock:
    """Deterministic clock for DocumentStore; each call advances one second."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value
