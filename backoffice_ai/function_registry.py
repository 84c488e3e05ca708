"""
Function registry and dispatcher for Gemini function calling.

TOOLS declares the read-only back-office operations the model may ask
for. FunctionRegistry.dispatch validates a FunctionCall against those
declarations, runs the matching handler against the BusinessDataReader
and always returns a DispatchResult: unknown names, bad arguments,
missing records and handler crashes come back as {"error", "code"}
payloads so they can be sent to the model as the function result.
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from .business_data import BusinessDataReader
from .models.conversation import FunctionCall

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 5
MAX_LIST_LIMIT = 20

INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")
NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

TOOLS = [
    {
        "name": "getOrderStatus",
        "description": "Look up the current status of a customer order by its numeric order ID. "
                       "Use this whenever the user asks where an order is, whether it was delivered or cancelled.",
        "parameters": {
            "type": "object",
            "properties": {
                "orderId": {
                    "type": "integer",
                    "description": "Numeric order ID, e.g. 42"
                }
            },
            "required": ["orderId"]
        }
    },
    {
        "name": "listRecentOrders",
        "description": "List the most recent orders of a customer, newest first, with status and value.",
        "parameters": {
            "type": "object",
            "properties": {
                "customerId": {
                    "type": "integer",
                    "description": "Numeric customer ID"
                },
                "limit": {
                    "type": "integer",
                    "description": f"How many orders to return (1-{MAX_LIST_LIMIT}, default {DEFAULT_LIST_LIMIT})"
                }
            },
            "required": ["customerId"]
        }
    },
    {
        "name": "getInvoiceByOrder",
        "description": "Get the invoice (total, tax, issue date and order status) issued for an order.",
        "parameters": {
            "type": "object",
            "properties": {
                "orderId": {
                    "type": "integer",
                    "description": "Numeric order ID the invoice belongs to"
                }
            },
            "required": ["orderId"]
        }
    },
    {
        "name": "searchCatalog",
        "description": "Search books on sale by title, ISBN or category keyword. Returns price and stock.",
        "parameters": {
            "type": "object",
            "properties": {
                "keyword": {
                    "type": "string",
                    "description": "Title, ISBN or category keyword"
                },
                "maxResults": {
                    "type": "integer",
                    "description": f"Maximum number of books to return (1-{MAX_LIST_LIMIT}, default {DEFAULT_LIST_LIMIT})"
                }
            },
            "required": ["keyword"]
        }
    },
    {
        "name": "checkStock",
        "description": "Check how many copies of a book are in stock, by ISBN.",
        "parameters": {
            "type": "object",
            "properties": {
                "itemId": {
                    "type": "string",
                    "description": "ISBN of the book"
                }
            },
            "required": ["itemId"]
        }
    },
]


class FunctionExecutionError(Exception):
    """A function call could not be executed; `code` is reported to the model."""

    def __init__(self, message: str, code: str = "execution_failed"):
        super().__init__(message)
        self.code = code


@dataclass
class DispatchResult:
    payload: Dict[str, Any]
    sources: List[str] = field(default_factory=list)
    ok: bool = True

    @classmethod
    def error(cls, message: str, code: str) -> "DispatchResult":
        return cls(payload={"error": message, "code": code}, sources=[], ok=False)


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _clamp_limit(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_LIST_LIMIT
    return max(1, min(value, MAX_LIST_LIMIT))


def coerce_argument(name: str, value: Any, schema: Dict[str, Any]) -> Any:
    """Coerce one wire value to its declared type or raise FunctionExecutionError."""
    expected = schema.get("type", "string")

    def _invalid() -> FunctionExecutionError:
        return FunctionExecutionError(
            f"Argument '{name}' must be of type {expected}, got {value!r}", code="invalid_arguments"
        )

    if expected == "integer":
        if isinstance(value, bool):
            raise _invalid()
        if isinstance(value, int):
            coerced = value
        elif isinstance(value, float) and value.is_integer():
            coerced = int(value)
        elif isinstance(value, str) and INTEGER_PATTERN.match(value.strip()):
            coerced = int(value.strip())
        else:
            raise _invalid()
    elif expected == "number":
        if isinstance(value, bool):
            raise _invalid()
        if isinstance(value, (int, float)):
            coerced = value
        elif isinstance(value, str) and NUMBER_PATTERN.match(value.strip()):
            coerced = float(value.strip())
        else:
            raise _invalid()
    elif expected == "boolean":
        if isinstance(value, bool):
            coerced = value
        elif isinstance(value, str) and value.strip().lower() in ("true", "false"):
            coerced = value.strip().lower() == "true"
        else:
            raise _invalid()
    elif expected == "string":
        if isinstance(value, str):
            coerced = value.strip()
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            # ISBNs and codes sometimes arrive as bare numbers
            coerced = str(value)
        else:
            raise _invalid()
        if not coerced:
            raise FunctionExecutionError(f"Argument '{name}' must not be empty", code="invalid_arguments")
    else:
        coerced = value

    enum = schema.get("enum")
    if enum and coerced not in enum:
        raise FunctionExecutionError(
            f"Argument '{name}' must be one of {enum}, got {coerced!r}", code="invalid_arguments"
        )
    return coerced


def validate_arguments(declaration: Dict[str, Any], args: Dict[str, Any]) -> Dict[str, Any]:
    parameters = declaration.get("parameters") or {}
    properties = parameters.get("properties") or {}
    required = parameters.get("required") or []

    missing = [name for name in required if args.get(name) is None]
    if missing:
        raise FunctionExecutionError(
            f"Missing required argument(s): {', '.join(missing)}", code="invalid_arguments"
        )

    unknown = sorted(set(args) - set(properties))
    if unknown:
        logger.warning(f"[DISPATCH] Ignoring undeclared argument(s) for {declaration['name']}: {unknown}")

    validated = {}
    for name, schema in properties.items():
        if args.get(name) is None:
            continue
        validated[name] = coerce_argument(name, args[name], schema)
    return validated


class FunctionRegistry:
    """Declared functions plus their handlers over a BusinessDataReader."""

    def __init__(self, reader: BusinessDataReader):
        self.reader = reader
        self._declarations: Dict[str, Dict[str, Any]] = {tool["name"]: tool for tool in TOOLS}
        self.available_functions: Dict[str, Callable[..., Any]] = {
            "getOrderStatus": self.get_order_status,
            "listRecentOrders": self.list_recent_orders,
            "getInvoiceByOrder": self.get_invoice_by_order,
            "searchCatalog": self.search_catalog,
            "checkStock": self.check_stock,
        }

    def register(self, declaration: Dict[str, Any], handler: Callable[..., Any]) -> None:
        """Add or replace a function. The handler returns (payload, sources)."""
        name = declaration["name"]
        self._declarations[name] = declaration
        self.available_functions[name] = handler

    @property
    def names(self) -> List[str]:
        return list(self._declarations)

    def has_tools(self) -> bool:
        return bool(self._declarations)

    def tool_spec(self) -> Dict[str, Any]:
        """The `tools` entry sent with complete_with_tools."""
        return {"functionDeclarations": list(self._declarations.values())}

    async def dispatch(self, call: FunctionCall) -> DispatchResult:
        """Execute a model-requested call. Never raises for a bad call."""
        function_name = call.name
        declaration = self._declarations.get(function_name)
        function_to_call = self.available_functions.get(function_name)
        if declaration is None or function_to_call is None:
            logger.error(f"[DISPATCH] Unknown function: {function_name}")
            return DispatchResult.error(f"Function {function_name} not found.", "unknown_function")

        try:
            function_args = validate_arguments(declaration, dict(call.args or {}))
            logger.info(f"[DISPATCH] Calling function: {function_name} with args: {function_args}")
            if inspect.iscoroutinefunction(function_to_call):
                payload, sources = await function_to_call(**function_args)
            else:
                payload, sources = await asyncio.to_thread(function_to_call, **function_args)
        except FunctionExecutionError as e:
            logger.warning(f"[DISPATCH] {function_name} failed ({e.code}): {e}")
            return DispatchResult.error(str(e), e.code)
        except Exception as e:
            logger.exception(f"[DISPATCH] Tool execution error: {function_name}")
            return DispatchResult.error(f"Error executing {function_name}: {e}", "execution_failed")

        return DispatchResult(payload=payload, sources=list(sources), ok=True)

    # ------------------------------------------------------------------
    # Handlers: each returns (payload, sources)
    # ------------------------------------------------------------------

    def get_order_status(self, orderId: int) -> Tuple[Dict[str, Any], List[str]]:
        order = self.reader.get_order(orderId)
        if order is None:
            raise FunctionExecutionError(f"Order {orderId} not found", code="not_found")
        payload = {
            "orderId": order["order_id"],
            "status": order["status"],
            "placedAt": _iso(order.get("placed_at")),
            "deliveryDate": _iso(order.get("delivery_date")),
            "totalQuantity": order.get("total_quantity", 0),
            "totalAmount": order.get("total_amount", 0.0),
        }
        return payload, [f"order:{order['order_id']}"]

    def list_recent_orders(self, customerId: int, limit: Optional[int] = None) -> Tuple[Dict[str, Any], List[str]]:
        orders = self.reader.list_recent_orders(customer_id=customerId, limit=_clamp_limit(limit))
        payload = {
            "customerId": customerId,
            "orders": [
                {
                    "orderId": o["order_id"],
                    "status": o["status"],
                    "placedAt": _iso(o.get("placed_at")),
                    "totalAmount": o.get("total_amount", 0.0),
                }
                for o in orders
            ],
        }
        return payload, [f"order:{o['order_id']}" for o in orders]

    def get_invoice_by_order(self, orderId: int) -> Tuple[Dict[str, Any], List[str]]:
        invoice = self.reader.get_invoice_by_order(orderId)
        if invoice is None:
            raise FunctionExecutionError(f"No invoice found for order {orderId}", code="not_found")
        payload = {
            "orderId": invoice["order_id"],
            "invoiceId": invoice["invoice_id"],
            "issuedAt": _iso(invoice.get("created_at")),
            "subTotal": invoice.get("sub_total"),
            "taxAmount": invoice.get("tax_amount"),
            "totalAmount": invoice.get("total_amount"),
            "status": invoice.get("status"),
        }
        return payload, [f"invoice:{invoice['invoice_id']}"]

    def search_catalog(self, keyword: str, maxResults: Optional[int] = None) -> Tuple[Dict[str, Any], List[str]]:
        items = self.reader.search_items(keyword, limit=_clamp_limit(maxResults))
        payload = {
            "keyword": keyword,
            "items": [
                {
                    "id": item["id"],
                    "title": item.get("title"),
                    "category": item.get("category"),
                    "price": item.get("price"),
                    "stock": item.get("stock"),
                }
                for item in items
            ],
        }
        return payload, [f"book:{item['id']}" for item in items]

    def check_stock(self, itemId: str) -> Tuple[Dict[str, Any], List[str]]:
        item = self.reader.get_item(itemId)
        if item is None:
            raise FunctionExecutionError(f"Item {itemId} not found", code="not_found")
        stock = int(item.get("stock") or 0)
        payload = {
            "itemId": item["id"],
            "title": item.get("title"),
            "stock": stock,
            "inStock": stock > 0,
        }
        return payload, [f"book:{item['id']}"]
