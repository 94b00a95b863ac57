"""Table-bound cart, the client-side half of an order."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import parse_qs, urlparse

_PRICE_CHARS = re.compile(r"[^0-9.\-]")


def parse_price(value) -> Decimal:
    """Accept menu prices like ``450``, ``"1,200"`` or ``"KSh 450.50"``."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    cleaned = _PRICE_CHARS.sub("", str(value or ""))
    try:
        return Decimal(cleaned) if cleaned else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


def line_quantity(item: dict) -> int:
    try:
        return max(int(item.get("quantity") or 1), 1)
    except (TypeError, ValueError):
        return 1


def snapshot_subtotal(items: Optional[list]) -> Decimal:
    """Subtotal of a cart snapshot, counting the same lines an order is built from."""
    total = Decimal("0")
    for item in items or []:
        if isinstance(item, dict) and item.get("name"):
            total += parse_price(item.get("price")) * line_quantity(item)
    return total


def table_number_from_url(url: str) -> Optional[str]:
    """Read the ``table`` query parameter printed into table QR codes."""
    values = parse_qs(urlparse(url).query).get("table")
    if not values or not values[0].strip():
        return None
    return values[0].strip()


@dataclass
class CartItem:
    id: int
    name: str
    price: str
    quantity: int = 1
    image: Optional[str] = None

    @property
    def unit_price(self) -> Decimal:
        return parse_price(self.price)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
        }


@dataclass
class Cart:
    table_number: Optional[str] = None
    items: list[CartItem] = field(default_factory=list)

    def _find(self, item_id: int) -> Optional[CartItem]:
        return next((item for item in self.items if item.id == item_id), None)

    def add_item(self, item: CartItem) -> None:
        existing = self._find(item.id)
        if existing:
            existing.quantity += item.quantity
        else:
            self.items.append(item)

    def remove_item(self, item_id: int) -> None:
        self.items = [item for item in self.items if item.id != item_id]

    def update_quantity(self, item_id: int, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(item_id)
            return
        item = self._find(item_id)
        if item:
            item.quantity = quantity

    def clear(self) -> None:
        self.items = []

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> Decimal:
        return sum((item.unit_price * item.quantity for item in self.items), Decimal("0"))

    def snapshot(self) -> list[dict]:
        return [item.to_dict() for item in self.items]
