"""
Cart state

A Cart is the ordered list of pending rental lines for one identity. Carts
persist through a CartStore under a key derived from the identity, so two
identities never share contents. Every mutation drops the cached quotation.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx

import services
from billing import partition_by_vendor
from errors import (
    CartItemNotFound,
    EmptyCart,
    InsufficientStock,
    InvalidDateRange,
    MissingRentalWindow,
    PricingUnavailable,
    RentalError,
)
from pricing import as_utc, display_rate, is_rentable, money
from schemas import CartItem

logger = logging.getLogger("rental.cart")

GUEST_KEY = "rentalCart_guest"


def cart_key(identity: Optional[str]) -> str:
    return f"rentalCart_{identity}" if identity else GUEST_KEY


def cart_item_key(variant_id, start_date, end_date) -> str:
    return f"{variant_id}-{as_utc(start_date).isoformat()}-{as_utc(end_date).isoformat()}"


def _check_window(start_date, end_date):
    if not start_date or not end_date:
        raise MissingRentalWindow()
    if as_utc(end_date) <= as_utc(start_date):
        raise InvalidDateRange()


# Stores


class CartStore:
    """Key-value persistence for cart snapshots."""

    def load(self, key: str) -> Optional[List[dict]]:
        raise NotImplementedError

    def save(self, key: str, items: List[dict]) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryCartStore(CartStore):
    def __init__(self):
        self._data: Dict[str, str] = {}

    def load(self, key):
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key, items):
        self._data[key] = json.dumps(items)

    def delete(self, key):
        self._data.pop(key, None)


class JsonFileCartStore(CartStore):
    """All carts in one JSON object on disk, one entry per cart key."""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> dict:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except ValueError:
            corrupt = f"{self.path}.corrupt"
            os.replace(self.path, corrupt)
            logger.error("Cart file %s is not valid JSON, moved to %s; all stored carts were dropped", self.path, corrupt)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp, self.path)

    def load(self, key):
        data = self._read()
        raw = data.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.error("Failed to parse cart %s, discarding it", key)
            self.delete(key)
            return None

    def save(self, key, items):
        data = self._read()
        data[key] = json.dumps(items)
        self._write(data)

    def delete(self, key):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class MongoCartStore(CartStore):
    """Server-side carts in the "cart" collection."""

    def __init__(self, database, collection: str = "cart"):
        self.collection = database[collection]

    def load(self, key):
        doc = self.collection.find_one({"key": key})
        return doc["items"] if doc else None

    def save(self, key, items):
        self.collection.update_one(
            {"key": key},
            {"$set": {"items": items, "updated_at": datetime.now(timezone.utc)}},
            upsert=True,
        )

    def delete(self, key):
        self.collection.delete_one({"key": key})


# Quotation clients


class QuotationClient:
    """Requests one quotation for one vendor's items."""

    def create_quotation(self, vendor_id: str, items: List[dict]) -> dict:
        raise NotImplementedError


class HttpQuotationClient(QuotationClient):
    def __init__(self, base_url: str, customer_id: str, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.customer_id = customer_id
        self.timeout = timeout

    def create_quotation(self, vendor_id, items):
        payload = {"customer_id": self.customer_id, "vendor_id": vendor_id, "items": items}
        r = httpx.post(f"{self.base_url}/api/quotations", json=payload, timeout=self.timeout)
        r.raise_for_status()
        return r.json()


class ServiceQuotationClient(QuotationClient):
    """Creates quotations in-process against the database."""

    def __init__(self, database, settings, customer_id: str):
        self.database = database
        self.settings = settings
        self.customer_id = customer_id

    def create_quotation(self, vendor_id, items):
        return services.create_quotation(self.database, self.settings, self.customer_id, vendor_id, items)


# Cart


class Cart:
    def __init__(self, store: CartStore, identity: Optional[str] = None):
        self.store = store
        self.identity = identity
        self.key = cart_key(identity)
        self.items: List[CartItem] = []
        self.quotation: Optional[dict] = None
        self._load()

    def _load(self):
        saved = self.store.load(self.key) or []
        try:
            self.items = [CartItem(**item) for item in saved]
        except (TypeError, ValueError):
            logger.error("Failed to parse cart %s, discarding it", self.key)
            self.store.delete(self.key)
            self.items = []

    def _changed(self):
        self.quotation = None
        if self.items:
            self.store.save(self.key, [item.model_dump(mode="json") for item in self.items])
        else:
            self.store.delete(self.key)

    def _find(self, item_id: str) -> CartItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise CartItemNotFound()

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)

    def switch_identity(self, identity: Optional[str]):
        if cart_key(identity) == self.key:
            return
        self.identity = identity
        self.key = cart_key(identity)
        self.quotation = None
        self._load()

    def is_in_cart(self, variant_id, start_date, end_date) -> bool:
        item_id = cart_item_key(variant_id, start_date, end_date)
        return any(item.id == item_id for item in self.items)

    def add_item(self, product: dict, variant: dict, start_date, end_date) -> CartItem:
        _check_window(start_date, end_date)
        if not is_rentable(variant):
            raise PricingUnavailable()

        item_id = cart_item_key(variant["id"], start_date, end_date)
        stock = int(variant.get("stock_quantity") or 0)
        for item in self.items:
            if item.id == item_id:
                if item.quantity + 1 > item.stock_available:
                    raise InsufficientStock(f"Only {item.stock_available} units available")
                item.quantity += 1
                self._changed()
                return item

        if stock < 1:
            raise InsufficientStock("Out of stock")
        images = product.get("images") or []
        item = CartItem(
            id=item_id,
            product_id=str(product.get("_id") or product.get("id")),
            product_name=product["name"],
            product_image=images[0] if images else "/placeholder.jpg",
            variant_id=str(variant["id"]),
            variant_sku=variant.get("sku"),
            variant_attributes=variant.get("attributes") or {},
            quantity=1,
            start_date=as_utc(start_date),
            end_date=as_utc(end_date),
            price_per_unit=display_rate(variant),
            stock_available=stock,
            vendor_id=str(product["vendor_id"]),
        )
        self.items.append(item)
        self._changed()
        return item

    def remove_item(self, item_id: str):
        remaining = [item for item in self.items if item.id != item_id]
        if len(remaining) == len(self.items):
            raise CartItemNotFound()
        self.items = remaining
        self._changed()

    def update_quantity(self, item_id: str, quantity: int):
        if quantity < 1:
            self.remove_item(item_id)
            return
        item = self._find(item_id)
        if quantity > item.stock_available:
            raise InsufficientStock(f"Only {item.stock_available} units available")
        item.quantity = quantity
        self._changed()

    def update_dates(self, item_id: str, start_date, end_date) -> CartItem:
        _check_window(start_date, end_date)
        item = self._find(item_id)
        new_id = cart_item_key(item.variant_id, start_date, end_date)
        if new_id != item_id:
            # Same variant already booked for the new window: merge the lines
            for other in self.items:
                if other.id == new_id:
                    merged = other.quantity + item.quantity
                    if merged > other.stock_available:
                        raise InsufficientStock(f"Only {other.stock_available} units available")
                    other.quantity = merged
                    self.items.remove(item)
                    self._changed()
                    return other
        item.id = new_id
        item.start_date = as_utc(start_date)
        item.end_date = as_utc(end_date)
        self._changed()
        return item

    def update_item(self, item_id: str, quantity: Optional[int] = None, start_date=None, end_date=None) -> Optional[CartItem]:
        """Apply a window change and a new quantity together, or neither."""
        snapshot = [item.model_copy() for item in self.items]
        try:
            if start_date is not None or end_date is not None:
                item_id = self.update_dates(item_id, start_date, end_date).id
            if quantity is not None:
                self.update_quantity(item_id, quantity)
        except RentalError:
            self.items = snapshot
            self._changed()
            raise
        return next((item for item in self.items if item.id == item_id), None)

    def clear(self):
        self.items = []
        self._changed()

    def request_quotation(self, client: QuotationClient) -> dict:
        """One quotation per vendor in the cart, summarized."""
        if not self.items:
            raise EmptyCart()

        groups = partition_by_vendor(self.items)
        try:
            quotations = [
                client.create_quotation(
                    vendor_id,
                    [
                        {
                            "variant_id": item.variant_id,
                            "quantity": item.quantity,
                            "start_date": item.start_date.isoformat(),
                            "end_date": item.end_date.isoformat(),
                        }
                        for item in items
                    ],
                )
                for vendor_id, items in groups.items()
            ]
        except Exception:
            logger.exception("Failed to get quotation for cart %s", self.key)
            self.quotation = None
            raise

        self.quotation = {
            "quotations": quotations,
            "total_amount": money(sum(float(q["total_amount"]) for q in quotations)),
            "item_count": len(self.items),
            "vendor_count": len(groups),
        }
        return self.quotation


class CartSession:
    """The identity -> Cart mapping for one session layer."""

    def __init__(self, store: CartStore):
        self.store = store
        self._carts: Dict[str, Cart] = {}

    def cart_for(self, identity: Optional[str]) -> Cart:
        key = cart_key(identity)
        if key not in self._carts:
            self._carts[key] = Cart(self.store, identity)
        return self._carts[key]

    def logout(self, identity: Optional[str]):
        """Forget the identity's cart and its persisted contents."""
        cart = self._carts.pop(cart_key(identity), None)
        if cart is not None:
            cart.clear()
        else:
            self.store.delete(cart_key(identity))
