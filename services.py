"""
Rental operations over MongoDB

Each function takes the database handle and, where pricing, tax or late fees
are involved, the SystemSettings to apply. Missing records and ownership
failures raise HTTPException; business rule failures raise RentalError.
"""

import logging
import random
import re
from datetime import datetime, timezone
from typing import List, Optional

from bson import ObjectId
from fastapi import HTTPException

from billing import append_late_fee, build_quotation, compute_invoice, partition_by_vendor, quote_line, quotation_valid_until
from config import SystemSettings
from database import create_document, get_documents, update_document
from errors import EmptyCart, QuotationExpired, StockUnavailable
from late_fees import calculate_late_fee
from lifecycle import (
    ACTIVE_ORDER_STATUSES,
    ItemStatus,
    OrderEvent,
    OrderStatus,
    PaymentStatus,
    QuotationEvent,
    QuotationStatus,
    effective_quotation_status,
    next_order_status,
    next_quotation_status,
)
from pricing import as_utc, money
from schemas import Order, OrderItem, Pickup, Quotation, ReturnRecord

logger = logging.getLogger("rental.services")


def _now(now: Optional[datetime] = None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def _object_id(value: str, label: str) -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(value)


def _get(db, collection: str, doc_id: str, label: str) -> dict:
    doc = db[collection].find_one({"_id": _object_id(doc_id, f"{label.lower()}_id")})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def generate_order_number(now: Optional[datetime] = None) -> str:
    stamp = _now(now).strftime("%Y%m%d")
    return f"ORD-{stamp}-{random.randint(0, 9999):04d}"


# Products


def create_product(db, product) -> dict:
    product_id = create_document("product", product, database=db)
    return db["product"].find_one({"_id": ObjectId(product_id)})


def get_product(db, product_id: str) -> dict:
    return _get(db, "product", product_id, "Product")


def search_products(db, q: str = None, category: str = None, vendor_id: str = None,
                    min_price: float = None, max_price: float = None, limit: int = 50) -> list:
    query = {}
    if q:
        query["$or"] = [
            {"name": {"$regex": re.escape(q), "$options": "i"}},
            {"description": {"$regex": re.escape(q), "$options": "i"}},
        ]
    if category:
        query["category"] = category
    if vendor_id:
        query["vendor_id"] = vendor_id
    if min_price is not None or max_price is not None:
        price = {}
        if min_price is not None:
            price["$gte"] = min_price
        if max_price is not None:
            price["$lte"] = max_price
        query["variants.price_daily"] = price
    return list(db["product"].find(query).limit(limit))


def find_variant(db, variant_id: str):
    """(product, variant) holding a variant id."""
    product = db["product"].find_one({"variants.id": variant_id})
    if not product:
        raise HTTPException(status_code=404, detail=f"Variant {variant_id} not found")
    variant = next(v for v in product["variants"] if v["id"] == variant_id)
    return product, variant


# Quotations


def _price_items(db, settings: SystemSettings, items: List[dict]):
    lines, vendors = [], set()
    for item in items:
        product, variant = find_variant(db, str(item["variant_id"]))
        vendors.add(str(product["vendor_id"]))
        lines.append(
            quote_line(
                product,
                variant,
                item.get("start_date"),
                item.get("end_date"),
                int(item.get("quantity", 1)),
                settings.pricing_policy,
            )
        )
    return lines, vendors


def _parse_dates(items: List[dict]) -> List[dict]:
    parsed = []
    for item in items:
        item = dict(item)
        for key in ("start_date", "end_date"):
            if isinstance(item.get(key), str):
                item[key] = datetime.fromisoformat(item[key])
        parsed.append(item)
    return parsed


def create_quotation(db, settings: SystemSettings, customer_id: str, vendor_id: str, items: List[dict],
                     notes: str = "", vendor_state: str = None, customer_state: str = None,
                     now: Optional[datetime] = None) -> dict:
    if not items:
        raise EmptyCart("Quotation must have at least one item")

    lines, vendors = _price_items(db, settings, _parse_dates(items))
    if vendors != {str(vendor_id)}:
        raise HTTPException(status_code=400, detail="All items must be from the quotation's vendor")

    totals = build_quotation(lines, settings.tax_rate, vendor_state, customer_state)
    quotation = Quotation(
        customer_id=customer_id,
        vendor_id=str(vendor_id),
        items=totals.line_items,
        subtotal=totals.subtotal,
        tax_rate=settings.tax_rate,
        tax_amount=totals.tax_amount,
        tax_breakdown=totals.tax_breakdown.to_dict(),
        total_amount=totals.total_amount,
        valid_until=quotation_valid_until(_now(now), settings.quotation_validity_days),
        notes=notes or "",
    )
    quotation_id = create_document("quotation", quotation, database=db)
    logger.info("Created quotation %s for customer %s, vendor %s, total %.2f",
                quotation_id, customer_id, vendor_id, totals.total_amount)
    return db["quotation"].find_one({"_id": ObjectId(quotation_id)})


def _read_quotation(doc: dict, now: Optional[datetime] = None) -> dict:
    doc["status"] = effective_quotation_status(doc["status"], doc.get("valid_until"), _now(now)).value
    return doc


def get_quotation(db, quotation_id: str, now: Optional[datetime] = None) -> dict:
    return _read_quotation(_get(db, "quotation", quotation_id, "Quotation"), now)


def list_quotations(db, customer_id: str = None, vendor_id: str = None, status: str = None,
                    now: Optional[datetime] = None) -> list:
    query = {}
    if customer_id:
        query["customer_id"] = customer_id
    if vendor_id:
        query["vendor_id"] = vendor_id
    docs = [_read_quotation(doc, now) for doc in get_documents("quotation", query, database=db)]
    if status:
        docs = [doc for doc in docs if doc["status"] == status]
    return docs


def _live_status(db, quotation: dict, event: QuotationEvent, now) -> QuotationStatus:
    """Read-time status, persisting a lazy expiry. Expired quotations cannot be approved or converted."""
    stored = QuotationStatus(quotation["status"])
    current = effective_quotation_status(stored, quotation.get("valid_until"), now)
    if current == QuotationStatus.EXPIRED:
        if stored != QuotationStatus.EXPIRED:
            update_document("quotation", quotation["_id"], {"status": QuotationStatus.EXPIRED.value}, database=db)
        if event in (QuotationEvent.APPROVE, QuotationEvent.CONVERT):
            raise QuotationExpired()
    next_quotation_status(current, event)
    return current


def _transition_quotation(db, quotation: dict, event: QuotationEvent, now, extra: dict = None) -> dict:
    current = _live_status(db, quotation, event, now)
    new = next_quotation_status(current, event)
    updates = {"status": new.value}
    updates.update(extra or {})
    update_document("quotation", quotation["_id"], updates, database=db)
    logger.info("Quotation %s %s -> %s", quotation["_id"], current.value, new.value)
    return db["quotation"].find_one({"_id": quotation["_id"]})


def approve_quotation(db, quotation_id: str, vendor_id: str, now: Optional[datetime] = None) -> dict:
    quotation = _get(db, "quotation", quotation_id, "Quotation")
    if quotation["vendor_id"] != vendor_id:
        raise HTTPException(status_code=403, detail="Not authorized to approve this quotation")
    return _transition_quotation(db, quotation, QuotationEvent.APPROVE, _now(now))


def reject_quotation(db, quotation_id: str, vendor_id: str, reason: str, now: Optional[datetime] = None) -> dict:
    quotation = _get(db, "quotation", quotation_id, "Quotation")
    if quotation["vendor_id"] != vendor_id:
        raise HTTPException(status_code=403, detail="Not authorized to reject this quotation")
    notes = f"{quotation.get('notes', '')}\n\nRejection Reason: {reason}".strip()
    return _transition_quotation(db, quotation, QuotationEvent.REJECT, _now(now), {"notes": notes})


def convert_quotation(db, quotation_id: str, customer_id: str, billing_address: dict = None,
                      shipping_address: dict = None, customer_notes: str = None,
                      now: Optional[datetime] = None) -> dict:
    quotation = _get(db, "quotation", quotation_id, "Quotation")
    if quotation["customer_id"] != customer_id:
        raise HTTPException(status_code=403, detail="Not authorized to convert this quotation")
    _live_status(db, quotation, QuotationEvent.CONVERT, _now(now))
    check_stock(db, quotation["items"])

    order = _insert_order(
        db,
        customer_id=customer_id,
        vendor_id=quotation["vendor_id"],
        lines=quotation["items"],
        subtotal=quotation["subtotal"],
        tax_rate=quotation["tax_rate"],
        tax_amount=quotation["tax_amount"],
        total_amount=quotation["total_amount"],
        quotation_id=str(quotation["_id"]),
        billing_address=billing_address,
        shipping_address=shipping_address,
        customer_notes=customer_notes,
        now=now,
    )
    converted = _transition_quotation(db, quotation, QuotationEvent.CONVERT, _now(now), {"order_id": str(order["_id"])})
    return {"quotation": converted, "order": order}


# Orders


def reserved_quantity(db, variant_id: str, start, end) -> int:
    """Units of a variant held by active orders overlapping [start, end)."""
    start, end = as_utc(start), as_utc(end)
    active = [status.value for status in ACTIVE_ORDER_STATUSES]
    total = 0
    for order in db["order"].find({"items.variant_id": variant_id, "status": {"$in": active}}):
        for item in order["items"]:
            if item["variant_id"] != variant_id or item.get("status") == ItemStatus.CANCELLED.value:
                continue
            if as_utc(item["start_date"]) < end and start < as_utc(item["end_date"]):
                total += item["quantity"]
    return total


def check_stock(db, lines) -> None:
    """Authoritative availability check for a batch of lines about to be ordered."""
    batch = []
    for line in lines:
        _, variant = find_variant(db, line["variant_id"])
        start, end = as_utc(line["start_date"]), as_utc(line["end_date"])
        reserved = reserved_quantity(db, line["variant_id"], start, end)
        reserved += sum(
            other["quantity"] for other in batch
            if other["variant_id"] == line["variant_id"]
            and as_utc(other["start_date"]) < end and start < as_utc(other["end_date"])
        )
        available = int(variant.get("stock_quantity") or 0) - reserved
        if line["quantity"] > available:
            raise StockUnavailable(
                f"Only {max(available, 0)} unit(s) of {variant.get('sku') or line['variant_id']} available for the requested window"
            )
        batch.append(line)


def _as_dict(line) -> dict:
    return line.model_dump() if hasattr(line, "model_dump") else dict(line)


def _insert_order(db, customer_id, vendor_id, lines, subtotal, tax_rate, tax_amount, total_amount,
                  quotation_id=None, billing_address=None, shipping_address=None, customer_notes=None,
                  now=None) -> dict:
    items = [OrderItem(id=str(ObjectId()), **_as_dict(line)) for line in lines]
    order = Order(
        order_number=generate_order_number(now),
        customer_id=customer_id,
        vendor_id=vendor_id,
        quotation_id=quotation_id,
        items=items,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_amount=tax_amount,
        total_amount=total_amount,
        start_date=min(as_utc(item.start_date) for item in items),
        end_date=max(as_utc(item.end_date) for item in items),
        billing_address=billing_address,
        shipping_address=shipping_address,
        customer_notes=customer_notes,
    )
    order_id = create_document("order", order, database=db)
    logger.info("Created order %s (%s) for customer %s, total %.2f", order_id, order.order_number, customer_id, total_amount)
    return db["order"].find_one({"_id": ObjectId(order_id)})


def create_orders(db, settings: SystemSettings, customer_id: str, items: List[dict], billing_address: dict = None,
                  shipping_address: dict = None, customer_notes: str = None, vendor_state: str = None,
                  customer_state: str = None, now: Optional[datetime] = None) -> list:
    """Orders straight from cart lines, one per vendor."""
    if not items:
        raise EmptyCart("Order must have at least one item")

    priced = []
    for item in _parse_dates(items):
        product, _ = find_variant(db, str(item["variant_id"]))
        priced.append(dict(item, vendor_id=str(product["vendor_id"])))

    groups = []
    for vendor_id, group in partition_by_vendor(priced).items():
        lines, _ = _price_items(db, settings, group)
        groups.append((vendor_id, build_quotation(lines, settings.tax_rate, vendor_state, customer_state)))
    check_stock(db, [line.model_dump() for _, totals in groups for line in totals.line_items])

    orders = []
    for vendor_id, totals in groups:
        orders.append(
            _insert_order(
                db,
                customer_id=customer_id,
                vendor_id=vendor_id,
                lines=totals.line_items,
                subtotal=totals.subtotal,
                tax_rate=settings.tax_rate,
                tax_amount=totals.tax_amount,
                total_amount=totals.total_amount,
                billing_address=billing_address,
                shipping_address=shipping_address,
                customer_notes=customer_notes,
                now=now,
            )
        )
    return orders


def get_order(db, order_id: str) -> dict:
    return _get(db, "order", order_id, "Order")


def list_orders(db, customer_id: str = None, vendor_id: str = None, status: str = None) -> list:
    query = {}
    if customer_id:
        query["customer_id"] = customer_id
    if vendor_id:
        query["vendor_id"] = vendor_id
    if status:
        query["status"] = status
    return get_documents("order", query, database=db)


def _transition_order(db, order: dict, event: OrderEvent, extra: dict = None) -> dict:
    new = next_order_status(order["status"], event)
    updates = {"status": new.value}
    updates.update(extra or {})
    update_document("order", order["_id"], updates, database=db)
    logger.info("Order %s %s -> %s", order["order_number"], order["status"], new.value)
    return db["order"].find_one({"_id": order["_id"]})


def cancel_order(db, order_id: str, customer_id: str) -> dict:
    order = get_order(db, order_id)
    if order["customer_id"] != customer_id:
        raise HTTPException(status_code=403, detail="Not authorized to cancel this order")
    items = [dict(item, status=ItemStatus.CANCELLED.value) for item in order["items"]]
    return _transition_order(db, order, OrderEvent.CANCEL, {"items": items})


def record_payment(db, order_id: str, status: str, method: str = None, payment_id: str = None) -> dict:
    """
    Apply the final payment signal from the gateway (or a manual mark-paid).

    PAID confirms the order and issues its invoice; FAILED leaves the order
    PENDING so the customer can retry.
    """
    order = get_order(db, order_id)
    status = PaymentStatus(status)
    payment = {
        "payment_method": method or "Manual",
        "payment_id": payment_id or f"PAY-{int(_now().timestamp() * 1000)}",
    }
    if status == PaymentStatus.PAID:
        order = _transition_order(db, order, OrderEvent.MARK_PAID, dict(payment, payment_status=status.value))
        invoice_id = create_document("invoice", compute_invoice(order), database=db)
        logger.info("Issued invoice %s for order %s", invoice_id, order["order_number"])
        return order
    if order["status"] != OrderStatus.PENDING.value:
        raise HTTPException(status_code=400, detail=f"Cannot record {status.value} payment for order with status: {order['status']}")
    update_document("order", order["_id"], dict(payment, payment_status=status.value), database=db)
    return get_order(db, order_id)


def complete_order(db, order_id: str, vendor_id: str) -> dict:
    order = get_order(db, order_id)
    if order["vendor_id"] != vendor_id:
        raise HTTPException(status_code=403, detail="Not authorized to complete this order")
    return _transition_order(db, order, OrderEvent.COMPLETE)


def get_invoice(db, order_id: str) -> dict:
    invoice = db["invoice"].find_one({"order_id": order_id})
    if not invoice:
        raise HTTPException(status_code=404, detail="Invoice not found")
    return invoice


# Pickups and returns


def _order_item(order: dict, item_id: str) -> dict:
    for item in order["items"]:
        if item["id"] == item_id:
            return item
    raise HTTPException(status_code=400, detail=f"Reservation {item_id} does not belong to order {order['_id']}")


def record_pickup(db, order_id: str, vendor_id: str, item_ids: List[str] = None, picked_up_by: str = None,
                  notes: str = None, now: Optional[datetime] = None) -> dict:
    order = get_order(db, order_id)
    if order["vendor_id"] != vendor_id:
        raise HTTPException(status_code=403, detail="You can only manage pickups for your own products")
    next_order_status(order["status"], OrderEvent.PICK_UP)

    targets = [_order_item(order, item_id) for item_id in dict.fromkeys(item_ids)] if item_ids else list(order["items"])
    picked_at = _now(now)
    pickups = []
    for item in targets:
        pickup_id = create_document(
            "pickup",
            Pickup(order_id=str(order["_id"]), reservation_id=item["id"], picked_up_by=picked_up_by,
                   notes=notes, picked_up_at=picked_at),
            database=db,
        )
        pickups.append(db["pickup"].find_one({"_id": ObjectId(pickup_id)}))

    picked = {item["id"] for item in targets}
    items = [
        dict(item, status=ItemStatus.PICKED_UP.value) if item["id"] in picked else item
        for item in order["items"]
    ]
    order = _transition_order(db, order, OrderEvent.PICK_UP, {"items": items})
    return {"order": order, "pickups": pickups}


def _late_fee_base(item: dict) -> float:
    """Daily price of the whole reservation, every unit included."""
    return money(item["price_per_day"] * item["quantity"])


def preview_late_fee(db, settings: SystemSettings, order_id: str, item_id: str, return_date) -> dict:
    """Advisory late fee for a proposed return date."""
    order = get_order(db, order_id)
    item = _order_item(order, item_id)
    base_price = _late_fee_base(item)
    fee = calculate_late_fee(item["end_date"], return_date, base_price, settings.late_fee_rate)
    return dict(fee.to_dict(), scheduledReturn=as_utc(item["end_date"]), basePrice=base_price)


def record_return(db, settings: SystemSettings, order_id: str, vendor_id: str, item_id: str,
                  pickup_id: str = None, condition_notes: str = None, returned_at: Optional[datetime] = None) -> dict:
    order = get_order(db, order_id)
    if order["vendor_id"] != vendor_id:
        raise HTTPException(status_code=403, detail="You can only manage returns for your own products")
    next_order_status(order["status"], OrderEvent.RETURN)
    item = _order_item(order, item_id)
    if item.get("status") == ItemStatus.RETURNED.value:
        raise HTTPException(status_code=400, detail="This reservation has already been returned")
    if pickup_id and not db["pickup"].find_one({"_id": _object_id(pickup_id, "pickup_id"), "reservation_id": item_id}):
        raise HTTPException(status_code=400, detail="Pickup record not found or does not match reservation")

    returned_at = _now(returned_at)
    fee = calculate_late_fee(item["end_date"], returned_at, _late_fee_base(item), settings.late_fee_rate)
    record = ReturnRecord(
        order_id=str(order["_id"]),
        reservation_id=item_id,
        pickup_id=pickup_id,
        returned_at=returned_at,
        scheduled_return=as_utc(item["end_date"]),
        is_late=fee.is_late,
        days_late=fee.days_late,
        late_fee=fee.late_fee,
        condition_notes=condition_notes,
    )
    return_id = create_document("return", record, database=db)

    if fee.late_fee > 0:
        invoice = db["invoice"].find_one({"order_id": str(order["_id"])})
        if invoice:
            updated = append_late_fee(invoice, fee.days_late, fee.late_fee)
            update_document("invoice", invoice["_id"],
                            {k: updated[k] for k in ("items", "late_fees", "total", "amount_due")}, database=db)
        logger.info("Late fee %.2f (%d day(s)) on order %s", fee.late_fee, fee.days_late, order["order_number"])

    items = [
        dict(i, status=ItemStatus.RETURNED.value) if i["id"] == item_id else i
        for i in order["items"]
    ]
    done = {ItemStatus.RETURNED.value, ItemStatus.CANCELLED.value}
    if all(i.get("status") in done for i in items):
        order = _transition_order(db, order, OrderEvent.RETURN, {"items": items})
    else:
        update_document("order", order["_id"], {"items": items}, database=db)
        order = get_order(db, order_id)

    return {
        "return": db["return"].find_one({"_id": ObjectId(return_id)}),
        "order": order,
        "lateInfo": fee.to_dict(),
    }


def list_pickups(db, order_id: str = None) -> list:
    query = {"order_id": order_id} if order_id else {}
    return list(db["pickup"].find(query).sort("picked_up_at", -1))


def list_returns(db, order_id: str = None) -> list:
    query = {"order_id": order_id} if order_id else {}
    return list(db["return"].find(query).sort("returned_at", -1))

