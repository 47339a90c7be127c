import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from bson import ObjectId

import database
import services
from cart import Cart, MongoCartStore, ServiceQuotationClient
from config import SystemSettings, load_settings, update_settings
from errors import EmptyCart, RentalError
from pricing import as_utc, price_line
from schemas import Product as ProductSchema, Variant as VariantSchema

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("rental.api")


# Utilities to serialize MongoDB documents
def serialize_value(v):
    if isinstance(v, ObjectId):
        return str(v)
    if isinstance(v, datetime):
        return as_utc(v).isoformat()
    if isinstance(v, dict):
        return serialize_doc(v)
    if isinstance(v, (list, tuple)):
        return [serialize_value(i) for i in v]
    return v


def serialize_doc(doc: dict):
    return {k: serialize_value(v) for k, v in doc.items()}


app = FastAPI(title="Rental Equipment API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RentalError)
async def rental_error_handler(request: Request, exc: RentalError):
    return JSONResponse(status_code=exc.status_code, content={"detail": str(exc), "error": exc.code})


def get_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return database.db


def get_settings(db=Depends(get_db)) -> SystemSettings:
    return load_settings(db)


@app.get("/")
def read_root():
    return {"message": "Rental Equipment Backend is running"}


# Products Endpoints
class CreateVariantRequest(BaseModel):
    sku: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    price_hourly: Optional[float] = Field(None, ge=0)
    price_daily: Optional[float] = Field(None, ge=0)
    price_weekly: Optional[float] = Field(None, ge=0)
    price_monthly: Optional[float] = Field(None, ge=0)
    stock_quantity: int = Field(0, ge=0)


class CreateProductRequest(BaseModel):
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    vendor_id: str
    images: List[str] = Field(default_factory=list)
    variants: List[CreateVariantRequest] = Field(default_factory=list)


@app.post("/api/products")
def add_product(payload: CreateProductRequest, db=Depends(get_db)):
    variants = [VariantSchema(id=str(ObjectId()), **v.model_dump()) for v in payload.variants]
    for variant in variants:
        if not any([variant.price_hourly, variant.price_daily, variant.price_weekly, variant.price_monthly]):
            raise HTTPException(status_code=400, detail=f"Variant {variant.sku} needs at least one rate")
    product = ProductSchema(**payload.model_dump(exclude={"variants"}), variants=variants)
    return serialize_doc(services.create_product(db, product))


@app.get("/api/products")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    vendor_id: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    db=Depends(get_db),
):
    products = services.search_products(db, q, category, vendor_id, min_price, max_price)
    return [serialize_doc(p) for p in products]


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return serialize_doc(services.get_product(db, product_id))


# Pricing
class RentalLineRequest(BaseModel):
    variant_id: str
    quantity: int = Field(1, ge=1)
    start_date: datetime
    end_date: datetime


@app.post("/api/pricing/calculate")
def calculate_price(payload: RentalLineRequest, db=Depends(get_db), settings: SystemSettings = Depends(get_settings)):
    _, variant = services.find_variant(db, payload.variant_id)
    priced = price_line(variant, payload.start_date, payload.end_date, payload.quantity, settings.pricing_policy)
    return {
        "unit": priced.unit,
        "duration": priced.periods,
        "price_per_unit": priced.rate,
        "unit_total": priced.per_unit_price,
        "quantity": priced.quantity,
        "line_total": priced.line_total,
        "total_hours": priced.hours,
        "total_days": priced.days,
        "breakdown": [{"unit": tier.value, "count": count} for tier, count in priced.breakdown],
    }


# Quotations Endpoints
class CreateQuotationRequest(BaseModel):
    customer_id: str
    vendor_id: str
    items: List[RentalLineRequest]
    notes: Optional[str] = None
    vendor_state: Optional[str] = None
    customer_state: Optional[str] = None


class VendorActionRequest(BaseModel):
    vendor_id: str


class RejectQuotationRequest(VendorActionRequest):
    reason: str = ""


class ConvertQuotationRequest(BaseModel):
    customer_id: str
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    customer_notes: Optional[str] = None


@app.post("/api/quotations")
def create_quotation(payload: CreateQuotationRequest, db=Depends(get_db), settings: SystemSettings = Depends(get_settings)):
    quotation = services.create_quotation(
        db,
        settings,
        payload.customer_id,
        payload.vendor_id,
        [item.model_dump() for item in payload.items],
        notes=payload.notes or "",
        vendor_state=payload.vendor_state,
        customer_state=payload.customer_state,
    )
    return serialize_doc(quotation)


@app.get("/api/quotations")
def list_quotations(customer_id: Optional[str] = None, vendor_id: Optional[str] = None,
                    status: Optional[str] = None, db=Depends(get_db)):
    return [serialize_doc(q) for q in services.list_quotations(db, customer_id, vendor_id, status)]


@app.get("/api/quotations/{quotation_id}")
def get_quotation(quotation_id: str, db=Depends(get_db)):
    return serialize_doc(services.get_quotation(db, quotation_id))


@app.post("/api/quotations/{quotation_id}/approve")
def approve_quotation(quotation_id: str, payload: VendorActionRequest, db=Depends(get_db)):
    return serialize_doc(services.approve_quotation(db, quotation_id, payload.vendor_id))


@app.post("/api/quotations/{quotation_id}/reject")
def reject_quotation(quotation_id: str, payload: RejectQuotationRequest, db=Depends(get_db)):
    return serialize_doc(services.reject_quotation(db, quotation_id, payload.vendor_id, payload.reason))


@app.post("/api/quotations/{quotation_id}/convert")
def convert_quotation(quotation_id: str, payload: ConvertQuotationRequest, db=Depends(get_db)):
    result = services.convert_quotation(
        db,
        quotation_id,
        payload.customer_id,
        billing_address=payload.billing_address,
        shipping_address=payload.shipping_address,
        customer_notes=payload.customer_notes,
    )
    return {"quotation": serialize_doc(result["quotation"]), "order": serialize_doc(result["order"])}


# Orders Endpoints
class CreateOrderRequest(BaseModel):
    customer_id: str
    items: List[RentalLineRequest]
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    customer_notes: Optional[str] = None
    vendor_state: Optional[str] = None
    customer_state: Optional[str] = None


class CustomerActionRequest(BaseModel):
    customer_id: str


@app.post("/api/orders")
def create_orders(payload: CreateOrderRequest, db=Depends(get_db), settings: SystemSettings = Depends(get_settings)):
    orders = services.create_orders(
        db,
        settings,
        payload.customer_id,
        [item.model_dump() for item in payload.items],
        billing_address=payload.billing_address,
        shipping_address=payload.shipping_address,
        customer_notes=payload.customer_notes,
        vendor_state=payload.vendor_state,
        customer_state=payload.customer_state,
    )
    return [serialize_doc(o) for o in orders]


@app.get("/api/orders")
def list_orders(customer_id: Optional[str] = None, vendor_id: Optional[str] = None,
                status: Optional[str] = None, db=Depends(get_db)):
    return [serialize_doc(o) for o in services.list_orders(db, customer_id, vendor_id, status)]


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, db=Depends(get_db)):
    return serialize_doc(services.get_order(db, order_id))


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: CustomerActionRequest, db=Depends(get_db)):
    return serialize_doc(services.cancel_order(db, order_id, payload.customer_id))


@app.post("/api/orders/{order_id}/complete")
def complete_order(order_id: str, payload: VendorActionRequest, db=Depends(get_db)):
    return serialize_doc(services.complete_order(db, order_id, payload.vendor_id))


# Payments
class PaymentSignalRequest(BaseModel):
    order_id: str
    status: str = Field("PAID", description="PAID | FAILED")
    method: Optional[str] = None
    payment_id: Optional[str] = None


@app.post("/api/payments")
def record_payment(payload: PaymentSignalRequest, db=Depends(get_db)):
    if payload.status not in ("PAID", "FAILED"):
        raise HTTPException(status_code=400, detail="status must be PAID or FAILED")
    order = services.record_payment(db, payload.order_id, payload.status, payload.method, payload.payment_id)
    return serialize_doc(order)


@app.get("/api/invoices/{order_id}")
def get_invoice(order_id: str, db=Depends(get_db)):
    return serialize_doc(services.get_invoice(db, order_id))


# Pickups and Returns
class RecordPickupRequest(BaseModel):
    order_id: str
    vendor_id: str
    reservation_ids: List[str] = Field(default_factory=list)
    picked_up_by: Optional[str] = None
    notes: Optional[str] = None


class LateFeePreviewRequest(BaseModel):
    order_id: str
    reservation_id: str
    return_date: datetime


class RecordReturnRequest(BaseModel):
    order_id: str
    vendor_id: str
    reservation_id: str
    pickup_id: Optional[str] = None
    condition_notes: Optional[str] = None
    returned_at: Optional[datetime] = None


@app.post("/api/pickups")
def record_pickup(payload: RecordPickupRequest, db=Depends(get_db)):
    result = services.record_pickup(
        db, payload.order_id, payload.vendor_id, payload.reservation_ids, payload.picked_up_by, payload.notes
    )
    return {"order": serialize_doc(result["order"]), "pickups": [serialize_doc(p) for p in result["pickups"]]}


@app.get("/api/pickups")
def list_pickups(order_id: Optional[str] = None, db=Depends(get_db)):
    return [serialize_doc(p) for p in services.list_pickups(db, order_id)]


@app.post("/api/returns/calculate-late-fee")
def calculate_late_fee(payload: LateFeePreviewRequest, db=Depends(get_db), settings: SystemSettings = Depends(get_settings)):
    preview = services.preview_late_fee(db, settings, payload.order_id, payload.reservation_id, payload.return_date)
    return serialize_doc(preview)


@app.post("/api/returns")
def record_return(payload: RecordReturnRequest, db=Depends(get_db), settings: SystemSettings = Depends(get_settings)):
    result = services.record_return(
        db,
        settings,
        payload.order_id,
        payload.vendor_id,
        payload.reservation_id,
        pickup_id=payload.pickup_id,
        condition_notes=payload.condition_notes,
        returned_at=payload.returned_at,
    )
    return {
        "return": serialize_doc(result["return"]),
        "order": serialize_doc(result["order"]),
        "lateInfo": result["lateInfo"],
    }


@app.get("/api/returns")
def list_returns(order_id: Optional[str] = None, db=Depends(get_db)):
    return [serialize_doc(r) for r in services.list_returns(db, order_id)]


# Settings
@app.get("/api/settings")
def read_settings(settings: SystemSettings = Depends(get_settings)):
    return settings.model_dump(mode="json")


@app.put("/api/settings")
def write_settings(payload: Dict[str, Any], db=Depends(get_db)):
    try:
        settings = update_settings(db, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return settings.model_dump(mode="json")


# Server-side carts
class AddCartItemRequest(BaseModel):
    variant_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class UpdateCartItemRequest(BaseModel):
    quantity: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def _cart_response(cart: Cart) -> dict:
    return {
        "key": cart.key,
        "items": [item.model_dump(mode="json") for item in cart.items],
        "item_count": cart.item_count,
    }


def get_cart(identity: str, db=Depends(get_db)) -> Cart:
    return Cart(MongoCartStore(db), identity)


@app.get("/api/carts/{identity}")
def read_cart(cart: Cart = Depends(get_cart)):
    return _cart_response(cart)


@app.delete("/api/carts/{identity}")
def clear_cart(cart: Cart = Depends(get_cart)):
    cart.clear()
    return _cart_response(cart)


@app.post("/api/carts/{identity}/items")
def add_cart_item(payload: AddCartItemRequest, cart: Cart = Depends(get_cart), db=Depends(get_db)):
    product, variant = services.find_variant(db, payload.variant_id)
    cart.add_item(product, variant, payload.start_date, payload.end_date)
    return _cart_response(cart)


@app.patch("/api/carts/{identity}/items/{item_id}")
def update_cart_item(item_id: str, payload: UpdateCartItemRequest, cart: Cart = Depends(get_cart)):
    cart.update_item(item_id, payload.quantity, payload.start_date, payload.end_date)
    return _cart_response(cart)


@app.delete("/api/carts/{identity}/items/{item_id}")
def remove_cart_item(item_id: str, cart: Cart = Depends(get_cart)):
    cart.remove_item(item_id)
    return _cart_response(cart)


@app.post("/api/carts/{identity}/quotation")
def request_cart_quotation(identity: str, cart: Cart = Depends(get_cart), db=Depends(get_db),
                           settings: SystemSettings = Depends(get_settings)):
    summary = cart.request_quotation(ServiceQuotationClient(db, settings, identity))
    return {
        "quotations": [serialize_doc(q) for q in summary["quotations"]],
        "total_amount": summary["total_amount"],
        "item_count": summary["item_count"],
        "vendor_count": summary["vendor_count"],
    }


class CartCheckoutRequest(BaseModel):
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    customer_notes: Optional[str] = None


@app.post("/api/carts/{identity}/checkout")
def checkout_cart(identity: str, payload: CartCheckoutRequest, cart: Cart = Depends(get_cart), db=Depends(get_db),
                  settings: SystemSettings = Depends(get_settings)):
    if not cart.items:
        raise EmptyCart()
    orders = services.create_orders(
        db,
        settings,
        identity,
        [
            {"variant_id": item.variant_id, "quantity": item.quantity,
             "start_date": item.start_date, "end_date": item.end_date}
            for item in cart.items
        ],
        billing_address=payload.billing_address,
        shipping_address=payload.shipping_address,
        customer_notes=payload.customer_notes,
    )
    cart.clear()
    logger.info("Checked out cart %s into %d order(s)", cart.key, len(orders))
    return [serialize_doc(o) for o in orders]


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }

    try:
        db = database.db
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name if hasattr(db, "name") else "✅ Connected"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    # Check environment variables
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
