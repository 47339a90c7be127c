"""
Database Schemas

Rental platform schemas using Pydantic models.
Each Pydantic model maps to a MongoDB collection using the lowercase class name.
- Product -> "product" (variants embedded)
- Quotation -> "quotation"
- Order -> "order" (items embedded; each item is a reservation)
- Pickup -> "pickup"
- ReturnRecord -> "return"
- Invoice -> "invoice"
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from lifecycle import ItemStatus, OrderStatus, PaymentStatus, QuotationStatus


class Variant(BaseModel):
    """
    A rentable configuration of a product, with its own stock and rate card
    Embedded in: "product"
    """
    id: str = Field(..., description="Variant id")
    sku: str = Field(..., description="Stock keeping unit")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="e.g. {'size': 'L'}")
    price_hourly: Optional[float] = Field(None, ge=0)
    price_daily: Optional[float] = Field(None, ge=0)
    price_weekly: Optional[float] = Field(None, ge=0)
    price_monthly: Optional[float] = Field(None, ge=0)
    stock_quantity: int = Field(0, ge=0, description="Units owned by the vendor")


class Product(BaseModel):
    """
    Products listed by vendors
    Collection: "product"
    """
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    vendor_id: str = Field(..., description="Owning vendor")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    variants: List[Variant] = Field(default_factory=list)


class CartItem(BaseModel):
    """
    One pending rental line in a cart. `id` is variant id + rental window.
    """
    id: str
    product_id: str
    product_name: str
    product_image: str = "/placeholder.jpg"
    variant_id: str
    variant_sku: Optional[str] = None
    variant_attributes: Dict[str, Any] = Field(default_factory=dict)
    quantity: int = Field(1, ge=1)
    start_date: datetime
    end_date: datetime
    price_per_unit: float = 0.0
    stock_available: int = 0
    vendor_id: str


class QuotationLine(BaseModel):
    variant_id: str
    product_id: str
    product_name: str
    quantity: int = Field(ge=1)
    start_date: datetime
    end_date: datetime
    duration: int = Field(..., description="Billed periods")
    unit: str = Field(..., description="HOURLY | DAILY | WEEKLY | MONTHLY | MIXED")
    price_per_unit: Optional[float] = Field(None, description="Rate per period")
    price_per_day: float
    unit_total: float = Field(..., description="Price of one item for the whole window")
    line_total: float


class Quotation(BaseModel):
    """
    Vendor-specific priced snapshot of cart items
    Collection: "quotation"
    """
    model_config = ConfigDict(use_enum_values=True)

    customer_id: str
    vendor_id: str
    items: List[QuotationLine]
    subtotal: float
    tax_rate: float
    tax_amount: float
    tax_breakdown: Dict[str, Any] = Field(default_factory=dict)
    total_amount: float
    status: QuotationStatus = QuotationStatus.PENDING
    valid_until: datetime
    notes: str = ""
    order_id: Optional[str] = None


class OrderItem(BaseModel):
    """A reservation: one committed rental of a variant for a window"""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    variant_id: str
    product_id: Optional[str] = None
    product_name: Optional[str] = None
    quantity: int = Field(ge=1)
    start_date: datetime
    end_date: datetime
    duration: int = 0
    unit: str
    price_per_unit: Optional[float] = None
    price_per_day: float
    unit_total: float
    line_total: float
    status: ItemStatus = ItemStatus.RESERVED


class Order(BaseModel):
    """
    Orders, one vendor each
    Collection: "order"
    """
    model_config = ConfigDict(use_enum_values=True)

    order_number: str
    customer_id: str
    vendor_id: str
    quotation_id: Optional[str] = None
    items: List[OrderItem]
    subtotal: float
    tax_rate: float
    tax_amount: float
    total_amount: float
    start_date: datetime
    end_date: datetime
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    billing_address: Optional[Dict[str, Any]] = None
    shipping_address: Optional[Dict[str, Any]] = None
    customer_notes: Optional[str] = None


class Pickup(BaseModel):
    """
    Pickup of one reservation
    Collection: "pickup"
    """
    order_id: str
    reservation_id: str
    picked_up_by: Optional[str] = None
    notes: Optional[str] = None
    picked_up_at: datetime


class ReturnRecord(BaseModel):
    """
    Return of one reservation
    Collection: "return"
    """
    order_id: str
    reservation_id: str
    pickup_id: Optional[str] = None
    returned_at: datetime
    scheduled_return: datetime
    is_late: bool = False
    days_late: int = 0
    late_fee: float = 0.0
    condition_notes: Optional[str] = None


class InvoiceItem(BaseModel):
    description: str
    quantity: int = 1
    unit_price: float
    amount: float


class Invoice(BaseModel):
    """
    Invoices issued when an order is confirmed
    Collection: "invoice"
    """
    order_id: str
    order_number: str
    customer_id: str
    vendor_id: str
    start_date: datetime
    end_date: datetime
    items: List[InvoiceItem]
    subtotal: float
    tax_rate: float = 0.0
    tax_amount: float = 0.0
    late_fees: float = 0.0
    total: float
    amount_paid: float = 0.0
    amount_due: float
