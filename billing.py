from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pricing import PricingPolicy, as_utc, money, price_line
from schemas import Invoice, InvoiceItem, QuotationLine


@dataclass
class TaxBreakdown:
    cgst: float
    sgst: float
    igst: float
    total_tax: float
    tax_rate: float
    is_same_state: bool

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class QuotationTotals:
    line_items: List[QuotationLine]
    subtotal: float
    tax_breakdown: TaxBreakdown
    tax_amount: float
    total_amount: float


def _normalize_state(state: Optional[str]) -> str:
    return (state or "").strip().upper()


def calculate_tax(subtotal: float, tax_rate: float, vendor_state: str = None, customer_state: str = None) -> TaxBreakdown:
    """
    GST on a subtotal. Same state: CGST + SGST, otherwise IGST.

    The total is computed once and then split, so the split never drifts
    from subtotal * tax_rate.
    """
    total_tax = money(subtotal * tax_rate)
    same_state = _normalize_state(vendor_state) == _normalize_state(customer_state)
    if same_state:
        cgst = money(total_tax / 2)
        sgst = money(total_tax - cgst)
        igst = 0.0
    else:
        cgst = sgst = 0.0
        igst = total_tax
    return TaxBreakdown(
        cgst=cgst,
        sgst=sgst,
        igst=igst,
        total_tax=total_tax,
        tax_rate=tax_rate,
        is_same_state=same_state,
    )


def quote_line(product: dict, variant: dict, start, end, quantity: int, policy=PricingPolicy.DAILY) -> QuotationLine:
    priced = price_line(variant, start, end, quantity, policy)
    return QuotationLine(
        variant_id=str(variant["id"]),
        product_id=str(product.get("_id") or product.get("id")),
        product_name=product.get("name") or "Product",
        quantity=quantity,
        start_date=as_utc(start),
        end_date=as_utc(end),
        duration=priced.periods,
        unit=priced.unit,
        price_per_unit=priced.rate,
        price_per_day=priced.price_per_day,
        unit_total=priced.per_unit_price,
        line_total=priced.line_total,
    )


def build_quotation(lines: List[QuotationLine], tax_rate: float, vendor_state: str = None, customer_state: str = None) -> QuotationTotals:
    subtotal = money(sum(line.line_total for line in lines))
    tax = calculate_tax(subtotal, tax_rate, vendor_state, customer_state)
    return QuotationTotals(
        line_items=list(lines),
        subtotal=subtotal,
        tax_breakdown=tax,
        tax_amount=tax.total_tax,
        total_amount=money(subtotal + tax.total_tax),
    )


def partition_by_vendor(items, key: str = "vendor_id") -> Dict[str, list]:
    """Group items by vendor, keeping the order vendors first appear in."""
    groups = OrderedDict()
    for item in items:
        vendor_id = item[key] if isinstance(item, dict) else getattr(item, key)
        groups.setdefault(str(vendor_id), []).append(item)
    return groups


def quotation_valid_until(created_at: datetime, validity_days: int = 7) -> datetime:
    return as_utc(created_at) + timedelta(days=validity_days)


def compute_invoice(order: dict) -> dict:
    items = []
    for line in order["items"]:
        description = f"{line.get('product_name') or line['variant_id']} ({line['unit'].lower()}, {as_utc(line['start_date']).date()} to {as_utc(line['end_date']).date()})"
        items.append(
            InvoiceItem(
                description=description,
                quantity=line["quantity"],
                unit_price=line["unit_total"],
                amount=line["line_total"],
            )
        )
    items.append(
        InvoiceItem(
            description=f"Tax ({order['tax_rate'] * 100:g}%)",
            unit_price=order["tax_amount"],
            amount=order["tax_amount"],
        )
    )

    paid = order["total_amount"] if order.get("payment_status") == "PAID" else 0.0
    invoice_data = Invoice(
        order_id=str(order["_id"]),
        order_number=order["order_number"],
        customer_id=order["customer_id"],
        vendor_id=order["vendor_id"],
        start_date=order["start_date"],
        end_date=order["end_date"],
        items=items,
        subtotal=order["subtotal"],
        tax_rate=order["tax_rate"],
        tax_amount=order["tax_amount"],
        total=order["total_amount"],
        amount_paid=paid,
        amount_due=money(order["total_amount"] - paid),
    ).model_dump()
    return invoice_data


def append_late_fee(invoice: dict, days_late: int, late_fee: float) -> dict:
    """Invoice with a late-fee line added to its total and amount due."""
    updated = dict(invoice)
    updated["items"] = list(invoice.get("items") or []) + [
        InvoiceItem(
            description=f"Late Fee - {days_late} day(s) late",
            unit_price=late_fee,
            amount=late_fee,
        ).model_dump()
    ]
    updated["late_fees"] = money(invoice.get("late_fees", 0.0) + late_fee)
    updated["total"] = money(invoice["total"] + late_fee)
    updated["amount_due"] = money(invoice["amount_due"] + late_fee)
    return updated
