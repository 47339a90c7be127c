from datetime import datetime
from urllib.parse import quote

from bson import ObjectId

from conftest import END, START, make_product


def create_quotation(client, variant_id, quantity=2, customer_id="cust-1", vendor_id="vendor-1", **extra):
    resp = client.post(
        "/api/quotations",
        json=dict(
            customer_id=customer_id,
            vendor_id=vendor_id,
            items=[{"variant_id": variant_id, "quantity": quantity, "start_date": START, "end_date": END}],
            **extra,
        ),
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def paid_order(client, variant_id):
    quotation = create_quotation(client, variant_id)
    client.post(f"/api/quotations/{quotation['_id']}/approve", json={"vendor_id": "vendor-1"})
    order = client.post(f"/api/quotations/{quotation['_id']}/convert", json={"customer_id": "cust-1"}).json()["order"]
    resp = client.post("/api/payments", json={"order_id": order["_id"], "status": "PAID"})
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_root(client):
    assert client.get("/").status_code == 200


def test_product_roundtrip(client, product):
    assert product["variants"][0]["price_daily"] == 150
    fetched = client.get(f"/api/products/{product['_id']}").json()
    assert fetched["name"] == "Power Drill"
    assert [p["_id"] for p in client.get("/api/products", params={"q": "drill"}).json()] == [product["_id"]]
    assert client.get("/api/products", params={"q": "tent"}).json() == []


def test_product_needs_a_rate(client):
    resp = client.post("/api/products", json={"name": "X", "vendor_id": "v", "variants": [{"sku": "X1"}]})
    assert resp.status_code == 400


def test_unknown_product_is_404(client):
    assert client.get(f"/api/products/{ObjectId()}").status_code == 404
    assert client.get("/api/products/not-an-id").status_code == 400


def test_price_calculation(client, variant_id):
    resp = client.post(
        "/api/pricing/calculate",
        json={"variant_id": variant_id, "quantity": 2, "start_date": START, "end_date": END},
    )
    body = resp.json()
    assert body["unit"] == "DAILY"
    assert body["duration"] == 3
    assert body["line_total"] == 900


def test_inverted_window_is_rejected(client, variant_id):
    resp = client.post(
        "/api/pricing/calculate",
        json={"variant_id": variant_id, "start_date": END, "end_date": START},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_date_range"


def test_quotation_totals(client, variant_id):
    quotation = create_quotation(client, variant_id, vendor_state="KA", customer_state="KA")
    assert quotation["status"] == "PENDING"
    assert quotation["subtotal"] == 900
    assert quotation["tax_amount"] == 162
    assert quotation["total_amount"] == 1062
    assert quotation["tax_breakdown"]["cgst"] == 81
    assert quotation["items"][0]["price_per_day"] == 150


def test_quotation_for_wrong_vendor_is_rejected(client, variant_id):
    resp = client.post(
        "/api/quotations",
        json={
            "customer_id": "cust-1",
            "vendor_id": "someone-else",
            "items": [{"variant_id": variant_id, "start_date": START, "end_date": END}],
        },
    )
    assert resp.status_code == 400


def test_approving_a_rejected_quotation_conflicts(client, variant_id):
    quotation = create_quotation(client, variant_id)
    url = f"/api/quotations/{quotation['_id']}"
    rejected = client.post(f"{url}/reject", json={"vendor_id": "vendor-1", "reason": "Not available"}).json()
    assert rejected["status"] == "REJECTED"
    assert "Rejection Reason: Not available" in rejected["notes"]

    resp = client.post(f"{url}/approve", json={"vendor_id": "vendor-1"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state_transition"


def test_only_the_vendor_approves(client, variant_id):
    quotation = create_quotation(client, variant_id)
    resp = client.post(f"/api/quotations/{quotation['_id']}/approve", json={"vendor_id": "vendor-2"})
    assert resp.status_code == 403


def test_expired_quotation(client, db, variant_id):
    quotation = create_quotation(client, variant_id)
    db["quotation"].update_one({"_id": ObjectId(quotation["_id"])}, {"$set": {"valid_until": datetime(2000, 1, 1)}})

    assert client.get(f"/api/quotations/{quotation['_id']}").json()["status"] == "EXPIRED"
    assert [q["status"] for q in client.get("/api/quotations", params={"status": "EXPIRED"}).json()] == ["EXPIRED"]

    resp = client.post(f"/api/quotations/{quotation['_id']}/approve", json={"vendor_id": "vendor-1"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "quotation_expired"
    assert db["quotation"].find_one({"_id": ObjectId(quotation["_id"])})["status"] == "EXPIRED"


def test_convert_requires_approval(client, variant_id):
    quotation = create_quotation(client, variant_id)
    resp = client.post(f"/api/quotations/{quotation['_id']}/convert", json={"customer_id": "cust-1"})
    assert resp.status_code == 409


def test_full_rental_lifecycle(client, variant_id):
    quotation = create_quotation(client, variant_id)
    url = f"/api/quotations/{quotation['_id']}"
    assert client.post(f"{url}/approve", json={"vendor_id": "vendor-1"}).json()["status"] == "APPROVED"

    converted = client.post(f"{url}/convert", json={"customer_id": "cust-1"}).json()
    order = converted["order"]
    assert converted["quotation"]["status"] == "CONVERTED"
    assert converted["quotation"]["order_id"] == order["_id"]
    assert order["status"] == "PENDING"
    assert order["total_amount"] == 1062
    assert order["order_number"].startswith("ORD-")

    # a quotation converts once
    assert client.post(f"{url}/convert", json={"customer_id": "cust-1"}).status_code == 409

    paid = client.post("/api/payments", json={"order_id": order["_id"], "status": "PAID", "method": "Card"}).json()
    assert paid["status"] == "CONFIRMED"
    assert paid["payment_status"] == "PAID"
    invoice = client.get(f"/api/invoices/{order['_id']}").json()
    assert invoice["total"] == 1062
    assert invoice["amount_due"] == 0

    picked = client.post("/api/pickups", json={"order_id": order["_id"], "vendor_id": "vendor-1"}).json()
    assert picked["order"]["status"] == "PICKED_UP"
    reservation_id = order["items"][0]["id"]
    pickup_id = picked["pickups"][0]["_id"]

    preview = client.post(
        "/api/returns/calculate-late-fee",
        json={"order_id": order["_id"], "reservation_id": reservation_id, "return_date": "2024-01-06T00:00:00"},
    ).json()
    assert preview["daysLate"] == 2
    assert preview["lateFee"] == 120
    assert preview["basePrice"] == 300

    returned = client.post(
        "/api/returns",
        json={
            "order_id": order["_id"],
            "vendor_id": "vendor-1",
            "reservation_id": reservation_id,
            "pickup_id": pickup_id,
            "returned_at": "2024-01-06T00:00:00",
        },
    ).json()
    assert returned["lateInfo"] == {"isLate": True, "daysLate": 2, "lateFee": 120.0}
    assert returned["order"]["status"] == "RETURNED"
    assert returned["return"]["late_fee"] == 120

    invoice = client.get(f"/api/invoices/{order['_id']}").json()
    assert invoice["late_fees"] == 120
    assert invoice["total"] == 1182
    assert invoice["amount_due"] == 120

    done = client.post(f"/api/orders/{order['_id']}/complete", json={"vendor_id": "vendor-1"}).json()
    assert done["status"] == "COMPLETED"
    assert len(client.get("/api/returns", params={"order_id": order["_id"]}).json()) == 1


def test_on_time_return_has_no_fee(client, variant_id):
    order = paid_order(client, variant_id)
    client.post("/api/pickups", json={"order_id": order["_id"], "vendor_id": "vendor-1"})
    returned = client.post(
        "/api/returns",
        json={
            "order_id": order["_id"],
            "vendor_id": "vendor-1",
            "reservation_id": order["items"][0]["id"],
            "returned_at": END,
        },
    ).json()
    assert returned["lateInfo"]["lateFee"] == 0
    assert client.get(f"/api/invoices/{order['_id']}").json()["late_fees"] == 0


def test_return_before_pickup_conflicts(client, variant_id):
    order = paid_order(client, variant_id)
    resp = client.post(
        "/api/returns",
        json={"order_id": order["_id"], "vendor_id": "vendor-1", "reservation_id": order["items"][0]["id"]},
    )
    assert resp.status_code == 409


def test_cancel_only_while_pending(client, variant_id):
    orders = client.post(
        "/api/orders",
        json={
            "customer_id": "cust-1",
            "items": [{"variant_id": variant_id, "quantity": 1, "start_date": START, "end_date": END}],
        },
    ).json()
    order_id = orders[0]["_id"]
    assert client.post(f"/api/orders/{order_id}/cancel", json={"customer_id": "cust-2"}).status_code == 403
    cancelled = client.post(f"/api/orders/{order_id}/cancel", json={"customer_id": "cust-1"}).json()
    assert cancelled["status"] == "CANCELLED"
    assert cancelled["items"][0]["status"] == "CANCELLED"

    order = paid_order(client, variant_id)
    assert client.post(f"/api/orders/{order['_id']}/cancel", json={"customer_id": "cust-1"}).status_code == 409


def test_failed_payment_keeps_order_pending(client, variant_id):
    orders = client.post(
        "/api/orders",
        json={"customer_id": "cust-1", "items": [{"variant_id": variant_id, "start_date": START, "end_date": END}]},
    ).json()
    order = client.post("/api/payments", json={"order_id": orders[0]["_id"], "status": "FAILED"}).json()
    assert order["status"] == "PENDING"
    assert order["payment_status"] == "FAILED"
    assert client.get(f"/api/invoices/{order['_id']}").status_code == 404
    assert client.post("/api/payments", json={"order_id": order["_id"], "status": "MAYBE"}).status_code == 400


def test_overlapping_orders_cannot_exceed_stock(client, variant_id):
    line = {"variant_id": variant_id, "quantity": 2, "start_date": START, "end_date": END}
    assert client.post("/api/orders", json={"customer_id": "cust-1", "items": [line]}).status_code == 200

    overlapping = dict(line, quantity=1, start_date="2024-01-03T00:00:00", end_date="2024-01-05T00:00:00")
    resp = client.post("/api/orders", json={"customer_id": "cust-2", "items": [overlapping]})
    assert resp.status_code == 409
    assert resp.json()["error"] == "stock_unavailable"

    later = dict(line, start_date="2024-01-04T00:00:00", end_date="2024-01-06T00:00:00")
    assert client.post("/api/orders", json={"customer_id": "cust-2", "items": [later]}).status_code == 200


def test_cancelled_orders_release_stock(client, variant_id):
    line = {"variant_id": variant_id, "quantity": 2, "start_date": START, "end_date": END}
    order = client.post("/api/orders", json={"customer_id": "cust-1", "items": [line]}).json()[0]
    client.post(f"/api/orders/{order['_id']}/cancel", json={"customer_id": "cust-1"})
    assert client.post("/api/orders", json={"customer_id": "cust-2", "items": [line]}).status_code == 200


def test_stock_is_checked_across_the_whole_batch(client, db, variant_id):
    line = {"variant_id": variant_id, "quantity": 2, "start_date": START, "end_date": END}
    resp = client.post("/api/orders", json={"customer_id": "cust-1", "items": [line, dict(line, quantity=1)]})
    assert resp.status_code == 409
    assert db["order"].count_documents({}) == 0


def test_multi_vendor_order_is_split(client, variant_id):
    tent = make_product(client, vendor_id="vendor-2", name="Tent", sku="TNT-01", price_hourly=10)
    items = [
        {"variant_id": variant_id, "quantity": 2, "start_date": START, "end_date": END},
        {"variant_id": tent["variants"][0]["id"], "start_date": START, "end_date": "2024-01-01T05:00:00"},
    ]
    orders = client.post("/api/orders", json={"customer_id": "cust-1", "items": items}).json()
    assert [o["vendor_id"] for o in orders] == ["vendor-1", "vendor-2"]
    assert [o["subtotal"] for o in orders] == [900, 50]
    assert len(client.get("/api/orders", params={"customer_id": "cust-1"}).json()) == 2


def test_settings_change_new_quotations(client, variant_id):
    assert client.get("/api/settings").json()["tax_rate"] == 0.18
    assert client.put("/api/settings", json={"tax_rate": 0.1}).json()["tax_rate"] == 0.1
    assert create_quotation(client, variant_id)["total_amount"] == 990
    assert client.put("/api/settings", json={"nope": 1}).status_code == 400


def test_cart_flow(client, variant_id):
    tent = make_product(client, vendor_id="vendor-2", name="Tent", sku="TNT-01", price_hourly=10)
    line = {"variant_id": variant_id, "start_date": START, "end_date": END}

    client.post("/api/carts/cust-9/items", json=line)
    cart = client.post("/api/carts/cust-9/items", json=line).json()
    assert cart["key"] == "rentalCart_cust-9"
    assert cart["item_count"] == 2
    assert len(cart["items"]) == 1

    tent_line = {"variant_id": tent["variants"][0]["id"], "start_date": START, "end_date": "2024-01-01T05:00:00"}
    cart = client.post("/api/carts/cust-9/items", json=tent_line).json()
    assert len(cart["items"]) == 2
    assert client.get("/api/carts/someone-else").json()["items"] == []

    summary = client.post("/api/carts/cust-9/quotation").json()
    assert summary["vendor_count"] == 2
    assert summary["total_amount"] == 1121.0
    assert {q["vendor_id"] for q in summary["quotations"]} == {"vendor-1", "vendor-2"}

    tent_id = quote(cart["items"][1]["id"], safe="")
    cart = client.patch(f"/api/carts/cust-9/items/{tent_id}", json={"quantity": 5}).json()
    assert cart.get("error") == "insufficient_stock"

    orders = client.post("/api/carts/cust-9/checkout", json={}).json()
    assert len(orders) == 2
    assert client.get("/api/carts/cust-9").json()["items"] == []
    assert client.post("/api/carts/cust-9/checkout", json={}).json()["error"] == "empty_cart"


def test_cart_item_edits(client, variant_id):
    cart = client.post("/api/carts/cust-9/items", json={"variant_id": variant_id, "start_date": START, "end_date": END}).json()
    item_id = quote(cart["items"][0]["id"], safe="")

    moved = client.patch(
        f"/api/carts/cust-9/items/{item_id}",
        json={"start_date": "2024-02-01T00:00:00", "end_date": "2024-02-03T00:00:00", "quantity": 2},
    ).json()
    assert moved["items"][0]["start_date"].startswith("2024-02-01")
    assert moved["item_count"] == 2

    assert client.delete(f"/api/carts/cust-9/items/{item_id}").status_code == 404
    new_id = quote(moved["items"][0]["id"], safe="")
    assert client.delete(f"/api/carts/cust-9/items/{new_id}").json()["items"] == []


def test_cart_requires_dates(client, variant_id):
    resp = client.post("/api/carts/cust-9/items", json={"variant_id": variant_id})
    assert resp.status_code == 400
    assert resp.json()["error"] == "missing_rental_window"


def test_pickup_requires_confirmed_order(client, variant_id):
    orders = client.post(
        "/api/orders",
        json={"customer_id": "cust-1", "items": [{"variant_id": variant_id, "start_date": START, "end_date": END}]},
    ).json()
    resp = client.post("/api/pickups", json={"order_id": orders[0]["_id"], "vendor_id": "vendor-1"})
    assert resp.status_code == 409
    assert client.get("/api/pickups", params={"order_id": orders[0]["_id"]}).json() == []

    wrong_vendor = client.post("/api/pickups", json={"order_id": orders[0]["_id"], "vendor_id": "vendor-2"})
    assert wrong_vendor.status_code == 403


def test_search_text_is_matched_literally(client, product):
    make_product(client, name="Drill (cordless)", sku="DRL-02")
    resp = client.get("/api/products", params={"q": "drill("})
    assert resp.status_code == 200
    assert resp.json() == []
    assert [p["name"] for p in client.get("/api/products", params={"q": "(cordless)"}).json()] == ["Drill (cordless)"]
    assert client.get("/api/products", params={"q": "."}).json() == []


def test_late_fee_covers_every_unit(client, variant_id):
    order = paid_order(client, variant_id)
    client.post("/api/pickups", json={"order_id": order["_id"], "vendor_id": "vendor-1"})
    returned = client.post(
        "/api/returns",
        json={
            "order_id": order["_id"],
            "vendor_id": "vendor-1",
            "reservation_id": order["items"][0]["id"],
            "returned_at": "2024-01-05T00:00:00",
        },
    ).json()
    assert order["items"][0]["quantity"] == 2
    assert returned["lateInfo"] == {"isLate": True, "daysLate": 1, "lateFee": 60.0}


def test_repeated_reservation_ids_record_one_pickup(client, variant_id):
    order = paid_order(client, variant_id)
    reservation_id = order["items"][0]["id"]
    picked = client.post(
        "/api/pickups",
        json={"order_id": order["_id"], "vendor_id": "vendor-1", "reservation_ids": [reservation_id, reservation_id]},
    ).json()
    assert len(picked["pickups"]) == 1
    assert len(client.get("/api/pickups", params={"order_id": order["_id"]}).json()) == 1


def test_rejected_cart_edit_changes_nothing(client, variant_id):
    cart = client.post("/api/carts/cust-9/items", json={"variant_id": variant_id, "start_date": START, "end_date": END}).json()
    item_id = quote(cart["items"][0]["id"], safe="")

    resp = client.patch(
        f"/api/carts/cust-9/items/{item_id}",
        json={"start_date": "2024-02-01T00:00:00", "end_date": "2024-02-03T00:00:00", "quantity": 99},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "insufficient_stock"

    items = client.get("/api/carts/cust-9").json()["items"]
    assert len(items) == 1
    assert items[0]["start_date"].startswith("2024-01-01")
    assert items[0]["quantity"] == 1
