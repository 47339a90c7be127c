import mongomock
import pytest
from fastapi.testclient import TestClient

import main

START = "2024-01-01T00:00:00"
END = "2024-01-04T00:00:00"


@pytest.fixture
def db():
    return mongomock.MongoClient()["rental_test"]


@pytest.fixture
def client(db):
    main.app.dependency_overrides[main.get_db] = lambda: db
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def make_product(client, vendor_id="vendor-1", name="Power Drill", sku="DRL-01", stock=2, **rates):
    rates = rates or {"price_daily": 150}
    resp = client.post(
        "/api/products",
        json={
            "name": name,
            "category": "Tools",
            "vendor_id": vendor_id,
            "images": ["https://img.example/drill.jpg"],
            "variants": [dict(sku=sku, stock_quantity=stock, **rates)],
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


@pytest.fixture
def product(client):
    return make_product(client)


@pytest.fixture
def variant_id(product):
    return product["variants"][0]["id"]
