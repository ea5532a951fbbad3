import mongomock
import pytest

import database

# Every module reads `database.db` at import time, so swap it in first.
database.db = mongomock.MongoClient()["marketplace_test"]

from fastapi.testclient import TestClient  # noqa: E402

import main  # noqa: E402
from notifications import registry  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    yield
    registry.close_all()


@pytest.fixture
def db():
    return database.db


@pytest.fixture
def client():
    return TestClient(main.app)


def register(client, name, email, role):
    r = client.post("/auth/register", json={"name": name, "email": email, "password": "secret123", "role": role})
    assert r.status_code == 200, r.text
    data = r.json()
    return {"Authorization": f"Bearer {data['token']}"}, data


@pytest.fixture
def seller(client):
    headers, _ = register(client, "Sam Seller", "sam@shopmail.com", "seller")
    return headers


@pytest.fixture
def buyer(client):
    headers, _ = register(client, "Bea Buyer", "bea@shopmail.com", "buyer")
    return headers


SHOP_FORM = {
    "name": "Corner Crafts",
    "description": "Handmade goods",
    "location": "Windhoek",
    "phone_number": "+264 81 000 0000",
    "email": "crafts@shopmail.com",
}

PRODUCT_FORM = {
    "name": "Woven Basket",
    "description": "Large basket",
    "price": "120",
    "category": "Home",
    "stock_quantity": "10",
    "images": ["http://localhost:8000/storage/product-images/basket.jpg"],
}


@pytest.fixture
def shop(client, seller):
    r = client.post("/shops", json=SHOP_FORM, headers=seller)
    assert r.status_code == 200, r.text
    return r.json()


@pytest.fixture
def product(client, seller, shop):
    r = client.post(f"/shops/{shop['id']}/products", json=PRODUCT_FORM, headers=seller)
    assert r.status_code == 200, r.text
    return r.json()
