import time
from datetime import timedelta

from bson import ObjectId
from fastapi.testclient import TestClient
from pymongo.errors import AutoReconnect

import main
from conftest import PRODUCT_FORM, SHOP_FORM, register
from database import now_utc


def place_order(client, buyer, shop, product, quantity=2):
    r = client.post("/orders", json={
        "shop_id": shop["id"],
        "items": [{"product_id": product["id"], "quantity": quantity}],
        "shipping_address": {"line1": "1 Main St", "city": "Windhoek"},
    }, headers=buyer)
    assert r.status_code == 200, r.text
    return r.json()["orders"][0]["order_id"]


# ---------------------- Auth ----------------------

def test_register_login_refresh_logout(client):
    headers, data = register(client, "Sam", "sam@shopmail.com", "seller")
    assert data["navigator"] == "seller"

    r = client.post("/auth/login", json={"email": "sam@shopmail.com", "password": "wrong-pass"})
    assert r.status_code == 401

    r = client.post("/auth/login", json={"email": "sam@shopmail.com", "password": "secret123"})
    assert r.status_code == 200
    assert r.json()["role"] == "seller"

    r = client.post("/auth/refresh", headers=headers)
    assert r.status_code == 200
    rotated = {"Authorization": f"Bearer {r.json()['token']}"}
    assert client.get("/auth/session", headers=headers).status_code == 401
    assert client.get("/auth/session", headers=rotated).json()["email"] == "sam@shopmail.com"

    assert client.post("/auth/logout", headers=rotated).json() == {"ok": True}
    assert client.get("/auth/session", headers=rotated).status_code == 401


def test_duplicate_email_and_navigator(client):
    headers, data = register(client, "Bea", "bea@shopmail.com", "buyer")
    assert data["navigator"] == "buyer"
    r = client.post("/auth/register", json={"name": "B", "email": "bea@shopmail.com", "password": "secret123"})
    assert r.status_code == 400
    assert client.get("/auth/navigator").json() == {"navigator": "auth"}
    assert client.get("/auth/navigator", headers=headers).json() == {"navigator": "buyer"}


def test_expired_session_is_rejected(client, db):
    headers, data = register(client, "Bea", "bea@shopmail.com", "buyer")
    db["session"].update_one({"token": data["token"]}, {"$set": {"expires_at": now_utc() - timedelta(hours=1)}})
    assert client.get("/auth/session", headers=headers).status_code == 401


def test_buyers_cannot_use_seller_endpoints(client, buyer):
    assert client.post("/shops", json=SHOP_FORM, headers=buyer).status_code == 403


# ---------------------- Shops ----------------------

def test_create_shop_validates_and_starts_unsubmitted(client, seller):
    r = client.post("/shops", json={**SHOP_FORM, "email": "not-an-email"}, headers=seller)
    assert r.status_code == 400
    assert r.json()["detail"] == "Please enter a valid email address"

    r = client.post("/shops", json=SHOP_FORM, headers=seller)
    assert r.status_code == 200
    assert r.json()["verification_status"] == "not_submitted"
    assert len(client.get("/shops", headers=seller).json()) == 1


def test_verification_only_moves_forward(client, seller, shop):
    form = {"national_id_url": "id.jpg", "selfie_url": "me.jpg"}
    r = client.post(f"/shops/{shop['id']}/verification", json=form, headers=seller)
    assert r.status_code == 200
    assert r.json()["verification_status"] == "pending"
    assert client.post(f"/shops/{shop['id']}/verification", json=form, headers=seller).status_code == 409

    admin = {"X-Admin-Key": "demo-admin-key"}
    r = client.post(f"/admin/shops/{shop['id']}/verification", json={"status": "verified"}, headers=admin)
    assert r.status_code == 200
    assert client.get(f"/shops/{shop['id']}").json()["verification_status"] == "verified"
    assert client.post(f"/shops/{shop['id']}/verification", json=form, headers=seller).status_code == 409
    r = client.post(f"/admin/shops/{shop['id']}/verification", json={"status": "rejected"}, headers=admin)
    assert r.status_code == 409


def test_other_sellers_cannot_edit_shop(client, shop):
    other, _ = register(client, "Olly", "olly@shopmail.com", "seller")
    assert client.put(f"/shops/{shop['id']}", json=SHOP_FORM, headers=other).status_code == 403


# ---------------------- Products ----------------------

def test_product_crud_and_custom_category(client, seller, shop, product):
    assert product["stock_quantity"] == 10
    assert [c["name"] for c in client.get("/categories").json()] == ["Home"]

    form = {**PRODUCT_FORM, "category": "", "custom_category": "home"}
    r = client.put(f"/products/{product['id']}", json=form, headers=seller)
    assert r.status_code == 200
    assert [c["name"] for c in client.get("/categories").json()] == ["Home"]

    assert len(client.get(f"/shops/{shop['id']}/products").json()) == 1
    assert client.delete(f"/products/{product['id']}", headers=seller).json() == {"ok": True}
    assert client.get(f"/products/{product['id']}").status_code == 404


def test_on_order_edit_persists_zero_stock(client, db, seller, product):
    form = {**PRODUCT_FORM, "is_on_order": True, "lead_time_days": 14, "stock_quantity": "40"}
    r = client.put(f"/products/{product['id']}", json=form, headers=seller)
    assert r.status_code == 200
    stored = db["product"].find_one({"_id": ObjectId(product["id"])})
    assert stored["stock_quantity"] == 0
    assert stored["lead_time_days"] == 14


def test_invalid_product_is_not_saved(client, db, seller, shop):
    r = client.post(f"/shops/{shop['id']}/products", json={**PRODUCT_FORM, "price": "0"}, headers=seller)
    assert r.status_code == 400
    assert r.json()["detail"] == "Please enter a valid price"
    assert db["product"].count_documents({}) == 0


# ---------------------- Orders ----------------------

def test_checkout_snapshots_price_and_takes_stock(client, db, buyer, shop, product):
    order_id = place_order(client, buyer, shop, product, quantity=3)
    order = db["order"].find_one({"_id": ObjectId(order_id)})
    assert order["total_amount"] == 360
    assert order["status"] == "pending"
    item = db["order_item"].find_one({"order_id": order_id})
    assert item["price"] == 120
    assert db["product"].find_one({"_id": ObjectId(product["id"])})["stock_quantity"] == 7

    r = client.post("/orders", json={"shop_id": shop["id"], "items": [{"product_id": product["id"], "quantity": 50}]},
                    headers=buyer)
    assert r.status_code == 400


def test_status_transitions_follow_the_lifecycle(client, db, seller, buyer, shop, product):
    order_id = place_order(client, buyer, shop, product)

    r = client.get(f"/orders/{order_id}/transitions", headers=seller)
    assert [t["status"] for t in r.json()["transitions"]] == ["processing", "cancelled"]

    r = client.patch(f"/orders/{order_id}/status", json={"status": "shipped"}, headers=seller)
    assert r.status_code == 409
    assert db["order"].find_one({"_id": ObjectId(order_id)})["status"] == "pending"

    for status in ("processing", "shipped"):
        r = client.patch(f"/orders/{order_id}/status", json={"status": status}, headers=seller)
        assert r.status_code == 200
        assert r.json()["status"] == status
        assert r.json()["payment_status"] == "pending"

    r = client.patch(f"/orders/{order_id}/status", json={"status": "delivered"}, headers=seller)
    assert r.status_code == 200
    assert r.json()["payment_status"] == "paid"
    stored = db["order"].find_one({"_id": ObjectId(order_id)})
    assert stored["payment_status"] == "paid"
    assert stored["delivery_date"] is not None
    assert client.get(f"/orders/{order_id}/transitions", headers=seller).json()["transitions"] == []


def test_buyer_cannot_change_status(client, buyer, shop, product):
    order_id = place_order(client, buyer, shop, product)
    r = client.patch(f"/orders/{order_id}/status", json={"status": "processing"}, headers=buyer)
    assert r.status_code == 403


def test_seller_order_detail_marks_notification_read(client, db, seller, buyer, shop, product):
    order_id = place_order(client, buyer, shop, product)
    db["notification"].insert_one({"shop_id": shop["id"], "order_id": order_id, "read": False})
    listed = client.get("/orders", headers=seller).json()
    assert listed[0]["is_read"] is False

    detail = client.get(f"/orders/{order_id}", headers=seller).json()
    assert len(detail["items"]) == 1
    assert [a["label"] for a in detail["available_actions"]] == ["Accept Order", "Reject Order"]
    assert db["notification"].find_one({"order_id": order_id})["read"] is True
    assert client.get("/orders", headers=seller).json()[0]["is_read"] is True
    assert len(client.get("/orders", headers=buyer).json()) == 1


def test_unread_count_is_loaded_on_first_use(client, db, seller, shop):
    db["notification"].insert_many([{"shop_id": shop["id"], "read": False} for _ in range(2)])
    assert client.get("/notifications/unread-count", headers=seller).json() == {"unread_count": 2}
    assert len(client.get("/notifications", headers=seller).json()) == 2
    assert client.post("/notifications/read-all", headers=seller).json() == {"updated": 2}


# ---------------------- Analytics ----------------------

def test_analytics_for_all_shops(client, seller, buyer, shop, product):
    order_id = place_order(client, buyer, shop, product, quantity=2)
    for status in ("processing", "shipped", "delivered"):
        client.patch(f"/orders/{order_id}/status", json={"status": status}, headers=seller)
    client.post(f"/products/{product['id']}/reviews", json={"rating": 5}, headers=buyer)

    r = client.get("/analytics", headers=seller)
    assert r.status_code == 200
    report = r.json()
    assert report["total_revenue"] == 240
    assert report["completed"] == 1
    assert report["total_customers"] == 1
    assert report["top_products_chart"][0]["name"] == "Woven Basket"
    assert report["category_chart"][0]["name"] == "Home"
    assert report["rating_distribution"]["data"] == [0, 0, 0, 0, 1]
    assert report["failed_sources"] == []


def test_analytics_without_shops_is_empty(client, seller):
    report = client.get("/analytics", headers=seller).json()
    assert report["total_orders"] == 0
    assert report["order_status_chart"][0]["name"] == "No Orders"
    assert client.get("/analytics?period=year", headers=seller).status_code == 400


# ---------------------- Messaging ----------------------

def test_conversation_flow(client, db, seller, buyer):
    seller_id = client.get("/auth/session", headers=seller).json()["user_id"]
    conv = client.post("/conversations", json={"participant_id": seller_id}, headers=buyer).json()
    again = client.post("/conversations", json={"participant_id": seller_id}, headers=buyer).json()
    assert conv["id"] == again["id"]

    r = client.post(f"/conversations/{conv['id']}/messages", json={"content": "Is the basket in stock?"}, headers=buyer)
    assert r.status_code == 200
    assert client.post(f"/conversations/{conv['id']}/messages", json={"content": "  "}, headers=buyer).status_code == 400

    listed = client.get("/conversations", headers=seller).json()
    assert listed[0]["unread_count"] == 1
    assert listed[0]["last_message_text"] == "Is the basket in stock?"
    assert listed[0]["other_participant"]["name"] == "Bea Buyer"

    messages = client.get(f"/conversations/{conv['id']}/messages", headers=seller).json()["messages"]
    assert [m["content"] for m in messages] == ["Is the basket in stock?"]
    assert db["private_message"].find_one({})["is_read"] is True
    assert client.get("/conversations", headers=seller).json()[0]["unread_count"] == 0


# ---------------------- Storage ----------------------

def test_upload_and_fetch_object(client, seller):
    headers = {**seller, "Content-Type": "image/jpeg"}
    r = client.post("/storage/shop-images/logos/corner.jpg", content=b"\xff\xd8jpeg", headers=headers)
    assert r.status_code == 200
    assert r.json()["public_url"].endswith("/storage/shop-images/logos/corner.jpg")

    assert client.post("/storage/shop-images/logos/corner.jpg", content=b"again", headers=headers).status_code == 409
    r = client.post("/storage/shop-images/logos/corner.jpg", content=b"again",
                    headers={**headers, "x-upsert": "true"})
    assert r.status_code == 200

    r = client.get("/storage/shop-images/logos/corner.jpg")
    assert r.content == b"again"
    assert r.headers["content-type"] == "image/jpeg"


def test_upload_too_large(client, seller, monkeypatch):
    monkeypatch.setattr("storage.MAX_UPLOAD_BYTES", 4)
    r = client.post("/storage/product-images/big.jpg", content=b"12345", headers=seller)
    assert r.status_code == 413


# ---------------------- Account deletion ----------------------

def test_delete_account_cascades(client, db, seller, buyer, shop, product):
    place_order(client, buyer, shop, product)
    r = client.delete("/auth/account", headers=seller)
    assert r.json()["success"] is True
    assert db["shop"].count_documents({}) == 0
    assert db["product"].count_documents({}) == 0
    assert client.get("/auth/session", headers=seller).status_code == 401

    client.delete("/auth/account", headers=buyer)
    assert db["order"].count_documents({}) == 0
    assert db["order_item"].count_documents({}) == 0
    assert db["profile"].count_documents({}) == 0


def test_navigator_falls_back_to_auth_for_stale_tokens(client, buyer):
    client.post("/auth/logout", headers=buyer)
    assert client.get("/auth/navigator", headers=buyer).json() == {"navigator": "auth"}
    assert client.get("/auth/navigator", headers={"Authorization": "Token abc"}).json() == {"navigator": "auth"}


def test_schema_lists_every_collection(client):
    models = client.get("/schema").json()["models"]
    for name in ("session", "shop_verification", "seller_stats", "storage_object", "shop_follow", "product_like"):
        assert name in models


# ---------------------- Checkout stock handling ----------------------

def test_cart_cannot_take_more_stock_than_is_left(client, db, buyer, shop, product):
    r = client.post("/orders", json={"items": [{"product_id": product["id"], "quantity": 6},
                                               {"product_id": product["id"], "quantity": 6}]}, headers=buyer)
    assert r.status_code == 400
    assert db["product"].find_one({"_id": ObjectId(product["id"])})["stock_quantity"] == 10
    assert db["order"].count_documents({}) == 0


def test_failed_order_insert_returns_stock(client, db, buyer, shop, product, monkeypatch):
    real_create = main.create_document

    def create_document(collection, data):
        if collection == "order":
            raise AutoReconnect("connection reset")
        return real_create(collection, data)

    monkeypatch.setattr(main, "create_document", create_document)
    r = client.post("/orders", json={"items": [{"product_id": product["id"], "quantity": 4}]}, headers=buyer)
    assert r.status_code == 502
    assert db["product"].find_one({"_id": ObjectId(product["id"])})["stock_quantity"] == 10
    assert db["order"].count_documents({}) == 0


def test_cart_from_two_shops_makes_two_orders(client, db, buyer, shop, product):
    other, _ = register(client, "Olly", "olly@shopmail.com", "seller")
    other_shop = client.post("/shops", json={**SHOP_FORM, "name": "Olly's"}, headers=other).json()
    mug = client.post(f"/shops/{other_shop['id']}/products",
                      json={**PRODUCT_FORM, "name": "Clay Mug", "price": "45"}, headers=other).json()

    r = client.post("/orders", json={"items": [{"product_id": product["id"], "quantity": 1},
                                               {"product_id": mug["id"], "quantity": 2}]}, headers=buyer)
    assert r.status_code == 200
    body = r.json()
    assert {o["shop_id"]: o["total_amount"] for o in body["orders"]} == {shop["id"]: 120, other_shop["id"]: 90}
    assert body["total_amount"] == 210
    assert db["order_item"].count_documents({}) == 2

    r = client.post("/orders", json={"shop_id": shop["id"], "items": [{"product_id": mug["id"]}]}, headers=buyer)
    assert r.status_code == 400


# ---------------------- Follows, ratings, favorites ----------------------

def test_follow_counts_feed_analytics(client, seller, buyer, shop):
    r = client.post(f"/shops/{shop['id']}/follow", headers=buyer)
    assert r.json() == {"following": True, "followers_count": 1}
    assert client.post(f"/shops/{shop['id']}/follow", headers=buyer).status_code == 409
    assert client.get("/follows", headers=buyer).json() == {"shop_ids": [shop["id"]]}
    assert client.get("/analytics", headers=seller).json()["followers_count"] == 1

    r = client.delete(f"/shops/{shop['id']}/follow", headers=buyer)
    assert r.json() == {"following": False, "followers_count": 0}
    assert client.delete(f"/shops/{shop['id']}/follow", headers=buyer).status_code == 404


def test_rating_a_shop_again_replaces_the_rating(client, seller, buyer, shop):
    client.post(f"/shops/{shop['id']}/ratings", json={"rating": 2}, headers=buyer)
    r = client.post(f"/shops/{shop['id']}/ratings", json={"rating": 5, "comment": "Lovely"}, headers=buyer)
    assert r.json()["rating_count"] == 1
    assert r.json()["average_rating"] == 5
    assert client.get(f"/shops/{shop['id']}/ratings").json()["ratings"][0]["comment"] == "Lovely"
    assert client.post(f"/shops/{shop['id']}/ratings", json={"rating": 5}, headers=seller).status_code == 400


def test_favorites_skip_deleted_products(client, seller, buyer, shop, product):
    assert client.post(f"/products/{product['id']}/like", headers=buyer).json() == {"liked": True}
    client.post(f"/products/{product['id']}/like", headers=buyer)
    favorites = client.get("/favorites", headers=buyer).json()
    assert [(f["name"], f["shop"]["name"]) for f in favorites] == [("Woven Basket", "Corner Crafts")]

    client.delete(f"/products/{product['id']}", headers=seller)
    assert client.get("/favorites", headers=buyer).json() == []


def test_delete_account_clears_follows_and_likes(client, db, seller, buyer, shop, product):
    client.post(f"/shops/{shop['id']}/follow", headers=buyer)
    client.post(f"/shops/{shop['id']}/ratings", json={"rating": 4}, headers=buyer)
    client.post(f"/products/{product['id']}/like", headers=buyer)

    client.delete("/auth/account", headers=buyer)
    assert db["shop_follow"].count_documents({}) == 0
    assert db["shop_rating"].count_documents({}) == 0
    assert db["product_like"].count_documents({}) == 0
    assert db["seller_stats"].find_one({"shop_id": shop["id"]})["followers_count"] == 0


# ---------------------- Live notifications ----------------------

def test_new_order_reaches_the_seller_badge(db, seller, buyer, shop, product):
    with TestClient(main.app) as live:
        assert live.get("/notifications/unread-count", headers=seller).json() == {"unread_count": 0}
        place_order(live, buyer, shop, product)
        count = 0
        for _ in range(50):
            count = live.get("/notifications/unread-count", headers=seller).json()["unread_count"]
            if count:
                break
            time.sleep(0.05)
        assert count == 1
        assert db["notification"].count_documents({"shop_id": shop["id"], "type": "new_order"}) == 1
