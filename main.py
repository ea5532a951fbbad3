import os
import re
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List, Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Header, Query, Depends, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError
from bson import ObjectId

from database import db, create_document, get_documents, update_documents, delete_documents, now_utc, to_str_id
from session import (Session, current_session, seller_session, hash_password, open_session,
                     refresh_session, close_session, navigator_for)
from order_status import OrderStatus, ACTION_LABELS, allowed_transitions, can_transition, status_update
from validation import validate_shop, validate_product, validate_verification
from analytics import AnalyticsUnavailable, PERIODS, aggregate, load_analytics
from notifications import registry as notifiers
import engagement
import messaging
import storage

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        db["session"].create_index("token")
        db["order"].create_index("shop_id")
        db["notification"].create_index([("shop_id", 1), ("read", 1)])
        db["shop_follow"].create_index([("shop_id", 1), ("user_id", 1)])
    yield
    notifiers.close_all()

app = FastAPI(title="Marketplace API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------- Utilities ----------------------

def oid(id_str: str) -> ObjectId:
    if not ObjectId.is_valid(id_str):
        raise HTTPException(status_code=400, detail="Invalid ID")
    return ObjectId(id_str)

ADMIN_KEY = os.getenv("ADMIN_KEY", "demo-admin-key")

VERIFICATION_RANK = {"not_submitted": 0, "pending": 1, "verified": 2, "rejected": 2}

def require_admin(x_admin_key: str):
    if x_admin_key != ADMIN_KEY:
        raise HTTPException(401, "Unauthorized")

def owned_shop(shop_id: str, session: Session) -> dict:
    shop = db["shop"].find_one({"_id": oid(shop_id)})
    if not shop:
        raise HTTPException(404, "Shop not found")
    if shop.get("owner_id") != session.user_id:
        raise HTTPException(403, "You do not own this shop")
    return shop

def my_shop_ids(session: Session) -> List[str]:
    return [str(s["_id"]) for s in db["shop"].find({"owner_id": session.user_id}, {"_id": 1})]

def owned_product(pid: str, session: Session) -> dict:
    prod = db["product"].find_one({"_id": oid(pid)})
    if not prod:
        raise HTTPException(404, "Product not found")
    owned_shop(prod["shop_id"], session)
    return prod

def ensure_category(name: str):
    pattern = f"^{re.escape(name)}$"
    if not db["category"].find_one({"name": {"$regex": pattern, "$options": "i"}}):
        create_document("category", {"name": name})

# ---------------------- Models ----------------------

class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = "buyer"
    phone: Optional[str] = None

class LoginBody(BaseModel):
    email: EmailStr
    password: str

class ShopBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    phone_number: Optional[str] = None
    email: Optional[str] = None
    logo_url: Optional[str] = None
    banner_url: Optional[str] = None

class VerificationBody(BaseModel):
    national_id_url: Optional[str] = None
    selfie_url: Optional[str] = None
    business_type: Optional[str] = None
    has_physical_store: bool = False
    physical_address: Optional[str] = None
    additional_info: Optional[str] = None

class ReviewDecision(BaseModel):
    status: str  # verified or rejected
    rejection_reason: Optional[str] = None

# Numeric fields arrive as typed into the form, so they are checked by hand
class ProductBody(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Any = None
    category: Optional[str] = None
    custom_category: Optional[str] = None
    stock_quantity: Any = None
    is_on_order: bool = False
    lead_time_days: Any = None
    images: List[str] = []
    is_on_sale: bool = False
    original_price: Any = None
    discount_percentage: Any = None
    delivery_fee_local: Any = None
    delivery_fee_uptown: Any = None
    delivery_fee_outoftown: Any = None
    delivery_fee_countrywide: Any = None
    free_delivery_threshold: Any = None

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

class CheckoutBody(BaseModel):
    items: List[CartItem]
    shop_id: Optional[str] = None  # limit the cart to one shop
    shipping_address: Dict[str, Any] = {}
    payment_method: str = "cash_on_delivery"

class StatusBody(BaseModel):
    status: str

class ReviewBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

class RatingBody(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None

class ConversationBody(BaseModel):
    participant_id: str

class MessageBody(BaseModel):
    content: str

# ---------------------- Root & Health ----------------------

@app.get("/")
def read_root():
    return {"message": "Marketplace API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                response["collections"] = db.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response

# ---------------------- Schemas Endpoint ----------------------

@app.get("/schema")
def get_schema():
    try:
        import schemas as s
        def model_fields(m):
            return {k: str(v.annotation) for k, v in getattr(m, "model_fields", {}).items()}
        return {
            "models": {
                "profile": model_fields(s.Profile),
                "session": model_fields(s.Session),
                "shop": model_fields(s.Shop),
                "shop_verification": model_fields(s.ShopVerification),
                "seller_stats": model_fields(s.SellerStats),
                "shop_follow": model_fields(s.ShopFollow),
                "shop_rating": model_fields(s.ShopRating),
                "product": model_fields(s.Product),
                "product_like": model_fields(s.ProductLike),
                "category": model_fields(s.Category),
                "order": model_fields(s.Order),
                "order_item": model_fields(s.OrderItem),
                "notification": model_fields(s.Notification),
                "conversation": model_fields(s.Conversation),
                "private_message": model_fields(s.PrivateMessage),
                "product_review": model_fields(s.ProductReview),
                "storage_object": model_fields(s.StorageObject),
            }
        }
    except Exception as e:
        return {"error": str(e)}

# ---------------------- Auth ----------------------

@app.post("/auth/register")
def register(body: RegisterBody):
    if body.role not in ("buyer", "seller"):
        raise HTTPException(400, "Role must be buyer or seller")
    if db["profile"].find_one({"email": str(body.email)}):
        raise HTTPException(400, "Email already registered")
    profile = {
        "name": body.name,
        "email": str(body.email),
        "password_hash": hash_password(body.password),
        "role": body.role,
        "is_verified": body.role == "buyer",
        "phone": body.phone,
        "created_at": now_utc(),
        "updated_at": now_utc(),
    }
    res = db["profile"].insert_one(profile)
    profile["_id"] = res.inserted_id
    logger.info("Registered %s account %s", body.role, res.inserted_id)
    return open_session(profile).public()

@app.post("/auth/login")
def login(body: LoginBody):
    profile = db["profile"].find_one({"email": str(body.email)})
    if not profile or profile.get("password_hash") != hash_password(body.password):
        raise HTTPException(401, "Invalid credentials")
    return open_session(profile).public()

@app.get("/auth/session")
def get_session(session: Session = Depends(current_session)):
    return session.public()

@app.get("/auth/navigator")
def get_navigator(authorization: str = Header(None)):
    try:
        session = current_session(authorization)
    except HTTPException:
        # signed out, expired or unknown token
        session = None
    return {"navigator": navigator_for(session)}

@app.post("/auth/refresh")
def refresh(session: Session = Depends(current_session)):
    return refresh_session(session).public()

@app.post("/auth/logout")
def logout(session: Session = Depends(current_session)):
    close_session(session)
    notifiers.drop(session.user_id)
    return {"ok": True}

@app.delete("/auth/account")
def delete_account(session: Session = Depends(current_session)):
    uid = session.user_id
    shop_ids = my_shop_ids(session)
    try:
        engagement.purge_user(uid, shop_ids)
        delete_documents("product_review", {"buyer_id": uid})
        delete_documents("private_message", {"$or": [{"sender_id": uid}, {"recipient_id": uid}]})
        delete_documents("conversation", messaging.participant_filter(uid))
        order_ids = [str(o["_id"]) for o in db["order"].find({"buyer_id": uid}, {"_id": 1})]
        if order_ids:
            delete_documents("order_item", {"order_id": {"$in": order_ids}})
        delete_documents("order", {"buyer_id": uid})
        if shop_ids:
            delete_documents("product", {"shop_id": {"$in": shop_ids}})
            delete_documents("seller_stats", {"shop_id": {"$in": shop_ids}})
            delete_documents("notification", {"shop_id": {"$in": shop_ids}})
            delete_documents("shop_verification", {"shop_id": {"$in": shop_ids}})
        delete_documents("shop", {"owner_id": uid})
        delete_documents("notification", {"user_id": uid})
    except PyMongoError as e:
        # carry on to the profile so the account is gone even if cleanup was partial
        logger.error("Error during data cleanup for %s: %s", uid, e)
    notifiers.drop(uid)
    db["session"].delete_many({"user_id": uid})
    db["profile"].delete_one({"_id": oid(uid)})
    logger.info("Deleted account %s", uid)
    return {"success": True, "message": "Account deleted successfully"}

# ---------------------- Shops & Verification ----------------------

@app.post("/shops")
def create_shop(body: ShopBody, session: Session = Depends(seller_session)):
    data = validate_shop(body.model_dump())
    data.update({"owner_id": session.user_id, "verification_status": "not_submitted"})
    sid = create_document("shop", data)
    return to_str_id(db["shop"].find_one({"_id": ObjectId(sid)}))

@app.get("/shops")
def list_my_shops(session: Session = Depends(seller_session)):
    return [to_str_id(s) for s in db["shop"].find({"owner_id": session.user_id}).sort("created_at", -1)]

@app.get("/shops/{shop_id}")
def get_shop(shop_id: str):
    shop = db["shop"].find_one({"_id": oid(shop_id)})
    if not shop:
        raise HTTPException(404, "Shop not found")
    return to_str_id(shop)

@app.put("/shops/{shop_id}")
def update_shop(shop_id: str, body: ShopBody, session: Session = Depends(seller_session)):
    owned_shop(shop_id, session)
    update_documents("shop", {"_id": oid(shop_id)}, validate_shop(body.model_dump()))
    return to_str_id(db["shop"].find_one({"_id": oid(shop_id)}))

@app.delete("/shops/{shop_id}")
def delete_shop(shop_id: str, session: Session = Depends(seller_session)):
    owned_shop(shop_id, session)
    engagement.purge_shops([shop_id])
    delete_documents("product", {"shop_id": shop_id})
    delete_documents("seller_stats", {"shop_id": shop_id})
    delete_documents("shop", {"_id": oid(shop_id)})
    return {"ok": True}

@app.post("/shops/{shop_id}/verification")
def submit_verification(shop_id: str, body: VerificationBody, session: Session = Depends(seller_session)):
    shop = owned_shop(shop_id, session)
    current = shop.get("verification_status", "not_submitted")
    if VERIFICATION_RANK.get(current, 0) >= VERIFICATION_RANK["pending"]:
        raise HTTPException(409, f"Verification already {current}")
    data = validate_verification(body.model_dump())
    data.update({"shop_id": shop_id, "user_id": session.user_id, "status": "pending", "submitted_at": now_utc()})
    vid = create_document("shop_verification", data)
    update_documents("shop", {"_id": shop["_id"]}, {"verification_status": "pending"})
    return {"verification_id": vid, "verification_status": "pending"}

@app.post("/admin/shops/{shop_id}/verification")
def review_verification(shop_id: str, body: ReviewDecision, x_admin_key: str = Header(None)):
    require_admin(x_admin_key)
    if body.status not in ("verified", "rejected"):
        raise HTTPException(400, "Status must be verified or rejected")
    shop = db["shop"].find_one({"_id": oid(shop_id)})
    if not shop:
        raise HTTPException(404, "Shop not found")
    if shop.get("verification_status") != "pending":
        raise HTTPException(409, "Only pending verifications can be reviewed")
    changes = {"status": body.status}
    if body.status == "rejected":
        changes["rejection_reason"] = body.rejection_reason
    update_documents("shop_verification", {"shop_id": shop_id, "status": "pending"}, changes)
    update_documents("shop", {"_id": shop["_id"]}, {"verification_status": body.status})
    return {"ok": True, "verification_status": body.status}

# ---------------------- Products & Categories ----------------------

@app.get("/categories")
def list_categories():
    return [to_str_id(c) for c in get_documents("category", sort=[("name", 1)])]

@app.post("/shops/{shop_id}/products")
def create_product(shop_id: str, body: ProductBody, session: Session = Depends(seller_session)):
    owned_shop(shop_id, session)
    row = validate_product(body.model_dump())
    row["shop_id"] = shop_id
    pid = create_document("product", row)
    ensure_category(row["category"])
    return to_str_id(db["product"].find_one({"_id": ObjectId(pid)}))

@app.get("/shops/{shop_id}/products")
def list_shop_products(shop_id: str, limit: int = 50):
    return [to_str_id(p) for p in get_documents("product", {"shop_id": shop_id}, limit=limit,
                                                sort=[("created_at", -1)])]

@app.get("/products/{pid}")
def get_product(pid: str):
    prod = db["product"].find_one({"_id": oid(pid)})
    if not prod:
        raise HTTPException(404, "Product not found")
    return to_str_id(prod)

@app.put("/products/{pid}")
def update_product(pid: str, body: ProductBody, session: Session = Depends(seller_session)):
    owned_product(pid, session)
    row = validate_product(body.model_dump())
    try:
        update_documents("product", {"_id": oid(pid)}, row)
    except PyMongoError as e:
        logger.error("Error updating product %s: %s", pid, e)
        raise HTTPException(502, "Failed to update product. Please try again.")
    ensure_category(row["category"])
    return to_str_id(db["product"].find_one({"_id": oid(pid)}))

@app.delete("/products/{pid}")
def delete_product(pid: str, session: Session = Depends(seller_session)):
    owned_product(pid, session)
    delete_documents("product", {"_id": oid(pid)})
    return {"ok": True}

@app.post("/products/{pid}/reviews")
def add_review(pid: str, body: ReviewBody, session: Session = Depends(current_session)):
    prod = db["product"].find_one({"_id": oid(pid)})
    if not prod:
        raise HTTPException(404, "Product not found")
    rid = create_document("product_review", {
        "product_id": pid,
        "shop_id": prod["shop_id"],
        "buyer_id": session.user_id,
        "rating": body.rating,
        "comment": body.comment,
    })
    return {"review_id": rid}

@app.get("/products/{pid}/reviews")
def list_reviews(pid: str):
    return [to_str_id(r) for r in get_documents("product_review", {"product_id": pid}, sort=[("created_at", -1)])]

# ---------------------- Follows, Ratings & Favorites ----------------------

def existing_shop(shop_id: str) -> dict:
    shop = db["shop"].find_one({"_id": oid(shop_id)})
    if not shop:
        raise HTTPException(404, "Shop not found")
    return shop

@app.post("/shops/{shop_id}/follow")
def follow_shop(shop_id: str, session: Session = Depends(current_session)):
    existing_shop(shop_id)
    return {"following": True, "followers_count": engagement.follow_shop(session.user_id, shop_id)}

@app.delete("/shops/{shop_id}/follow")
def unfollow_shop(shop_id: str, session: Session = Depends(current_session)):
    existing_shop(shop_id)
    return {"following": False, "followers_count": engagement.unfollow_shop(session.user_id, shop_id)}

@app.get("/follows")
def list_follows(session: Session = Depends(current_session)):
    return {"shop_ids": engagement.followed_shop_ids(session.user_id)}

@app.post("/shops/{shop_id}/ratings")
def rate_shop(shop_id: str, body: RatingBody, session: Session = Depends(current_session)):
    return engagement.rate_shop(session.user_id, existing_shop(shop_id), body.rating, body.comment)

@app.get("/shops/{shop_id}/ratings")
def get_shop_ratings(shop_id: str):
    existing_shop(shop_id)
    return engagement.shop_rating_summary(shop_id)

@app.post("/products/{pid}/like")
def like_product(pid: str, session: Session = Depends(current_session)):
    if not db["product"].find_one({"_id": oid(pid)}):
        raise HTTPException(404, "Product not found")
    engagement.like_product(session.user_id, pid)
    return {"liked": True}

@app.delete("/products/{pid}/like")
def unlike_product(pid: str, session: Session = Depends(current_session)):
    engagement.unlike_product(session.user_id, pid)
    return {"liked": False}

@app.get("/favorites")
def list_favorites(session: Session = Depends(current_session)):
    return engagement.liked_products(session.user_id)

# ---------------------- Orders ----------------------

def release_stock(reserved):
    for product_id, qty in reserved:
        db["product"].update_one({"_id": product_id}, {"$inc": {"stock_quantity": qty}})

def place_shop_order(shop_id: str, lines: list, body: CheckoutBody, session: Session) -> dict:
    total = round(sum(price * qty for _, price, qty in lines), 2)
    lead_days = max([int(p.get("lead_time_days") or 0) for p, _, _ in lines if p.get("is_on_order")] or [0])
    order_id = create_document("order", {
        "shop_id": shop_id,
        "buyer_id": session.user_id,
        "status": OrderStatus.PENDING.value,
        "payment_status": "pending",
        "payment_method": body.payment_method,
        "total_amount": total,
        "shipping_address": body.shipping_address,
        "expected_delivery_date": now_utc() + timedelta(days=lead_days or 5),
        "delivery_date": None,
    })
    for prod, price, qty in lines:
        create_document("order_item", {
            "order_id": order_id,
            "product_id": str(prod["_id"]),
            "product_name": prod.get("name"),
            "price": price,
            "quantity": qty,
        })
    return {"order_id": order_id, "shop_id": shop_id, "status": OrderStatus.PENDING.value, "total_amount": total}

@app.post("/orders")
def create_order(body: CheckoutBody, session: Session = Depends(current_session)):
    """Checkout. The cart is split by shop and each shop gets its own order."""
    if not body.items:
        raise HTTPException(400, "Your cart is empty")
    by_shop: Dict[str, list] = {}
    for it in body.items:
        prod = db["product"].find_one({"_id": oid(it.product_id)})
        if not prod or (body.shop_id and prod.get("shop_id") != body.shop_id):
            raise HTTPException(400, "Product not found")
        if not prod.get("is_on_order") and int(prod.get("stock_quantity", 0)) < it.quantity:
            raise HTTPException(400, f"Insufficient stock for {prod.get('name')}")
        by_shop.setdefault(prod["shop_id"], []).append((prod, float(prod.get("price", 0)), it.quantity))
    for shop_id in by_shop:
        if not db["shop"].find_one({"_id": oid(shop_id)}):
            raise HTTPException(404, "Shop not found")

    # take stock only where enough is left at write time
    reserved = []
    for lines in by_shop.values():
        for prod, _, qty in lines:
            if prod.get("is_on_order"):
                continue
            res = db["product"].update_one({"_id": prod["_id"], "stock_quantity": {"$gte": qty}},
                                           {"$inc": {"stock_quantity": -qty}})
            if res.modified_count != 1:
                release_stock(reserved)
                raise HTTPException(400, f"Insufficient stock for {prod.get('name')}")
            reserved.append((prod["_id"], qty))

    orders = []
    try:
        for shop_id, lines in by_shop.items():
            orders.append(place_shop_order(shop_id, lines, body, session))
    except PyMongoError as e:
        logger.error("Checkout failed for %s: %s", session.user_id, e)
        release_stock(reserved)
        order_ids = [o["order_id"] for o in orders]
        if order_ids:
            delete_documents("order_item", {"order_id": {"$in": order_ids}})
            delete_documents("order", {"_id": {"$in": [ObjectId(i) for i in order_ids]}})
        raise HTTPException(502, "Failed to place order. Please try again.")
    return {"orders": orders, "total_amount": round(sum(o["total_amount"] for o in orders), 2)}

@app.get("/orders")
def list_orders(shop_id: Optional[str] = None, status: Optional[str] = None,
                session: Session = Depends(current_session)):
    if session.is_seller:
        shop_ids = my_shop_ids(session)
        if shop_id:
            if shop_id not in shop_ids:
                raise HTTPException(403, "You do not own this shop")
            shop_ids = [shop_id]
        filt: Dict[str, Any] = {"shop_id": {"$in": shop_ids}}
    else:
        filt = {"buyer_id": session.user_id}
    if status:
        filt["status"] = status
    orders = [to_str_id(o) for o in db["order"].find(filt).sort("created_at", -1)]
    if session.is_seller and orders:
        unread = {n["order_id"] for n in db["notification"].find(
            {"order_id": {"$in": [o["id"] for o in orders]}, "read": False}, {"order_id": 1})}
        for o in orders:
            o["is_read"] = o["id"] not in unread
    return orders

def load_order(order_id: str, session: Session) -> dict:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise HTTPException(404, f"Order #{order_id} not found")
    if order.get("buyer_id") != session.user_id and order.get("shop_id") not in my_shop_ids(session):
        raise HTTPException(404, f"Order #{order_id} not found")
    return order

@app.get("/orders/{order_id}")
def get_order(order_id: str, session: Session = Depends(current_session)):
    order = load_order(order_id, session)
    is_seller = order.get("shop_id") in my_shop_ids(session)
    if is_seller:
        try:
            update_documents("notification", {"order_id": order_id, "read": False}, {"read": True})
        except PyMongoError as e:
            logger.error("Error marking notification as read: %s", e)
    out = to_str_id(order)
    out["items"] = [to_str_id(i) for i in get_documents("order_item", {"order_id": order_id})]
    if is_seller:
        out["available_actions"] = [
            {"status": t.value, "label": ACTION_LABELS[t]} for t in allowed_transitions(order.get("status"))
        ]
    return out

@app.get("/orders/{order_id}/transitions")
def get_transitions(order_id: str, session: Session = Depends(seller_session)):
    order = load_order(order_id, session)
    return {
        "status": order.get("status"),
        "transitions": [{"status": t.value, "label": ACTION_LABELS[t]}
                        for t in allowed_transitions(order.get("status"))],
    }

@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, body: StatusBody, session: Session = Depends(seller_session)):
    order = load_order(order_id, session)
    if order.get("shop_id") not in my_shop_ids(session):
        raise HTTPException(403, "You do not own this shop")
    if not can_transition(order.get("status"), body.status):
        allowed = [t.value for t in allowed_transitions(order.get("status"))]
        raise HTTPException(409, f"Cannot move order from {order.get('status')} to {body.status}; "
                                 f"allowed: {', '.join(allowed) or 'none'}")
    update = status_update(OrderStatus(body.status.strip().lower()))
    if update["status"] == OrderStatus.DELIVERED.value:
        update["delivery_date"] = now_utc()
    try:
        update_documents("order", {"_id": order["_id"]}, update)
    except PyMongoError as e:
        logger.error("Error updating order status: %s", e)
        raise HTTPException(502, "Failed to update order status")
    logger.info("Order %s: %s -> %s", order_id, order.get("status"), update["status"])
    return to_str_id({**order, **update})

# ---------------------- Notifications ----------------------

@app.get("/notifications")
def list_notifications(session: Session = Depends(seller_session)):
    shop_ids = my_shop_ids(session)
    return [to_str_id(n) for n in db["notification"].find({"shop_id": {"$in": shop_ids}}).sort("created_at", -1)]

@app.patch("/notifications/{nid}/read")
def mark_notification_read(nid: str, session: Session = Depends(seller_session)):
    note = db["notification"].find_one({"_id": oid(nid)})
    if not note or note.get("shop_id") not in my_shop_ids(session):
        raise HTTPException(404, "Notification not found")
    update_documents("notification", {"_id": note["_id"], "read": False}, {"read": True})
    return {"ok": True}

@app.post("/notifications/read-all")
def mark_all_read(session: Session = Depends(seller_session)):
    n = update_documents("notification", {"shop_id": {"$in": my_shop_ids(session)}, "read": False}, {"read": True})
    return {"updated": n}

@app.get("/notifications/unread-count")
async def unread_count(session: Session = Depends(seller_session)):
    notifier = await notifiers.get(session.user_id)
    return {"unread_count": notifier.unread_count}

# ---------------------- Analytics ----------------------

@app.get("/analytics")
async def analytics(shop_id: str = "all", period: str = Query("all"),
                    session: Session = Depends(seller_session)):
    if period not in PERIODS:
        raise HTTPException(400, "Period must be week, month or all")
    shop_ids = await asyncio.to_thread(my_shop_ids, session)
    if shop_id != "all":
        if shop_id not in shop_ids:
            raise HTTPException(403, "You do not own this shop")
        shop_ids = [shop_id]
    if not shop_ids:
        report = aggregate([], [], [], [], period=period)
        report["failed_sources"] = []
        return report
    try:
        return await load_analytics(shop_ids, period=period)
    except AnalyticsUnavailable as e:
        raise HTTPException(503, f"Failed to load analytics: {e}")

# ---------------------- Messaging ----------------------

@app.get("/conversations")
def list_conversations(session: Session = Depends(current_session)):
    return messaging.list_conversations(session.user_id)

@app.post("/conversations")
def start_conversation(body: ConversationBody, session: Session = Depends(current_session)):
    return messaging.open_conversation(session.user_id, body.participant_id)

@app.get("/conversations/{cid}/messages")
def get_messages(cid: str, session: Session = Depends(current_session)):
    return {"messages": messaging.read_messages(cid, session.user_id)}

@app.post("/conversations/{cid}/messages")
def post_message(cid: str, body: MessageBody, session: Session = Depends(current_session)):
    return messaging.send_message(cid, session.user_id, body.content)

# ---------------------- Storage ----------------------

@app.post("/storage/{bucket}/{path:path}")
async def upload_object(bucket: str, path: str, request: Request, x_upsert: bool = Header(False),
                        session: Session = Depends(current_session)):
    data = await request.body()
    content_type = request.headers.get("content-type", "application/octet-stream")
    return await asyncio.to_thread(storage.upload, bucket, path, data, content_type, x_upsert)

@app.get("/storage/{bucket}/{path:path}")
def download_object(bucket: str, path: str):
    obj = storage.download(bucket, path)
    return Response(content=obj["data"], media_type=obj["content_type"])

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
