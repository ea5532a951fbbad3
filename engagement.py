"""
Shop follows, shop ratings and product likes (the buyer's favorites).

Following a shop keeps `seller_stats.followers_count` in step, which is
what the analytics report sums for the seller.
"""
import logging
from typing import Dict, List, Optional

from bson import ObjectId
from fastapi import HTTPException

from database import create_document, db, delete_documents, now_utc, to_str_id
from schemas import ProductLike, ShopFollow, ShopRating

logger = logging.getLogger(__name__)


def _adjust_followers(shop_id: str, delta: int):
    db["seller_stats"].update_one(
        {"shop_id": shop_id},
        {"$inc": {"followers_count": delta}, "$set": {"updated_at": now_utc()},
         "$setOnInsert": {"total_products": 0, "created_at": now_utc()}},
        upsert=True,
    )
    if delta < 0:
        db["seller_stats"].update_one({"shop_id": shop_id, "followers_count": {"$lt": 0}},
                                      {"$set": {"followers_count": 0}})


def followers_count(shop_id: str) -> int:
    stats = db["seller_stats"].find_one({"shop_id": shop_id}, {"followers_count": 1})
    return int(stats.get("followers_count", 0)) if stats else 0


def follow_shop(user_id: str, shop_id: str) -> int:
    if db["shop_follow"].find_one({"shop_id": shop_id, "user_id": user_id}):
        raise HTTPException(409, "You already follow this shop")
    create_document("shop_follow", ShopFollow(shop_id=shop_id, user_id=user_id))
    _adjust_followers(shop_id, 1)
    return followers_count(shop_id)


def unfollow_shop(user_id: str, shop_id: str) -> int:
    if not delete_documents("shop_follow", {"shop_id": shop_id, "user_id": user_id}):
        raise HTTPException(404, "You do not follow this shop")
    _adjust_followers(shop_id, -1)
    return followers_count(shop_id)


def followed_shop_ids(user_id: str) -> List[str]:
    return [f["shop_id"] for f in db["shop_follow"].find({"user_id": user_id}, {"shop_id": 1})]


def rate_shop(user_id: str, shop: dict, rating: int, comment: Optional[str] = None) -> dict:
    """One rating per buyer and shop; rating again replaces the earlier one."""
    shop_id = str(shop["_id"])
    if shop.get("owner_id") == user_id:
        raise HTTPException(400, "You cannot rate your own shop")
    row = ShopRating(shop_id=shop_id, user_id=user_id, rating=rating,
                     comment=(comment or "").strip() or None).model_dump()
    db["shop_rating"].update_one(
        {"shop_id": shop_id, "user_id": user_id},
        {"$set": {**row, "updated_at": now_utc()}, "$setOnInsert": {"created_at": now_utc()}},
        upsert=True,
    )
    return shop_rating_summary(shop_id)


def shop_rating_summary(shop_id: str) -> Dict:
    ratings = [to_str_id(r) for r in db["shop_rating"].find({"shop_id": shop_id}).sort("updated_at", -1)]
    count = len(ratings)
    average = round(sum(r["rating"] for r in ratings) / count, 2) if count else 0.0
    return {"shop_id": shop_id, "average_rating": average, "rating_count": count, "ratings": ratings}


def like_product(user_id: str, product_id: str):
    if not db["product_like"].find_one({"product_id": product_id, "user_id": user_id}):
        create_document("product_like", ProductLike(product_id=product_id, user_id=user_id))


def unlike_product(user_id: str, product_id: str):
    delete_documents("product_like", {"product_id": product_id, "user_id": user_id})


def liked_products(user_id: str) -> List[dict]:
    """Liked products, newest like first. Likes of deleted products are skipped."""
    likes = list(db["product_like"].find({"user_id": user_id}).sort("created_at", -1))
    oids = [ObjectId(like["product_id"]) for like in likes if ObjectId.is_valid(like["product_id"])]
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": oids}})} if oids else {}
    shop_ids = list({p["shop_id"] for p in products.values() if ObjectId.is_valid(p.get("shop_id", ""))})
    shop_names = {str(s["_id"]): s.get("name") for s in
                  db["shop"].find({"_id": {"$in": [ObjectId(s) for s in shop_ids]}}, {"name": 1})}
    out = []
    for like in likes:
        product = products.get(like["product_id"])
        if product is None:
            continue
        d = to_str_id(product)
        d["shop"] = {"id": d["shop_id"], "name": shop_names.get(d["shop_id"])}
        out.append(d)
    return out


def purge_user(user_id: str, shop_ids: List[str]):
    """Drop follows, ratings and likes made by a user or aimed at the user's shops."""
    for shop_id in followed_shop_ids(user_id):
        if shop_id not in shop_ids:
            _adjust_followers(shop_id, -1)
    delete_documents("shop_follow", {"user_id": user_id})
    delete_documents("shop_rating", {"user_id": user_id})
    delete_documents("product_like", {"user_id": user_id})
    if shop_ids:
        purge_shops(shop_ids)


def purge_shops(shop_ids: List[str]):
    product_ids = [str(p["_id"]) for p in db["product"].find({"shop_id": {"$in": shop_ids}}, {"_id": 1})]
    delete_documents("shop_follow", {"shop_id": {"$in": shop_ids}})
    delete_documents("shop_rating", {"shop_id": {"$in": shop_ids}})
    if product_ids:
        delete_documents("product_like", {"product_id": {"$in": product_ids}})
    logger.debug("Cleared follows, ratings and likes for %d shops", len(shop_ids))
