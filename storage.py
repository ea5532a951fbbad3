"""
Object storage for shop logos, banners, product images and verification
documents. Objects live in the `storage_object` collection keyed by
bucket and path.
"""
import os
import logging

from bson import Binary
from fastapi import HTTPException

from database import db, now_utc

logger = logging.getLogger(__name__)

PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
BUCKETS = {"shop-images", "product-images", "verification-documents", "avatars"}


def clean_path(path: str) -> str:
    parts = [p for p in path.strip("/").split("/") if p]
    if not parts or any(p in (".", "..") for p in parts):
        raise HTTPException(400, "Invalid storage path")
    return "/".join(parts)


def public_url(bucket: str, path: str) -> str:
    return f"{PUBLIC_BASE_URL}/storage/{bucket}/{clean_path(path)}"


def upload(bucket: str, path: str, data: bytes, content_type: str = "application/octet-stream",
           upsert: bool = False) -> dict:
    if bucket not in BUCKETS:
        raise HTTPException(404, "Bucket not found")
    path = clean_path(path)
    if not data:
        raise HTTPException(400, "Empty upload")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(413, f"File too large (max {MAX_UPLOAD_BYTES // (1024 * 1024)} MB)")
    key = {"bucket": bucket, "path": path}
    existing = db["storage_object"].find_one(key, {"_id": 1})
    if existing and not upsert:
        raise HTTPException(409, "The resource already exists")
    db["storage_object"].update_one(
        key,
        {"$set": {
            "content_type": content_type,
            "size": len(data),
            "data": Binary(data),
            "updated_at": now_utc(),
        }, "$setOnInsert": {"created_at": now_utc()}},
        upsert=True,
    )
    logger.info("Stored %s/%s (%d bytes)", bucket, path, len(data))
    return {"bucket": bucket, "path": path, "size": len(data), "public_url": public_url(bucket, path)}


def download(bucket: str, path: str) -> dict:
    obj = db["storage_object"].find_one({"bucket": bucket, "path": clean_path(path)})
    if not obj:
        raise HTTPException(404, "Object not found")
    return {"content_type": obj.get("content_type", "application/octet-stream"), "data": bytes(obj["data"])}
