"""
Form validation for shop, product and verification submissions.

Each validator checks fields in the order the seller fills them in and
stops at the first problem with a 400 carrying a user-facing message.
Nothing is written when validation fails.
"""
import math
import re
from typing import Any, Dict, Optional

from fastapi import HTTPException

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_PRODUCT_IMAGES = 5

DELIVERY_FEES = [
    ("delivery_fee_local", "Local"),
    ("delivery_fee_uptown", "Uptown"),
    ("delivery_fee_outoftown", "Out of Town"),
    ("delivery_fee_countrywide", "Country-wide"),
]


def fail(message: str):
    raise HTTPException(status_code=400, detail=message)


def blank(value: Any) -> bool:
    return value is None or not str(value).strip()


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or blank(value):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(n) or math.isinf(n):
        return None
    return n


def to_whole(value: Any) -> Optional[int]:
    n = to_number(value)
    if n is None or n != int(n):
        return None
    return int(n)


def validate_shop(form: Dict[str, Any]) -> Dict[str, Any]:
    if blank(form.get("name")):
        fail("Shop name is required")
    if blank(form.get("description")):
        fail("Shop description is required")
    if blank(form.get("location")):
        fail("Shop location is required")
    if blank(form.get("phone_number")):
        fail("Contact phone number is required")
    if blank(form.get("email")):
        fail("Contact email is required")
    if not EMAIL_RE.match(str(form["email"]).strip()):
        fail("Please enter a valid email address")
    return {
        "name": form["name"].strip(),
        "description": form["description"].strip(),
        "location": form["location"].strip(),
        "phone_number": str(form["phone_number"]).strip(),
        "email": str(form["email"]).strip(),
        "logo_url": form.get("logo_url"),
        "banner_url": form.get("banner_url"),
    }


def validate_verification(form: Dict[str, Any]) -> Dict[str, Any]:
    if blank(form.get("national_id_url")):
        fail("National ID or passport is required")
    if blank(form.get("selfie_url")):
        fail("A selfie photo is required for verification")
    has_store = bool(form.get("has_physical_store"))
    if has_store and blank(form.get("physical_address")):
        fail("Physical store address is required")
    return {
        "national_id_url": form["national_id_url"],
        "selfie_url": form["selfie_url"],
        "business_type": form.get("business_type"),
        "has_physical_store": has_store,
        "physical_address": form["physical_address"].strip() if has_store else "",
        "additional_info": form.get("additional_info"),
    }


def validate_product(form: Dict[str, Any]) -> Dict[str, Any]:
    """Validate a product form and build the row to persist.

    On-order products are fulfilled within a lead time, so their stock is
    always stored as 0 whatever the form carried. Stocked products drop the
    on-order fields; products not on sale drop the sale fields.
    """
    if blank(form.get("name")):
        fail("Please enter a product name")
    if blank(form.get("description")):
        fail("Please enter a product description")
    price = to_number(form.get("price"))
    if price is None or price <= 0:
        fail("Please enter a valid price")
    category = form.get("custom_category") or form.get("category")
    if blank(category):
        fail("Please select or enter a category")

    is_on_order = bool(form.get("is_on_order"))
    is_on_sale = bool(form.get("is_on_sale"))

    stock = None
    if not is_on_order:
        stock = to_whole(form.get("stock_quantity"))
        if stock is None or stock < 0:
            fail("Please enter a valid stock quantity")

    lead_time = None
    fees = {}
    if is_on_order:
        lead_time = to_whole(form.get("lead_time_days"))
        if lead_time is None or lead_time <= 0:
            fail("Please enter a valid lead time in days")
        for field, label in DELIVERY_FEES:
            raw = form.get(field)
            if blank(raw):
                fees[field] = None
                continue
            fee = to_number(raw)
            if fee is None or fee < 0:
                fail(f"Please enter a valid delivery fee for {label}")
            fees[field] = fee
        raw = form.get("free_delivery_threshold")
        threshold = None
        if not blank(raw):
            threshold = to_number(raw)
            if threshold is None or threshold < 0:
                fail("Please enter a valid free delivery threshold")
        fees["free_delivery_threshold"] = threshold

    original_price = None
    discount = None
    if is_on_sale:
        original_price = to_number(form.get("original_price"))
        if original_price is None or original_price <= 0:
            fail("Please enter a valid original price")
        discount = to_number(form.get("discount_percentage"))
        if discount is None or discount <= 0 or discount >= 100:
            fail("Please enter a valid discount percentage (between 1-99)")
        if price >= original_price:
            fail("Sale price must be lower than the original price")

    images = [u for u in (form.get("images") or []) if not blank(u)]
    if not images:
        fail("Please add at least one product image")
    if len(images) > MAX_PRODUCT_IMAGES:
        fail(f"You can add up to {MAX_PRODUCT_IMAGES} images")

    row = {
        "name": form["name"].strip(),
        "description": form["description"].strip(),
        "price": price,
        "category": str(category).strip(),
        "stock_quantity": 0 if is_on_order else stock,
        "images": images,
        "is_on_order": is_on_order,
        "is_on_sale": is_on_sale,
        "lead_time_days": lead_time if is_on_order else None,
        "original_price": original_price,
        "discount_percentage": discount,
    }
    for field, _ in DELIVERY_FEES:
        row[field] = fees.get(field)
    row["free_delivery_threshold"] = fees.get("free_delivery_threshold")
    return row
