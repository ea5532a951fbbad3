"""
Seller analytics

`aggregate` turns raw orders, order items, products, reviews and seller
stats into the dashboard figures and chart series. It is a pure function
of its inputs and the reference date. `load_analytics` fetches those
inputs for a set of shops, tolerating partial failure.
"""
import asyncio
import logging
import math
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from database import get_documents, to_str_id
from order_status import StatusBucket, normalize_status
from retry import with_retry

logger = logging.getLogger(__name__)

MONTH_LABELS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
WEEKDAY_LABELS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
RATING_LABELS = ["1★", "2★", "3★", "4★", "5★"]

PERIODS = {"week": 7, "month": 30, "all": None}

STATUS_COLORS = [
    (StatusBucket.COMPLETED, "Completed", "#2ED573"),
    (StatusBucket.PENDING, "Pending", "#007AFF"),
    (StatusBucket.CANCELLED, "Cancelled", "#FF4757"),
    (StatusBucket.PROCESSING, "Processing", "#FFC107"),
]
PRODUCT_COLORS = ["#2ED573", "#007AFF", "#FF4757", "#FFC107", "#A367DC"]
CATEGORY_COLORS = ["#A367DC", "#38B2AC", "#ED8936", "#4C51BF", "#F56565"]
PLACEHOLDER_COLOR = "#E0E0E0"
TOP_N = 5


class AnalyticsUnavailable(Exception):
    """Every analytics source failed to load."""

    def __init__(self, errors: Dict[str, BaseException]):
        self.errors = errors
        super().__init__("; ".join(f"{k}: {v}" for k, v in errors.items()))


def as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def as_float(value: Any) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    return 0.0 if math.isnan(n) else n


def previous_month(year: int, month: int):
    if month == 1:
        return year - 1, 12
    return year, month - 1


def filter_by_period(orders: List[dict], period: str, today: datetime) -> List[dict]:
    days = PERIODS.get(period)
    if days is None:
        return list(orders)
    since = today - timedelta(days=days)
    out = []
    for o in orders:
        created = as_datetime(o.get("created_at"))
        if created is not None and created >= since:
            out.append(o)
    return out


def is_revenue_order(order: dict) -> bool:
    return (str(order.get("payment_status") or "").lower() == "paid"
            or normalize_status(order.get("status")) == StatusBucket.COMPLETED)


def status_counts(orders: Iterable[dict]) -> Dict[str, int]:
    counts = {b.value: 0 for b in StatusBucket}
    for o in orders:
        counts[normalize_status(o.get("status")).value] += 1
    return counts


def delivery_success_rate(orders: Iterable[dict]) -> float:
    completed = [o for o in orders if normalize_status(o.get("status")) == StatusBucket.COMPLETED]
    if not completed:
        return 0.0
    ok = 0
    for o in completed:
        delivered = as_datetime(o.get("delivery_date"))
        expected = as_datetime(o.get("expected_delivery_date"))
        if delivered is None or expected is None or delivered <= expected:
            ok += 1
    return ok / len(completed)


def monthly_growth(orders: Iterable[dict], today: datetime) -> float:
    """Percent change in order count, this calendar month vs the last."""
    cur = (today.year, today.month)
    prev = previous_month(*cur)
    counts = Counter()
    for o in orders:
        created = as_datetime(o.get("created_at"))
        if created is not None:
            counts[(created.year, created.month)] += 1
    current, last = counts[cur], counts[prev]
    if last == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - last) / last * 100, 2)


def rating_distribution(reviews: Iterable[dict]) -> List[int]:
    buckets = [0, 0, 0, 0, 0]
    for r in reviews:
        try:
            stars = math.floor(float(r.get("rating")))
        except (TypeError, ValueError, OverflowError):
            continue
        if 1 <= stars <= 5:
            buckets[stars - 1] += 1
    return buckets


def revenue_trend(orders: Iterable[dict], today: datetime, months: int = 6) -> Dict[str, list]:
    keys = []
    y, m = today.year, today.month
    for _ in range(months):
        keys.insert(0, (y, m))
        y, m = previous_month(y, m)
    totals = dict.fromkeys(keys, 0.0)
    for o in orders:
        if not is_revenue_order(o):
            continue
        created = as_datetime(o.get("created_at"))
        if created is None:
            continue
        key = (created.year, created.month)
        if key in totals:
            totals[key] += as_float(o.get("total_amount"))
    return {
        "labels": [MONTH_LABELS[m - 1] for _, m in keys],
        "data": [round(totals[k], 2) for k in keys],
    }


def customer_activity(orders: Iterable[dict]) -> Dict[str, list]:
    counts = [0] * 7
    for o in orders:
        created = as_datetime(o.get("created_at"))
        if created is not None:
            counts[created.weekday()] += 1
    return {"labels": list(WEEKDAY_LABELS), "data": counts}


def pie_series(entries: List[tuple], colors: List[str], placeholder: str) -> List[dict]:
    if not entries:
        return [{"name": placeholder, "population": 1, "color": PLACEHOLDER_COLOR}]
    return [
        {"name": name, "population": round(value, 2), "color": colors[i % len(colors)]}
        for i, (name, value) in enumerate(entries)
    ]


def sales_rankings(order_items: Iterable[dict], products: Iterable[dict],
                   categories: Optional[Iterable[dict]] = None):
    """Revenue per product and per category, highest first."""
    category_names = {str(c.get("id") or c.get("_id")): c.get("name") for c in (categories or [])}
    by_id = {str(p.get("id") or p.get("_id")): p for p in products}
    product_sales = defaultdict(float)
    category_sales = defaultdict(float)
    for item in order_items:
        product = by_id.get(str(item.get("product_id")))
        if product is None:
            continue
        amount = as_float(item.get("price")) * as_float(item.get("quantity"))
        pid = str(product.get("id") or product.get("_id"))
        product_sales[pid] += amount
        category = (product.get("category")
                    or category_names.get(str(product.get("category_id")))
                    or "Uncategorized")
        category_sales[category] += amount
    top_products = sorted(
        ((by_id[pid].get("name") or "Product", total) for pid, total in product_sales.items()),
        key=lambda e: e[1], reverse=True,
    )[:TOP_N]
    top_categories = sorted(category_sales.items(), key=lambda e: e[1], reverse=True)[:TOP_N]
    return top_products, top_categories


def aggregate(orders: List[dict], order_items: List[dict], products: List[dict], reviews: List[dict],
              stats: Optional[List[dict]] = None, categories: Optional[List[dict]] = None,
              period: str = "all", today: Optional[datetime] = None) -> Dict[str, Any]:
    today = today or datetime.now(timezone.utc)
    if today.tzinfo is None:
        today = today.replace(tzinfo=timezone.utc)
    orders = orders or []
    in_period = filter_by_period(orders, period, today)

    period_ids = {str(o.get("id") or o.get("_id")) for o in in_period}
    items = [i for i in (order_items or []) if str(i.get("order_id")) in period_ids]

    revenue_orders = [o for o in in_period if is_revenue_order(o)]
    total_revenue = round(sum(as_float(o.get("total_amount")) for o in revenue_orders), 2)
    customers = {o.get("buyer_id") for o in in_period if o.get("buyer_id")}
    counts = status_counts(in_period)

    status_entries = [(label, counts[bucket.value]) for bucket, label, _ in STATUS_COLORS
                      if counts[bucket.value] > 0]
    if status_entries:
        color_for = {label: color for _, label, color in STATUS_COLORS}
        order_status_chart = [{"name": label, "population": n, "color": color_for[label]}
                              for label, n in status_entries]
    else:
        order_status_chart = pie_series([], [], "No Orders")

    top_products, top_categories = sales_rankings(items, products or [], categories)
    ratings = rating_distribution(reviews or [])
    rated = sum(ratings)
    average_rating = round(sum((i + 1) * n for i, n in enumerate(ratings)) / rated, 2) if rated else 0.0

    return {
        "period": period,
        "total_revenue": total_revenue,
        "total_orders": len(in_period),
        "total_customers": len(customers),
        "average_order_value": round(total_revenue / len(revenue_orders), 2) if revenue_orders else 0.0,
        "completed": counts[StatusBucket.COMPLETED.value],
        "pending": counts[StatusBucket.PENDING.value],
        "processing": counts[StatusBucket.PROCESSING.value],
        "cancelled": counts[StatusBucket.CANCELLED.value],
        "status_counts": counts,
        "delivery_success_rate": round(delivery_success_rate(in_period), 4),
        "monthly_growth_rate": monthly_growth(orders, today),
        "order_status_chart": order_status_chart,
        "top_products_chart": pie_series(top_products, PRODUCT_COLORS, "No Sales"),
        "category_chart": pie_series(top_categories, CATEGORY_COLORS, "No Categories"),
        "rating_distribution": {"labels": list(RATING_LABELS), "data": ratings},
        "average_rating": average_rating,
        "revenue_trend": revenue_trend(orders, today),
        "customer_activity": customer_activity(in_period),
        "followers_count": sum(int(as_float(s.get("followers_count"))) for s in (stats or [])),
        "total_products": len(products or []),
    }


def _fetch(collection: str, shop_ids: List[str]):
    def run():
        return [to_str_id(d) for d in get_documents(collection, {"shop_id": {"$in": shop_ids}})]
    return run


async def load_analytics(shop_ids: List[str], period: str = "all", today: Optional[datetime] = None,
                         sleep=asyncio.sleep, fetchers: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fetch the analytics inputs for `shop_ids` concurrently and aggregate.

    A source that fails after retries counts as empty. If all four primary
    sources fail, `AnalyticsUnavailable` is raised instead of aggregating.
    """
    fetchers = fetchers or {
        "orders": _fetch("order", shop_ids),
        "stats": _fetch("seller_stats", shop_ids),
        "products": _fetch("product", shop_ids),
        "reviews": _fetch("product_review", shop_ids),
    }
    names = list(fetchers)
    results = await asyncio.gather(
        *(with_retry(fetchers[n], label=f"analytics {n}", sleep=sleep) for n in names),
        return_exceptions=True,
    )
    data, errors = {}, {}
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            logger.error("Error loading %s for analytics: %s", name, result)
            errors[name] = result
            data[name] = []
        else:
            data[name] = result
    if len(errors) == len(names):
        raise AnalyticsUnavailable(errors)

    order_ids = [o["id"] for o in data["orders"] if o.get("id")]
    order_items, categories = [], []
    if order_ids:
        try:
            order_items = await with_retry(
                lambda: get_documents("order_item", {"order_id": {"$in": order_ids}}),
                label="analytics order items", sleep=sleep)
        except Exception as e:
            logger.error("Error loading order items for analytics: %s", e)
    try:
        categories = [to_str_id(c) for c in await with_retry(
            lambda: get_documents("category"), label="analytics categories", sleep=sleep)]
    except Exception as e:
        logger.error("Error loading categories for analytics: %s", e)

    report = aggregate(data["orders"], order_items, data["products"], data["reviews"],
                       stats=data["stats"], categories=categories, period=period, today=today)
    report["failed_sources"] = sorted(errors)
    return report
