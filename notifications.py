"""
Seller notifications

A `SellerNotifier` follows the change feed for one seller. New orders for
the seller's shops create a notification row and bump an in-memory unread
counter; notifications flipping from unread to read bring it back down.
The counter is loaded once when the notifier is mounted and is not
re-synced afterwards.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from database import create_document, db
from realtime import ChangeEvent, ChangeFeed, feed as default_feed
from schemas import Notification

logger = logging.getLogger(__name__)


def owned_shop_ids(owner_id: str) -> List[str]:
    return [str(s["_id"]) for s in db["shop"].find({"owner_id": owner_id}, {"_id": 1})]


class SellerNotifier:
    def __init__(self, owner_id: str, change_feed: Optional[ChangeFeed] = None):
        self.owner_id = owner_id
        self.feed = change_feed or default_feed
        self.unread_count = 0
        self._subscriptions = []
        self._task: Optional[asyncio.Task] = None
        self.ready: Optional[asyncio.Task] = None

    def mount(self):
        shop_ids = owned_shop_ids(self.owner_id)
        if shop_ids:
            self.unread_count = db["notification"].count_documents(
                {"shop_id": {"$in": shop_ids}, "read": False})
        else:
            self.unread_count = 0
        return self.unread_count

    def handle_order_insert(self, order: dict) -> Optional[str]:
        """Notify the seller about a new order on one of their shops.

        Shop ownership is looked up at event time, so shops created after
        mounting are covered.
        """
        shop_id = str(order.get("shop_id"))
        if shop_id not in owned_shop_ids(self.owner_id):
            return None
        total = order.get("total_amount") or 0
        notification_id = create_document("notification", Notification(
            shop_id=shop_id,
            user_id=self.owner_id,
            order_id=order.get("id"),
            type="new_order",
            message=f"New order received (N${float(total):.2f})",
        ))
        self.unread_count += 1
        logger.info("New order %s for shop %s, %d unread", order.get("id"), shop_id, self.unread_count)
        return notification_id

    def handle_notification_update(self, record: dict, old_record: Optional[dict]):
        if not record or not old_record:
            return
        if old_record.get("read") or not record.get("read"):
            return
        if str(record.get("shop_id")) not in owned_shop_ids(self.owner_id):
            return
        self.unread_count = max(0, self.unread_count - 1)

    def dispatch(self, change: ChangeEvent):
        if change.table == "order" and change.event == "INSERT":
            self.handle_order_insert(change.record or {})
        elif change.table == "notification" and change.event == "UPDATE":
            self.handle_notification_update(change.record, change.old_record)

    async def _consume(self, subscription):
        async for change in subscription:
            try:
                await asyncio.to_thread(self.dispatch, change)
            except Exception as e:
                logger.error("Error handling %s %s event: %s", change.table, change.event, e)

    def start(self):
        """Subscribe to orders and notifications. Needs a running event loop."""
        orders = self.feed.subscribe("order", "INSERT")
        reads = self.feed.subscribe("notification", "UPDATE")
        self._subscriptions = [orders, reads]

        async def run():
            await asyncio.gather(self._consume(orders), self._consume(reads))

        self._task = asyncio.get_running_loop().create_task(run())

    @property
    def stale(self) -> bool:
        """True once the notifier can no longer receive events on the running loop."""
        if self.ready is not None and self.ready.get_loop() is not asyncio.get_running_loop():
            return True
        return any(sub.closed for sub in self._subscriptions)

    def stop(self):
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []
        for task in (self.ready, self._task):
            if task is None:
                continue
            try:
                task.cancel()
            except RuntimeError:
                # the loop that ran the task is already closed
                pass
        self.ready = None
        self._task = None


class NotifierRegistry:
    def __init__(self, change_feed: Optional[ChangeFeed] = None):
        self.feed = change_feed or default_feed
        self._notifiers: Dict[str, SellerNotifier] = {}

    async def _open(self, notifier: SellerNotifier):
        await asyncio.to_thread(notifier.mount)
        notifier.start()

    async def get(self, owner_id: str) -> SellerNotifier:
        """Return the seller's running notifier, mounting one on first use.

        Concurrent first calls share the same notifier and wait on the same
        mount.
        """
        notifier = self._notifiers.get(owner_id)
        if notifier is not None and notifier.stale:
            self.drop(owner_id)
            notifier = None
        if notifier is None:
            notifier = SellerNotifier(owner_id, self.feed)
            self._notifiers[owner_id] = notifier
            notifier.ready = asyncio.get_running_loop().create_task(self._open(notifier))
        try:
            await asyncio.shield(notifier.ready)
        except Exception:
            if self._notifiers.get(owner_id) is notifier:
                self.drop(owner_id)
            raise
        return notifier

    def drop(self, owner_id: str):
        notifier = self._notifiers.pop(owner_id, None)
        if notifier is not None:
            notifier.stop()

    def close_all(self):
        for owner_id in list(self._notifiers):
            self.drop(owner_id)

    def __len__(self):
        return len(self._notifiers)


registry = NotifierRegistry()
