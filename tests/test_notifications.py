import asyncio

from database import create_document, update_documents
from notifications import NotifierRegistry, SellerNotifier
from realtime import ChangeFeed


def make_shop(db, owner_id, name="Shop"):
    return str(db["shop"].insert_one({"owner_id": owner_id, "name": name}).inserted_id)


def test_mount_loads_unread_count_once(db):
    shop_id = make_shop(db, "seller-1")
    db["notification"].insert_many([
        {"shop_id": shop_id, "read": False},
        {"shop_id": shop_id, "read": False},
        {"shop_id": shop_id, "read": True},
        {"shop_id": "someone-else", "read": False},
    ])
    notifier = SellerNotifier("seller-1", ChangeFeed())
    assert notifier.mount() == 2


def test_order_insert_for_owned_shop_creates_notification(db):
    shop_id = make_shop(db, "seller-1")
    notifier = SellerNotifier("seller-1", ChangeFeed())
    nid = notifier.handle_order_insert({"id": "order-1", "shop_id": shop_id, "total_amount": 99.5})
    assert nid is not None
    assert notifier.unread_count == 1
    note = db["notification"].find_one({"order_id": "order-1"})
    assert note["shop_id"] == shop_id
    assert note["read"] is False
    assert note["type"] == "new_order"


def test_order_insert_for_foreign_shop_is_ignored(db):
    make_shop(db, "seller-1")
    other = make_shop(db, "seller-2")
    notifier = SellerNotifier("seller-1", ChangeFeed())
    assert notifier.handle_order_insert({"id": "order-1", "shop_id": other}) is None
    assert notifier.unread_count == 0
    assert db["notification"].count_documents({}) == 0


def test_shop_ownership_is_checked_at_event_time(db):
    notifier = SellerNotifier("seller-1", ChangeFeed())
    notifier.mount()
    shop_id = make_shop(db, "seller-1", "Opened later")
    notifier.handle_order_insert({"id": "order-1", "shop_id": shop_id})
    assert notifier.unread_count == 1


def test_read_transition_decrements_and_floors_at_zero(db):
    shop_id = make_shop(db, "seller-1")
    notifier = SellerNotifier("seller-1", ChangeFeed())
    notifier.unread_count = 1
    unread = {"shop_id": shop_id, "read": False}
    read = {"shop_id": shop_id, "read": True}
    notifier.handle_notification_update(read, unread)
    assert notifier.unread_count == 0
    notifier.handle_notification_update(read, unread)
    assert notifier.unread_count == 0
    notifier.unread_count = 3
    notifier.handle_notification_update(read, read)
    notifier.handle_notification_update(unread, read)
    notifier.handle_notification_update({"shop_id": "elsewhere", "read": True}, {"shop_id": "elsewhere", "read": False})
    assert notifier.unread_count == 3


def test_notifier_follows_the_change_feed(db, monkeypatch):
    feed = ChangeFeed()
    monkeypatch.setattr("database.feed", feed)
    shop_id = make_shop(db, "seller-1")

    async def scenario():
        notifier = SellerNotifier("seller-1", feed)
        notifier.mount()
        notifier.start()
        await asyncio.to_thread(create_document, "order", {"shop_id": shop_id, "buyer_id": "b", "total_amount": 10})
        for _ in range(100):
            if notifier.unread_count == 1:
                break
            await asyncio.sleep(0.01)
        after_insert = notifier.unread_count
        await asyncio.to_thread(update_documents, "notification", {"shop_id": shop_id}, {"read": True})
        for _ in range(100):
            if notifier.unread_count == 0:
                break
            await asyncio.sleep(0.01)
        notifier.stop()
        return after_insert, notifier.unread_count

    assert asyncio.run(scenario()) == (1, 0)
    assert db["notification"].count_documents({"shop_id": shop_id}) == 1


def test_concurrent_first_use_shares_one_notifier(db, monkeypatch):
    feed = ChangeFeed()
    monkeypatch.setattr("database.feed", feed)
    shop_id = make_shop(db, "seller-1")
    registry = NotifierRegistry(feed)

    async def scenario():
        first, second = await asyncio.gather(registry.get("seller-1"), registry.get("seller-1"))
        subscribed = feed.subscriber_count
        await asyncio.to_thread(create_document, "order", {"shop_id": shop_id, "buyer_id": "b", "total_amount": 5})
        for _ in range(100):
            if first.unread_count == 1:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        registry.close_all()
        return first is second, subscribed, feed.subscriber_count

    assert asyncio.run(scenario()) == (True, 2, 0)
    assert db["notification"].count_documents({"shop_id": shop_id}) == 1


def test_notifier_from_a_finished_loop_is_replaced(db):
    feed = ChangeFeed()
    registry = NotifierRegistry(feed)
    first = asyncio.run(registry.get("seller-1"))
    second = asyncio.run(registry.get("seller-1"))
    assert first is not second
    assert len(registry) == 1
    registry.close_all()
    assert feed.subscriber_count == 0
