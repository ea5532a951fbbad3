import asyncio
import threading

import pytest

from realtime import ChangeFeed, parse_filter


def test_parse_filter():
    assert parse_filter("shop_id=eq.abc") == ("shop_id", "abc")
    assert parse_filter(None) is None
    with pytest.raises(ValueError):
        parse_filter("shop_id=gt.3")


def test_subscription_receives_matching_events_in_order():
    async def scenario():
        feed = ChangeFeed()
        sub = feed.subscribe("order", "INSERT", "shop_id=eq.s1")
        feed.publish("order", "INSERT", {"id": "1", "shop_id": "s1"})
        feed.publish("order", "INSERT", {"id": "2", "shop_id": "s2"})
        feed.publish("order", "UPDATE", {"id": "1", "shop_id": "s1"})
        feed.publish("product", "INSERT", {"id": "3", "shop_id": "s1"})
        feed.publish("order", "INSERT", {"id": "4", "shop_id": "s1"})
        first = await asyncio.wait_for(sub.__anext__(), 1)
        second = await asyncio.wait_for(sub.__anext__(), 1)
        sub.close()
        return [first.record["id"], second.record["id"]], feed.subscriber_count

    ids, remaining = asyncio.run(scenario())
    assert ids == ["1", "4"]
    assert remaining == 0


def test_events_published_from_worker_threads_are_delivered():
    async def scenario():
        feed = ChangeFeed()
        sub = feed.subscribe("notification", "*")
        worker = threading.Thread(target=feed.publish, args=("notification", "UPDATE", {"read": True}, {"read": False}))
        worker.start()
        change = await asyncio.wait_for(sub.__anext__(), 1)
        worker.join()
        return change

    change = asyncio.run(scenario())
    assert change.event == "UPDATE"
    assert change.old_record == {"read": False}


def test_closed_subscription_ends_iteration():
    async def scenario():
        feed = ChangeFeed()
        sub = feed.subscribe("order")
        sub.close()
        feed.publish("order", "INSERT", {"id": "1"})
        return [c async for c in sub]

    assert asyncio.run(scenario()) == []
