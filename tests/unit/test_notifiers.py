"""Notifier tests."""

import pytest

from collabflow.contracts import Notification, NotificationType
from collabflow.notifications import get_notifier
from collabflow.notifications.inmemory import InMemoryNotifier


@pytest.mark.asyncio
async def test_inmemory_notifier_records_per_user():
    notifier = InMemoryNotifier()

    sent = await notifier.notify(
        "u1",
        "New Approval Request: Budget",
        "alice has requested your approval for: Budget",
        NotificationType.APPROVAL_REQUEST,
        {"approvalId": "a1"},
    )
    await notifier.notify("u2", "Hello", "World")

    assert notifier.for_user("u1") == [sent]
    assert sent.metadata == {"approvalId": "a1"}
    assert [n.user_id for n in notifier.sent] == ["u1", "u2"]
    assert notifier.for_user("nobody") == []
    assert [n.user_id for n in notifier.of_type(NotificationType.WORKFLOW)] == ["u2"]


def test_notification_json_round_trip():
    notification = Notification(
        user_id="u1",
        title="Approval Delegated: Budget",
        message="An approval request has been delegated to you: Budget",
        type=NotificationType.APPROVAL_DELEGATION,
        metadata={"delegatedFrom": "u0", "reason": None},
    )
    assert Notification.from_json(notification.to_json()) == notification


def test_unknown_notifier_backend():
    with pytest.raises(ValueError):
        get_notifier("carrier-pigeon")


@pytest.mark.asyncio
async def test_redis_notifier_pushes_json():
    """Exercise the Redis sink when a server is reachable."""
    from collabflow.notifications.redis import RedisNotifier

    notifier = RedisNotifier(prefix="collabflow-test:notifications")
    assert notifier.host == "localhost"
    assert notifier.port == 6379
    try:
        await notifier.connect()
    except Exception:
        pytest.skip("Redis server not available")

    try:
        await notifier._redis.delete(notifier._key("u1"))
        sent = await notifier.notify("u1", "Approval Request Approved", "done")
        pending = await notifier.pending("u1")
        assert [n.id for n in pending] == [sent.id]
    finally:
        await notifier._redis.delete(notifier._key("u1"))
        await notifier.disconnect()
