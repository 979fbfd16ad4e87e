from unittest.mock import patch

import pytest

from services.broadcaster import (
    LICENSE_UPDATED,
    ChangeBroadcaster,
    admin_channel,
    broadcast_channel,
    room_channel,
)


@pytest.mark.asyncio
async def test_publish_reaches_room_and_admin_channels(fake_redis):
    outcome = await ChangeBroadcaster().publish(LICENSE_UPDATED, {"code": "QL-1"}, room="user-1")

    assert outcome == {"event": LICENSE_UPDATED, "room_receivers": 1, "fallback_sent": False, "delivered": True}
    channels = [channel for channel, _ in fake_redis.published]
    assert channels == [room_channel("user-1"), admin_channel()]
    message = fake_redis.published[0][1]
    assert message["event"] == LICENSE_UPDATED
    assert message["user_id"] == "user-1"
    assert message["data"] == {"code": "QL-1"}
    assert "timestamp" in message


@pytest.mark.asyncio
async def test_publish_falls_back_to_broadcast_when_room_is_empty(fake_redis):
    fake_redis.receivers[room_channel("user-2")] = 0

    outcome = await ChangeBroadcaster().publish(LICENSE_UPDATED, {"code": "QL-2"}, room="user-2")

    assert outcome["fallback_sent"] is True
    assert [channel for channel, _ in fake_redis.published] == [
        room_channel("user-2"),
        admin_channel(),
        broadcast_channel(),
    ]
    fallback = fake_redis.published[-1][1]
    assert fallback["_broadcast"] is True
    assert fallback["user_id"] == "user-2"


@pytest.mark.asyncio
async def test_fallback_can_be_disabled(fake_redis):
    fake_redis.receivers[room_channel("user-3")] = 0

    outcome = await ChangeBroadcaster().publish(LICENSE_UPDATED, {}, room="user-3", fallback=False)

    assert outcome["fallback_sent"] is False
    assert broadcast_channel() not in [channel for channel, _ in fake_redis.published]


@pytest.mark.asyncio
async def test_publish_failures_are_swallowed(fake_redis):
    fake_redis.fail = True

    outcome = await ChangeBroadcaster().publish(LICENSE_UPDATED, {}, room="user-4")

    assert outcome["delivered"] is False
    assert fake_redis.published == []


@pytest.mark.asyncio
async def test_unknown_event_and_disabled_realtime_publish_nothing(fake_redis):
    broadcaster = ChangeBroadcaster()

    assert (await broadcaster.publish("license-created", {}, room="user-5"))["delivered"] is False
    with patch("services.broadcaster.settings.REALTIME_ENABLED", False):
        assert (await broadcaster.publish(LICENSE_UPDATED, {}, room="user-5"))["delivered"] is False
    assert fake_redis.published == []
