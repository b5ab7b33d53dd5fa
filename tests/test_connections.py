import asyncio
import threading

from tracker.connections import ConnectionRegistry


def test_register_and_unregister(fake_channel):
    registry = ConnectionRegistry()
    phone, laptop = fake_channel(), fake_channel()

    assert registry.register(1, phone)
    assert registry.register(1, laptop)
    assert registry.channels_for(1) == [phone, laptop]
    assert len(registry) == 2

    assert registry.unregister(phone) == 1
    assert registry.channels_for(1) == [laptop]
    # Removing again is a no-op
    assert registry.unregister(phone) is None
    assert registry.unregister(laptop) == 1
    assert registry.channels_for(1) == []
    assert len(registry) == 0


def test_channel_is_never_reassigned(fake_channel):
    registry = ConnectionRegistry()
    channel = fake_channel()

    assert registry.register(1, channel)
    assert registry.register(2, channel) is False
    assert registry.owner_of(channel) == 1
    assert registry.channels_for(2) == []
    # Re-registering for the same user does not duplicate it
    assert registry.register(1, channel)
    assert registry.channels_for(1) == [channel]


def test_send_reaches_every_channel_of_the_user_only(fake_channel):
    registry = ConnectionRegistry()
    mine, also_mine, theirs = fake_channel(), fake_channel(), fake_channel()
    registry.register(1, mine)
    registry.register(1, also_mine)
    registry.register(2, theirs)

    delivered = asyncio.run(registry.send(1, {"type": "notification", "payload": {"id": 1}}))

    assert delivered == 2
    assert mine.sent == also_mine.sent == [{"type": "notification", "payload": {"id": 1}}]
    assert theirs.sent == []


def test_send_without_channels_delivers_nothing():
    assert asyncio.run(ConnectionRegistry().send(5, {"type": "notification"})) == 0


def test_failed_channel_is_dropped_without_blocking_others(fake_channel):
    registry = ConnectionRegistry()
    broken, healthy = fake_channel(fail=True), fake_channel()
    registry.register(1, broken)
    registry.register(1, healthy)

    delivered = asyncio.run(registry.send(1, {"type": "notification"}))

    assert delivered == 1
    assert healthy.sent == [{"type": "notification"}]
    assert registry.channels_for(1) == [healthy]


def test_stuck_channel_times_out(fake_channel):
    registry = ConnectionRegistry(send_timeout=0.05)
    stuck, healthy = fake_channel(delay=5), fake_channel()
    registry.register(1, stuck)
    registry.register(1, healthy)

    delivered = asyncio.run(registry.send(1, {"type": "notification"}))

    assert delivered == 1
    assert registry.channels_for(1) == [healthy]


def test_authenticate_registers_before_loading_backlog(fake_channel):
    registry = ConnectionRegistry()
    channel = fake_channel()
    seen = []

    async def load_backlog():
        seen.append(registry.owner_of(channel))
        return [{"id": 1}, {"id": 2}]

    assert asyncio.run(registry.authenticate(7, channel, load_backlog))
    assert seen == [7]
    assert channel.sent == [{"type": "backlog", "payload": [{"id": 1}, {"id": 2}]}]


def test_authenticate_refuses_channel_owned_by_someone_else(fake_channel):
    registry = ConnectionRegistry()
    channel = fake_channel()
    registry.register(1, channel)

    async def load_backlog():
        return []

    assert asyncio.run(registry.authenticate(2, channel, load_backlog)) is False
    assert channel.sent == []


def test_concurrent_registration_keeps_every_channel(fake_channel):
    registry = ConnectionRegistry()
    channels = [fake_channel() for _ in range(200)]

    def register_all(chunk):
        for channel in chunk:
            registry.register(1, channel)

    threads = [threading.Thread(target=register_all, args=(channels[i::4],)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(registry.channels_for(1)) == 200

    threads = [
        threading.Thread(target=lambda chunk=channels[i::4]: [registry.unregister(c) for c in chunk])
        for i in range(4)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert registry.channels_for(1) == []
    assert len(registry) == 0


def test_dropped_channels_are_closed(fake_channel):
    registry = ConnectionRegistry(send_timeout=0.05)
    stuck, broken, healthy = fake_channel(delay=5), fake_channel(fail=True), fake_channel()
    for channel in (stuck, broken, healthy):
        registry.register(1, channel)

    assert asyncio.run(registry.send(1, {"type": "notification", "payload": {"id": 1}})) == 1
    assert asyncio.run(registry.send(1, {"type": "notification", "payload": {"id": 2}})) == 1

    assert stuck.close_code == broken.close_code == 1011
    assert not healthy.closed
    assert len(healthy.sent) == 2
    assert registry.channels_for(1) == [healthy]


def test_close_failure_does_not_propagate(fake_channel):
    class Unclosable(fake_channel):
        async def close(self, code=1000):
            raise RuntimeError("already gone")

    registry = ConnectionRegistry()
    channel = Unclosable(fail=True)
    registry.register(1, channel)

    assert asyncio.run(registry.send(1, {"type": "notification"})) == 0
    assert registry.channels_for(1) == []
