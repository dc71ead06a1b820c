import asyncio

from conftest import RecordingListener

from scholaris.core.enums import EventType
from scholaris.core.interfaces import NotificationListener
from scholaris.services import ConnectionRegistry, NotificationEmitter


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(message)


class ExplodingListener(NotificationListener):
    def on_notification(self, event_type, payload, recipient):
        raise RuntimeError("boom")


async def _drain():
    await asyncio.sleep(0.01)


def test_registry_binds_and_unregisters():
    registry = ConnectionRegistry()
    registry.register("c1", object())
    registry.bind("c1", "u1")

    assert registry.connection_for("u1") == "c1"
    assert registry.user_for("c1") == "u1"
    assert registry.unregister("c1") == "u1"
    assert registry.connection_for("u1") is None
    assert len(registry) == 0


def test_registry_rebinding_replaces_previous_connection():
    registry = ConnectionRegistry()
    registry.register("old", object())
    registry.register("new", object())
    registry.bind("old", "u1")
    registry.bind("new", "u1")

    assert registry.connection_for("u1") == "new"
    assert registry.user_for("old") is None
    # Dropping the stale connection leaves the live binding alone.
    assert registry.unregister("old") is None
    assert registry.connection_for("u1") == "new"


def test_registry_unregister_unknown_connection():
    registry = ConnectionRegistry()
    assert registry.unregister("missing") is None


def test_listener_failure_is_isolated():
    emitter = NotificationEmitter(ConnectionRegistry())
    recorder = RecordingListener()
    emitter.add_listener(ExplodingListener())
    emitter.add_listener(recorder)

    emitter.publish(EventType.FEE_PAID, {"feeId": "f1"}, recipient="u1")

    assert recorder.events == [("fee_paid", {"feeId": "f1"}, "u1")]
    assert emitter.get_statistics()['published'] == 1


def test_recipient_scoped_delivery():
    registry = ConnectionRegistry()
    emitter = NotificationEmitter(registry)
    alice, bob = FakeSocket(), FakeSocket()

    async def scenario():
        registry.register("c1", alice)
        registry.register("c2", bob)
        registry.bind("c1", "alice")
        registry.bind("c2", "bob")
        emitter.publish(EventType.GRADE_UPDATED, {"gradeId": "g1"}, recipient="alice")
        emitter.publish(EventType.GRADE_UPDATED, {"gradeId": "g2"}, recipient="nobody")
        emitter.publish(EventType.LOW_STOCK_ALERT, {"itemId": "i1"})
        await _drain()

    asyncio.run(scenario())

    assert alice.sent == [
        {"type": "grade_updated", "payload": {"gradeId": "g1"}, "recipient": "alice"},
        {"type": "low_stock_alert", "payload": {"itemId": "i1"}},
    ]
    assert bob.sent == [{"type": "low_stock_alert", "payload": {"itemId": "i1"}}]


def test_fallback_broadcast_when_recipient_offline():
    registry = ConnectionRegistry()
    emitter = NotificationEmitter(registry)
    socket = FakeSocket()

    async def scenario():
        registry.register("c1", socket)
        emitter.publish(EventType.NOTIFICATION, {"text": "hi"}, recipient="offline", fallback_broadcast=True)
        await _drain()

    asyncio.run(scenario())
    assert socket.sent[0]["payload"] == {"text": "hi"}


def test_failed_delivery_drops_connection():
    registry = ConnectionRegistry()
    emitter = NotificationEmitter(registry)

    async def scenario():
        registry.register("dead", FakeSocket(fail=True))
        registry.bind("dead", "u1")
        emitter.publish(EventType.ATTENDANCE_UPDATED, {"studentId": "s1"})
        await _drain()

    asyncio.run(scenario())

    assert len(registry) == 0
    assert registry.connection_for("u1") is None
    assert emitter.get_statistics()['failed_deliveries'] == 1


def test_publish_without_event_loop_does_not_raise():
    registry = ConnectionRegistry()
    emitter = NotificationEmitter(registry)
    socket = FakeSocket()
    registry.register("c1", socket)

    emitter.publish(EventType.ATTENDANCE_UPDATED, {"studentId": "s1"})

    assert socket.sent == []
    assert emitter.get_statistics()['pending_deliveries'] == 0
