"""
Tests for NotificationHub fan-out
"""
import pytest

from app.domain.services.notification_hub import NotificationHub, SessionEvent


class TestNotificationHub:
    @pytest.mark.unit
    async def test_publish_without_subscribers(self):
        hub = NotificationHub()
        assert hub.publish("s1", SessionEvent.READY) == 0

    @pytest.mark.unit
    async def test_rooms_are_isolated(self):
        hub = NotificationHub()
        async with hub.subscribe("s1") as q1, hub.subscribe("s2") as q2:
            assert hub.publish("s1", SessionEvent.QR, {"dataUrl": "x"}) == 1

            assert q1.qsize() == 1
            assert q2.empty()

    @pytest.mark.unit
    async def test_every_subscriber_receives(self):
        hub = NotificationHub()
        async with hub.subscribe("s1") as a, hub.subscribe("s1") as b:
            assert hub.publish("s1", SessionEvent.READY) == 2
            assert (await a.get()).event == SessionEvent.READY
            assert (await b.get()).event == SessionEvent.READY

    @pytest.mark.unit
    async def test_full_queue_drops_oldest(self):
        hub = NotificationHub(queue_size=2)
        async with hub.subscribe("s1") as queue:
            for i in range(3):
                hub.publish("s1", SessionEvent.MESSAGE_SENT, {"n": i})

            received = [queue.get_nowait().payload["n"] for _ in range(queue.qsize())]

        assert received == [1, 2]

    @pytest.mark.unit
    async def test_unsubscribe_on_exit(self):
        hub = NotificationHub()
        async with hub.subscribe("s1"):
            assert hub.subscriber_count("s1") == 1

        assert hub.subscriber_count("s1") == 0
        assert hub.publish("s1", SessionEvent.READY) == 0

    @pytest.mark.unit
    async def test_wire_format(self):
        hub = NotificationHub()
        async with hub.subscribe("s1") as queue:
            hub.publish("s1", SessionEvent.AUTH_FAILURE, {"message": "qrReadFail"})
            data = (await queue.get()).to_dict()

        assert data["sessionId"] == "s1"
        assert data["event"] == "authFailure"
        assert data["data"] == {"message": "qrReadFail"}
        assert isinstance(data["ts"], float)

    @pytest.mark.unit
    async def test_payload_is_copied(self):
        hub = NotificationHub()
        payload = {"text": "hi"}
        async with hub.subscribe("s1") as queue:
            hub.publish("s1", SessionEvent.MESSAGE_SENT, payload)
            payload["text"] = "changed"

            assert (await queue.get()).payload == {"text": "hi"}
