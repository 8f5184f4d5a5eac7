"""Tests for the in-process event bus."""

import logging

import pytest

from termsession.events import EVENT_TYPES, EventBus


class TestEventBus:
    """Tests for EventBus subscription and delivery."""

    def test_delivers_to_matching_subscribers_in_order(self):
        bus = EventBus()
        seen = []
        bus.subscribe("window:created", lambda e: seen.append(("first", e.data["window_id"])))
        bus.subscribe("window:created", lambda e: seen.append(("second", e.data["window_id"])))
        bus.subscribe("window:merged", lambda e: seen.append(("merged", None)))

        bus.emit("window:created", window_id="tw-1")

        assert seen == [("first", "tw-1"), ("second", "tw-1")]

    def test_subscribe_all_sees_every_event(self):
        bus = EventBus()
        seen = []
        bus.subscribe_all(lambda e: seen.append(e.type))

        bus.emit("session:created", session_id="s1")
        bus.emit("window:split", window_id="tw-1")

        assert seen == ["session:created", "window:split"]

    def test_unknown_event_type_rejected(self):
        with pytest.raises(ValueError):
            EventBus().subscribe("session:exploded", lambda e: None)

    def test_cancel_stops_delivery(self):
        bus = EventBus()
        seen = []
        sub = bus.subscribe("session:inactive", seen.append)

        sub.cancel()
        sub.cancel()
        bus.emit("session:inactive", session_id="s1")

        assert seen == []
        assert bus.subscriber_count() == 0

    def test_cancel_during_emit_skips_later_handler(self):
        bus = EventBus()
        seen = []
        later = None

        def cancel_later(event):
            seen.append("first")
            later.cancel()

        bus.subscribe("window:merged", cancel_later)
        later = bus.subscribe("window:merged", lambda e: seen.append("second"))

        bus.emit("window:merged", window_id="tw-1")

        assert seen == ["first"]
        assert bus.subscriber_count("window:merged") == 1

    def test_subscription_as_context_manager(self):
        bus = EventBus()
        seen = []

        with bus.subscribe("session:recovered", seen.append):
            bus.emit("session:recovered", session_id="s1")
        bus.emit("session:recovered", session_id="s2")

        assert [e.data["session_id"] for e in seen] == ["s1"]

    def test_failing_handler_does_not_block_others(self, caplog):
        bus = EventBus()
        seen = []

        def explode(event):
            raise RuntimeError("handler bug")

        bus.subscribe("window:overlap", explode)
        bus.subscribe("window:overlap", seen.append)

        with caplog.at_level(logging.ERROR, logger="termsession"):
            bus.emit("window:overlap", window_id="tw-1")

        assert len(seen) == 1
        assert "Event handler failed" in caplog.text

    def test_subscriber_count_and_clear(self):
        bus = EventBus()
        bus.subscribe("window:created", lambda e: None)
        bus.subscribe_all(lambda e: None)

        assert bus.subscriber_count("window:created") == 2
        assert bus.subscriber_count("window:merged") == 1

        bus.clear()

        assert bus.subscriber_count() == 0

    def test_event_types_cover_session_and_window_events(self):
        assert "session:recovery:warning" in EVENT_TYPES
        assert "window:split:auto" in EVENT_TYPES
