"""Tests for the notification side channel."""

import logging

from querysync import (
    CollectingSink,
    LoggingSink,
    Notification,
    NotificationKind,
    NotificationSink,
    Notifier,
)


class TestNotifier:
    def test_emit_builds_notification(self) -> None:
        """Test emit delivers a Notification to the sink."""
        sink = CollectingSink()
        Notifier(sink).emit("error", "upstream down", title="Could not load items")

        assert sink.notifications == [
            Notification(
                NotificationKind.ERROR, "Could not load items", "upstream down"
            )
        ]

    def test_default_title(self) -> None:
        """Test a title is derived from the kind."""
        sink = CollectingSink()
        Notifier(sink).emit(NotificationKind.SUCCESS, "saved")
        assert sink.notifications[0].title == "Success"

    def test_failing_sink_never_raises(self) -> None:
        """A sink that raises does not reach the caller."""
        class BrokenSink:
            def emit(self, notification: Notification) -> None:
                raise RuntimeError("ui gone")

        Notifier(BrokenSink()).emit("error", "message")

    def test_unknown_kind_never_raises(self) -> None:
        """Test an unknown kind is logged, not raised."""
        sink = CollectingSink()
        Notifier(sink).emit("shout", "message")
        assert sink.notifications == []

    def test_default_sink_logs(self, caplog) -> None:
        """Test the default sink writes to the log."""
        with caplog.at_level(logging.INFO, logger="querysync.notifications"):
            Notifier().emit("warning", "slow network")
        assert "slow network" in caplog.text


class TestSinks:
    def test_sinks_satisfy_protocol(self) -> None:
        """Test bundled sinks implement NotificationSink."""
        assert isinstance(CollectingSink(), NotificationSink)
        assert isinstance(LoggingSink(), NotificationSink)

    def test_collecting_sink_is_bounded(self) -> None:
        """Test only the newest notifications are kept."""
        sink = CollectingSink(max_items=2)
        notifier = Notifier(sink)
        for message in ("a", "b", "c"):
            notifier.emit("info", message)
        assert [n.message for n in sink.notifications] == ["b", "c"]

    def test_drain(self) -> None:
        """Test drain returns and empties the buffer."""
        sink = CollectingSink()
        Notifier(sink).emit("info", "a")
        assert len(sink.drain()) == 1
        assert sink.notifications == []
