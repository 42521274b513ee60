"""Tests for change notification."""

from cardrefinery.events import ChangeNotifier


def test_listeners_receive_events_until_unsubscribed():
    notifier = ChangeNotifier()
    seen = []
    unsubscribe = notifier.subscribe(seen.append)

    event = notifier.emit("session_saved", session_id="s1", data={"created": True})
    assert seen == [event]
    assert event.type == "session_saved"
    assert event.data == {"created": True}

    unsubscribe()
    unsubscribe()
    notifier.emit("session_deleted", session_id="s1")
    assert len(seen) == 1


def test_failing_listener_does_not_block_others(caplog):
    notifier = ChangeNotifier()
    seen = []

    def broken(event):
        raise RuntimeError("listener bug")

    notifier.subscribe(broken)
    notifier.subscribe(seen.append)
    notifier.emit("stage_completed", session_id="s1", stage="score")

    assert [e.stage for e in seen] == ["score"]
    assert "Change listener failed" in caplog.text
