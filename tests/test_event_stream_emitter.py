from __future__ import annotations

import json
import logging
import threading

import pytest

from dealflow.streaming.emitter import EventStreamEmitter


def test_send_after_close_is_logged_noop(caplog) -> None:
    emitter = EventStreamEmitter()
    emitter.send("status", {"message": "start", "progress_percent": 0})
    emitter.close()

    with caplog.at_level(logging.WARNING):
        accepted = emitter.send("delta", {"text": "late"})

    assert accepted is False
    assert emitter.sends_after_close == 1
    assert "after stream close" in caplog.text
    events = list(emitter.iter_events())
    assert [event.event_type for event in events] == ["status"]


def test_close_is_idempotent() -> None:
    emitter = EventStreamEmitter()
    emitter.close()
    emitter.close()

    assert emitter.closed is True
    assert list(emitter.iter_events()) == []


def test_only_one_terminal_event_is_accepted() -> None:
    emitter = EventStreamEmitter()

    assert emitter.send("done", {"success": True}) is True
    assert emitter.send("error", {"message": "late failure"}) is False
    emitter.close()

    events = list(emitter.iter_events())
    assert [event.event_type for event in events] == ["done"]


def test_unknown_event_type_is_rejected() -> None:
    emitter = EventStreamEmitter()

    with pytest.raises(ValueError):
        emitter.send("progress", {})  # type: ignore[arg-type]


def test_full_buffer_evicts_oldest_non_terminal_event_without_blocking() -> None:
    emitter = EventStreamEmitter(max_buffered_events=3)
    for index in range(5):
        assert emitter.send("delta", {"text": str(index)}) is True
    emitter.send("done", {"success": True})
    emitter.close()

    events = list(emitter.iter_events())

    assert [event.payload.get("text") for event in events[:-1]] == ["3", "4"]
    assert events[-1].event_type == "done"
    assert emitter.dropped_count == 3


def test_disconnected_reader_never_blocks_sender() -> None:
    emitter = EventStreamEmitter(max_buffered_events=2)
    emitter.send("status", {"message": "a"})
    emitter.disconnect()

    for index in range(100):
        assert emitter.send("delta", {"text": str(index)}) is False
    emitter.send("done", {"success": True})
    emitter.close()

    assert emitter.terminal_sent is True
    assert emitter.sends_after_close == 0
    assert list(emitter.iter_events()) == []


def test_iter_sse_formats_named_events() -> None:
    emitter = EventStreamEmitter()
    emitter.send("status", {"message": "Initializing", "progress_percent": 0})
    emitter.send("done", {"success": True, "result": {"primary_text": "memo"}})
    emitter.close()

    chunks = list(emitter.iter_sse())

    assert chunks[0].startswith("event: status\ndata: ")
    assert chunks[0].endswith("\n\n")
    payload = json.loads(chunks[1].split("data: ", 1)[1])
    assert payload == {"success": True, "result": {"primary_text": "memo"}}


def test_reader_receives_events_sent_from_another_thread() -> None:
    emitter = EventStreamEmitter()

    def _produce() -> None:
        for index in range(10):
            emitter.send("delta", {"text": str(index)})
        emitter.send("done", {"success": True})
        emitter.close()

    producer = threading.Thread(target=_produce)
    producer.start()
    events = list(emitter.iter_events(poll_timeout_seconds=0.05))
    producer.join(timeout=5)

    assert len(events) == 11
    assert events[-1].event_type == "done"
