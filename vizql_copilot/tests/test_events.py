"""
Tests for the event contract, the event bus and event narration.
"""

import pytest

from vizql_copilot.shared.contracts.events import MetadataDone, OrchestratorEvent
from vizql_copilot.shared.events import EventBus
from vizql_copilot.shared.messages import format_event_message


class TestOrchestratorEvent:
    """Tests for OrchestratorEvent validation."""

    def test_payload_validated(self):
        """A known type gets its typed payload."""
        event = OrchestratorEvent(type="metadata:done", detail={"count": 6, "source": "fetch"})
        assert isinstance(event.detail, MetadataDone)
        assert event.detail.duration_ms == 0

    def test_unknown_type_rejected(self):
        """Types outside the contract cannot be built."""
        with pytest.raises(ValueError):
            OrchestratorEvent(type="metadata:exploded", detail={})

    def test_wrong_payload_rejected(self):
        """Extra or mistyped payload keys are rejected."""
        with pytest.raises(ValueError):
            OrchestratorEvent(type="metadata:done", detail={"count": 6, "source": "fetch", "extra": 1})
        with pytest.raises(ValueError):
            OrchestratorEvent(type="metadata:done", detail={"count": 6, "source": "ftp"})

    def test_to_dict_drops_none(self):
        """Serialization omits unset optional values."""
        event = OrchestratorEvent(type="cancelled", detail={"phase": "fetch"})
        assert event.to_dict() == {"type": "cancelled", "detail": {"phase": "fetch"}}


class TestEventBus:
    """Tests for EventBus.emit."""

    def test_order_and_sink(self):
        """Events are recorded in order and forwarded to the sink."""
        seen = []
        bus = EventBus(sink=seen.append)

        bus.emit("triage:start", message="hi")
        bus.emit("triage:done", needs_data=True)

        assert bus.types() == ["triage:start", "triage:done"]
        assert [e.type for e in seen] == bus.types()

    def test_sink_failure_swallowed(self):
        """A failing sink never breaks emission."""

        def broken(_event):
            raise RuntimeError("socket closed")

        bus = EventBus(sink=broken)

        event = bus.emit("fetch:start", max_attempts=3)

        assert event is not None
        assert bus.count("fetch:start") == 1

    def test_invalid_event_dropped(self):
        """Invalid events return None and are not recorded."""
        bus = EventBus()

        assert bus.emit("nope:never") is None
        assert bus.emit("metadata:done", count="many", source="fetch") is None
        assert bus.events == []

    def test_analysis_log_failure_swallowed(self):
        """A failing analysis log never breaks emission."""

        class BrokenLog:
            def log_event(self, *_args):
                raise OSError("disk full")

        bus = EventBus(analysis_log=BrokenLog())

        assert bus.emit("cancelled", phase="fetch") is not None


class TestFormatEventMessage:
    """Tests for format_event_message."""

    def test_metadata_done(self):
        """metadata:done reports the count and the source."""
        event = OrchestratorEvent(type="metadata:done", detail={"count": 6, "source": "session"})
        assert format_event_message(event) == "Loaded 6 fields (session)"

    def test_final_has_no_narration(self):
        """The final reply is delivered separately."""
        event = OrchestratorEvent(type="final", detail={"reply": "done"})
        assert format_event_message(event) is None

    def test_unknown_locale_falls_back(self):
        """Unknown locales use English."""
        event = OrchestratorEvent(type="fetch:start", detail={"max_attempts": 3})
        assert format_event_message(event, locale="xx") == "Running the query..."
