"""
Event bus for progress events.

Emission is an observability side channel: building the event, calling the
sink and writing the analysis log are all isolated so that nothing here
can raise into a phase.
"""

import logging
from typing import Any, Callable, List, Optional

from vizql_copilot.shared.contracts.events import OrchestratorEvent
from vizql_copilot.shared.logging.analysis_log import AnalysisLog


logger = logging.getLogger(__name__)

EventSink = Callable[[OrchestratorEvent], None]


class EventBus:
    """
    Collects the ordered events of one turn and forwards them to a sink.

    Args:
        sink: Optional consumer (SSE writer, test collector, ...)
        analysis_log: Optional per-session log that records every event
        session_id: Used only for log prefixes
    """

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        analysis_log: Optional[AnalysisLog] = None,
        session_id: str = "unknown",
    ):
        self._sink = sink
        self._analysis_log = analysis_log
        self._log = f"[session={session_id}] [events] "
        self.events: List[OrchestratorEvent] = []

    def emit(self, event_type: str, **detail: Any) -> Optional[OrchestratorEvent]:
        """
        Build and publish an event; returns it, or None if it was rejected.
        """
        try:
            event = OrchestratorEvent(type=event_type, detail=detail or None)
        except ValueError as e:
            logger.warning(f"{self._log}Rejected event '{event_type}': {e}")
            return None

        self.events.append(event)

        if self._sink is not None:
            try:
                self._sink(event)
            except Exception as e:
                logger.warning(f"{self._log}Event sink failed for '{event_type}': {e}")

        if self._analysis_log is not None:
            try:
                self._analysis_log.log_event(event.type, event.to_dict()["detail"])
            except Exception as e:
                logger.warning(f"{self._log}Analysis log failed for '{event_type}': {e}")

        logger.debug(f"{self._log}{event_type}")
        return event

    def types(self) -> List[str]:
        return [e.type for e in self.events]

    def count(self, event_type: str) -> int:
        return sum(1 for e in self.events if e.type == event_type)
