"""
Streaming Event Parser

Incrementally converts the line-delimited JSON stream of a streaming agent
run (--output-format stream-json) into WorkflowEvents.

Chunks need not align with line boundaries: complete lines are parsed as
they arrive and the trailing fragment is held until the next chunk. Call
flush() at end of stream or the final record may be lost.

Mapping per record (one record may yield several events):
- assistant tool_use blocks -> tool_invoked, plus question_queued per
  question for the question tool, plus artifact_created for write/edit tools
- result.permission_denials for the question tool -> same as a tool call
  (a denied question still counts as a question)
- legacy top-level tool_name/tool_input -> same as a tool call
- assistant text blocks and top-level string content -> phase transitions
- anything else with a top-level type -> progress_update
- lines that are not JSON objects -> progress_update carrying the raw text
"""

import json
import logging
import re
from typing import Any, Iterable, Optional

from pydantic import ValidationError as PydanticValidationError

from .events import (
    QUESTION_TOOL,
    EventType,
    WorkflowEvent,
    WorkflowEventCallback,
    artifact_name,
    assign_question_ids,
    make_event,
)

logger = logging.getLogger(__name__)

DEFAULT_PHASES = ("discover", "specify", "plan", "tasks", "checklists")

# Tools whose input names a file they create or change
FILE_WRITE_TOOLS = {
    "Write": "file_path",
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "NotebookEdit": "notebook_path",
}

_PendingEvent = tuple[EventType, dict]


def compile_phase_pattern(phases: Iterable[str]) -> re.Pattern:
    names = "|".join(re.escape(p) for p in phases)
    return re.compile(rf'(?:starting|proceeding to|beginning)\s+({names})\b', re.IGNORECASE)


class StreamEventParser:
    """
    Stateful parser for one stream.

    Cross-line state: the partial-line buffer, the tracked phase, the
    session id and the last result record seen.
    """

    def __init__(
        self,
        handler: WorkflowEventCallback,
        known_phases: Iterable[str] = DEFAULT_PHASES,
    ):
        self._handler = handler
        self._buffer = ""
        self._phase_pattern = compile_phase_pattern(known_phases)
        self._current_phase: Optional[str] = None
        self._events_emitted = 0
        self.session_id: Optional[str] = None
        self.result_record: Optional[dict] = None
        self.questions_emitted = 0

    @property
    def events_emitted(self) -> int:
        return self._events_emitted

    @property
    def current_phase(self) -> Optional[str]:
        return self._current_phase

    def process_chunk(self, chunk: str) -> None:
        """Feed a chunk of stdout; complete lines are parsed immediately."""
        self._buffer += chunk
        lines = self._buffer.split('\n')
        self._buffer = lines.pop()

        for line in lines:
            if line.strip():
                self._parse_line(line)

    def flush(self) -> None:
        """Parse whatever remains in the buffer."""
        if self._buffer.strip():
            line, self._buffer = self._buffer, ""
            self._parse_line(line)
        else:
            self._buffer = ""

    # ------------------------------------------------------------------

    def _parse_line(self, line: str) -> None:
        try:
            data = json.loads(line)
        except ValueError:
            self._emit(EventType.PROGRESS_UPDATE, {"raw": line})
            return

        if not isinstance(data, dict):
            self._emit(EventType.PROGRESS_UPDATE, {"raw": line})
            return

        phase_before = self._current_phase
        try:
            events = [make_event(t, d) for t, d in self._map_record(data)]
        except (PydanticValidationError, TypeError, AttributeError) as e:
            logger.warning(f"Unmappable stream record, reporting raw: {e}")
            self._current_phase = phase_before
            self._emit(EventType.PROGRESS_UPDATE, {"raw": line})
            return

        self._track_session(data)
        for event in events:
            self._dispatch(event)

    def _track_session(self, data: dict) -> None:
        session_id = data.get("session_id")
        if isinstance(session_id, str) and session_id:
            self.session_id = session_id
        if data.get("type") == "result":
            self.result_record = data

    def _map_record(self, data: dict) -> list[_PendingEvent]:
        events: list[_PendingEvent] = []
        record_type = data.get("type")

        message = data.get("message")
        if record_type == "assistant" and isinstance(message, dict):
            content = message.get("content")
            if isinstance(content, list):
                for block in content:
                    if not isinstance(block, dict):
                        continue
                    if block.get("type") == "tool_use":
                        events.extend(self._process_tool_call(block.get("name"), block.get("input")))
                    elif block.get("type") == "text" and isinstance(block.get("text"), str):
                        events.extend(self._process_text(block["text"]))

        denials = data.get("permission_denials")
        if record_type == "result" and isinstance(denials, list):
            for denial in denials:
                if isinstance(denial, dict) and denial.get("tool_name") == QUESTION_TOOL:
                    events.extend(self._process_tool_call(denial["tool_name"], denial.get("tool_input")))

        # Legacy flat format
        if data.get("tool_name"):
            events.extend(self._process_tool_call(data["tool_name"], data.get("tool_input")))

        content = data.get("content")
        if isinstance(content, str):
            events.extend(self._process_text(content))

        if not events and record_type:
            events.append((EventType.PROGRESS_UPDATE, {
                "claudeEventType": record_type,
                "subtype": data.get("subtype"),
            }))

        return events

    def _process_tool_call(self, tool_name: Any, tool_input: Any) -> list[_PendingEvent]:
        if not isinstance(tool_name, str) or not tool_name:
            return []

        events: list[_PendingEvent] = [
            (EventType.TOOL_INVOKED, {"tool": tool_name, "input": tool_input}),
        ]

        if tool_name == QUESTION_TOOL and isinstance(tool_input, dict):
            questions = tool_input.get("questions")
            if isinstance(questions, list):
                questions = [q for q in questions if isinstance(q, dict)]
                ids = assign_question_ids(q.get("header") for q in questions)
                for question_id, q in zip(ids, questions):
                    events.append((EventType.QUESTION_QUEUED, {
                        "id": question_id,
                        "content": q.get("question", ""),
                        "header": q.get("header"),
                        "options": q.get("options") or [],
                        "multiSelect": bool(q.get("multiSelect", False)),
                    }))

        path_key = FILE_WRITE_TOOLS.get(tool_name)
        if path_key and isinstance(tool_input, dict):
            path = tool_input.get(path_key)
            if isinstance(path, str) and path:
                events.append((EventType.ARTIFACT_CREATED, {
                    "artifact": artifact_name(path),
                    "path": path,
                }))

        return events

    def _process_text(self, text: str) -> list[_PendingEvent]:
        match = self._phase_pattern.search(text)
        if not match:
            return []

        phase = match.group(1).lower()
        if phase == self._current_phase:
            return []

        events: list[_PendingEvent] = []
        if self._current_phase is not None:
            events.append((EventType.PHASE_COMPLETE, {"phase": self._current_phase}))
        self._current_phase = phase
        events.append((EventType.PHASE_STARTED, {"phase": phase}))
        return events

    def _emit(self, event_type: EventType, data: dict) -> None:
        self._dispatch(make_event(event_type, data))

    def _dispatch(self, event: WorkflowEvent) -> None:
        self._events_emitted += 1
        if event.type == EventType.QUESTION_QUEUED:
            self.questions_emitted += 1
        logger.debug(f"emit: {event.type}")
        self._handler(event)
