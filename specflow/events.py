"""
Workflow event model.

A WorkflowEvent is an immutable log record: a type tag, an ISO-8601
timestamp assigned at emission, and a payload whose shape is fixed by the
type. WorkflowEvent is a discriminated union over the eight event types so
handlers can branch on `event.type` and get a concretely typed `event.data`.

On the wire (JSON) payload keys use camelCase (multiSelect, exitCode,
eventsEmitted, claudeEventType), matching the files and dashboard consumers.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Callable, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


# Interactive question tool of the agent
QUESTION_TOOL = "AskUserQuestion"


class EventType(str, Enum):
    """Closed vocabulary of workflow event types."""
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETE = "phase_complete"
    ARTIFACT_CREATED = "artifact_created"
    TOOL_INVOKED = "tool_invoked"
    PROGRESS_UPDATE = "progress_update"
    QUESTION_QUEUED = "question_queued"
    ERROR = "error"
    COMPLETE = "complete"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class QuestionOption(BaseModel):
    """One selectable answer for a question."""
    model_config = ConfigDict(frozen=True)

    label: str
    description: str = ""


# ============================================================================
# Payloads
# ============================================================================

class PhaseStartedData(_Payload):
    phase: str
    skill: Optional[str] = None


class PhaseCompleteData(_Payload):
    phase: str


class ArtifactCreatedData(_Payload):
    path: str
    artifact: Optional[str] = None
    action: Optional[str] = None


class ToolInvokedData(_Payload):
    tool: str
    input: Optional[Any] = None


class ProgressUpdateData(_Payload):
    raw: Optional[str] = None
    claude_event_type: Optional[str] = Field(None, alias="claudeEventType")
    subtype: Optional[str] = None


class QuestionQueuedData(_Payload):
    id: str
    content: str
    header: Optional[str] = None
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(False, alias="multiSelect")


class ErrorData(_Payload):
    message: str
    source: str = "process"


class CompleteData(_Payload):
    exit_code: Optional[int] = Field(None, alias="exitCode")
    success: bool
    status: Optional[str] = None
    events_emitted: int = Field(0, alias="eventsEmitted")


# ============================================================================
# Events
# ============================================================================

class _Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=utc_now_iso)


class PhaseStartedEvent(_Event):
    type: Literal["phase_started"] = "phase_started"
    data: PhaseStartedData


class PhaseCompleteEvent(_Event):
    type: Literal["phase_complete"] = "phase_complete"
    data: PhaseCompleteData


class ArtifactCreatedEvent(_Event):
    type: Literal["artifact_created"] = "artifact_created"
    data: ArtifactCreatedData


class ToolInvokedEvent(_Event):
    type: Literal["tool_invoked"] = "tool_invoked"
    data: ToolInvokedData


class ProgressUpdateEvent(_Event):
    type: Literal["progress_update"] = "progress_update"
    data: ProgressUpdateData


class QuestionQueuedEvent(_Event):
    type: Literal["question_queued"] = "question_queued"
    data: QuestionQueuedData


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    data: ErrorData


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    data: CompleteData


WorkflowEvent = Annotated[
    Union[
        PhaseStartedEvent,
        PhaseCompleteEvent,
        ArtifactCreatedEvent,
        ToolInvokedEvent,
        ProgressUpdateEvent,
        QuestionQueuedEvent,
        ErrorEvent,
        CompleteEvent,
    ],
    Field(discriminator="type"),
]

WorkflowEventCallback = Callable[[WorkflowEvent], None]

_event_adapter: TypeAdapter = TypeAdapter(WorkflowEvent)


def make_event(event_type: Union[EventType, str], data: Union[dict, BaseModel]) -> WorkflowEvent:
    """
    Build an event stamped with the current time.

    Args:
        event_type: One of EventType
        data: Payload as a dict (snake_case or camelCase keys) or payload model
    """
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return _event_adapter.validate_python({
        "type": EventType(event_type).value,
        "timestamp": utc_now_iso(),
        "data": data,
    })


def parse_event(raw: dict) -> WorkflowEvent:
    """Validate a serialized event (e.g. read back from a log)."""
    return _event_adapter.validate_python(raw)


def event_to_dict(event: WorkflowEvent) -> dict:
    """Serialize an event with camelCase payload keys."""
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def is_question_event(event: WorkflowEvent) -> bool:
    return event.type == EventType.QUESTION_QUEUED


def extract_question_data(event: WorkflowEvent) -> Optional[QuestionQueuedData]:
    """Return the question payload of a question_queued event, else None."""
    if not is_question_event(event):
        return None
    return event.data


# ============================================================================
# Question ids
# ============================================================================

def question_id_for(header: Optional[str], index: int) -> str:
    """
    Derive a stable question id.

    The header is lowercased with whitespace runs replaced by underscores;
    without a header the id is positional (q1, q2, ...).
    """
    if header and header.strip():
        return re.sub(r'\s+', '_', header.strip().lower())
    return f"q{index + 1}"


def assign_question_ids(headers: Iterable[Optional[str]]) -> list[str]:
    """
    Derive ids for a batch of questions, keeping them unique.

    When two questions share a header the later one falls back to its
    positional id (suffixed further if that is also taken).
    """
    ids: list[str] = []
    used: set[str] = set()
    for index, header in enumerate(headers):
        candidate = question_id_for(header, index)
        if candidate in used:
            candidate = f"q{index + 1}"
            suffix = 2
            base = candidate
            while candidate in used:
                candidate = f"{base}_{suffix}"
                suffix += 1
        used.add(candidate)
        ids.append(candidate)
    return ids


def artifact_name(path: str) -> str:
    return path.rstrip('/').split('/')[-1]
