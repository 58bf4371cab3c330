"""
SpecFlow - project workflow orchestration core

Drives an external coding-agent CLI through a question/answer protocol:
spawns the agent, turns its output into WorkflowEvents, queues the questions
it asks, resumes it with answers, and tracks whether its process is alive.
"""

__version__ = "0.4.0"

from .config import SpecflowConfig
from .errors import (
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    ProcessFailureError,
    QuestionAlreadyAnsweredError,
    SpecflowError,
    StateCorruptError,
    ValidationError,
)
from .events import EventType, WorkflowEvent, make_event
from .checkpoint import CheckpointStore, get_value, set_value
from .question_queue import Question, QuestionQueueStore, QuestionStatus
from .event_parser import StreamEventParser
from .process_health import HealthStatus, ProcessHealthResult, check_process_health
from .workflow_service import (
    ExecutionStore,
    KillResult,
    WorkflowExecution,
    WorkflowService,
    WorkflowStatus,
)

__all__ = [
    "SpecflowConfig",
    "SpecflowError",
    "NotFoundError",
    "ValidationError",
    "StateCorruptError",
    "InvalidStateError",
    "QuestionAlreadyAnsweredError",
    "ProcessFailureError",
    "ConfigurationError",
    "EventType",
    "WorkflowEvent",
    "make_event",
    "CheckpointStore",
    "get_value",
    "set_value",
    "Question",
    "QuestionQueueStore",
    "QuestionStatus",
    "StreamEventParser",
    "HealthStatus",
    "ProcessHealthResult",
    "check_process_health",
    "ExecutionStore",
    "KillResult",
    "WorkflowExecution",
    "WorkflowService",
    "WorkflowStatus",
]
