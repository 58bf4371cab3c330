"""
Error taxonomy for the orchestration core.

Storage-layer functions raise these directly. The workflow service converts
process-layer failures into execution state instead of letting them escape,
except for ConfigurationError which is raised before anything is spawned.
"""

from typing import Optional


class SpecflowError(Exception):
    """Base exception for orchestration errors"""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.hint = hint

    def __str__(self) -> str:
        return self.message


class NotFoundError(SpecflowError):
    """A checkpoint, execution, skill or registry entry does not exist"""

    def __init__(self, resource: str, hint: Optional[str] = None):
        super().__init__(f"{resource} not found", hint)
        self.resource = resource


class ValidationError(SpecflowError):
    """Input rejected before any mutation was attempted"""
    pass


class StateCorruptError(ValidationError):
    """Checkpoint content is not valid JSON or does not match the schema"""
    pass


class InvalidStateError(SpecflowError):
    """Operation conflicts with the current state of its target"""
    pass


class QuestionAlreadyAnsweredError(InvalidStateError):
    """A question in answered status cannot be answered again"""

    def __init__(self, question_id: str):
        super().__init__(f"Question {question_id} already answered")
        self.question_id = question_id


class ProcessFailureError(SpecflowError):
    """The agent process could not be run or produced no usable result"""
    pass


class ConfigurationError(ProcessFailureError):
    """Environment or configuration is unusable (e.g. agent binary missing)"""
    pass
