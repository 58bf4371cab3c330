"""
Base interface for agent runners.

A runner turns one (skill, prior answers) pair into exactly one terminal
RunnerResult, reporting WorkflowEvents through a callback while it runs.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import ProcessFailureError
from ..events import QuestionOption


class RunnerError(ProcessFailureError):
    """Base error for runner failures"""
    pass


class WorkflowQuestion(BaseModel):
    """Question as reported in structured output (AskUserQuestion shape)."""
    model_config = ConfigDict(populate_by_name=True)

    question: str
    header: Optional[str] = None
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(False, alias="multiSelect")


class WorkflowArtifact(BaseModel):
    path: str
    action: Optional[Literal["created", "modified"]] = None


class WorkflowOutput(BaseModel):
    """Structured result the agent is constrained to produce."""
    status: Literal["completed", "needs_input", "error"]
    phase: Optional[str] = None
    message: Optional[str] = None
    questions: list[WorkflowQuestion] = Field(default_factory=list)
    artifacts: list[WorkflowArtifact] = Field(default_factory=list)


@dataclass
class RunnerOptions:
    """Options for one agent invocation."""
    cwd: Path
    skill: str
    phase: Optional[str] = None
    args: list[str] = field(default_factory=list)
    answers: dict[str, str] = field(default_factory=dict)


@dataclass
class RunnerResult:
    """Terminal result of one agent invocation."""
    exit_code: Optional[int]
    success: bool
    error: Optional[str] = None
    output: Optional[WorkflowOutput] = None
    session_id: Optional[str] = None
    events_emitted: int = 0
    cost_usd: Optional[float] = None
    pid: Optional[int] = None


class AgentRunner(ABC):
    """
    Interface for running the external agent.
    Implementations spawn the agent and return structured output.
    """

    def preflight(self, options: RunnerOptions) -> None:
        """
        Check everything that must hold before spawning.

        Raises:
            ConfigurationError: If the agent binary cannot be resolved
            NotFoundError: If the skill template does not exist
        """
        return None

    @abstractmethod
    def run(self, options: RunnerOptions) -> RunnerResult:
        """
        Run the agent to completion.

        Process failures are reported in the result, never raised; only
        preflight failures raise.
        """
        pass
