"""
Agent runners - spawn the external coding agent and report its progress.
"""

from .base import (
    AgentRunner,
    RunnerError,
    RunnerOptions,
    RunnerResult,
    WorkflowArtifact,
    WorkflowOutput,
    WorkflowQuestion,
)
from .claude_code import ClaudeRunner, ClaudeStreamRunner
from .skills import SkillLoader
from .validator import assert_claude_cli_available, validate_claude_cli

__all__ = [
    "AgentRunner",
    "RunnerError",
    "RunnerOptions",
    "RunnerResult",
    "WorkflowArtifact",
    "WorkflowOutput",
    "WorkflowQuestion",
    "ClaudeRunner",
    "ClaudeStreamRunner",
    "SkillLoader",
    "assert_claude_cli_available",
    "validate_claude_cli",
]
