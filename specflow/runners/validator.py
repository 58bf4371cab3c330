"""Resolution of the agent CLI binary."""

import logging
import shutil
from dataclasses import dataclass
from typing import Optional

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

INSTALL_HINT = "Install Claude Code from https://claude.ai/code or set claude_binary in ~/.specflow/config.yaml"


@dataclass
class ClaudeValidationResult:
    available: bool
    path: Optional[str] = None
    error: Optional[str] = None


def validate_claude_cli(binary: str = "claude") -> ClaudeValidationResult:
    """Check that the Claude CLI resolves on PATH (or as an explicit path)."""
    path = shutil.which(binary)
    if not path:
        return ClaudeValidationResult(
            available=False,
            error=f"Claude CLI not found: {binary}",
        )
    return ClaudeValidationResult(available=True, path=path)


def assert_claude_cli_available(binary: str = "claude") -> str:
    """
    Resolve the Claude CLI or fail fast.

    Returns:
        Absolute path of the binary

    Raises:
        ConfigurationError: If the binary cannot be resolved
    """
    result = validate_claude_cli(binary)
    if not result.available:
        logger.error(result.error)
        raise ConfigurationError(result.error, hint=INSTALL_HINT)
    return result.path
