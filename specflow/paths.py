"""Path resolution for project-scoped orchestration files

Directory structure inside a project:
    .specify/
    ├── orchestration-state.json   # Checkpoint document
    └── questions.json             # Question queue
    .specflow/
    └── workflows/
        └── <execution-id>/
            ├── process.pid        # {"bashPid": ..., "claudePid": ...}
            ├── run-workflow.sh    # Detached-mode driver script
            └── workflow-output.json

Session logs are written by the agent itself under
<claude_home>/projects/<encoded project path>/<session-id>.jsonl
"""

import re
from pathlib import Path
from typing import Optional

from .config import SpecflowConfig

STATE_FILE = Path(".specify") / "orchestration-state.json"
QUESTION_QUEUE_FILE = Path(".specify") / "questions.json"
WORKFLOWS_DIR = Path(".specflow") / "workflows"

PID_FILENAME = "process.pid"
SCRIPT_FILENAME = "run-workflow.sh"
OUTPUT_FILENAME = "workflow-output.json"

EXECUTION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class ProjectPaths:
    """Centralized path resolution for one project directory"""

    def __init__(self, project_path: Path):
        self.project_path = Path(project_path).resolve()

    def state_file(self) -> Path:
        return self.project_path / STATE_FILE

    def question_queue_file(self) -> Path:
        return self.project_path / QUESTION_QUEUE_FILE

    def workflows_dir(self) -> Path:
        return self.project_path / WORKFLOWS_DIR

    def run_dir(self, execution_id: str) -> Path:
        """Get the per-run directory for an execution.

        Raises:
            ValueError: If the id would escape the workflows directory
        """
        return self.workflows_dir() / validate_execution_id(execution_id)

    def pid_file(self, execution_id: str) -> Path:
        return self.run_dir(execution_id) / PID_FILENAME

    def output_file(self, execution_id: str) -> Path:
        return self.run_dir(execution_id) / OUTPUT_FILENAME


def validate_execution_id(execution_id: str) -> str:
    """Reject ids that could escape a workflows directory.

    Raises:
        ValueError: If the id contains anything but letters, digits, - and _
    """
    if not execution_id or not EXECUTION_ID_PATTERN.match(execution_id):
        raise ValueError(f"Invalid execution id: {execution_id!r}")
    return execution_id


def encode_project_path(project_path: Path) -> str:
    """Encode a project path the way the agent names its session directories."""
    return re.sub(r'[/.]', '-', str(Path(project_path).resolve()))


def session_log_dir(config: SpecflowConfig, project_path: Path) -> Path:
    return config.claude_home / "projects" / encode_project_path(project_path)


def session_log_file(
    config: SpecflowConfig,
    project_path: Path,
    session_id: Optional[str],
) -> Optional[Path]:
    """Get the session log path, or None when no session id is known yet."""
    if not session_id:
        return None
    return session_log_dir(config, project_path) / f"{session_id}.jsonl"
