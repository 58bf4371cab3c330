"""
Checkpoint Store

Read/modify/write of the single orchestration-state document kept at
.specify/orchestration-state.json inside a project.

Writes are atomic: content goes to a uniquely named temp file in the same
directory, is fsynced, and is renamed over the checkpoint. A crash before
the rename leaves the previous checkpoint intact.

Values are addressed by dotted keys (orchestration.step.current). set_value
returns a new document and only copies the containers along the key path;
every other branch is shared with the input.
"""

import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import NotFoundError, StateCorruptError, ValidationError
from .paths import ProjectPaths

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "3.0"

# Maximum string length accepted by parse_value (1 MiB)
MAX_JSON_PARSE_LENGTH = 1024 * 1024

MAX_KEY_LENGTH = 256
STATE_KEY_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$')


# ============================================================================
# Schema
# ============================================================================

class _Section(BaseModel):
    model_config = ConfigDict(extra="allow")


class ProjectInfo(_Section):
    id: str
    name: str
    path: str


class PhaseInfo(_Section):
    id: Optional[str] = None
    number: Optional[str] = None
    name: Optional[str] = None
    branch: Optional[str] = None
    status: str = "not_started"


class StepInfo(_Section):
    current: str = "design"
    index: int = 0
    status: str = "not_started"


class OrchestrationInfo(_Section):
    phase: PhaseInfo = Field(default_factory=PhaseInfo)
    next_phase: Optional[Any] = None
    step: StepInfo = Field(default_factory=StepInfo)
    implement: Optional[Any] = None


class HealthInfo(_Section):
    status: str = "initializing"
    last_check: Optional[str] = None
    issues: list = Field(default_factory=list)


class OrchestrationState(_Section):
    """Shape of the checkpoint document. Unknown keys are preserved."""
    schema_version: str
    project: ProjectInfo
    last_updated: Optional[str] = None
    orchestration: OrchestrationInfo = Field(default_factory=OrchestrationInfo)
    health: HealthInfo = Field(default_factory=HealthInfo)


def validate_state(data: Any) -> dict:
    """
    Validate checkpoint content against the schema.

    Returns:
        The input document unchanged

    Raises:
        StateCorruptError: If the content does not match the schema
    """
    if not isinstance(data, dict):
        raise StateCorruptError("Invalid state: document must be a JSON object")
    try:
        OrchestrationState.model_validate(data)
    except PydanticValidationError as e:
        issues = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise StateCorruptError(f"Invalid state: {', '.join(issues)}")
    return data


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_initial_state(project_name: str, project_path: str) -> dict:
    """Create a new initial checkpoint document."""
    now = _utc_now_iso()
    return {
        "schema_version": SCHEMA_VERSION,
        "project": {
            "id": str(uuid.uuid4()),
            "name": project_name,
            "path": str(project_path),
        },
        "last_updated": now,
        "orchestration": {
            "phase": {
                "id": None,
                "number": None,
                "name": None,
                "branch": None,
                "status": "not_started",
            },
            "next_phase": None,
            "step": {
                "current": "design",
                "index": 0,
                "status": "not_started",
            },
            "implement": None,
        },
        "health": {
            "status": "initializing",
            "last_check": now,
            "issues": [],
        },
    }


# ============================================================================
# Dotted-key access
# ============================================================================

def validate_state_key(key: str) -> str:
    """
    Check that a key is a dot-separated list of identifiers.

    Raises:
        ValidationError: On empty, oversized or malformed keys
    """
    if not key:
        raise ValidationError("Key cannot be empty")
    if len(key) > MAX_KEY_LENGTH:
        raise ValidationError(f"Key too long (max {MAX_KEY_LENGTH} characters)")
    if not STATE_KEY_PATTERN.match(key):
        raise ValidationError(
            "Key must be dot-separated identifiers (e.g., orchestration.step.current)"
        )
    return key


def get_value(state: dict, key: str) -> Any:
    """Get a nested value using dot notation. Missing paths give None."""
    current: Any = state
    for part in key.split('.'):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def set_value(state: dict, key: str, value: Any) -> dict:
    """
    Set a nested value using dot notation.

    Returns a new document. The input is never mutated; containers along the
    key path are shallow-copied and missing or null segments become new dicts.

    Raises:
        ValidationError: If a segment on the path holds a non-object value
    """
    parts = key.split('.')
    result = dict(state)
    current = result

    for i, part in enumerate(parts[:-1]):
        child = current.get(part)
        if child is None:
            child = {}
        elif isinstance(child, dict):
            child = dict(child)
        else:
            path = '.'.join(parts[:i + 1])
            raise ValidationError(f"Cannot set '{key}': '{path}' is not an object")
        current[part] = child
        current = child

    current[parts[-1]] = value
    return result


def parse_value(value_str: str) -> Any:
    """
    Parse a value string leniently: JSON first, raw string otherwise.

    Raises:
        ValidationError: If the input exceeds MAX_JSON_PARSE_LENGTH
    """
    if len(value_str) > MAX_JSON_PARSE_LENGTH:
        raise ValidationError(
            f"Value too long: {len(value_str)} chars exceeds max {MAX_JSON_PARSE_LENGTH}"
        )
    try:
        return json.loads(value_str)
    except ValueError:
        return value_str


def parse_assignment(keyvalue: str) -> tuple[str, Any]:
    """Split and validate a key=value assignment."""
    key, sep, value_str = keyvalue.partition('=')
    if not sep:
        raise ValidationError(
            "Invalid format. Expected key=value",
            hint="Use format: orchestration.step.current=implement",
        )
    return validate_state_key(key), parse_value(value_str)


# ============================================================================
# Store
# ============================================================================

def atomic_write_text(file_path: Path, content: str) -> None:
    """
    Write content to a temp file in the same directory, then rename it over
    file_path. The temp file is removed if anything fails before the rename.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = file_path.parent / f".tmp-{uuid.uuid4().hex}"
    try:
        with open(temp_path, 'w') as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, file_path)
    except BaseException:
        try:
            temp_path.unlink()
        except OSError:
            pass
        raise

    # Directory fsync makes the rename durable; best-effort only
    try:
        flags = os.O_RDONLY
        if hasattr(os, 'O_DIRECTORY'):
            flags |= os.O_DIRECTORY
        dir_fd = os.open(str(file_path.parent), flags)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError:
        pass


class CheckpointStore:
    """Reads and atomically writes a project's orchestration state."""

    def __init__(self, project_path: Path):
        self.paths = ProjectPaths(project_path)
        self.state_path = self.paths.state_file()

    def exists(self) -> bool:
        return self.state_path.exists()

    def read(self) -> dict:
        """
        Read and validate the checkpoint.

        Raises:
            NotFoundError: If no checkpoint file exists
            StateCorruptError: If the content is invalid JSON or fails the schema
        """
        if not self.state_path.exists():
            raise NotFoundError(
                "State file",
                hint='Run "specflow state init" to create a new project',
            )
        try:
            data = json.loads(self.state_path.read_text())
        except json.JSONDecodeError:
            raise StateCorruptError("State file contains invalid JSON")
        return validate_state(data)

    def write(self, state: dict) -> dict:
        """
        Stamp last_updated and atomically replace the checkpoint.

        Returns:
            The document as written
        """
        updated = {**state, "last_updated": _utc_now_iso()}
        atomic_write_text(self.state_path, json.dumps(updated, indent=2) + "\n")
        logger.debug(f"Wrote checkpoint {self.state_path}")
        return updated

    def get(self, key: str) -> Any:
        validate_state_key(key)
        return get_value(self.read(), key)

    def set(self, key: str, value: Any) -> dict:
        """Validate, read, update one key and write back."""
        validate_state_key(key)
        state = self.read()
        return self.write(set_value(state, key, value))

    def init(self, project_name: str) -> dict:
        """Create the checkpoint for a new project. Existing state is kept."""
        if self.exists():
            return self.read()
        return self.write(create_initial_state(project_name, str(self.paths.project_path)))
