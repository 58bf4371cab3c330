"""
Project registry at ~/.specflow/registry.json.

Maps a project id to its filesystem path so that operations addressed by
project id (kill, cancel by session) can find the project's files.

    {"projects": {"<id>": {"path": "...", "name": "...", "registered_at": "..."}}}
"""

import json
import logging
from pathlib import Path
from typing import Optional

from filelock import FileLock
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .checkpoint import atomic_write_text
from .config import SpecflowConfig
from .errors import NotFoundError
from .events import utc_now_iso

logger = logging.getLogger(__name__)


class ProjectEntry(BaseModel):
    path: str
    name: Optional[str] = None
    registered_at: str = Field(default_factory=utc_now_iso)
    last_seen: Optional[str] = None


class Registry(BaseModel):
    projects: dict[str, ProjectEntry] = Field(default_factory=dict)


class ProjectRegistry:
    """Read-mostly lookup of project id -> path."""

    def __init__(self, config: SpecflowConfig):
        self.registry_file = config.registry_file
        self._lock = FileLock(str(self.registry_file) + ".lock")

    def _load(self) -> Registry:
        if not self.registry_file.exists():
            return Registry()
        try:
            return Registry.model_validate(json.loads(self.registry_file.read_text()))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            logger.warning(f"Registry {self.registry_file} is corrupt, starting empty: {e}")
            return Registry()

    def register(self, project_id: str, path: Path, name: Optional[str] = None) -> ProjectEntry:
        """Add or refresh a project entry."""
        self.registry_file.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            registry = self._load()
            existing = registry.projects.get(project_id)
            entry = ProjectEntry(
                path=str(Path(path).resolve()),
                name=name or (existing.name if existing else None) or Path(path).name,
                registered_at=existing.registered_at if existing else utc_now_iso(),
                last_seen=utc_now_iso(),
            )
            registry.projects[project_id] = entry
            atomic_write_text(
                self.registry_file,
                json.dumps(registry.model_dump(mode="json", exclude_none=True), indent=2),
            )
        logger.info(f"Registered project {project_id} at {entry.path}")
        return entry

    def get_path(self, project_id: str) -> Path:
        """
        Resolve a project id.

        Raises:
            NotFoundError: If the id is not registered
        """
        entry = self._load().projects.get(project_id)
        if entry is None:
            raise NotFoundError(
                f"Project {project_id}",
                hint='Run "specflow project register" in the project directory',
            )
        return Path(entry.path)

    def is_registered(self, project_id: str) -> bool:
        return project_id in self._load().projects

    def list(self) -> dict[str, ProjectEntry]:
        return dict(self._load().projects)
