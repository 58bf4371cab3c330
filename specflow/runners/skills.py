"""Skill template loading.

A skill is an opaque Markdown prompt (e.g. /flow.design -> flow.design.md)
looked up in an ordered list of directories.
"""

import logging
from pathlib import Path
from typing import Iterable

from ..errors import NotFoundError

logger = logging.getLogger(__name__)


def normalize_skill_name(skill: str) -> str:
    """'/flow.design' and 'flow.design' both name flow.design."""
    name = skill.strip().lstrip('/')
    if name.endswith('.md'):
        name = name[:-3]
    return name


class SkillLoader:
    """Load skill templates from the first directory that has them."""

    def __init__(self, search_dirs: Iterable[Path]):
        self.search_dirs = [Path(d) for d in search_dirs]

    def find(self, skill: str) -> Path:
        name = normalize_skill_name(skill)
        if not name or '/' in name or name.startswith('.'):
            raise NotFoundError(f"Skill '{skill}'")
        for directory in self.search_dirs:
            candidate = directory / f"{name}.md"
            if candidate.is_file():
                return candidate
        searched = ", ".join(str(d) for d in self.search_dirs)
        raise NotFoundError(f"Skill '{skill}'", hint=f"Searched: {searched}")

    def load_template(self, skill: str) -> str:
        """
        Read a skill template.

        Raises:
            NotFoundError: If no search directory contains the skill
        """
        path = self.find(skill)
        logger.debug(f"Loaded skill {skill} from {path}")
        return path.read_text()
