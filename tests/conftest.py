"""
Shared fixtures for specflow tests.

Nothing here spawns the real agent binary: runners are faked or
subprocess calls are patched.
"""

import pytest

from specflow.config import SpecflowConfig


@pytest.fixture
def config(tmp_path):
    """Config rooted entirely inside tmp_path."""
    skills = tmp_path / "skills"
    skills.mkdir()
    (skills / "design.md").write_text("# Design\n\nDesign the feature.\n")
    return SpecflowConfig(
        home_dir=tmp_path / "home" / ".specflow",
        claude_home=tmp_path / "home" / ".claude",
        skill_dirs=[skills],
        kill_grace_seconds=0.2,
        poll_interval_seconds=0.01,
        session_poll_interval_seconds=0.05,
    )


@pytest.fixture
def project(tmp_path):
    """An empty project directory."""
    path = tmp_path / "project"
    path.mkdir()
    return path
