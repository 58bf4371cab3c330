"""
Process Health Monitor

Classifies a workflow run as running / stale / dead / unknown from:
- the tracked pids (pid file, or a legacy single pid on the execution)
- OS-level liveness of each pid (zero-signal probe)
- the modification time of the agent's session log

Rules, in order:
1. no pid tracked                          -> unknown
2. pids tracked, none alive                -> dead
3. a pid alive, session log older than 5m  -> stale
4. a pid alive, log fresh or absent        -> running

Advisory only: nothing here changes execution state or kills processes.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .config import SpecflowConfig
from .paths import ProjectPaths, session_log_file
from .runners.spawner import is_pid_alive, read_pid_file

logger = logging.getLogger(__name__)

STALENESS_THRESHOLD_SECONDS = 5 * 60


class HealthStatus(str, Enum):
    RUNNING = "running"    # pid alive and log recently written
    STALE = "stale"        # pid alive but log silent past the threshold
    DEAD = "dead"          # tracked pids no longer exist
    UNKNOWN = "unknown"    # nothing tracked


@dataclass
class ProcessHealthResult:
    """Snapshot of one run's process health. Not persisted."""
    health_status: HealthStatus
    bash_pid: Optional[int] = None
    claude_pid: Optional[int] = None
    bash_alive: bool = False
    claude_alive: bool = False
    session_file_mtime: Optional[datetime] = None
    session_file_age: Optional[float] = None  # seconds since last write
    is_stale: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["health_status"] = self.health_status.value
        if self.session_file_mtime:
            data["session_file_mtime"] = self.session_file_mtime.isoformat()
        return data


def classify_health(
    bash_pid: Optional[int],
    claude_pid: Optional[int],
    bash_alive: bool,
    claude_alive: bool,
    session_file_age: Optional[float],
    threshold_seconds: float = STALENESS_THRESHOLD_SECONDS,
) -> ProcessHealthResult:
    """Pure classification of already-gathered health inputs."""
    is_stale = session_file_age is not None and session_file_age > threshold_seconds

    if bash_pid is None and claude_pid is None:
        status = HealthStatus.UNKNOWN
    elif not (bash_alive or claude_alive):
        status = HealthStatus.DEAD
    elif is_stale:
        status = HealthStatus.STALE
    else:
        status = HealthStatus.RUNNING

    return ProcessHealthResult(
        health_status=status,
        bash_pid=bash_pid,
        claude_pid=claude_pid,
        bash_alive=bash_alive,
        claude_alive=claude_alive,
        session_file_age=session_file_age,
        is_stale=is_stale,
    )


def get_session_file_mtime(path: Optional[Path]) -> Optional[datetime]:
    if path is None:
        return None
    try:
        return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
    except OSError:
        return None


def check_process_health(
    execution,
    config: SpecflowConfig,
    pid_alive: Callable[[int], bool] = is_pid_alive,
    now: Optional[float] = None,
) -> ProcessHealthResult:
    """
    Gather health inputs for an execution and classify them.

    Args:
        execution: WorkflowExecution (uses id, project_path, pid, session_id)
        config: Supplies claude_home and the staleness threshold
        pid_alive: Liveness probe (injectable for tests)
        now: Current epoch seconds (default: time.time())
    """
    bash_pid: Optional[int] = None
    claude_pid: Optional[int] = None

    run_dir = ProjectPaths(execution.project_path).run_dir(execution.id)
    pids = read_pid_file(run_dir)
    if pids:
        bash_pid, claude_pid = pids.bash_pid, pids.claude_pid
    elif execution.pid:
        # Legacy single pid on the execution record
        bash_pid = execution.pid

    bash_alive = bool(bash_pid) and pid_alive(bash_pid)
    claude_alive = bool(claude_pid) and pid_alive(claude_pid)

    log_path = session_log_file(config, Path(execution.project_path), execution.session_id)
    mtime = get_session_file_mtime(log_path)
    age = None
    if mtime is not None:
        age = (now if now is not None else time.time()) - mtime.timestamp()

    result = classify_health(
        bash_pid,
        claude_pid,
        bash_alive,
        claude_alive,
        age,
        config.staleness_threshold_seconds,
    )
    result.session_file_mtime = mtime
    logger.debug(f"Health of {execution.id}: {result.health_status.value}")
    return result


def should_mark_as_failed(health: ProcessHealthResult) -> bool:
    return health.health_status == HealthStatus.DEAD


def should_mark_as_stale(health: ProcessHealthResult) -> bool:
    return health.health_status == HealthStatus.STALE


def get_health_status_message(health: ProcessHealthResult) -> str:
    """One-line human description of a health result."""
    if health.health_status == HealthStatus.RUNNING:
        return "Process is running normally"
    if health.health_status == HealthStatus.STALE:
        minutes = int(health.session_file_age // 60) if health.session_file_age else 5
        return f"Session inactive (no updates in {minutes}+ minutes)"
    if health.health_status == HealthStatus.DEAD:
        return "Process terminated unexpectedly"
    return "Unable to determine process status"
