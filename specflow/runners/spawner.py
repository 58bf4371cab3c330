"""
Detached agent process management.

Spawns the agent through a bash driver script in its own session so it
survives restarts of the host process. The driver writes the agent's JSON
result to workflow-output.json only after the agent exits, so a non-empty
output file is the completion marker.

PIDs are tracked persistently in process.pid:

    {"bashPid": 1234, "claudePid": 1240}

The agent runs as a child of the bash driver; its pid is discovered shortly
after spawning and added to the pid file.
"""

import json
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import psutil

from ..paths import OUTPUT_FILENAME, PID_FILENAME, SCRIPT_FILENAME

logger = logging.getLogger(__name__)

CLAUDE_PID_DISCOVERY_DELAY = 1.0
EXIT_SETTLE_DELAY = 0.5


@dataclass
class PidInfo:
    bash_pid: Optional[int] = None
    claude_pid: Optional[int] = None

    def pids(self) -> list[int]:
        """Tracked pids, agent first."""
        return [p for p in (self.claude_pid, self.bash_pid) if p]

    def to_dict(self) -> dict:
        data = {"bashPid": self.bash_pid}
        if self.claude_pid:
            data["claudePid"] = self.claude_pid
        return data


@dataclass
class SpawnResult:
    bash_pid: int
    claude_pid: Optional[int]
    output_file: Path
    pid_file: Path


@dataclass
class CompletionResult:
    completed: bool
    output: Optional[str]
    timed_out: bool
    exit_code: Optional[int] = None
    stderr: str = ""


# ============================================================================
# PID file and liveness
# ============================================================================

def is_pid_alive(pid: int) -> bool:
    """Zero-signal existence probe."""
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else
        return True
    except OSError:
        return False


def read_pid_file(run_dir: Path) -> Optional[PidInfo]:
    """Read tracked pids. Missing or unreadable files mean nothing is tracked."""
    pid_file = Path(run_dir) / PID_FILENAME
    if not pid_file.exists():
        return None
    try:
        data = json.loads(pid_file.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Unreadable pid file {pid_file}: {e}")
        return None
    if not isinstance(data, dict):
        return None

    def _pid(value) -> Optional[int]:
        return value if isinstance(value, int) and value > 0 else None

    return PidInfo(bash_pid=_pid(data.get("bashPid")), claude_pid=_pid(data.get("claudePid")))


def write_pid_file(run_dir: Path, pids: PidInfo) -> Path:
    pid_file = Path(run_dir) / PID_FILENAME
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(json.dumps(pids.to_dict(), indent=2))
    return pid_file


def cleanup_pid_file(run_dir: Path) -> None:
    """Remove the pid file; failures are ignored."""
    try:
        (Path(run_dir) / PID_FILENAME).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove pid file in {run_dir}: {e}")


def discover_claude_pid(bash_pid: int) -> Optional[int]:
    """Find the agent process running under the bash driver."""
    try:
        children = psutil.Process(bash_pid).children()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
    for child in children:
        if child.pid > 0:
            return child.pid
    return None


# ============================================================================
# Spawning
# ============================================================================

def build_run_script(
    claude_binary: str,
    args: list[str],
    cwd: Path,
    output_file: Path,
) -> str:
    """Bash driver: run the agent, then publish its output atomically."""
    partial = f"{output_file}.partial"
    stderr_file = f"{output_file}.stderr"
    exit_file = f"{output_file}.exit"
    command = " ".join(shlex.quote(a) for a in [claude_binary, *args])
    return "\n".join([
        "#!/bin/bash",
        f"cd {shlex.quote(str(cwd))} || exit 1",
        f"{command} > {shlex.quote(partial)} 2> {shlex.quote(stderr_file)}",
        "status=$?",
        f"echo $status > {shlex.quote(exit_file)}",
        f"mv {shlex.quote(partial)} {shlex.quote(str(output_file))}",
        "exit $status",
        "",
    ])


def spawn_detached(
    cwd: Path,
    run_dir: Path,
    script_content: str,
    env: Optional[dict[str, str]] = None,
) -> SpawnResult:
    """
    Start the driver script in a new session and return immediately.

    The bash pid is written to the pid file at once; the agent pid is added
    by a background discovery shortly after.
    """
    run_dir = Path(run_dir)
    run_dir.mkdir(parents=True, exist_ok=True)
    script_file = run_dir / SCRIPT_FILENAME
    output_file = run_dir / OUTPUT_FILENAME

    script_file.write_text(script_content)
    script_file.chmod(0o755)

    proc = subprocess.Popen(
        ["/bin/bash", str(script_file)],
        cwd=str(cwd),
        env={**os.environ, **(env or {})},
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
    bash_pid = proc.pid
    pid_file = write_pid_file(run_dir, PidInfo(bash_pid=bash_pid))
    logger.info(f"Spawned detached workflow driver pid={bash_pid} in {run_dir}")

    # Reap the driver when it exits so a finished run is not seen as alive
    threading.Thread(target=proc.wait, name=f"reap-{bash_pid}", daemon=True).start()

    def _discover():
        claude_pid = discover_claude_pid(bash_pid)
        if claude_pid and (run_dir / PID_FILENAME).exists():
            write_pid_file(run_dir, PidInfo(bash_pid=bash_pid, claude_pid=claude_pid))
            logger.debug(f"Discovered agent pid={claude_pid} under driver pid={bash_pid}")

    timer = threading.Timer(CLAUDE_PID_DISCOVERY_DELAY, _discover)
    timer.daemon = True
    timer.start()

    return SpawnResult(
        bash_pid=bash_pid,
        claude_pid=None,
        output_file=output_file,
        pid_file=pid_file,
    )


def _read_output(output_file: Path) -> Optional[str]:
    try:
        content = output_file.read_text()
    except OSError:
        return None
    return content if content.strip() else None


def _finished(run_dir: Path, output: Optional[str]) -> CompletionResult:
    output_file = run_dir / OUTPUT_FILENAME
    exit_code = None
    exit_text = _read_output(Path(f"{output_file}.exit"))
    if exit_text and exit_text.strip().isdigit():
        exit_code = int(exit_text.strip())
    cleanup_pid_file(run_dir)
    return CompletionResult(
        completed=True,
        output=output,
        timed_out=False,
        exit_code=exit_code,
        stderr=_read_output(Path(f"{output_file}.stderr")) or "",
    )


def poll_for_completion(
    run_dir: Path,
    timeout_seconds: float = 4 * 60 * 60,
    poll_interval_seconds: float = 2.0,
) -> CompletionResult:
    """
    Wait for a detached run to finish.

    Completes when the output file has content, or when every tracked pid
    is dead (output may then be None). Times out without killing anything.
    """
    run_dir = Path(run_dir)
    output_file = run_dir / OUTPUT_FILENAME
    deadline = time.monotonic() + timeout_seconds

    while True:
        output = _read_output(output_file)
        if output is not None:
            return _finished(run_dir, output)

        pids = read_pid_file(run_dir)
        if pids and not any(is_pid_alive(p) for p in pids.pids()):
            # Give the driver a moment to publish its output
            time.sleep(EXIT_SETTLE_DELAY)
            return _finished(run_dir, _read_output(output_file))

        if time.monotonic() >= deadline:
            return CompletionResult(completed=False, output=None, timed_out=True)

        time.sleep(poll_interval_seconds)


def kill_process(pid: int, force: bool = False, grace_seconds: float = 5.0) -> bool:
    """
    Terminate a process.

    Sends SIGTERM and escalates to SIGKILL if the process is still alive
    after the grace window; force sends SIGKILL immediately.

    Returns:
        True if a signal was delivered
    """
    try:
        if force:
            os.kill(pid, signal.SIGKILL)
            return True
        os.kill(pid, signal.SIGTERM)
    except OSError as e:
        logger.warning(f"Failed to signal pid {pid}: {e}")
        return False

    deadline = time.monotonic() + grace_seconds
    while time.monotonic() < deadline:
        if not is_pid_alive(pid):
            return True
        time.sleep(0.1)

    if is_pid_alive(pid):
        logger.info(f"pid {pid} survived SIGTERM for {grace_seconds}s, sending SIGKILL")
        try:
            os.kill(pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to SIGKILL pid {pid}: {e}")
    return True
