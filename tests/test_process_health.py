"""
Tests for the Process Health Monitor.
"""

import os
import time
from types import SimpleNamespace

import pytest

from specflow.paths import ProjectPaths, session_log_file
from specflow.process_health import (
    HealthStatus,
    check_process_health,
    classify_health,
    get_health_status_message,
    should_mark_as_failed,
    should_mark_as_stale,
)
from specflow.runners.spawner import PidInfo, write_pid_file


def execution(project, pid=None, session_id="sess-1", execution_id="wf-1"):
    return SimpleNamespace(id=execution_id, project_path=str(project), pid=pid, session_id=session_id)


def touch_log(config, project, age_seconds, session_id="sess-1"):
    log = session_log_file(config, project, session_id)
    log.parent.mkdir(parents=True, exist_ok=True)
    log.write_text('{"type": "assistant"}\n')
    mtime = time.time() - age_seconds
    os.utime(log, (mtime, mtime))
    return log


class TestClassifyHealth:
    """The four rules, in order."""

    def test_no_pids_is_unknown(self):
        assert classify_health(None, None, False, False, None).health_status == HealthStatus.UNKNOWN

    def test_no_pids_is_unknown_even_with_old_log(self):
        assert classify_health(None, None, False, False, 3600).health_status == HealthStatus.UNKNOWN

    def test_all_dead_is_dead_regardless_of_log(self):
        assert classify_health(10, 11, False, False, 5).health_status == HealthStatus.DEAD
        assert classify_health(10, None, False, False, 3600).health_status == HealthStatus.DEAD

    def test_alive_with_old_log_is_stale(self):
        result = classify_health(10, 11, True, False, 600)
        assert result.health_status == HealthStatus.STALE
        assert result.is_stale

    def test_alive_with_fresh_or_no_log_is_running(self):
        assert classify_health(10, 11, False, True, 60).health_status == HealthStatus.RUNNING
        assert classify_health(10, None, True, False, None).health_status == HealthStatus.RUNNING

    def test_threshold_is_exclusive(self):
        assert classify_health(10, None, True, False, 300).health_status == HealthStatus.RUNNING


class TestCheckProcessHealth:
    """Inputs gathered from the pid file, legacy pid and session log."""

    def test_alive_pid_with_ten_minute_old_log_is_stale(self, config, project):
        run_dir = ProjectPaths(project).run_dir("wf-1")
        write_pid_file(run_dir, PidInfo(bash_pid=100, claude_pid=101))
        touch_log(config, project, 600)

        health = check_process_health(execution(project), config, pid_alive=lambda pid: True)

        assert health.health_status == HealthStatus.STALE
        assert health.session_file_age == pytest.approx(600, abs=5)
        assert (health.bash_pid, health.claude_pid) == (100, 101)

    def test_alive_pid_with_one_minute_old_log_is_running(self, config, project):
        write_pid_file(ProjectPaths(project).run_dir("wf-1"), PidInfo(bash_pid=100))
        touch_log(config, project, 60)

        health = check_process_health(execution(project), config, pid_alive=lambda pid: True)

        assert health.health_status == HealthStatus.RUNNING

    def test_dead_pid_is_dead_with_fresh_log(self, config, project):
        write_pid_file(ProjectPaths(project).run_dir("wf-1"), PidInfo(bash_pid=100, claude_pid=101))
        touch_log(config, project, 1)

        health = check_process_health(execution(project), config, pid_alive=lambda pid: False)

        assert health.health_status == HealthStatus.DEAD
        assert should_mark_as_failed(health)

    def test_nothing_tracked_is_unknown(self, config, project):
        health = check_process_health(execution(project, session_id=None), config, pid_alive=lambda pid: True)
        assert health.health_status == HealthStatus.UNKNOWN
        assert health.session_file_mtime is None

    def test_legacy_pid_used_without_pid_file(self, config, project):
        seen = []

        def alive(pid):
            seen.append(pid)
            return True

        health = check_process_health(execution(project, pid=555), config, pid_alive=alive)

        assert health.bash_pid == 555
        assert seen == [555]
        assert health.health_status == HealthStatus.RUNNING

    def test_only_one_pid_alive_is_enough(self, config, project):
        write_pid_file(ProjectPaths(project).run_dir("wf-1"), PidInfo(bash_pid=100, claude_pid=101))

        health = check_process_health(execution(project), config, pid_alive=lambda pid: pid == 100)

        assert health.bash_alive and not health.claude_alive
        assert health.health_status == HealthStatus.RUNNING


class TestHealthMessages:

    def test_messages(self):
        assert get_health_status_message(classify_health(1, None, True, False, 10)) == "Process is running normally"
        assert get_health_status_message(classify_health(1, None, False, False, 10)) == \
            "Process terminated unexpectedly"
        assert get_health_status_message(classify_health(None, None, False, False, None)) == \
            "Unable to determine process status"

    def test_stale_reports_whole_minutes(self):
        stale = classify_health(1, None, True, False, 17 * 60 + 59)
        assert get_health_status_message(stale) == "Session inactive (no updates in 17+ minutes)"
        assert should_mark_as_stale(stale)
        assert not should_mark_as_failed(stale)

    def test_to_dict_is_serializable(self):
        data = classify_health(1, 2, True, True, 30).to_dict()
        assert data["health_status"] == "running"
        assert data["bash_pid"] == 1
