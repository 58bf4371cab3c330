"""
Tests for the workflow lifecycle service.

Most runs go through FakeRunner, which emits events and returns scripted
results the way ClaudeRunner would. TestWithClaudeRunner keeps the default
runner and patches only the agent subprocess. Nothing is spawned.
"""

import json
import subprocess
from unittest.mock import patch

import pytest

from specflow.errors import (
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    QuestionAlreadyAnsweredError,
    ValidationError,
)
from specflow.events import EventType, make_event
from specflow.paths import ProjectPaths
from specflow.question_queue import QuestionQueueStore, QuestionStatus
from specflow.runners import AgentRunner, RunnerResult
from specflow.runners.base import WorkflowOutput
from specflow.runners.spawner import PidInfo, write_pid_file
from specflow.workflow_service import (
    ExecutionStore,
    WorkflowExecution,
    WorkflowService,
    WorkflowStatus,
)

from helpers import cli_result

NEEDS_FW = {
    "status": "needs_input",
    "phase": "discover",
    "questions": [{"question": "Framework?", "header": "FW", "options": [{"label": "React"}]}],
}


class FakeRunner(AgentRunner):
    """Replays one scripted outcome per run."""

    def __init__(self, script, handler):
        self.script = script
        self.handler = handler

    def preflight(self, options):
        if self.script.preflight_error:
            raise self.script.preflight_error

    def run(self, options):
        self.script.calls.append(options)
        outcome = self.script.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        output = WorkflowOutput.model_validate(outcome["output"]) if outcome.get("output") else None

        self.handler(make_event(EventType.PHASE_STARTED, {"phase": "workflow", "skill": options.skill}))
        if output and output.phase:
            self.handler(make_event(EventType.PHASE_STARTED, {"phase": output.phase}))
        if output:
            for q in output.questions:
                self.handler(make_event(EventType.QUESTION_QUEUED, {
                    "id": q.header.lower(), "content": q.question, "header": q.header,
                }))
            for a in output.artifacts:
                self.handler(make_event(EventType.ARTIFACT_CREATED, {"path": a.path}))
        success = outcome.get("success", True)
        self.handler(make_event(EventType.COMPLETE, {"exitCode": 0 if success else 1, "success": success}))

        return RunnerResult(
            exit_code=0 if success else 1,
            success=success,
            error=outcome.get("error"),
            output=output,
            session_id=outcome.get("session_id", "sess-1"),
            cost_usd=outcome.get("cost", 0.01),
        )


class Script:
    def __init__(self, *outcomes, preflight_error=None):
        self.outcomes = list(outcomes)
        self.calls = []
        self.preflight_error = preflight_error

    def factory(self, handler):
        return FakeRunner(self, handler)


def make_service(config, script, **kwargs):
    return WorkflowService(config, runner_factory=script.factory, **kwargs)


class TestStartAndResume:
    """The question round trip: start, wait for input, resume, complete."""

    def test_full_round_trip(self, config, project):
        script = Script({"output": NEEDS_FW}, {"output": {"status": "completed"}})
        service = make_service(config, script)

        execution = service.start(project, "design")

        assert execution.status == WorkflowStatus.WAITING_FOR_INPUT
        assert execution.pending_questions == 1
        assert execution.current_phase == "discover"
        assert execution.session_id == "sess-1"
        queue = QuestionQueueStore(project).read()
        assert queue.workflow_id == execution.id
        assert [q.id for q in queue.questions] == ["fw"]

        resumed = service.resume(execution.id, {"fw": "React"})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.completed_at is not None
        assert resumed.answers == {"fw": "React"}
        assert resumed.cost_usd == pytest.approx(0.02)
        assert script.calls[1].answers == {"fw": "React"}
        assert QuestionQueueStore(project).get("fw").status == QuestionStatus.ANSWERED
        assert service.status(execution.id).status == WorkflowStatus.COMPLETED

    def test_completed_run_has_no_questions(self, config, project):
        output = {"status": "completed", "artifacts": [{"path": "specs/a.md"}, {"path": "specs/a.md"}]}
        service = make_service(config, Script({"output": output}))

        execution = service.start(project, "design", project_id="proj", phase="plan")

        assert execution.status == WorkflowStatus.COMPLETED
        assert execution.artifacts_created == ["specs/a.md"]
        assert execution.output["status"] == "completed"
        assert execution.events_emitted == 4

    def test_error_output_fails(self, config, project):
        service = make_service(config, Script({"output": {"status": "error", "message": "no spec"}}))
        execution = service.start(project, "design")
        assert execution.status == WorkflowStatus.FAILED
        assert execution.error == "no spec"

    def test_runner_failure_fails(self, config, project):
        service = make_service(config, Script({"success": False, "error": "exit 1"}))
        execution = service.start(project, "design")
        assert execution.status == WorkflowStatus.FAILED
        assert execution.error == "exit 1"

    def test_preflight_error_persists_nothing(self, config, project):
        script = Script(preflight_error=ConfigurationError("claude not found"))
        service = make_service(config, script)

        with pytest.raises(ConfigurationError):
            service.start(project, "design")
        assert service.list_executions() == []
        assert script.calls == []

    def test_specflow_error_during_run_becomes_failure(self, config, project):
        service = make_service(config, Script(NotFoundError("Skill design")))
        execution = service.start(project, "design")
        assert execution.status == WorkflowStatus.FAILED
        assert "not found" in execution.error

    def test_background_run(self, config, project):
        service = make_service(config, Script({"output": {"status": "completed"}}))

        snapshot = service.start(project, "design", wait=False)
        service.join(snapshot.id, timeout=5)

        assert snapshot.status == WorkflowStatus.RUNNING
        assert service.status(snapshot.id).status == WorkflowStatus.COMPLETED

    def test_listener_receives_events(self, config, project):
        seen = []
        service = make_service(config, Script({"output": {"status": "completed"}}),
                               on_event=lambda eid, event: seen.append((eid, event.type)))
        execution = service.start(project, "design")
        assert seen[-1] == (execution.id, "complete")


class TestResumeValidation:

    @pytest.fixture
    def waiting(self, config, project):
        script = Script({"output": NEEDS_FW}, {"output": {"status": "completed"}})
        service = make_service(config, script)
        return service, service.start(project, "design"), script

    def test_resume_requires_waiting_status(self, config, project):
        service = make_service(config, Script({"output": {"status": "completed"}}))
        execution = service.start(project, "design")
        with pytest.raises(InvalidStateError, match="completed"):
            service.resume(execution.id, {})

    def test_unknown_key_rejected(self, waiting):
        service, execution, script = waiting
        with pytest.raises(ValidationError):
            service.resume(execution.id, {"db": "Postgres", "fw": "React"})
        assert service.status(execution.id).status == WorkflowStatus.WAITING_FOR_INPUT
        assert len(script.calls) == 1

    def test_missing_answer_rejected(self, waiting):
        service, execution, _ = waiting
        with pytest.raises(ValidationError, match="Unanswered questions: fw"):
            service.resume(execution.id, {})

    def test_answer_question_then_resume_with_no_answers(self, waiting, project):
        service, execution, script = waiting
        service.answer_question(project, "fw", "Vue")

        resumed = service.resume(execution.id, {})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert script.calls[1].answers == {"fw": "Vue"}

    def test_already_answered_key_rejected(self, waiting, project):
        service, execution, _ = waiting
        service.answer_question(project, "fw", "Vue")
        with pytest.raises(QuestionAlreadyAnsweredError):
            service.resume(execution.id, {"fw": "React"})

    def test_answer_unknown_question(self, waiting, project):
        service, _, _ = waiting
        with pytest.raises(NotFoundError):
            service.answer_question(project, "nope", "x")

    def test_pending_questions(self, waiting):
        service, execution, _ = waiting
        assert [q.id for q in service.pending_questions(execution.id)] == ["fw"]


class TestCancel:

    def test_cancel_waiting(self, config, project):
        service = make_service(config, Script({"output": NEEDS_FW}))
        execution = service.start(project, "design")

        cancelled = service.cancel(execution.id)

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.completed_at is not None

    def test_cancel_completed_is_invalid(self, config, project):
        service = make_service(config, Script({"output": {"status": "completed"}}))
        execution = service.start(project, "design")
        with pytest.raises(InvalidStateError, match="Cannot cancel workflow in completed state"):
            service.cancel(execution.id)

    def test_cancel_unknown(self, config):
        service = make_service(config, Script())
        with pytest.raises(NotFoundError):
            service.cancel("does-not-exist")

    def test_cancel_by_session(self, config, project):
        service = make_service(config, Script({"output": NEEDS_FW, "session_id": "abc"}))
        execution = service.start(project, "design")

        closed = service.cancel_by_session("abc", final_status="completed")

        assert closed.id == execution.id
        assert closed.status == WorkflowStatus.COMPLETED

    def test_cancel_by_session_rejects_other_status(self, config):
        service = make_service(config, Script())
        with pytest.raises(ValidationError):
            service.cancel_by_session("abc", final_status=WorkflowStatus.FAILED)

    def test_cancel_by_unknown_session(self, config):
        service = make_service(config, Script())
        with pytest.raises(NotFoundError):
            service.cancel_by_session("nobody")

    def test_result_after_cancel_is_discarded(self, config, project):
        service = make_service(config, Script({"output": {"status": "completed"}}))
        execution = WorkflowExecution(id="wf-1", project_path=str(project), skill="design",
                                      status=WorkflowStatus.RUNNING)
        service.store.save(execution)
        service.cancel("wf-1")

        result = RunnerResult(exit_code=0, success=True, output=WorkflowOutput(status="completed"))
        applied = service._apply_result(execution, result, [])

        assert applied.status == WorkflowStatus.CANCELLED


class TestKill:

    @pytest.fixture
    def running(self, config, project):
        service = make_service(config, Script())
        execution = WorkflowExecution(id="wf-1", project_path=str(project), skill="design",
                                      status=WorkflowStatus.DETACHED, pid=300)
        service.store.save(execution)
        return service

    def test_kill_signals_claude_then_bash(self, running, project):
        write_pid_file(ProjectPaths(project).run_dir("wf-1"), PidInfo(bash_pid=300, claude_pid=301))

        with patch("specflow.workflow_service.is_pid_alive", return_value=True), \
                patch("specflow.workflow_service.kill_process", return_value=True) as kill:
            result = running.kill("wf-1")

        assert [c.args[0] for c in kill.call_args_list] == [301, 300]
        assert result.killed == [301, 300]
        assert result.message == "Killed 2 process(es)"
        assert not ProjectPaths(project).pid_file("wf-1").exists()
        assert running.status("wf-1").status == WorkflowStatus.CANCELLED

    def test_kill_dead_processes(self, running):
        with patch("specflow.workflow_service.is_pid_alive", return_value=False), \
                patch("specflow.workflow_service.kill_process") as kill:
            result = running.kill("wf-1")

        kill.assert_not_called()
        assert result.message == "No processes to kill (may have already terminated)"

    def test_kill_finished_is_invalid(self, running):
        running.cancel("wf-1")
        with pytest.raises(InvalidStateError, match="Cannot kill workflow in cancelled state"):
            running.kill("wf-1")

    def test_kill_unknown_project(self, running):
        with pytest.raises(NotFoundError):
            running.kill("wf-1", project_id="ghost")


class TestExecutionStore:

    def test_legacy_status_normalized(self, tmp_path):
        store = ExecutionStore(tmp_path)
        (tmp_path / "wf-1.json").write_text(json.dumps({
            "id": "wf-1", "projectPath": "/p", "skill": "design", "status": "waiting_for_answer",
        }))
        assert store.get("wf-1").status == WorkflowStatus.WAITING_FOR_INPUT

    def test_files_use_camel_case(self, tmp_path):
        store = ExecutionStore(tmp_path)
        store.save(WorkflowExecution(id="wf-1", project_path="/p", skill="design", session_id="s"))
        data = json.loads((tmp_path / "wf-1.json").read_text())
        assert data["projectPath"] == "/p"
        assert data["sessionId"] == "s"

    def test_invalid_id_is_not_found(self, tmp_path):
        with pytest.raises(NotFoundError):
            ExecutionStore(tmp_path).get("../etc/passwd")

    def test_list_skips_garbage_and_filters(self, tmp_path):
        store = ExecutionStore(tmp_path)
        store.save(WorkflowExecution(id="a", project_id="p1", project_path="/p", skill="s",
                                     started_at="2026-01-01T00:00:00+00:00"))
        store.save(WorkflowExecution(id="b", project_id="p2", project_path="/p", skill="s",
                                     started_at="2026-02-01T00:00:00+00:00"))
        (tmp_path / "junk.json").write_text("{")

        assert [e.id for e in store.list()] == ["b", "a"]
        assert [e.id for e in store.list("p1")] == ["a"]


class TestDetached:

    def test_poll_applies_output(self, config, project):
        service = make_service(config, Script())
        service.store.save(WorkflowExecution(id="wf-1", project_path=str(project), skill="design",
                                             status=WorkflowStatus.DETACHED))
        run_dir = ProjectPaths(project).run_dir("wf-1")
        run_dir.mkdir(parents=True)
        (run_dir / "workflow-output.json").write_text(cli_result(NEEDS_FW))
        (run_dir / "workflow-output.json.exit").write_text("0\n")

        execution = service.poll_detached("wf-1", timeout=1)

        assert execution.status == WorkflowStatus.WAITING_FOR_INPUT
        assert execution.session_id == "sess-1"
        assert [q.id for q in service.pending_questions("wf-1")] == ["fw"]

    def test_poll_without_output_fails(self, config, project):
        service = make_service(config, Script())
        service.store.save(WorkflowExecution(id="wf-1", project_path=str(project), skill="design",
                                             status=WorkflowStatus.DETACHED))
        write_pid_file(ProjectPaths(project).run_dir("wf-1"), PidInfo(bash_pid=300))

        with patch("specflow.runners.spawner.is_pid_alive", return_value=False), \
                patch("specflow.runners.spawner.time.sleep"):
            execution = service.poll_detached("wf-1", timeout=1)

        assert execution.status == WorkflowStatus.FAILED
        assert execution.error == "Process exited without producing output"

    def test_check_health_marks_stale(self, config, project):
        service = make_service(config, Script())
        service.store.save(WorkflowExecution(id="wf-1", project_path=str(project), skill="design",
                                             status=WorkflowStatus.RUNNING, session_id="sess-1"))
        with patch("specflow.workflow_service.check_process_health") as check:
            check.return_value.is_stale = True
            check.return_value.health_status = "stale"
            service.check_health("wf-1")

        assert service.status("wf-1").status == WorkflowStatus.STALE


class TestBackgroundFailures:

    def test_unexpected_exception_fails_background_run(self, config, project):
        service = make_service(config, Script(RuntimeError("unexpected")))

        snapshot = service.start(project, "design", wait=False)
        service.join(snapshot.id, timeout=5)

        execution = service.status(snapshot.id)
        assert execution.status == WorkflowStatus.FAILED
        assert execution.error == "unexpected"
        assert execution.completed_at is not None

    def test_unexpected_exception_propagates_when_waiting(self, config, project):
        service = make_service(config, Script(RuntimeError("disk full")))
        with pytest.raises(RuntimeError, match="disk full"):
            service.start(project, "design")


class TestWithClaudeRunner:
    """Default runner wiring, with only the agent subprocess patched."""

    def test_question_round_trip(self, config, project):
        first = subprocess.CompletedProcess(["claude"], 0, cli_result(NEEDS_FW), "")
        second = subprocess.CompletedProcess(["claude"], 0, cli_result({"status": "completed"}), "")
        service = WorkflowService(config)

        with patch("specflow.runners.validator.shutil.which", return_value="/usr/bin/claude"), \
                patch("specflow.runners.claude_code.subprocess.run", side_effect=[first, second]) as run:
            execution = service.start(project, "design")

            assert execution.status == WorkflowStatus.WAITING_FOR_INPUT
            assert execution.current_phase == "discover"
            assert [q.id for q in service.pending_questions(execution.id)] == ["fw"]

            resumed = service.resume(execution.id, {"fw": "React"})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.cost_usd == pytest.approx(0.0246)
        question = QuestionQueueStore(project).get("fw")
        assert question.status == QuestionStatus.ANSWERED
        assert question.answer == "React"
        assert '"fw": "React"' in run.call_args_list[1].args[0][-1]
        assert '"fw": "React"' not in run.call_args_list[0].args[0][-1]
