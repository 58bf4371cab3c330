"""
Workflow Lifecycle Service

State machine over WorkflowExecution.status:

    idle ──start──> running ──questions──> waiting_for_input
                       │                        │
                       │<──────resume───────────┘
                       ├──success──> completed
                       └──failure──> failed

    running / waiting_for_input / detached / stale ──cancel──> cancelled
    running / waiting_for_input / detached / stale ──kill────> (signals) cancelled

Executions are persisted one JSON file per id under ~/.specflow/workflows/.
Process-layer failures (spawn errors, non-zero exits, unparseable output)
become status=failed with error set; they are not raised. Configuration
errors (agent binary missing, unknown skill) are raised from start() before
anything is persisted.

Usage:
    service = WorkflowService(SpecflowConfig.load())
    execution = service.start(Path("."), "design")
    if execution.status == WorkflowStatus.WAITING_FOR_INPUT:
        service.resume(execution.id, {"fw": "React"})
"""

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from filelock import FileLock
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .checkpoint import atomic_write_text
from .config import SpecflowConfig
from .errors import (
    InvalidStateError,
    NotFoundError,
    QuestionAlreadyAnsweredError,
    SpecflowError,
    StateCorruptError,
    ValidationError,
)
from .events import (
    EventType,
    QuestionQueuedData,
    WorkflowEvent,
    utc_now_iso,
)
from .paths import ProjectPaths, validate_execution_id
from .process_health import ProcessHealthResult, check_process_health, should_mark_as_stale
from .question_queue import Question, QuestionQueueStore, QuestionStatus
from .registry import ProjectRegistry
from .runners import AgentRunner, ClaudeRunner, RunnerOptions, RunnerResult
from .runners.claude_code import CHILD_ENV
from .runners.spawner import (
    cleanup_pid_file,
    is_pid_alive,
    kill_process,
    poll_for_completion,
    read_pid_file,
    spawn_detached,
)

logger = logging.getLogger(__name__)


class WorkflowStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    WAITING_FOR_ANSWER = "waiting_for_answer"  # legacy spelling, normalized on read
    COMPLETED = "completed"
    FAILED = "failed"
    DETACHED = "detached"
    STALE = "stale"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}

# Statuses with a live (or possibly live) agent process
ACTIVE_STATUSES = {
    WorkflowStatus.RUNNING,
    WorkflowStatus.WAITING_FOR_INPUT,
    WorkflowStatus.DETACHED,
    WorkflowStatus.STALE,
}


class WorkflowExecution(BaseModel):
    """One external-agent run, owned by the lifecycle service."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    project_id: Optional[str] = Field(None, alias="projectId")
    project_path: str = Field(alias="projectPath")
    skill: str
    phase: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.IDLE
    session_id: Optional[str] = Field(None, alias="sessionId")
    answers: dict[str, str] = Field(default_factory=dict)
    started_at: str = Field(default_factory=utc_now_iso, alias="startedAt")
    updated_at: str = Field(default_factory=utc_now_iso, alias="updatedAt")
    completed_at: Optional[str] = Field(None, alias="completedAt")
    pid: Optional[int] = None
    cost_usd: Optional[float] = Field(None, alias="costUsd")
    error: Optional[str] = None
    current_phase: Optional[str] = Field(None, alias="currentPhase")
    events_emitted: int = Field(0, alias="eventsEmitted")
    artifacts_created: list[str] = Field(default_factory=list, alias="artifactsCreated")
    pending_questions: int = Field(0, alias="pendingQuestions")
    output: Optional[dict[str, Any]] = None

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        if v == WorkflowStatus.WAITING_FOR_ANSWER.value:
            return WorkflowStatus.WAITING_FOR_INPUT
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


@dataclass
class KillResult:
    killed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    message: str = ""


RunnerFactory = Callable[[Callable[[WorkflowEvent], None]], AgentRunner]


# ============================================================================
# Execution store
# ============================================================================

class ExecutionStore:
    """One JSON document per execution under <home>/workflows/<id>.json."""

    def __init__(self, workflows_dir: Path):
        self.workflows_dir = Path(workflows_dir)

    def _file(self, execution_id: str) -> Path:
        validate_execution_id(execution_id)
        return self.workflows_dir / f"{execution_id}.json"

    def _lock(self, execution_id: str) -> FileLock:
        return FileLock(str(self._file(execution_id)) + ".lock")

    def exists(self, execution_id: str) -> bool:
        try:
            return self._file(execution_id).exists()
        except ValueError:
            return False

    def get(self, execution_id: str) -> WorkflowExecution:
        """
        Load an execution.

        Raises:
            NotFoundError: If no execution has this id
            StateCorruptError: If the stored document is unreadable
        """
        if not self.exists(execution_id):
            raise NotFoundError(f"Workflow {execution_id}")
        path = self._file(execution_id)
        try:
            return WorkflowExecution.model_validate(json.loads(path.read_text()))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise StateCorruptError(f"Workflow record {path} is invalid: {e}")

    def save(self, execution: WorkflowExecution) -> WorkflowExecution:
        """Persist an execution, stamping updated_at."""
        self.workflows_dir.mkdir(parents=True, exist_ok=True)
        execution.updated_at = utc_now_iso()
        with self._lock(execution.id):
            atomic_write_text(self._file(execution.id), json.dumps(execution.to_dict(), indent=2))
        return execution

    def list(self, project_id: Optional[str] = None) -> list[WorkflowExecution]:
        """All readable executions, newest first."""
        if not self.workflows_dir.exists():
            return []
        executions = []
        for path in self.workflows_dir.glob("*.json"):
            try:
                execution = WorkflowExecution.model_validate(json.loads(path.read_text()))
            except (json.JSONDecodeError, PydanticValidationError, OSError) as e:
                logger.warning(f"Skipping unreadable workflow record {path}: {e}")
                continue
            if project_id is None or execution.project_id == project_id:
                executions.append(execution)
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions

    def find_by_session(
        self,
        session_id: str,
        project_id: Optional[str] = None,
    ) -> Optional[WorkflowExecution]:
        for execution in self.list(project_id):
            if execution.session_id == session_id:
                return execution
        return None


# ============================================================================
# Service
# ============================================================================

class _RunRecorder:
    """Folds one run's events into its execution record."""

    def __init__(self, execution: WorkflowExecution, queue: QuestionQueueStore,
                 listener: Optional[Callable[[str, WorkflowEvent], None]] = None):
        self.execution = execution
        self.queue = queue
        self.listener = listener
        self.questions: list[QuestionQueuedData] = []

    def __call__(self, event: WorkflowEvent) -> None:
        execution = self.execution
        execution.events_emitted += 1

        if event.type == EventType.PHASE_STARTED and event.data.phase != "workflow":
            execution.current_phase = event.data.phase
        elif event.type == EventType.ARTIFACT_CREATED:
            if event.data.path not in execution.artifacts_created:
                execution.artifacts_created.append(event.data.path)
        elif event.type == EventType.QUESTION_QUEUED:
            self.questions.append(event.data)
            self.queue.add(execution.id, event.data)

        if self.listener:
            self.listener(execution.id, event)


class WorkflowService:
    """
    Start, resume, cancel and kill agent runs.

    Args:
        config: Paths, binary and timing values
        store: Execution store (default: under config.home_dir)
        runner_factory: Builds a runner for one run given its event callback
        registry: Resolves project ids for kill/cancel_by_session
        on_event: Optional listener called with (execution_id, event)
    """

    def __init__(
        self,
        config: SpecflowConfig,
        store: Optional[ExecutionStore] = None,
        runner_factory: Optional[RunnerFactory] = None,
        registry: Optional[ProjectRegistry] = None,
        on_event: Optional[Callable[[str, WorkflowEvent], None]] = None,
    ):
        self.config = config
        self.store = store or ExecutionStore(config.workflows_dir)
        self.runner_factory = runner_factory or (lambda handler: ClaudeRunner(config, handler))
        self.registry = registry or ProjectRegistry(config)
        self.on_event = on_event
        self._lock = threading.RLock()
        self._threads: dict[str, threading.Thread] = {}

    # ------------------------------------------------------------------
    # Start / resume
    # ------------------------------------------------------------------

    def start(
        self,
        project_path: Path,
        skill: str,
        project_id: Optional[str] = None,
        phase: Optional[str] = None,
        wait: bool = True,
    ) -> WorkflowExecution:
        """
        Start a fresh run of a skill.

        Raises:
            ConfigurationError: If the agent binary cannot be resolved
            NotFoundError: If the skill does not exist
        """
        project_path = Path(project_path).resolve()
        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            project_id=project_id,
            project_path=str(project_path),
            skill=skill,
            phase=phase,
            status=WorkflowStatus.RUNNING,
        )

        queue = QuestionQueueStore(project_path)
        recorder = _RunRecorder(execution, queue, self.on_event)
        runner = self.runner_factory(recorder)
        options = RunnerOptions(cwd=project_path, skill=skill, phase=phase)
        runner.preflight(options)

        # A new run takes ownership of the project's queue
        queue.clear(execution.id)
        self.store.save(execution)
        logger.info(f"Started workflow {execution.id} ({skill}) in {project_path}")

        return self._launch(execution, runner, options, recorder, wait)

    def resume(
        self,
        execution_id: str,
        answers: dict[str, str],
        wait: bool = True,
    ) -> WorkflowExecution:
        """
        Answer the pending questions of a waiting run and re-run its skill.

        Answers recorded earlier through answer_question() are merged in, so
        answers may be empty when every question was answered that way.

        Raises:
            NotFoundError: If no execution has this id
            InvalidStateError: If the execution is not waiting for input, or
                an answered question is answered again
            ValidationError: If an answer names a question that is not
                pending, or a pending question is left unanswered
        """
        with self._lock:
            execution = self.store.get(execution_id)
            if execution.status != WorkflowStatus.WAITING_FOR_INPUT:
                raise InvalidStateError(
                    f"Cannot resume workflow in {execution.status.value} state",
                    hint="Only workflows waiting for input can be resumed",
                )

            queue = QuestionQueueStore(Path(execution.project_path))
            owned = queue.read()
            questions = owned.questions if owned.workflow_id == execution.id else []
            by_id = {q.id: q for q in questions}

            for question_id in answers:
                question = by_id.get(question_id)
                if question is None:
                    raise ValidationError(
                        f"Question {question_id} is not pending for workflow {execution_id}",
                        hint=f"Pending: {', '.join(q.id for q in questions if q.is_pending) or 'none'}",
                    )
                if question.status == QuestionStatus.ANSWERED:
                    raise QuestionAlreadyAnsweredError(question_id)

            unanswered = [q.id for q in questions if q.is_pending and q.id not in answers]
            if unanswered:
                raise ValidationError(f"Unanswered questions: {', '.join(unanswered)}")

            for question_id, answer in answers.items():
                queue.answer(question_id, answer)

            previously_answered = {
                q.id: q.answer for q in questions
                if q.status == QuestionStatus.ANSWERED and q.answer is not None
            }
            execution.answers = {**execution.answers, **previously_answered, **answers}
            execution.status = WorkflowStatus.RUNNING
            execution.pending_questions = 0
            execution.error = None
            self.store.save(execution)

        logger.info(f"Resuming workflow {execution_id} with {len(execution.answers)} answer(s)")
        recorder = _RunRecorder(execution, queue, self.on_event)
        runner = self.runner_factory(recorder)
        options = RunnerOptions(
            cwd=Path(execution.project_path),
            skill=execution.skill,
            phase=execution.phase,
            answers=dict(execution.answers),
        )
        return self._launch(execution, runner, options, recorder, wait)

    def _launch(
        self,
        execution: WorkflowExecution,
        runner: AgentRunner,
        options: RunnerOptions,
        recorder: _RunRecorder,
        wait: bool,
    ) -> WorkflowExecution:
        if wait:
            return self._execute(execution, runner, options, recorder)

        snapshot = execution.model_copy(deep=True)
        thread = threading.Thread(
            target=self._execute,
            args=(execution, runner, options, recorder, True),
            name=f"workflow-{execution.id}",
            daemon=True,
        )
        self._threads[execution.id] = thread
        thread.start()
        return snapshot

    def _execute(
        self,
        execution: WorkflowExecution,
        runner: AgentRunner,
        options: RunnerOptions,
        recorder: _RunRecorder,
        background: bool = False,
    ) -> WorkflowExecution:
        try:
            try:
                result = runner.run(options)
            except SpecflowError as e:
                logger.error(f"Workflow {execution.id} could not run: {e}")
                result = RunnerResult(exit_code=None, success=False, error=str(e))
            except Exception as e:
                if not background:
                    raise
                logger.exception(f"Workflow {execution.id} crashed in background run")
                result = RunnerResult(exit_code=None, success=False, error=str(e) or type(e).__name__)
            return self._apply_result(execution, result, recorder.questions)
        finally:
            self._threads.pop(execution.id, None)

    def _apply_result(
        self,
        execution: WorkflowExecution,
        result: RunnerResult,
        questions: list[QuestionQueuedData],
    ) -> WorkflowExecution:
        """Map a terminal runner result onto the execution and persist it."""
        with self._lock:
            stored = self.store.get(execution.id)
            if stored.status == WorkflowStatus.CANCELLED:
                logger.info(f"Workflow {execution.id} was cancelled while running; result discarded")
                return stored

            execution.session_id = result.session_id or execution.session_id
            execution.pid = result.pid or execution.pid
            if result.cost_usd is not None:
                execution.cost_usd = (execution.cost_usd or 0.0) + result.cost_usd
            if result.output is not None:
                execution.output = result.output.model_dump(mode="json", by_alias=True, exclude_none=True)

            output_error = result.output is not None and result.output.status == "error"
            if not result.success or output_error:
                execution.status = WorkflowStatus.FAILED
                execution.error = result.error or (result.output.message if result.output else None) \
                    or "Workflow reported an error"
                execution.completed_at = utc_now_iso()
            elif questions:
                execution.status = WorkflowStatus.WAITING_FOR_INPUT
            else:
                execution.status = WorkflowStatus.COMPLETED
                execution.completed_at = utc_now_iso()

            execution.pending_questions = len(questions)
            self.store.save(execution)

        logger.info(f"Workflow {execution.id} -> {execution.status.value}")
        return execution

    def join(self, execution_id: str, timeout: Optional[float] = None) -> None:
        """Wait for a background run started with wait=False."""
        thread = self._threads.get(execution_id)
        if thread is not None:
            thread.join(timeout)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def status(self, execution_id: str) -> WorkflowExecution:
        return self.store.get(execution_id)

    def list_executions(self, project_id: Optional[str] = None) -> list[WorkflowExecution]:
        return self.store.list(project_id)

    def pending_questions(self, execution_id: str) -> list[Question]:
        """Unanswered questions raised by this execution."""
        execution = self.store.get(execution_id)
        queue = QuestionQueueStore(Path(execution.project_path)).read()
        if queue.workflow_id != execution.id:
            return []
        return [q for q in queue.questions if q.is_pending]

    def answer_question(self, project_path: Path, question_id: str, answer: str) -> Question:
        """
        Answer one queued question without resuming.

        Raises:
            NotFoundError: If the question is not in the project's queue
            QuestionAlreadyAnsweredError: If it was already answered
        """
        question = QuestionQueueStore(Path(project_path)).answer(question_id, answer)
        if question is None:
            raise NotFoundError(f"Question {question_id}")
        return question

    # ------------------------------------------------------------------
    # Cancel / kill
    # ------------------------------------------------------------------

    def cancel(self, execution_id: str) -> WorkflowExecution:
        """
        Mark an execution cancelled. Does not stop its process (see kill).

        Raises:
            NotFoundError: If no execution has this id
            InvalidStateError: If the execution already finished
        """
        with self._lock:
            execution = self.store.get(execution_id)
            if execution.is_terminal:
                raise InvalidStateError(f"Cannot cancel workflow in {execution.status.value} state")
            execution.status = WorkflowStatus.CANCELLED
            execution.completed_at = utc_now_iso()
            self.store.save(execution)
        logger.info(f"Cancelled workflow {execution_id}")
        return execution

    def cancel_by_session(
        self,
        session_id: str,
        project_id: Optional[str] = None,
        final_status: WorkflowStatus = WorkflowStatus.CANCELLED,
    ) -> WorkflowExecution:
        """Close out an execution known only by its agent session id."""
        final_status = WorkflowStatus(final_status)
        if final_status not in (WorkflowStatus.CANCELLED, WorkflowStatus.COMPLETED):
            raise ValidationError(f"Final status must be cancelled or completed, got {final_status.value}")

        with self._lock:
            execution = self.store.find_by_session(session_id, project_id)
            if execution is None:
                raise NotFoundError(f"Workflow for session {session_id}")
            if execution.is_terminal:
                raise InvalidStateError(f"Cannot cancel workflow in {execution.status.value} state")
            execution.status = final_status
            execution.completed_at = utc_now_iso()
            self.store.save(execution)
        logger.info(f"Session {session_id} closed as {final_status.value} (workflow {execution.id})")
        return execution

    def kill(self, execution_id: str, project_id: Optional[str] = None, force: bool = False) -> KillResult:
        """
        Signal the run's processes, agent first, then its shell driver.

        Raises:
            NotFoundError: If the execution or its project is unknown
            InvalidStateError: If the execution has no active process
        """
        execution = self.store.get(execution_id)
        if execution.status not in ACTIVE_STATUSES:
            raise InvalidStateError(f"Cannot kill workflow in {execution.status.value} state")

        if project_id:
            project_path = self.registry.get_path(project_id)
        else:
            project_path = Path(execution.project_path)

        result = KillResult()
        run_dir = ProjectPaths(project_path).run_dir(execution_id)
        pids = read_pid_file(run_dir)

        targets = pids.pids() if pids else []
        if execution.pid and execution.pid not in targets:
            targets.append(execution.pid)

        for pid in targets:
            if not is_pid_alive(pid):
                continue
            if kill_process(pid, force=force, grace_seconds=self.config.kill_grace_seconds):
                result.killed.append(pid)
            else:
                result.failed.append(pid)

        if pids:
            cleanup_pid_file(run_dir)

        try:
            self.cancel(execution_id)
        except InvalidStateError as e:
            logger.debug(f"Status not updated after kill of {execution_id}: {e}")

        if result.killed:
            result.message = f"Killed {len(result.killed)} process(es)"
        else:
            result.message = "No processes to kill (may have already terminated)"
        logger.info(f"Kill {execution_id}: killed={result.killed} failed={result.failed}")
        return result

    # ------------------------------------------------------------------
    # Detached mode
    # ------------------------------------------------------------------

    def start_detached(
        self,
        project_path: Path,
        skill: str,
        project_id: Optional[str] = None,
        phase: Optional[str] = None,
    ) -> WorkflowExecution:
        """
        Start a run that outlives this process.

        The agent is driven by a shell script in its own session; its pids
        go to the run directory's pid file and its result to
        workflow-output.json. Collect the result with poll_detached().
        """
        project_path = Path(project_path).resolve()
        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            project_id=project_id,
            project_path=str(project_path),
            skill=skill,
            phase=phase,
            status=WorkflowStatus.DETACHED,
        )
        paths = ProjectPaths(project_path)
        run_dir = paths.run_dir(execution.id)

        runner = ClaudeRunner(self.config, lambda event: None)
        options = RunnerOptions(cwd=project_path, skill=skill, phase=phase)
        script = runner.detached_script(options, paths.output_file(execution.id))

        QuestionQueueStore(project_path).clear(execution.id)
        spawned = spawn_detached(project_path, run_dir, script, env=CHILD_ENV)
        execution.pid = spawned.bash_pid
        self.store.save(execution)
        logger.info(f"Detached workflow {execution.id} driver pid={spawned.bash_pid}")
        return execution

    def poll_detached(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        """
        Wait for a detached run and apply its result.

        On timeout the execution is returned unchanged; nothing is killed.
        """
        execution = self.store.get(execution_id)
        if execution.is_terminal:
            return execution
        run_dir = ProjectPaths(Path(execution.project_path)).run_dir(execution_id)
        completion = poll_for_completion(
            run_dir,
            timeout_seconds=timeout if timeout is not None else self.config.detached_timeout_seconds,
            poll_interval_seconds=self.config.poll_interval_seconds,
        )
        if completion.timed_out:
            logger.warning(f"Detached workflow {execution_id} still running after poll timeout")
            return execution

        queue = QuestionQueueStore(Path(execution.project_path))
        recorder = _RunRecorder(execution, queue, self.on_event)
        runner = ClaudeRunner(self.config, recorder)
        if completion.output is None:
            result = RunnerResult(
                exit_code=completion.exit_code,
                success=False,
                error=completion.stderr[:self.config.max_error_chars]
                or "Process exited without producing output",
            )
        else:
            result = runner.process_output(completion.exit_code, completion.output, completion.stderr)
        return self._apply_result(execution, result, recorder.questions)

    def check_health(self, execution_id: str) -> ProcessHealthResult:
        """
        Probe an execution's processes.

        A running or detached execution whose session log has gone quiet is
        marked stale; nothing else is changed.
        """
        execution = self.store.get(execution_id)
        health = check_process_health(execution, self.config)
        if execution.status in (WorkflowStatus.RUNNING, WorkflowStatus.DETACHED) and should_mark_as_stale(health):
            with self._lock:
                execution.status = WorkflowStatus.STALE
                self.store.save(execution)
            logger.warning(f"Workflow {execution_id} marked stale")
        return health
