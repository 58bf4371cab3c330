"""
Claude Code subprocess runners.

ClaudeRunner runs the agent once with --output-format json and a JSON
schema constraining its final answer, then synthesizes WorkflowEvents from
that structured result.

ClaudeStreamRunner runs the same invocation with --output-format
stream-json and reports events as they arrive through StreamEventParser.

Both verify the binary before spawning and never retry; a failed spawn is
reported as an error event plus a failed RunnerResult.
"""
import json
import logging
import os
import subprocess
import tempfile
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from ..config import SpecflowConfig
from ..event_parser import StreamEventParser
from ..events import (
    EventType,
    WorkflowEventCallback,
    artifact_name,
    assign_question_ids,
    make_event,
)
from .base import AgentRunner, RunnerOptions, RunnerResult, WorkflowOutput
from .prompt import build_claude_args, build_prompt
from .skills import SkillLoader
from .spawner import build_run_script
from .validator import assert_claude_cli_available

logger = logging.getLogger(__name__)

CHILD_ENV = {"NO_COLOR": "1", "FORCE_COLOR": "0"}


def parse_cli_result(stdout: str) -> dict:
    """
    Parse the agent's final JSON result.

    Raises:
        ValueError: If stdout is not a JSON object
    """
    parsed = json.loads(stdout)
    if not isinstance(parsed, dict):
        raise ValueError("Claude output is not a JSON object")
    return parsed


def parse_structured_output(raw: Any) -> Optional[WorkflowOutput]:
    if not raw:
        return None
    try:
        return WorkflowOutput.model_validate(raw)
    except PydanticValidationError as e:
        logger.warning(f"Structured output does not match workflow schema: {e}")
        return None


class _ClaudeRunnerBase(AgentRunner):
    """Shared preflight, prompt building and event emission."""

    def __init__(
        self,
        config: SpecflowConfig,
        on_event: WorkflowEventCallback,
        skill_loader: Optional[SkillLoader] = None,
        timeout: Optional[float] = None,
    ):
        self.config = config
        self.on_event = on_event
        self.skill_loader = skill_loader or SkillLoader(config.skill_dirs)
        self.timeout = timeout
        self._events_emitted = 0

    def preflight(self, options: RunnerOptions) -> None:
        assert_claude_cli_available(self.config.claude_binary)
        self.skill_loader.find(options.skill)

    def build_prompt(self, options: RunnerOptions) -> str:
        skill_content = self.skill_loader.load_template(options.skill)
        return build_prompt(skill_content, options.phase, options.answers)

    def _emit(self, event_type: EventType, data: dict) -> None:
        self._events_emitted += 1
        self._deliver(make_event(event_type, data))

    def _forward(self, event) -> None:
        self._events_emitted += 1
        self._deliver(event)

    def _deliver(self, event) -> None:
        try:
            self.on_event(event)
        except Exception as e:
            logger.warning(f"Event handler failed on {event.type}: {e}")

    def _emit_structured_output(self, output: WorkflowOutput, include_questions: bool = True) -> None:
        if output.phase:
            self._emit(EventType.PHASE_STARTED, {"phase": output.phase})

        if include_questions and output.questions:
            ids = assign_question_ids(q.header for q in output.questions)
            for question_id, q in zip(ids, output.questions):
                self._emit(EventType.QUESTION_QUEUED, {
                    "id": question_id,
                    "content": q.question,
                    "header": q.header,
                    "options": [o.model_dump() for o in q.options],
                    "multiSelect": q.multi_select,
                })

        for artifact in output.artifacts:
            self._emit(EventType.ARTIFACT_CREATED, {
                "path": artifact.path,
                "artifact": artifact_name(artifact.path),
                "action": artifact.action,
            })

    def _emit_complete(self, result: RunnerResult) -> None:
        self._emit(EventType.COMPLETE, {
            "exitCode": result.exit_code,
            "success": result.success,
            "status": result.output.status if result.output else None,
            "eventsEmitted": self._events_emitted,
        })
        result.events_emitted = self._events_emitted

    def _spawn_failed(self, error: Exception) -> RunnerResult:
        message = str(error) or type(error).__name__
        logger.error(f"Failed to spawn {self.config.claude_binary}: {message}")
        self._emit(EventType.ERROR, {"message": message, "source": "process"})
        return RunnerResult(
            exit_code=None,
            success=False,
            error=message,
            events_emitted=self._events_emitted,
        )

    def _apply_cli_result(self, result: RunnerResult, parsed: dict, include_questions: bool = True) -> None:
        """Fold the agent's JSON result record into a RunnerResult."""
        result.session_id = parsed.get("session_id") or result.session_id
        cost = parsed.get("total_cost_usd")
        if isinstance(cost, (int, float)):
            result.cost_usd = float(cost)

        output = parse_structured_output(parsed.get("structured_output"))
        if output:
            result.output = output
            self._emit_structured_output(output, include_questions)

        if parsed.get("is_error"):
            result.success = False
            result.error = self._truncate(str(parsed.get("result") or "Unknown error"))

    def _truncate(self, text: str) -> str:
        return text[:self.config.max_error_chars]

    def _parse_failure(self, stdout: str, stderr: str) -> str:
        error = f"Failed to parse Claude output: {self._truncate(stdout)}"
        if stderr:
            error += f"\nStderr: {self._truncate(stderr)}"
        return error


class ClaudeRunner(_ClaudeRunnerBase):
    """
    Runs the agent once and synthesizes events from its structured result.

    Event sequence: phase_started(workflow) at launch; phase_started for a
    named phase; question_queued per question; artifact_created per
    artifact; complete always last.
    """

    def run(self, options: RunnerOptions) -> RunnerResult:
        self.preflight(options)
        prompt = self.build_prompt(options)
        args = build_claude_args(prompt, "json", options.args)

        self._events_emitted = 0
        self._emit(EventType.PHASE_STARTED, {"phase": "workflow", "skill": options.skill})
        logger.info(f"Running skill {options.skill} in {options.cwd}")

        try:
            proc = subprocess.run(
                [self.config.claude_binary, *args],
                cwd=str(options.cwd),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, **CHILD_ENV},
            )
        except subprocess.TimeoutExpired:
            return self._spawn_failed(TimeoutError(f"Claude Code timed out after {self.timeout}s"))
        except OSError as e:
            return self._spawn_failed(e)

        result = self.process_output(proc.returncode, proc.stdout or "", proc.stderr or "")
        logger.info(f"Skill {options.skill} finished: exit={result.exit_code} success={result.success}")
        return result

    def process_output(self, exit_code: Optional[int], stdout: str, stderr: str = "") -> RunnerResult:
        """
        Turn a finished invocation's output into events and a result.

        Shared by in-process runs and detached runs whose output was
        collected from the run directory. Emits complete last.
        """
        result = RunnerResult(exit_code=exit_code, success=exit_code in (0, None))

        try:
            parsed = parse_cli_result(stdout)
        except ValueError:
            result.success = False
            result.error = self._parse_failure(stdout, stderr)
        else:
            self._apply_cli_result(result, parsed)

        if not result.success and not result.error:
            result.error = self._truncate(stderr or f"Claude Code exited with code {exit_code}")

        self._emit_complete(result)
        return result

    def detached_script(self, options: RunnerOptions, output_file) -> str:
        """Driver script for a detached run of the same invocation."""
        self.preflight(options)
        args = build_claude_args(self.build_prompt(options), "json", options.args)
        return build_run_script(self.config.claude_binary, args, options.cwd, output_file)


class ClaudeStreamRunner(_ClaudeRunnerBase):
    """Runs the agent in streaming mode, reporting events as they arrive."""

    def run(self, options: RunnerOptions) -> RunnerResult:
        self.preflight(options)
        prompt = self.build_prompt(options)
        args = build_claude_args(prompt, "stream-json", options.args)

        self._events_emitted = 0
        self._emit(EventType.PHASE_STARTED, {"phase": "workflow", "skill": options.skill})

        parser = StreamEventParser(self._forward)
        with tempfile.TemporaryFile(mode="w+") as stderr_file:
            try:
                proc = subprocess.Popen(
                    [self.config.claude_binary, *args],
                    cwd=str(options.cwd),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    text=True,
                    env={**os.environ, **CHILD_ENV},
                )
            except OSError as e:
                return self._spawn_failed(e)

            logger.info(f"Streaming skill {options.skill} pid={proc.pid}")
            for line in iter(proc.stdout.readline, ""):
                parser.process_chunk(line)
            parser.flush()
            proc.stdout.close()
            exit_code = proc.wait()

            stderr_file.seek(0)
            stderr = stderr_file.read()

        result = RunnerResult(
            exit_code=exit_code,
            success=exit_code == 0,
            session_id=parser.session_id,
            pid=proc.pid,
        )

        if parser.result_record is not None:
            # Questions already surfaced by the stream are not repeated
            self._apply_cli_result(
                result,
                parser.result_record,
                include_questions=parser.questions_emitted == 0,
            )
        else:
            result.success = False
            result.error = self._truncate(stderr) or "Stream ended without a result record"

        if not result.success and not result.error:
            result.error = self._truncate(stderr or f"Claude Code exited with code {exit_code}")

        self._emit_complete(result)
        return result
