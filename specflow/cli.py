#!/usr/bin/env python3
"""
SpecFlow CLI

Command-line surface over the orchestration core: start and steer agent
workflows, answer their questions, and read or write the project checkpoint.
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from specflow import __version__
from specflow.checkpoint import (
    CheckpointStore,
    create_initial_state,
    parse_assignment,
    set_value,
    validate_state_key,
)
from specflow.config import SpecflowConfig
from specflow.errors import SpecflowError, ValidationError
from specflow.events import event_to_dict
from specflow.process_health import get_health_status_message
from specflow.question_queue import QuestionQueueStore
from specflow.registry import ProjectRegistry
from specflow.runners import ClaudeStreamRunner
from specflow.workflow_service import WorkflowService, WorkflowStatus

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    level_name = "DEBUG" if verbose else os.environ.get("SPECFLOW_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def emit(args, data, text: str) -> None:
    """Print JSON with --json, otherwise the human-readable text."""
    if args.json:
        print(json.dumps(data, indent=2, default=str))
    else:
        print(text)


def get_service(args) -> WorkflowService:
    config = SpecflowConfig.load(args.config)

    def on_event(execution_id, event):
        if args.follow:
            print(json.dumps(event_to_dict(event)), flush=True)

    def stream_runner(handler):
        return ClaudeStreamRunner(config, handler)

    return WorkflowService(
        config,
        runner_factory=stream_runner if args.stream else None,
        on_event=on_event,
    )


def project_dir(args) -> Path:
    return Path(args.dir or '.').resolve()


def parse_answers(pairs: list[str]) -> dict[str, str]:
    answers = {}
    for pair in pairs or []:
        if '=' not in pair:
            raise ValidationError(f"Invalid answer format: {pair}", hint="Use question_id=answer")
        key, value = pair.split('=', 1)
        answers[key.strip()] = value
    return answers


def describe_execution(execution) -> str:
    lines = [
        f"Workflow: {execution.id}",
        f"Skill:    {execution.skill}",
        f"Status:   {execution.status.value}",
    ]
    if execution.current_phase:
        lines.append(f"Phase:    {execution.current_phase}")
    if execution.pending_questions:
        lines.append(f"Pending questions: {execution.pending_questions}")
    if execution.artifacts_created:
        lines.append(f"Artifacts: {', '.join(execution.artifacts_created)}")
    if execution.cost_usd is not None:
        lines.append(f"Cost:     ${execution.cost_usd:.4f}")
    if execution.error:
        lines.append(f"Error:    {execution.error}")
    return "\n".join(lines)


# ============================================================================
# workflow commands
# ============================================================================

def cmd_workflow_start(args):
    """Start a skill run."""
    service = get_service(args)
    if args.detach:
        execution = service.start_detached(project_dir(args), args.skill, args.project_id, args.phase)
    else:
        execution = service.start(project_dir(args), args.skill, args.project_id, args.phase)

    text = describe_execution(execution)
    if execution.status == WorkflowStatus.WAITING_FOR_INPUT:
        pending = service.pending_questions(execution.id)
        text += "\n\n" + format_questions(pending)
        text += f"\n\nAnswer with: specflow workflow resume {execution.id} --answer <id>=<answer>"
    emit(args, execution.to_dict(), text)
    if execution.status == WorkflowStatus.FAILED:
        sys.exit(1)


def cmd_workflow_status(args):
    """Show one execution, or list the recent ones."""
    service = get_service(args)
    if args.id:
        execution = service.status(args.id)
        emit(args, execution.to_dict(), describe_execution(execution))
        return

    executions = service.list_executions(args.project_id)
    if not executions:
        emit(args, [], "No workflows found")
        return
    text = "\n".join(
        f"{e.id}  {e.status.value:<18} {e.skill:<12} {e.started_at}" for e in executions
    )
    emit(args, [e.to_dict() for e in executions], text)


def format_questions(questions) -> str:
    if not questions:
        return "No pending questions"
    lines = [f"Pending Questions: {len(questions)}", ""]
    for q in questions:
        lines.append(f"[{q.id}] {q.content}")
        for option in q.options:
            lines.append(f"    - {option.label}: {option.description}")
        if q.multi_select:
            lines.append("    (multiple selections allowed)")
    return "\n".join(lines)


def cmd_workflow_answer(args):
    """Answer a queued question, or list pending ones."""
    service = get_service(args)
    queue = QuestionQueueStore(project_dir(args))

    if args.list or not args.question_id:
        pending = queue.pending()
        emit(args, {"questions": [q.model_dump(by_alias=True) for q in pending], "count": len(pending)},
             format_questions(pending))
        return

    if args.answer is None:
        raise ValidationError("Answer is required")

    question = service.answer_question(project_dir(args), args.question_id, args.answer)
    pending = queue.pending()
    emit(
        args,
        {"success": True, "questionId": question.id, "answer": question.answer, "pendingCount": len(pending)},
        f"Answered {question.id}\nAnswer: {question.answer}\nPending questions: {len(pending)}",
    )


def cmd_workflow_resume(args):
    """Resume a waiting execution with answers."""
    service = get_service(args)
    execution = service.resume(args.id, parse_answers(args.answer))
    emit(args, execution.to_dict(), describe_execution(execution))
    if execution.status == WorkflowStatus.FAILED:
        sys.exit(1)


def cmd_workflow_cancel(args):
    """Mark an execution cancelled (by id, or by agent session id)."""
    service = get_service(args)
    if args.session:
        final = WorkflowStatus.COMPLETED if args.completed else WorkflowStatus.CANCELLED
        execution = service.cancel_by_session(args.session, args.project_id, final)
    elif args.id:
        execution = service.cancel(args.id)
    else:
        raise ValidationError("Missing required parameters: id, or --session")
    emit(args, execution.to_dict(), f"Workflow {execution.id} is now {execution.status.value}")


def cmd_workflow_kill(args):
    """Signal an execution's processes."""
    service = get_service(args)
    result = service.kill(args.id, args.project_id, force=args.force)
    emit(
        args,
        {"success": True, "killed": result.killed, "failed": result.failed, "message": result.message},
        result.message,
    )
    if result.failed:
        sys.exit(1)


def cmd_workflow_poll(args):
    """Wait for a detached execution to finish."""
    service = get_service(args)
    execution = service.poll_detached(args.id, args.timeout)
    emit(args, execution.to_dict(), describe_execution(execution))


def cmd_workflow_health(args):
    """Show process health of an execution."""
    service = get_service(args)
    health = service.check_health(args.id)
    emit(args, health.to_dict(), f"{health.health_status.value}: {get_health_status_message(health)}")


# ============================================================================
# state / project commands
# ============================================================================

def cmd_state_get(args):
    """Print the checkpoint or one value from it."""
    store = CheckpointStore(project_dir(args))
    value = store.get(validate_state_key(args.key)) if args.key else store.read()
    if isinstance(value, (dict, list)) or args.json:
        print(json.dumps(value, indent=2, default=str))
    else:
        print(value)


def cmd_state_set(args):
    """Set one or more dotted keys (key=value)."""
    store = CheckpointStore(project_dir(args))
    updates = [parse_assignment(pair) for pair in args.assignments]
    state = store.read()
    for key, value in updates:
        state = set_value(state, key, value)
    store.write(state)
    emit(args, {"updated": [k for k, _ in updates]}, "\n".join(f"Set {k}" for k, _ in updates))


def cmd_state_init(args):
    """Create a fresh checkpoint for the project."""
    store = CheckpointStore(project_dir(args))
    if store.exists() and not args.force:
        raise ValidationError("State file already exists", hint="Use --force to overwrite")
    name = args.name or project_dir(args).name
    if args.force:
        state = store.write(create_initial_state(name, str(project_dir(args))))
    else:
        state = store.init(name)
    emit(args, state, f"Initialized {store.state_path}")


def cmd_project_register(args):
    """Register the project directory in the global registry."""
    config = SpecflowConfig.load(args.config)
    path = project_dir(args)
    project_id = args.id
    if not project_id:
        try:
            project_id = CheckpointStore(path).get("project.id")
        except SpecflowError:
            project_id = None
    if not project_id:
        raise ValidationError("Project id unknown", hint="Pass --id or run \"specflow state init\" first")
    entry = ProjectRegistry(config).register(project_id, path, args.name)
    emit(args, {"id": project_id, **entry.model_dump()}, f"Registered {project_id} -> {entry.path}")


# ============================================================================
# Entry point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="specflow",
        description="SpecFlow - drive agent workflows through a question/answer protocol",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  specflow workflow start design
  specflow workflow answer --list
  specflow workflow resume <id> --answer fw=React
  specflow workflow kill <id> --force
  specflow state set orchestration.step.current=plan
        """
    )
    parser.add_argument('--dir', '-d', default='.', help='Project directory (default: current)')
    parser.add_argument('--config', help='Config file (default: ~/.specflow/config.yaml)')
    parser.add_argument('--json', action='store_true', help='Output JSON')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # workflow
    workflow_parser = subparsers.add_parser('workflow', help='Run and steer agent workflows')
    wf = workflow_parser.add_subparsers(dest='workflow_command')

    start = wf.add_parser('start', help='Start a skill run')
    start.add_argument('skill', help='Skill name (e.g. design, flow.design)')
    start.add_argument('--phase', help='Sub-phase passed to the skill')
    start.add_argument('--project-id', help='Registered project id')
    start.add_argument('--detach', action='store_true', help='Run in the background; collect with "poll"')
    start.add_argument('--follow', action='store_true', help='Print events as JSON lines while running')
    start.add_argument('--stream', action='store_true', help='Stream agent output and report events as they arrive')
    start.set_defaults(func=cmd_workflow_start)

    status = wf.add_parser('status', help='Show a workflow, or list recent ones')
    status.add_argument('id', nargs='?', help='Workflow id')
    status.add_argument('--project-id', help='Filter list by project id')
    status.set_defaults(func=cmd_workflow_status)

    answer = wf.add_parser('answer', help='Answer a pending question')
    answer.add_argument('question_id', nargs='?', help='ID of the question to answer')
    answer.add_argument('answer', nargs='?', help='Answer text or option label')
    answer.add_argument('--list', action='store_true', help='List pending questions instead of answering')
    answer.set_defaults(func=cmd_workflow_answer)

    resume = wf.add_parser('resume', help='Resume a waiting workflow')
    resume.add_argument('id', help='Workflow id')
    resume.add_argument('--answer', '-a', action='append', default=[], help='question_id=answer (repeatable)')
    resume.add_argument('--follow', action='store_true', help='Print events as JSON lines while running')
    resume.add_argument('--stream', action='store_true', help='Stream agent output and report events as they arrive')
    resume.set_defaults(func=cmd_workflow_resume)

    cancel = wf.add_parser('cancel', help='Mark a workflow cancelled')
    cancel.add_argument('id', nargs='?', help='Workflow id')
    cancel.add_argument('--session', help='Agent session id (when the workflow id is unknown)')
    cancel.add_argument('--project-id', help='Project id for --session lookups')
    cancel.add_argument('--completed', action='store_true', help='With --session: mark completed instead')
    cancel.set_defaults(func=cmd_workflow_cancel)

    kill = wf.add_parser('kill', help="Terminate a workflow's processes")
    kill.add_argument('id', help='Workflow id')
    kill.add_argument('--project-id', help='Registered project id')
    kill.add_argument('--force', action='store_true', help='SIGKILL immediately')
    kill.set_defaults(func=cmd_workflow_kill)

    poll = wf.add_parser('poll', help='Wait for a detached workflow to finish')
    poll.add_argument('id', help='Workflow id')
    poll.add_argument('--timeout', type=float, help='Seconds to wait (default: 4 hours)')
    poll.add_argument('--follow', action='store_true', help='Print events as JSON lines')
    poll.set_defaults(func=cmd_workflow_poll)

    health = wf.add_parser('health', help='Check process health of a workflow')
    health.add_argument('id', help='Workflow id')
    health.set_defaults(func=cmd_workflow_health)

    workflow_parser.set_defaults(func=lambda args: workflow_parser.print_help())

    # state
    state_parser = subparsers.add_parser('state', help='Read or write the orchestration checkpoint')
    st = state_parser.add_subparsers(dest='state_command')

    get = st.add_parser('get', help='Print the checkpoint or one dotted key')
    get.add_argument('key', nargs='?', help='Dotted key (e.g. orchestration.step.current)')
    get.set_defaults(func=cmd_state_get)

    set_ = st.add_parser('set', help='Set dotted keys')
    set_.add_argument('assignments', nargs='+', help='key=value (value parsed as JSON when possible)')
    set_.set_defaults(func=cmd_state_set)

    init = st.add_parser('init', help='Create a fresh checkpoint')
    init.add_argument('--name', help='Project name (default: directory name)')
    init.add_argument('--force', '-f', action='store_true', help='Overwrite an existing checkpoint')
    init.set_defaults(func=cmd_state_init)

    state_parser.set_defaults(func=lambda args: state_parser.print_help())

    # project
    project_parser = subparsers.add_parser('project', help='Project registry')
    pr = project_parser.add_subparsers(dest='project_command')
    register = pr.add_parser('register', help='Register this project directory')
    register.add_argument('--id', help='Project id (default: project.id from the checkpoint)')
    register.add_argument('--name', help='Display name')
    register.set_defaults(func=cmd_project_register)
    project_parser.set_defaults(func=lambda args: project_parser.print_help())

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if not hasattr(args, 'follow'):
        args.follow = False
    if not hasattr(args, 'stream'):
        args.stream = False

    try:
        args.func(args)
    except SpecflowError as e:
        if args.json:
            print(json.dumps({"success": False, "error": e.message, "hint": e.hint}, indent=2))
        else:
            print(f"Error: {e}", file=sys.stderr)
            if e.hint:
                print(f"Hint: {e.hint}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
