"""
Prompt and structured-output schema for non-interactive agent runs.

Interactive question asking is disabled in CLI mode, so the agent is told to
encode questions in its structured result instead. The question format
mirrors the AskUserQuestion tool input.
"""
import json
from typing import Optional

from ..events import QUESTION_TOOL

WORKFLOW_SCHEMA = {
    "type": "object",
    "properties": {
        "status": {
            "type": "string",
            "enum": ["completed", "needs_input", "error"],
            "description": "Current workflow status",
        },
        "phase": {
            "type": "string",
            "description": "Current phase (discover, specify, plan, tasks, checklists)",
        },
        "message": {
            "type": "string",
            "description": "Status message or summary",
        },
        "questions": {
            "type": "array",
            "description": "Questions needing user input (mirrors AskUserQuestion format)",
            "items": {
                "type": "object",
                "properties": {
                    "question": {"type": "string", "description": "The question text"},
                    "header": {"type": "string", "description": "Short label (max 12 chars)"},
                    "options": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "label": {"type": "string", "description": "Option display text"},
                                "description": {"type": "string", "description": "Option explanation"},
                            },
                            "required": ["label", "description"],
                        },
                    },
                    "multiSelect": {
                        "type": "boolean",
                        "description": "Allow multiple selections",
                        "default": False,
                    },
                },
                "required": ["question"],
            },
        },
        "artifacts": {
            "type": "array",
            "description": "Files created or modified",
            "items": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "action": {"type": "string", "enum": ["created", "modified"]},
                },
            },
        },
    },
    "required": ["status"],
}

CLI_MODE_INSTRUCTIONS = f"""# CLI Mode Instructions

You are running in non-interactive CLI mode. IMPORTANT:
1. You CANNOT use {QUESTION_TOOL} tool - it is disabled
2. When you need user input, output questions in the JSON structured_output
3. Set status to "needs_input" and include a questions array
4. Use the SAME format as {QUESTION_TOOL} tool input:
   - question: The question text
   - header: Short label (max 12 chars)
   - options: Array of {{label, description}} choices
   - multiSelect: true if multiple selections allowed

# Skill Instructions

Execute the following skill:

"""


def build_prompt(
    skill_content: str,
    phase: Optional[str] = None,
    answers: Optional[dict[str, str]] = None,
) -> str:
    """
    Build the full task prompt.

    Args:
        skill_content: Skill template text
        phase: Optional sub-phase passed to the skill as --<phase>
        answers: Prior answers (question id -> answer), embedded when resuming
    """
    prompt = CLI_MODE_INSTRUCTIONS

    if phase:
        prompt += f"Arguments: --{phase}\n\n"

    prompt += skill_content

    if answers:
        prompt += (
            "\n\n# Previous User Answers\n\n"
            "The user has already answered these questions:\n"
            f"{json.dumps(answers, indent=2)}\n\n"
            "Continue from where you left off using these answers."
        )

    return prompt


def build_claude_args(
    prompt: str,
    output_format: str = "json",
    extra_args: Optional[list[str]] = None,
) -> list[str]:
    """Arguments (without the binary) for a non-interactive structured run."""
    args = [
        "-p",
        "--output-format", output_format,
    ]
    if output_format == "stream-json":
        args.append("--verbose")
    args += [
        "--dangerously-skip-permissions",
        "--disallowedTools", QUESTION_TOOL,
        "--json-schema", json.dumps(WORKFLOW_SCHEMA),
    ]
    args += extra_args or []
    args.append(prompt)
    return args
