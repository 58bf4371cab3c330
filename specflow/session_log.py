"""
Reader for the agent's own session log.

The agent appends one JSON record per line to
<claude_home>/projects/<encoded project path>/<session-id>.jsonl. This module
only reads it: the tail of the file is summarized into messages, tool calls,
files modified, elapsed time and whether the session has ended.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LIMIT = 100

STOP_HOOK_PREFIX = "Stop hook feedback:"

TOOL_OPERATIONS = {
    "Read": "read",
    "Write": "write",
    "Edit": "edit",
    "MultiEdit": "edit",
    "Glob": "search",
    "Grep": "search",
    "TodoWrite": "todo",
}


@dataclass
class SessionMessage:
    role: str
    content: str
    timestamp: Optional[str] = None
    is_session_end: bool = False


@dataclass
class ToolCallInfo:
    name: str
    operation: str
    files: list[str] = field(default_factory=list)


@dataclass
class SessionContent:
    session_id: str
    messages: list[SessionMessage] = field(default_factory=list)
    tool_calls: list[ToolCallInfo] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    current_todos: list[dict] = field(default_factory=list)
    elapsed: float = 0.0
    has_ended: bool = False

    def content_hash(self) -> str:
        """Cheap change detector used by the poller."""
        return f"{len(self.messages)}:{self.elapsed}:{self.has_ended}"


def tail_lines(text: str, limit: int) -> list[str]:
    lines = [line for line in text.split("\n") if line.strip()]
    return lines[-limit:] if limit > 0 else lines


def _text_of(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(block["text"]) for block in content
            if isinstance(block, dict) and block.get("type") == "text" and "text" in block
        ]
        return "\n".join(parts)
    return ""


def _tool_calls_of(content: Any) -> tuple[list[ToolCallInfo], Optional[list[dict]]]:
    calls: list[ToolCallInfo] = []
    todos = None
    if not isinstance(content, list):
        return calls, todos

    for block in content:
        if not isinstance(block, dict) or block.get("type") != "tool_use" or "name" not in block:
            continue
        name = str(block["name"])
        tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
        files = []
        if name in ("Read", "Write", "Edit", "MultiEdit"):
            path = tool_input.get("file_path") or tool_input.get("path")
            if isinstance(path, str):
                files.append(path)
        elif name == "Grep" and isinstance(tool_input.get("path"), str):
            files.append(tool_input["path"])
        elif name == "TodoWrite" and isinstance(tool_input.get("todos"), list):
            todos = [t for t in tool_input["todos"] if isinstance(t, dict) and "content" in t]
        calls.append(ToolCallInfo(name=name, operation=TOOL_OPERATIONS.get(name, "execute"), files=files))
    return calls, todos


def _elapsed_seconds(first: Optional[str], last: Optional[str]) -> float:
    if not first or not last:
        return 0.0
    try:
        start = datetime.fromisoformat(first.replace("Z", "+00:00"))
        end = datetime.fromisoformat(last.replace("Z", "+00:00"))
    except ValueError:
        return 0.0
    return max(0.0, (end - start).total_seconds())


def parse_session_lines(session_id: str, lines: list[str]) -> SessionContent:
    """Summarize session log records. Malformed lines are skipped."""
    content = SessionContent(session_id=session_id)
    files: dict[str, None] = {}
    first_ts: Optional[str] = None
    last_ts: Optional[str] = None

    for line in lines:
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if not isinstance(record, dict):
            continue

        timestamp = record.get("timestamp") if isinstance(record.get("timestamp"), str) else None
        if timestamp:
            first_ts = first_ts or timestamp
            last_ts = timestamp

        record_type = record.get("type")
        if record_type == "result":
            content.has_ended = True
            continue
        if record_type not in ("user", "assistant"):
            continue

        message = record.get("message") if isinstance(record.get("message"), dict) else {}
        body = message.get("content")
        text = _text_of(body)

        if record_type == "user" and record.get("isMeta") and text.startswith(STOP_HOOK_PREFIX):
            content.has_ended = True
            content.messages.append(SessionMessage("system", "Session Ended", timestamp, is_session_end=True))
            continue

        calls, todos = _tool_calls_of(body)
        content.tool_calls.extend(calls)
        for call in calls:
            if call.operation in ("write", "edit"):
                files.update(dict.fromkeys(call.files))
        if todos is not None:
            content.current_todos = todos

        if text:
            content.messages.append(SessionMessage(record_type, text, timestamp))

    content.files_modified = list(files)
    content.elapsed = _elapsed_seconds(first_ts, last_ts)
    return content


def read_session_content(
    path: Path,
    session_id: Optional[str] = None,
    tail: int = DEFAULT_TAIL_LIMIT,
) -> SessionContent:
    """
    Read and summarize the last `tail` records of a session log.

    Raises:
        FileNotFoundError: If the log does not exist (yet)
    """
    path = Path(path)
    text = path.read_text(errors="replace")
    return parse_session_lines(session_id or path.stem, tail_lines(text, tail))
