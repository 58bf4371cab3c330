"""
Tests for session log summarization.
"""

import json

import pytest

from specflow.session_log import parse_session_lines, read_session_content, tail_lines


def record(kind, content, ts=None, **extra):
    data = {"type": kind, "message": {"role": kind, "content": content}, **extra}
    if ts:
        data["timestamp"] = ts
    return json.dumps(data)


class TestParseSessionLines:

    def test_messages_and_elapsed(self):
        content = parse_session_lines("s1", [
            record("user", "Design the login page", "2026-01-01T10:00:00Z"),
            record("assistant", [{"type": "text", "text": "On it"}], "2026-01-01T10:01:30Z"),
        ])

        assert [(m.role, m.content) for m in content.messages] == [
            ("user", "Design the login page"), ("assistant", "On it"),
        ]
        assert content.elapsed == 90.0
        assert not content.has_ended

    def test_tool_calls_files_and_todos(self):
        content = parse_session_lines("s1", [
            record("assistant", [
                {"type": "tool_use", "name": "Write", "input": {"file_path": "specs/a.md"}},
                {"type": "tool_use", "name": "Read", "input": {"file_path": "README.md"}},
                {"type": "tool_use", "name": "Edit", "input": {"file_path": "specs/a.md"}},
                {"type": "tool_use", "name": "TodoWrite", "input": {"todos": [{"content": "plan"}, "junk"]}},
                {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
            ]),
        ])

        assert [c.operation for c in content.tool_calls] == ["write", "read", "edit", "todo", "execute"]
        assert content.files_modified == ["specs/a.md"]
        assert content.current_todos == [{"content": "plan"}]

    def test_result_record_ends_session(self):
        content = parse_session_lines("s1", [json.dumps({"type": "result"})])
        assert content.has_ended

    def test_stop_hook_ends_session(self):
        content = parse_session_lines("s1", [
            record("user", "Stop hook feedback: done", isMeta=True),
        ])
        assert content.has_ended
        assert content.messages[-1].is_session_end

    def test_malformed_lines_skipped(self):
        content = parse_session_lines("s1", ["{not json", "[1]", record("user", "hi")])
        assert len(content.messages) == 1

    def test_hash_changes_with_content(self):
        before = parse_session_lines("s1", [record("user", "hi")])
        after = parse_session_lines("s1", [record("user", "hi"), record("assistant", "hello")])
        assert before.content_hash() != after.content_hash()


class TestReadSessionContent:

    def test_tail_limit(self, tmp_path):
        log = tmp_path / "s1.jsonl"
        log.write_text("\n".join(record("user", f"m{i}") for i in range(10)) + "\n")

        content = read_session_content(log, tail=3)

        assert content.session_id == "s1"
        assert [m.content for m in content.messages] == ["m7", "m8", "m9"]

    def test_missing_log(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_session_content(tmp_path / "nope.jsonl")

    def test_tail_lines_skips_blanks(self):
        assert tail_lines("a\n\n b \n", 10) == ["a", " b "]
