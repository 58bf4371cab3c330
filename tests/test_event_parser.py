"""
Tests for the streaming event parser.

Tests cover:
- Chunk boundaries that split lines and JSON objects
- Question extraction from tool calls and permission denials
- Phase transitions from free text
- Degraded handling of malformed lines
"""

import json

import pytest

from specflow.event_parser import StreamEventParser
from specflow.events import EventType, event_to_dict

DENIAL_LINE = (
    '{"type":"result","permission_denials":[{"tool_name":"AskUserQuestion","tool_use_id":"x",'
    '"tool_input":{"questions":[{"question":"Pick one","options":[{"label":"A","description":"a"}]}]}}]}\n'
)


def collect(chunks):
    events = []
    parser = StreamEventParser(events.append)
    for chunk in chunks:
        parser.process_chunk(chunk)
    parser.flush()
    return parser, events


def strip_time(events):
    result = []
    for event in events:
        data = event_to_dict(event)
        data.pop("timestamp")
        result.append(data)
    return result


def assistant(*blocks):
    return json.dumps({"type": "assistant", "message": {"content": list(blocks)}}) + "\n"


class TestChunking:
    """Chunk boundaries never change the events produced."""

    @pytest.mark.parametrize("split", [1, 25, 60, len(DENIAL_LINE) // 2, len(DENIAL_LINE) - 1])
    def test_split_denial_matches_single_chunk(self, split):
        _, whole = collect([DENIAL_LINE])
        _, parts = collect([DENIAL_LINE[:split], DENIAL_LINE[split:]])
        assert strip_time(parts) == strip_time(whole)

    def test_denial_yields_question(self):
        _, events = collect([DENIAL_LINE])
        questions = [e for e in events if e.type == EventType.QUESTION_QUEUED]

        assert len(questions) == 1
        data = questions[0].data
        assert data.id == "q1"
        assert data.content == "Pick one"
        assert data.options[0].label == "A"
        assert data.multi_select is False

    def test_trailing_fragment_needs_flush(self):
        events = []
        parser = StreamEventParser(events.append)
        parser.process_chunk(DENIAL_LINE.rstrip("\n"))
        assert events == []

        parser.flush()
        assert any(e.type == EventType.QUESTION_QUEUED for e in events)

    def test_blank_lines_ignored(self):
        _, events = collect(["\n\n   \n"])
        assert events == []


class TestToolCalls:

    def test_question_tool_call_emits_tool_and_questions(self):
        line = assistant({
            "type": "tool_use",
            "name": "AskUserQuestion",
            "input": {"questions": [
                {"question": "Framework?", "header": "FW", "options": [], "multiSelect": False},
                {"question": "Database?", "header": "DB", "multiSelect": True},
            ]},
        })
        parser, events = collect([line])

        assert [e.type for e in events] == ["tool_invoked", "question_queued", "question_queued"]
        assert [e.data.id for e in events[1:]] == ["fw", "db"]
        assert events[2].data.multi_select is True
        assert parser.questions_emitted == 2

    def test_write_tool_emits_artifact(self):
        line = assistant({"type": "tool_use", "name": "Write", "input": {"file_path": "specs/plan.md"}})
        _, events = collect([line])

        assert [e.type for e in events] == ["tool_invoked", "artifact_created"]
        assert events[1].data.path == "specs/plan.md"
        assert events[1].data.artifact == "plan.md"

    def test_read_tool_has_no_artifact(self):
        line = assistant({"type": "tool_use", "name": "Read", "input": {"file_path": "README.md"}})
        _, events = collect([line])
        assert [e.type for e in events] == ["tool_invoked"]

    def test_legacy_flat_tool_name(self):
        line = json.dumps({"tool_name": "Edit", "tool_input": {"file_path": "src/app.py"}}) + "\n"
        _, events = collect([line])
        assert [e.type for e in events] == ["tool_invoked", "artifact_created"]

    def test_non_question_denials_ignored(self):
        line = json.dumps({
            "type": "result",
            "permission_denials": [{"tool_name": "Bash", "tool_input": {"command": "rm -rf /"}}],
        }) + "\n"
        _, events = collect([line])
        assert [e.type for e in events] == ["progress_update"]


class TestPhases:
    """Phase transitions detected in free text."""

    def test_first_transition_has_no_complete(self):
        _, events = collect([assistant({"type": "text", "text": "Starting discover phase now"})])
        assert [(e.type, e.data.phase) for e in events] == [("phase_started", "discover")]

    def test_transition_completes_previous_phase(self):
        parser, events = collect([
            assistant({"type": "text", "text": "Starting discover"}),
            assistant({"type": "text", "text": "Now proceeding to PLAN."}),
        ])
        assert [(e.type, e.data.phase) for e in events] == [
            ("phase_started", "discover"),
            ("phase_complete", "discover"),
            ("phase_started", "plan"),
        ]
        assert parser.current_phase == "plan"

    def test_same_phase_is_not_repeated(self):
        _, events = collect([
            assistant({"type": "text", "text": "Beginning specify"}),
            assistant({"type": "text", "text": "starting specify again"}),
        ])
        assert [e.type for e in events] == ["phase_started", "progress_update"]

    def test_unknown_phase_ignored(self):
        _, events = collect([assistant({"type": "text", "text": "Starting lunch"})])
        assert [e.type for e in events] == ["progress_update"]

    def test_top_level_string_content(self):
        line = json.dumps({"type": "message", "content": "Beginning tasks"}) + "\n"
        _, events = collect([line])
        assert [e.type for e in events] == ["phase_started"]


class TestDegradedInput:

    def test_malformed_json_becomes_raw_progress(self):
        _, events = collect(["this is not json\n"])
        assert len(events) == 1
        assert events[0].type == EventType.PROGRESS_UPDATE
        assert events[0].data.raw == "this is not json"

    def test_non_object_json_becomes_raw_progress(self):
        _, events = collect(["[1, 2, 3]\n"])
        assert events[0].data.raw == "[1, 2, 3]"

    def test_unmatched_record_reports_type(self):
        line = json.dumps({"type": "system", "subtype": "init", "session_id": "abc"}) + "\n"
        parser, events = collect([line])
        assert events[0].data.claude_event_type == "system"
        assert events[0].data.subtype == "init"
        assert parser.session_id == "abc"

    def test_stream_continues_after_bad_line(self):
        _, events = collect(["oops\n", DENIAL_LINE])
        assert events[0].type == EventType.PROGRESS_UPDATE
        assert any(e.type == EventType.QUESTION_QUEUED for e in events)


class TestAccounting:

    def test_events_emitted_counts_all_events(self):
        parser, events = collect([DENIAL_LINE, "junk\n"])
        assert parser.events_emitted == len(events)

    def test_result_record_kept(self):
        line = json.dumps({"type": "result", "is_error": False, "session_id": "s-9"}) + "\n"
        parser, _ = collect([line])
        assert parser.result_record["session_id"] == "s-9"
