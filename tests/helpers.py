"""Helpers shared by test modules."""

import json


def cli_result(structured_output=None, **extra) -> str:
    """stdout of a json-mode agent run."""
    data = {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "session_id": "sess-1",
        "total_cost_usd": 0.0123,
        "result": "done",
    }
    if structured_output is not None:
        data["structured_output"] = structured_output
    data.update(extra)
    return json.dumps(data)
