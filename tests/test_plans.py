"""Tests for plan extraction from agent output."""

import json

from autodev.core.plans import ParsedPlan, RawFallback, extract_plan

from conftest import assistant_line


def test_last_assistant_text_wins():
    output = (
        json.dumps({"type": "system", "subtype": "init"}) + "\n"
        + assistant_line("thinking out loud")
        + json.dumps({"type": "user", "message": {"content": [{"type": "text", "text": "tool result"}]}}) + "\n"
        + assistant_line("## Plan\n1. Do it")
        + json.dumps({"type": "result", "result": "## Plan\n1. Do it"}) + "\n"
    )
    assert extract_plan(output) == ParsedPlan("## Plan\n1. Do it")


def test_last_text_block_within_a_message():
    message = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "first"},
                {"type": "tool_use", "name": "Read"},
                {"type": "text", "text": "second"},
            ]
        },
    }
    assert extract_plan(json.dumps(message)) == ParsedPlan("second")


def test_non_json_lines_are_ignored():
    output = "garbage\n" + assistant_line("plan") + "{truncated"
    assert extract_plan(output) == ParsedPlan("plan")


def test_raw_fallback_when_no_assistant_text():
    result = extract_plan("\n  plain text output  \n")
    assert isinstance(result, RawFallback)
    assert result.text == "plain text output"


def test_empty_output():
    assert extract_plan("") == RawFallback("")
