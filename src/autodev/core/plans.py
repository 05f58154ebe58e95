"""Extracting the plan text from the agent's stream-json output."""

import json
from dataclasses import dataclass


@dataclass(frozen=True)
class ParsedPlan:
    """Text of the last assistant message."""

    text: str


@dataclass(frozen=True)
class RawFallback:
    """No assistant text was found; the stripped raw output stands in."""

    text: str


PlanResult = ParsedPlan | RawFallback


def extract_plan(output: str) -> PlanResult:
    """Find the last ``text`` block of the last assistant message.

    The agent emits one JSON object per line. Lines that are not JSON, or not
    assistant messages, are ignored.
    """
    last_text = ""
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if not isinstance(obj, dict) or obj.get("type") != "assistant":
            continue
        message = obj.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), list):
            continue
        for block in message["content"]:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                last_text = block["text"]

    if last_text:
        return ParsedPlan(last_text)
    return RawFallback(output.strip())
