# services/orchestrator_parser.py
# Model output -> structured decisions (tool calls, continue/complete, format verdict)

import json
import logging
import re
from typing import Any, List, Optional

from schemas.orchestration_schema import PlannedToolCall

logger = logging.getLogger(__name__)

CALL_TOOLS_MARKER = "CALL_TOOLS"
SUFFICIENT_INFO_MARKER = "SUFFICIENT_INFO"
CONTINUE_MARKER = "CONTINUE:"
COMPLETE_MARKER = "COMPLETE:"
FORMAT_ACCEPTABLE_MARKER = "FORMAT_ACCEPTABLE"

_FENCE_RE = re.compile(r"```[a-zA-Z]*\s*(.*?)```", re.S)
_CALL_TOOLS_RE = re.compile(r"CALL_TOOLS\s*:?", re.I)
_EXECUTE_RE = re.compile(r"EXECUTE:\s*([\w.\-]+)[\s\S]*?PARAMETERS:", re.I)

_decoder = json.JSONDecoder()

CONTINUATION_INDICATORS = (
    "continue",
    "more information needed",
    "additional tools",
    "need more",
    "insufficient",
    "call more tools",
    "further investigation",
    "retry",
    "broader search",
    "no relevant data",
    "no events found",
    "failed to find",
)

COMPLETION_INDICATORS = (
    "sufficient data retrieved",
    "successfully retrieved",
    "found relevant events",
    "calendar data obtained",
    "tools returned useful data",
)


def _decode_from(text: str, start: int, opener: str) -> Optional[Any]:
    """
    Decode the first JSON value that starts with ``opener`` at or after ``start``.

    Uses ``raw_decode`` so nested brackets and trailing prose are handled.

    :return: decoded value or None
    """
    pos = text.find(opener, start)
    if pos < 0:
        return None
    try:
        value, _ = _decoder.raw_decode(text, pos)
    except ValueError:
        return None
    return value


def _to_calls(value: Any) -> List[PlannedToolCall]:
    if not isinstance(value, list):
        return []
    calls = []
    for item in value:
        if not isinstance(item, dict):
            continue
        name = item.get("name") or item.get("tool")
        if not isinstance(name, str) or not name.strip():
            continue
        params = item.get("parameters")
        reasoning = item.get("reasoning")
        calls.append(PlannedToolCall(
            name=name.strip(),
            parameters=params if isinstance(params, dict) else {},
            reasoning=reasoning if isinstance(reasoning, str) else None,
        ))
    return calls


def _from_call_tools(text: str) -> Optional[List[PlannedToolCall]]:
    m = _CALL_TOOLS_RE.search(text)
    if not m:
        return None
    value = _decode_from(text, m.end(), "[")
    if value is None:
        return None
    return _to_calls(value)


def _from_bare_array(text: str) -> Optional[List[PlannedToolCall]]:
    pos = text.find("[")
    while pos >= 0:
        try:
            value, _ = _decoder.raw_decode(text, pos)
        except ValueError:
            value = None
        if isinstance(value, list) and value and isinstance(value[0], dict) and value[0].get("name"):
            return _to_calls(value)
        pos = text.find("[", pos + 1)
    return None


def _from_execute(text: str) -> Optional[List[PlannedToolCall]]:
    m = _EXECUTE_RE.search(text)
    if not m:
        return None
    params = _decode_from(text, m.end(), "{")
    if not isinstance(params, dict):
        return None
    return [PlannedToolCall(name=m.group(1), parameters=params)]


def _parse(content: str) -> List[PlannedToolCall]:
    # 1) fenced block holding the marker
    for block in _FENCE_RE.findall(content):
        if CALL_TOOLS_MARKER in block.upper():
            calls = _from_call_tools(block)
            if calls is not None:
                return calls

    # 2) marker without a fence
    calls = _from_call_tools(content)
    if calls is not None:
        return calls

    # 3) explicit "nothing to call"
    if SUFFICIENT_INFO_MARKER in content:
        return []

    # 4) bare array of {name, parameters}
    calls = _from_bare_array(content)
    if calls is not None:
        return calls

    # 5) EXECUTE: tool ... PARAMETERS: {...}
    return _from_execute(content) or []


def parse_tool_decisions(content: Optional[str]) -> List[PlannedToolCall]:
    """
    Extract the tool calls proposed in a decision step.

    Accepted forms, first match wins: a fenced block with ``CALL_TOOLS:`` and a
    JSON array, the same marker unfenced, ``SUFFICIENT_INFO`` (no calls), a bare
    JSON array whose first element has ``name``, and ``EXECUTE: <tool>`` followed
    by ``PARAMETERS: {...}``. Anything else, including malformed JSON, yields an
    empty list. Never raises.

    :param content: raw model text
    :type content: Optional[str]
    :return: proposed calls in the order given
    :rtype: List[PlannedToolCall]
    """
    if not isinstance(content, str) or not content.strip():
        return []
    try:
        calls = _parse(content)
    except (ValueError, TypeError, RecursionError) as e:
        logger.warning(f"Could not parse tool decisions: {e}")
        return []
    if not calls:
        logger.debug("No tool calls found in decision text")
    return calls


def _declares_no_calls(content: str) -> bool:
    # "CALL_TOOLS: []" is an explicit empty plan
    for m in _CALL_TOOLS_RE.finditer(content):
        pos = m.end()
        while pos < len(content) and content[pos].isspace():
            pos += 1
        if not content.startswith("[", pos):
            continue
        try:
            value, _ = _decoder.raw_decode(content, pos)
        except (ValueError, RecursionError):
            continue
        if value == []:
            return True
    return False


def requests_more_tools(content: Optional[str]) -> bool:
    """
    True when the text asks for tools without naming a usable call.

    ``CONTINUE:`` or a ``CALL_TOOLS`` marker whose array does not decode keep
    the loop going; ``SUFFICIENT_INFO`` and ``CALL_TOOLS: []`` do not.

    :param content: decision text
    :type content: Optional[str]
    :rtype: bool
    """
    if not content or SUFFICIENT_INFO_MARKER in content:
        return False
    if CONTINUE_MARKER in content:
        return True
    if not _CALL_TOOLS_RE.search(content):
        return False
    return not _declares_no_calls(content)


def needs_more_information(content: Optional[str]) -> bool:
    """
    Classify an evaluation step.

    ``CONTINUE:`` means more work, ``COMPLETE:`` means done. Without a marker,
    keyword signals decide; conflicting or missing signals count as done.

    :param content: evaluation text
    :type content: Optional[str]
    :return: True when another decision cycle is wanted
    :rtype: bool
    """
    if not content:
        return False
    if CONTINUE_MARKER in content:
        return True
    if COMPLETE_MARKER in content:
        return False

    lower = content.lower()
    wants_more = any(k in lower for k in CONTINUATION_INDICATORS)
    is_done = any(k in lower for k in COMPLETION_INDICATORS)
    return wants_more and not is_done


def is_format_acceptable(content: Optional[str]) -> bool:
    return bool(content) and FORMAT_ACCEPTABLE_MARKER in content
