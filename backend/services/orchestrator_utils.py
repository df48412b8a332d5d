# services/orchestrator_utils.py
# Request heuristics, trace formatting and prompt-size bounds for the orchestrator

import json
import re
from typing import Any, Dict, List, Optional, Sequence

from schemas.orchestration_schema import ChatMessage, OrchestrationStep, ToolExecution

EMPTY_HISTORY = "This is the start of the conversation."

##########################################################################
# Heuristics: keyword predicates over the raw user message.              #
# They are routing hints only and can misfire on unusual phrasing.       #
##########################################################################
_CALENDAR_RE = re.compile(
    r"\b(calendar|events?|meetings?|schedules?|appointments?|agenda|reminders?|"
    r"book(ed|ing)?|reschedul\w*|busy|free slot|what'?s on|"
    r"today|tomorrow|yesterday|this week|next week|last week|this month|next month)\b",
    re.I,
)
# imperative only: verb opens a sentence or follows a polite request
_ACTION_RE = re.compile(
    r"(?:^\s*|[.!?;]\s+|\b(?:please|pls|can you|could you|would you|will you|"
    r"i want to|i'd like to|i need to|let's|go ahead and|help me)\s+)"
    r"(?:add|create|book|set up|update|change|modify|edit|rename|"
    r"reschedule|move|postpone|delete|remove|cancel|clear|schedule)\b",
    re.I | re.M,
)
_HOLISTIC_RE = re.compile(
    r"\b(summary|summari[sz]e|overview|how is|how are|status of|overall|in general|tell me about|holistic)\b",
    re.I,
)
_KNOWLEDGE_RE = re.compile(
    r"\b(policy|policies|procedure|process for|guidelines?|handbook|documentation|docs|manual|"
    r"visa|requirements? for|knowledge base|according to)\b",
    re.I,
)

# tools whose name starts with one of these never change data
READ_ONLY_PREFIXES = ("get", "list", "search", "find", "read", "vector")

# first-person or result phrasing only ("I moved", "has been moved", "event moved")
_SUCCESS_CLAIM_RE = re.compile(
    r"\b(has been|have been|successfully|i'?ve|i have|i)\s+"
    r"(added|created|scheduled|booked|updated|changed|modified|moved|rescheduled|renamed|"
    r"deleted|removed|cancell?ed)\b"
    r"|\bevents?\s+(added|created|updated|moved|deleted|removed)\b"
    r"|\b(added|created|scheduled|booked)\s+(it|the event|an event|a meeting|the meeting)\b",
    re.I,
)


def is_calendar_query(user_message: str) -> bool:
    return bool(user_message) and bool(_CALENDAR_RE.search(user_message))


def is_action_request(user_message: str) -> bool:
    """Imperative create / update / delete request; questions about past changes do not count."""
    return bool(user_message) and bool(_ACTION_RE.search(user_message))


def is_holistic_summary_request(user_message: str) -> bool:
    """Overview / status style request, answered as narrative rather than an item list."""
    return bool(user_message) and bool(_HOLISTIC_RE.search(user_message))


def is_knowledge_query(user_message: str) -> bool:
    return bool(user_message) and bool(_KNOWLEDGE_RE.search(user_message))


def is_read_only_tool(tool_name: str) -> bool:
    return tool_name.lower().startswith(READ_ONLY_PREFIXES)


def claims_action_success(text: str) -> bool:
    return bool(text) and bool(_SUCCESS_CLAIM_RE.search(text))


#################
# Text helpers  #
#################
def truncate(text: Any, limit: int) -> str:
    """
    Cut ``text`` to at most ``limit`` characters (plus an ellipsis).

    :param text: any value, rendered with ``str``
    :param limit: character budget
    :type limit: int
    :return: bounded text
    :rtype: str
    """
    s = "" if text is None else str(text)
    if len(s) <= limit:
        return s
    return s[:limit].rstrip() + "..."


def to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str, indent=2)


def format_chat_history(history: Optional[Sequence[ChatMessage]]) -> str:
    """
    Render prior chat turns for a prompt.

    :param history: prior turns, oldest first
    :type history: Optional[Sequence[ChatMessage]]
    :return: formatted block, or a fixed sentence when there is no history
    :rtype: str
    """
    if not history:
        return EMPTY_HISTORY
    lines = []
    for m in history:
        role = "User" if m.role == "user" else "Assistant"
        lines.append(f"[{m.timestamp.strftime('%Y-%m-%d %H:%M')}] {role}: {m.content}")
    return "Previous conversation history:\n" + "\n".join(lines)


def format_internal_conversation(conversation: List[Dict[str, str]], preview_chars: int) -> str:
    if not conversation:
        return ""
    lines = [f"Step {i}: {truncate(m['content'], preview_chars)}" for i, m in enumerate(conversation, 1)]
    return "\n**INTERNAL CONVERSATION**\n" + "\n".join(lines)


def format_previous_steps(steps: Sequence[OrchestrationStep], preview_chars: int) -> str:
    if not steps:
        return "None"
    return "\n".join(f"[{s.id}] {s.kind.upper()}: {truncate(s.content, preview_chars)}" for s in steps)


##########################
# Tool execution helpers #
##########################
def summarize_tool_execution(execution: ToolExecution) -> str:
    """
    One-line summary, e.g. ``get_events succeeded (12ms): Found 3 events``.

    :param execution: recorded tool call
    :type execution: ToolExecution
    :rtype: str
    """
    result = execution.result
    head = f"{execution.tool} {'succeeded' if result.success else 'failed'} ({execution.duration}ms)"
    if result.success:
        if result.message:
            return f"{head}: {result.message}"
        if isinstance(result.data, list):
            return f"{head}: Found {len(result.data)} items"
        if isinstance(result.data, str):
            return f"{head}: {truncate(result.data, 100)}"
        return f"{head}: Data available" if result.data is not None else head
    reason = result.message or result.error
    return f"{head}: {reason}" if reason else head


def format_tool_result(execution: ToolExecution, preview_chars: int) -> str:
    """Detailed, bounded rendering of one tool call for evaluation and synthesis prompts."""
    result = execution.result
    mark = "SUCCESS" if result.success else "FAILED"
    lines = [
        f"Tool {execution.tool} {mark} ({execution.duration}ms)",
        f"Parameters: {truncate(json.dumps(execution.parameters, ensure_ascii=False, default=str), preview_chars)}",
    ]
    if result.success:
        if result.data is None:
            lines.append("Result: No data returned")
        elif isinstance(result.data, list):
            lines.append(f"Result: Found {len(result.data)} items")
            lines.append(truncate(to_json(result.data), preview_chars))
        else:
            lines.append(f"Result: {truncate(result.data if isinstance(result.data, str) else to_json(result.data), preview_chars)}")
    else:
        if result.error:
            lines.append(f"Error: {truncate(result.error, preview_chars)}")
    if result.message:
        lines.append(f"Message: {result.message}")
    return "\n".join(lines)


def format_tool_results(tool_calls: Sequence[ToolExecution], preview_chars: int) -> str:
    if not tool_calls:
        return "No tools were called."
    return "\n\n---\n\n".join(f"[{i}] {format_tool_result(c, preview_chars)}" for i, c in enumerate(tool_calls, 1))


def build_updated_context(user_message: str, tool_calls: Sequence[ToolExecution]) -> str:
    """Running context: the request plus one summary line per tool call so far."""
    gathered = "\n".join(f"- {summarize_tool_execution(c)}" for c in tool_calls) or "- nothing yet"
    return f"Original request: {user_message}\n\nInformation gathered:\n{gathered}"


###########################
# Failure transparency    #
###########################
def honest_failure_summary(tool_calls: Sequence[ToolExecution]) -> str:
    """
    Answer used in place of a synthesis that claimed an action nobody performed.

    :param tool_calls: every tool call of the run
    :type tool_calls: Sequence[ToolExecution]
    :rtype: str
    """
    failed = [c for c in tool_calls if not c.result.success and not is_read_only_tool(c.tool)]
    if not failed:
        return (
            "I wasn't able to complete that request: no change was made to your calendar. "
            "Could you confirm the details (title, date and time) so I can try again?"
        )
    lines = [
        f"- **{c.tool}**: {c.result.error or c.result.message or 'Unknown error'}"
        for c in failed
    ]
    return (
        "I wasn't able to complete that request. The following attempts failed:\n"
        + "\n".join(lines)
        + "\n\nNo change was made. Please check the details and try again."
    )


def action_unconfirmed(user_message: str, tool_calls: Sequence[ToolExecution]) -> bool:
    """
    True when a change was requested or attempted but no data-changing tool succeeded.

    A run counts as a change when it called a data-changing tool, or when the
    message is an imperative action request. Read-only questions that only
    looked data up never count.

    :param user_message: original request
    :type user_message: str
    :param tool_calls: tool calls of the run
    :type tool_calls: Sequence[ToolExecution]
    :rtype: bool
    """
    mutating = [c for c in tool_calls if not is_read_only_tool(c.tool)]
    if not mutating and not is_action_request(user_message):
        return False
    return not any(c.result.success for c in mutating)


def guard_action_claims(user_message: str, content: str, tool_calls: Sequence[ToolExecution]) -> str:
    """
    Replace an unconditional success claim when no data-changing tool succeeded.

    Only applies when a change was requested or attempted; answers to plain
    questions pass through, even when they describe earlier changes.

    :param user_message: original request
    :type user_message: str
    :param content: synthesis text
    :type content: str
    :param tool_calls: tool calls of the run
    :type tool_calls: Sequence[ToolExecution]
    :return: ``content`` or an honest failure summary
    :rtype: str
    """
    if not action_unconfirmed(user_message, tool_calls):
        return content
    if not claims_action_success(content):
        return content
    return honest_failure_summary(tool_calls)
