# services/orchestrator_prompts.py
# Prompt templates / builders for the orchestration steps

import json
from typing import Dict, List

from services.calendar_time import friendly_today, now_iso
from services.tool_registry import ToolRegistry

# ANALYSIS: request decomposition, relevant categories, complexity
ANALYSIS_TEMPLATE = """
SYSTEM_DATE: {TODAY_FRIENDLY} (now: {NOW_ISO})

ROLE
You are the planner of a calendar assistant. Break the user's request down before any tool is called.

CONTEXT
---CHAT_HISTORY---
{CHAT_HISTORY}
---END CHAT_HISTORY---

USER_REQUEST: "{USER_MESSAGE}"

AVAILABLE_TOOLS
{TOOL_CATALOGUE}

{ANALYSIS_INSTRUCTIONS}

OUTPUT FORMAT (exactly):
### SCRATCHPAD
<short bullet reasoning: what the user wants, which data is needed>

### RELEVANT_CATEGORIES
<comma separated tool categories>

### PLAN
<numbered steps, one tool per step>

### COMPLEXITY_SUMMARY
<at most 20 words describing difficulty and risks>
"""

# DECISION: next tool action or SUFFICIENT_INFO
DECISION_TEMPLATE = """
You are planning the **NEXT TOOL ACTION**.
Today is {TODAY_FRIENDLY} (now: {NOW_ISO}). Resolve relative dates ("tomorrow", "next week") to ISO values yourself.

## USER CONTEXT
{CONTEXT}

## PREVIOUS TOOL CALLS
{PREVIOUS_CALLS}

## PREVIOUS STEPS
{PREVIOUS_STEPS}
{INTERNAL_CONVERSATION}

## TOOLS
{TOOL_CATALOGUE}

{DECISION_RULES}
{ROUTING_HINT}
{PRIORITY_ORDER}
{TOOL_EXAMPLES}

Do not repeat a call that already succeeded with the same parameters.
Respond with either a CALL_TOOLS json array or a SUFFICIENT_INFO message, exactly as specified:
```json
CALL_TOOLS:
[{"name": "<tool name>", "parameters": {...}, "reasoning": "<why>"}]
```
or
SUFFICIENT_INFO: <why no tool is needed>
"""

# EVALUATION: are the gathered results enough?
EVALUATION_TEMPLATE = """
## PROGRESS CHECK

User asked: "{USER_MESSAGE}"

Current context:
{CONTEXT}

Tool outcomes:
{TOOL_RESULTS}

Steps so far: {STEP_COUNT}
{INTERNAL_CONVERSATION}

IMPORTANT: Analyze whether the user's original request has been FULLY handled:
- If the user asked to create, update or delete something, has a tool actually done it successfully?
- If the user asked a question, do the tool results contain the data needed to answer it?
- A failed tool call that cannot succeed with other parameters is a final outcome, not a reason to loop.

Do NOT consider an action request complete just because data was looked up.

Should we CONTINUE to fully complete the user's request or is it COMPLETE?
Respond with `CONTINUE:` or `COMPLETE:` followed by your reasoning.
"""

# SYNTHESIS: final answer from gathered data only
SYNTHESIS_TEMPLATE = """
## RESPONSE SYNTHESIS TASK

{CHAT_HISTORY}

**User's Original Request:** "{USER_MESSAGE}"

**Processing Steps Summary:**
{PREVIOUS_STEPS}

**Available Data from Tools:**
{TOOL_DATA}

## SYNTHESIS REQUIREMENTS
- Directly answer the user's request using only the data above.
- Use Markdown: headings for sections, **bold** labels, `-` bullets for lists of events.
- {FORMAT_HINT}
- If a tool failed, say so plainly and explain what could not be done.
- If no relevant data was found, say that no information was found. Never fabricate.

## CRITICAL RULE
NEVER claim that an event was created, updated or deleted unless the matching tool call above is marked SUCCESS.
{ACTION_NOTE}

Write the final answer below:
"""

# VALIDATION: does the draft's shape fit the request?
VALIDATION_TEMPLATE = """
## RESPONSE FORMAT VALIDATION TASK

**User's Original Request:** "{USER_MESSAGE}"

**Generated Response:**
{DRAFT}

## VALIDATION CRITERIA
Judge the FORMAT only, not the facts.
- HOLISTIC SUMMARY requests ("summary", "overview", "status of", "overall", "tell me about") need an integrated narrative, not a bare list.
- DETAILED BREAKDOWN requests ("list", "show", "events", "when is") need individual items with dates and times.
- Detected request type: {REQUEST_TYPE}

If the format fits, respond with:
```
FORMAT_ACCEPTABLE: <one sentence>
```
Otherwise respond with:
```
FORMAT_NEEDS_REFINEMENT: <what is wrong>

REQUIRED_CHANGES:
- <change 1>
- <change 2>

EXPECTED_FORMAT: <what the ideal response looks like>
```
"""

# REFINEMENT: rewrite a draft following validation feedback
REFINEMENT_TEMPLATE = """
## REFINE RESPONSE

User: "{USER_MESSAGE}"

Feedback that needs fixing:
{FEEDBACK}

Previous draft:
{DRAFT}

Tool data available:
{TOOL_STATUS}

Chat context:
{CHAT_HISTORY}

Rewrite the answer so it follows the feedback. Keep every fact from the previous draft that is backed by the tool data,
add nothing that is not. Never claim an action succeeded unless its tool is marked OK.
Produce the improved final answer only.
"""


def _fill(template: str, **values: str) -> str:
    # str.replace keeps the JSON braces in the templates intact
    out = template
    for key, value in values.items():
        out = out.replace("{" + key + "}", value)
    return out


def tool_catalogue(registry: ToolRegistry) -> str:
    """
    Tools grouped by category with description and parameter hint.

    :param registry: tool registry
    :type registry: ToolRegistry
    :return: prompt block
    :rtype: str
    """
    blocks = []
    for category in registry.list_categories():
        items = [
            f"  - {t.name}: {t.description}\n    Parameters: {t.hint}"
            for t in registry.list_tools_by_category(category)
        ]
        if items:
            blocks.append(f"**{category.upper()}**:\n" + "\n".join(items))
    return "\n\n".join(blocks) if blocks else "No tools available."


def analysis_instructions(registry: ToolRegistry) -> str:
    out = [
        "**ALWAYS REMEMBER**",
        "- Never guess; always prefer tool data.",
        "- Ask clarifying questions if the user's intent is vague.",
    ]
    categories = registry.list_categories()
    if "calendar" in categories:
        out += [
            "- Use calendar tools to list or search events by date, time or keywords.",
            "- Use calendar tools to create, update or delete events when the user asks for a change.",
            "**CALENDAR CONTEXT**: mentions of meetings, schedules, deadlines or timelines are calendar queries.",
        ]
    if registry.has_tool("vector_file_search"):
        out += [
            "- For documentation, policy or general company knowledge questions, use vector_file_search.",
            "**KNOWLEDGE CONTEXT**: policies, procedures and internal documents live in the knowledge base.",
        ]
    return "\n".join(out)


def decision_rules(registry: ToolRegistry) -> str:
    rules: List[str] = []
    if "calendar" in registry.list_categories():
        rules += [
            "**Calendar queries** -> ALWAYS use `search_events` or `get_events` before answering.",
            "**Event creation / changes** -> MUST call `create_event`, `update_event` or `delete_event`.",
            "**Changing or deleting an event you do not have the id of** -> first find it with `search_events`.",
        ]
    if registry.has_tool("vector_file_search"):
        rules.append(
            "**Documentation / policy / general knowledge** -> use `vector_file_search`. Include `vector_store_ids` every time."
        )
    rules += [
        "If unsure which tool yields the required info, ask for clarification.",
        "If no tool can help and you have enough information to answer, reply with **SUFFICIENT_INFO** explaining why.",
    ]
    return "**DECISION RULES**\n" + "\n".join(f"{i}. {r}" for i, r in enumerate(rules, 1))


def priority_order(registry: ToolRegistry) -> str:
    parts = []
    if "calendar" in registry.list_categories():
        parts.append("Calendar tools")
    if registry.has_tool("vector_file_search"):
        parts.append("Knowledge (vector_file_search)")
    if not parts:
        return ""
    return "**CATEGORY PRIORITY**\n" + "\n".join(f"{i}. {p}" for i, p in enumerate(parts, 1))


def tool_examples(registry: ToolRegistry, vector_store_ids: List[str]) -> str:
    rows: List[str] = []
    if registry.has_tool("search_events"):
        rows.append(_call_block([{
            "name": "search_events",
            "parameters": {
                "query": "project kickoff",
                "time_range": {"start": "2025-08-01T00:00:00Z", "end": "2025-08-31T23:59:59Z"},
            },
            "reasoning": "Need to list all kickoff meetings in August.",
        }]))
    if registry.has_tool("create_event"):
        rows.append(_call_block([{
            "name": "create_event",
            "parameters": {"event_data": {"summary": "Dentist", "start": {"date_time": "2025-09-21T15:00:00"}}},
            "reasoning": "User asked to add the appointment.",
        }]))
    if registry.has_tool("vector_file_search"):
        rows.append(_call_block([{
            "name": "vector_file_search",
            "parameters": {"query": "remote work policy", "vector_store_ids": list(vector_store_ids)},
            "reasoning": "Retrieve the official policy document.",
        }]))
    if not rows:
        return ""
    return "**EXAMPLE CALL_TOOLS BLOCKS**\n\n" + "\n\n".join(rows)


def _call_block(calls: List[Dict]) -> str:
    return "```json\nCALL_TOOLS:\n" + json.dumps(calls, ensure_ascii=False, indent=2) + "\n```"


def build_analysis_prompt(user_message: str, chat_history: str, registry: ToolRegistry) -> str:
    return _fill(
        ANALYSIS_TEMPLATE,
        TODAY_FRIENDLY=friendly_today(),
        NOW_ISO=now_iso(),
        CHAT_HISTORY=chat_history,
        USER_MESSAGE=user_message,
        TOOL_CATALOGUE=tool_catalogue(registry),
        ANALYSIS_INSTRUCTIONS=analysis_instructions(registry),
    )


def build_decision_prompt(
    context: str,
    previous_calls: str,
    previous_steps: str,
    internal_conversation: str,
    registry: ToolRegistry,
    vector_store_ids: List[str],
    routing_hint: str = "",
) -> str:
    return _fill(
        DECISION_TEMPLATE,
        TODAY_FRIENDLY=friendly_today(),
        NOW_ISO=now_iso(),
        CONTEXT=context,
        PREVIOUS_CALLS=previous_calls,
        PREVIOUS_STEPS=previous_steps,
        INTERNAL_CONVERSATION=internal_conversation,
        TOOL_CATALOGUE=tool_catalogue(registry),
        DECISION_RULES=decision_rules(registry),
        ROUTING_HINT=routing_hint,
        PRIORITY_ORDER=priority_order(registry),
        TOOL_EXAMPLES=tool_examples(registry, vector_store_ids),
    )


def build_evaluation_prompt(
    user_message: str,
    context: str,
    tool_results: str,
    step_count: int,
    internal_conversation: str,
) -> str:
    return _fill(
        EVALUATION_TEMPLATE,
        USER_MESSAGE=user_message,
        CONTEXT=context,
        TOOL_RESULTS=tool_results,
        STEP_COUNT=str(step_count),
        INTERNAL_CONVERSATION=internal_conversation,
    )


def build_synthesis_prompt(
    user_message: str,
    chat_history: str,
    previous_steps: str,
    tool_data: str,
    holistic: bool,
    action_note: str,
) -> str:
    if holistic:
        format_hint = "The user wants an overview: write an integrated narrative, then key items if useful."
    else:
        format_hint = "List relevant items individually with their dates and times."
    return _fill(
        SYNTHESIS_TEMPLATE,
        CHAT_HISTORY=chat_history,
        USER_MESSAGE=user_message,
        PREVIOUS_STEPS=previous_steps,
        TOOL_DATA=tool_data,
        FORMAT_HINT=format_hint,
        ACTION_NOTE=action_note,
    )


def build_validation_prompt(user_message: str, draft: str, holistic: bool) -> str:
    return _fill(
        VALIDATION_TEMPLATE,
        USER_MESSAGE=user_message,
        DRAFT=draft,
        REQUEST_TYPE="HOLISTIC SUMMARY" if holistic else "DETAILED BREAKDOWN",
    )


def build_refinement_prompt(
    user_message: str,
    feedback: str,
    draft: str,
    tool_status: str,
    chat_history: str,
) -> str:
    return _fill(
        REFINEMENT_TEMPLATE,
        USER_MESSAGE=user_message,
        FEEDBACK=feedback,
        DRAFT=draft,
        TOOL_STATUS=tool_status,
        CHAT_HISTORY=chat_history,
    )
