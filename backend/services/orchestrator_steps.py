# services/orchestrator_steps.py
# Step producers: one model call each, returning the text of one trace step

import logging
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from schemas.orchestration_schema import ChatMessage, OrchestrationStep, StepKind, ToolExecution
from services import orchestrator_prompts as prompts
from services import orchestrator_utils as utils
from services.llm_gateway import ModelGateway, supports_temperature
from services.tool_registry import ToolRegistry
from settings import OrchestratorSettings

logger = logging.getLogger(__name__)

NO_RESPONSE = "No response text available"

# control-flow steps stay near-deterministic, prose steps get some freedom
CONTROL_TEMPERATURE = 0.1
PROSE_TEMPERATURE = 0.3


class StepDraft(BaseModel):
    """Producer output; the engine assigns id and timestamp when it records the step."""
    model_config = ConfigDict(frozen=True)

    kind: StepKind
    content: str
    reasoning: Optional[str] = None


def _complete(gateway: ModelGateway, prompt: str, model_id: str, temperature: float) -> str:
    """
    Run one completion; empty text becomes ``NO_RESPONSE``.

    Gateway errors propagate to the caller.
    """
    result = gateway.complete(
        prompt,
        model_id,
        temperature=temperature if supports_temperature(model_id) else None,
    )
    text = (result.text or "").strip()
    if not text:
        logger.warning("Model returned no text")
        return NO_RESPONSE
    return text


def perform_analysis(
    gateway: ModelGateway,
    model_id: str,
    user_message: str,
    chat_history: Sequence[ChatMessage],
    registry: ToolRegistry,
) -> StepDraft:
    """
    Ask the model to decompose the request and pick tool categories.

    :param gateway: model gateway
    :type gateway: ModelGateway
    :param model_id: model identifier
    :type model_id: str
    :param user_message: current request
    :type user_message: str
    :param chat_history: prior turns
    :type chat_history: Sequence[ChatMessage]
    :param registry: tool registry (catalogue source)
    :type registry: ToolRegistry
    :return: analysis draft
    :rtype: StepDraft
    """
    prompt = prompts.build_analysis_prompt(user_message, utils.format_chat_history(chat_history), registry)
    content = _complete(gateway, prompt, model_id, CONTROL_TEMPERATURE)
    logger.debug(f"Analysis:\n{content}")
    return StepDraft(kind="analysis", content=content, reasoning="Initial analysis and planning")


def _knowledge_hint(user_message: str, registry: ToolRegistry, tool_calls: Sequence[ToolExecution]) -> str:
    knowledge_tools = {d.name for d in registry.list_tools_by_category("knowledge")}
    if not knowledge_tools or not utils.is_knowledge_query(user_message):
        return ""
    if any(c.tool in knowledge_tools for c in tool_calls):
        return ""
    names = ", ".join(f"`{n}`" for n in sorted(knowledge_tools))
    return f"**ROUTING HINT**: this reads like a documentation or policy question. Search the knowledge base first ({names})."


def decide_tool_usage(
    gateway: ModelGateway,
    model_id: str,
    context: str,
    registry: ToolRegistry,
    tool_calls: Sequence[ToolExecution],
    steps: Sequence[OrchestrationStep],
    internal_conversation: List[Dict[str, str]],
    settings: OrchestratorSettings,
    user_message: str = "",
) -> StepDraft:
    """
    Ask for the next tool calls (CALL_TOOLS) or SUFFICIENT_INFO.

    :return: decision draft, recorded as an ``evaluation`` step
    :rtype: StepDraft
    """
    previous_calls = "\n".join(
        f"- {c.tool} -> {'SUCCESS' if c.result.success else 'FAIL'} ({c.duration}ms)" for c in tool_calls
    ) or "None"
    previous_steps = " -> ".join(f"[{s.id}] {s.kind.upper()}" for s in steps) or "None"
    prompt = prompts.build_decision_prompt(
        context=context,
        previous_calls=previous_calls,
        previous_steps=previous_steps,
        internal_conversation=utils.format_internal_conversation(internal_conversation, settings.step_preview_chars),
        registry=registry,
        vector_store_ids=settings.vector_store_ids,
        routing_hint=_knowledge_hint(user_message, registry, tool_calls),
    )
    content = _complete(gateway, prompt, model_id, CONTROL_TEMPERATURE)
    return StepDraft(kind="evaluation", content=content, reasoning="Planned next tool usage")


def evaluate_progress(
    gateway: ModelGateway,
    model_id: str,
    user_message: str,
    context: str,
    tool_calls: Sequence[ToolExecution],
    steps: Sequence[OrchestrationStep],
    internal_conversation: List[Dict[str, str]],
    settings: OrchestratorSettings,
) -> StepDraft:
    prompt = prompts.build_evaluation_prompt(
        user_message=user_message,
        context=context,
        tool_results=utils.format_tool_results(tool_calls, settings.tool_result_preview_chars),
        step_count=len(steps),
        internal_conversation=utils.format_internal_conversation(internal_conversation, settings.step_preview_chars),
    )
    content = _complete(gateway, prompt, model_id, CONTROL_TEMPERATURE)
    return StepDraft(kind="evaluation", content=content, reasoning="Determined whether more info needed")


def _action_note(user_message: str, tool_calls: Sequence[ToolExecution]) -> str:
    if not utils.action_unconfirmed(user_message, tool_calls):
        return ""
    return (
        "NOTE: a change was requested or attempted, but no data-changing tool succeeded. "
        "State clearly that the change was NOT made and ask for what is missing."
    )


def synthesize_final_answer(
    gateway: ModelGateway,
    model_id: str,
    user_message: str,
    chat_history: Sequence[ChatMessage],
    tool_calls: Sequence[ToolExecution],
    steps: Sequence[OrchestrationStep],
    settings: OrchestratorSettings,
) -> StepDraft:
    """
    Compose the answer from the request, history, every tool result (failures
    included) and short summaries of earlier steps.

    :return: synthesis draft
    :rtype: StepDraft
    """
    note = _action_note(user_message, tool_calls)
    if note:
        logger.warning("Action request without a successful data-changing tool; asking synthesis not to claim success")
    prompt = prompts.build_synthesis_prompt(
        user_message=user_message,
        chat_history=utils.format_chat_history(chat_history),
        previous_steps=utils.format_previous_steps(steps, settings.step_preview_chars),
        tool_data=utils.format_tool_results(tool_calls, settings.synthesis_data_chars),
        holistic=utils.is_holistic_summary_request(user_message),
        action_note=note,
    )
    content = _complete(gateway, prompt, model_id, PROSE_TEMPERATURE)
    return StepDraft(
        kind="synthesis",
        content=content,
        reasoning="Synthesis of all gathered information into a user-facing answer",
    )


def validate_response_format(gateway: ModelGateway, model_id: str, user_message: str, draft: str) -> StepDraft:
    prompt = prompts.build_validation_prompt(user_message, draft, utils.is_holistic_summary_request(user_message))
    content = _complete(gateway, prompt, model_id, CONTROL_TEMPERATURE)
    return StepDraft(kind="evaluation", content=content, reasoning="Validation of response format against user intent")


def refine_synthesis(
    gateway: ModelGateway,
    model_id: str,
    user_message: str,
    chat_history: Sequence[ChatMessage],
    tool_calls: Sequence[ToolExecution],
    draft: str,
    feedback: str,
    settings: OrchestratorSettings,
) -> StepDraft:
    tool_status = "\n".join(
        f"- {c.tool}: {'OK' if c.result.success else 'FAIL'} - {utils.truncate(utils.summarize_tool_execution(c), settings.step_preview_chars)}"
        for c in tool_calls
    ) or "No tools were called."
    prompt = prompts.build_refinement_prompt(
        user_message=user_message,
        feedback=feedback,
        draft=draft,
        tool_status=tool_status,
        chat_history=utils.format_chat_history(chat_history),
    )
    content = _complete(gateway, prompt, model_id, PROSE_TEMPERATURE)
    return StepDraft(kind="synthesis", content=content, reasoning="Refined synthesis based on validation feedback")
