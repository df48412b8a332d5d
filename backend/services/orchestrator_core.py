# services/orchestrator_core.py
# ToolOrchestrator - analysis -> (decision -> tools -> evaluation)* -> synthesis -> (validation <-> refinement)

import logging
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from schemas.orchestration_schema import (
    ChatMessage,
    OrchestrationResult,
    OrchestrationStep,
    OrchestratorConfig,
    PlannedToolCall,
    ProgressCallback,
    StepKind,
    ToolExecution,
)
from services import orchestrator_steps as producers
from services.llm_gateway import ModelGateway
from services.orchestrator_parser import (
    is_format_acceptable,
    needs_more_information,
    parse_tool_decisions,
    requests_more_tools,
)
from services.orchestrator_steps import StepDraft
from services.orchestrator_utils import (
    build_updated_context,
    guard_action_claims,
    is_calendar_query,
    summarize_tool_execution,
)
from services.tool_registry import ToolRegistry
from settings import OPENAI_MODEL, OrchestratorSettings

logger = logging.getLogger(__name__)

FATAL_APOLOGY = "I encountered an error while processing your request. Please try again."
# 1 initial synthesis + up to 2 refinements
MAX_SYNTHESIS_ATTEMPTS = 3
KNOWLEDGE_SEARCH_TOOL = "vector_file_search"
CALENDAR_CATEGORY = "calendar"


def _now_ms() -> int:
    return int(time.time() * 1000)


class _RunState:
    """
    Mutable state of one ``orchestrate`` call.

    Steps and tool calls are append-only; ids are assigned here so they strictly increase.
    """

    def __init__(self):
        self.steps: List[OrchestrationStep] = []
        self.tool_calls: List[ToolExecution] = []
        self.internal_conversation: List[Dict[str, str]] = []
        self.knowledge_searched = False
        self._next_id = 1

    def record(
        self,
        kind: StepKind,
        content: str,
        reasoning: Optional[str] = None,
        tool_execution: Optional[ToolExecution] = None,
    ) -> OrchestrationStep:
        step = OrchestrationStep(
            id=self._next_id,
            kind=kind,
            timestamp=datetime.now(timezone.utc),
            content=content,
            reasoning=reasoning,
            tool_execution=tool_execution,
        )
        self._next_id += 1
        self.steps.append(step)
        return step

    def record_draft(self, draft: StepDraft) -> OrchestrationStep:
        return self.record(draft.kind, draft.content, reasoning=draft.reasoning)

    def note(self, content: str) -> None:
        self.internal_conversation.append({"role": "assistant", "content": content})


class ToolOrchestrator:
    """
    LLM-driven tool loop with a bounded format-validation tail.

    One instance may serve concurrent runs: everything that changes during a
    run lives in a per-call ``_RunState``.

    :param gateway: language model gateway
    :type gateway: ModelGateway
    :param settings: read-only settings (default budgets, vector stores, prompt bounds)
    :type settings: Optional[OrchestratorSettings]
    :param progress_callback: optional sink for progress messages
    :type progress_callback: Optional[ProgressCallback]
    """

    def __init__(
        self,
        gateway: ModelGateway,
        settings: Optional[OrchestratorSettings] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.gateway = gateway
        self.settings = settings or OrchestratorSettings()
        self.progress_callback = progress_callback if callable(progress_callback) else None

    def _report(self, message: str, callback: Optional[ProgressCallback] = None) -> None:
        logger.info(message)
        for cb in (self.progress_callback, callback):
            if cb is None:
                continue
            try:
                cb(message)
            except Exception as e:
                logger.warning(f"Progress reporter failed, ignoring: {e}")

    def orchestrate(
        self,
        user_message: str,
        chat_history: Sequence[ChatMessage],
        tool_registry: ToolRegistry,
        model_id: str = OPENAI_MODEL,
        config: Optional[OrchestratorConfig] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> OrchestrationResult:
        """
        Answer one user message, calling tools as the model decides.

        Never raises: gateway failures and unexpected errors end the run with
        ``success=False``, a fixed apology and the error text.

        :param user_message: current request
        :type user_message: str
        :param chat_history: prior turns, oldest first
        :type chat_history: Sequence[ChatMessage]
        :param tool_registry: tools available to this run
        :type tool_registry: ToolRegistry
        :param model_id: model identifier passed to the gateway
        :type model_id: str
        :param config: per-run budgets and trace mode
        :type config: Optional[OrchestratorConfig]
        :param progress_callback: extra progress sink for this run only
        :type progress_callback: Optional[ProgressCallback]
        :return: final answer with step and tool-call traces
        :rtype: OrchestrationResult
        """
        config = config or OrchestratorConfig()
        max_steps = config.max_steps if config.max_steps is not None else self.settings.max_steps
        max_tool_calls = config.max_tool_calls if config.max_tool_calls is not None else self.settings.max_tool_calls
        state = _RunState()

        def report(message: str) -> None:
            self._report(message, progress_callback)

        report(f"Starting orchestration (model={model_id}, max_steps={max_steps}, max_tool_calls={max_tool_calls})")
        try:
            self._tool_loop(state, user_message, chat_history or [], tool_registry, model_id,
                            max_steps, max_tool_calls, report)
            final = self._synthesis_loop(state, user_message, chat_history or [], model_id, report)
        except Exception as e:
            logger.exception(f"Orchestration failed: {e}")
            report(f"Orchestration failed: {type(e).__name__}")
            return OrchestrationResult(
                success=False,
                final_answer=FATAL_APOLOGY,
                steps=list(state.steps) if config.development_mode else [],
                tool_calls=list(state.tool_calls),
                error=str(e),
            )

        report(f"Orchestration finished: {len(state.steps)} steps, {len(state.tool_calls)} tool calls")
        steps = list(state.steps) if config.development_mode else [s for s in state.steps if s.kind == "synthesis"]
        return OrchestrationResult(
            success=True,
            final_answer=final.content,
            steps=steps,
            tool_calls=list(state.tool_calls),
        )

    ##############################
    # ANALYSIS / DECISION / TOOLS #
    ##############################
    def _tool_loop(self, state, user_message, chat_history, registry, model_id, max_steps, max_tool_calls, report):
        analysis = producers.perform_analysis(self.gateway, model_id, user_message, chat_history, registry)
        state.record_draft(analysis)
        state.note(f"Analysis: {analysis.content}")
        report("Analysis complete")

        context = build_updated_context(user_message, state.tool_calls)

        # budgets are checked before every cycle
        while len(state.steps) < max_steps and len(state.tool_calls) < max_tool_calls:
            decision = producers.decide_tool_usage(
                self.gateway, model_id, context, registry, state.tool_calls, state.steps,
                state.internal_conversation, self.settings,
                user_message=user_message,
            )
            state.record_draft(decision)
            state.note(f"Decision: {decision.content}")
            calls = parse_tool_decisions(decision.content)
            report(f"Tool decision: {', '.join(c.name for c in calls) if calls else 'no tools'}")

            if not calls and not requests_more_tools(decision.content):
                report("No tools needed, moving to synthesis")
                break

            for call in calls:
                if len(state.tool_calls) >= max_tool_calls:
                    report(f"Tool call budget reached ({max_tool_calls})")
                    break
                # keep one step free for the evaluation
                if len(state.steps) + 1 >= max_steps:
                    report(f"Step budget reached ({max_steps})")
                    break
                self._execute_tool(state, call, registry, user_message, report)

            if len(state.steps) >= max_steps:
                report(f"Step budget reached ({max_steps}), moving to synthesis")
                break

            context = build_updated_context(user_message, state.tool_calls)
            evaluation = producers.evaluate_progress(
                self.gateway, model_id, user_message, context, state.tool_calls, state.steps,
                state.internal_conversation, self.settings,
            )
            state.record_draft(evaluation)
            state.note(f"Evaluation: {evaluation.content}")

            more = needs_more_information(evaluation.content)
            report(f"Evaluation: {'need more information' if more else 'sufficient information gathered'}")
            if not more and self._calendar_retry(state, user_message, registry, max_steps, max_tool_calls, report):
                more = True
            if not more:
                break

    def _resolve_tool_name(self, name: str, registry: ToolRegistry) -> str:
        """``namespace.tool`` -> ``tool`` when only the bare name is registered."""
        if registry.has_tool(name) or "." not in name:
            return name
        bare = name.rsplit(".", 1)[1]
        return bare if registry.has_tool(bare) else name

    def _execute_tool(self, state, call: PlannedToolCall, registry: ToolRegistry, user_message: str, report):
        name = self._resolve_tool_name(call.name, registry)
        params = dict(call.parameters)

        if name == KNOWLEDGE_SEARCH_TOOL:
            if not (params.get("vector_store_ids") or params.get("vectorStoreIds")) and self.settings.vector_store_ids:
                params["vector_store_ids"] = list(self.settings.vector_store_ids)
            # the first knowledge search uses the user's own words
            if not state.knowledge_searched:
                params["query"] = user_message
                state.knowledge_searched = True

        report(f"Executing tool: {name}")
        start = _now_ms()
        started = time.monotonic()
        result = registry.execute(name, params)
        elapsed = int((time.monotonic() - started) * 1000)

        execution = ToolExecution(
            tool=name, parameters=params, result=result,
            start_time=start, end_time=_now_ms(), duration=elapsed,
        )
        state.tool_calls.append(execution)
        state.record("tool_call", f"Executed tool {name}", reasoning=call.reasoning, tool_execution=execution)
        state.note(f"Tool: {summarize_tool_execution(execution)}")

        outcome = "succeeded" if result.success else f"failed: {result.error or result.message}"
        report(f"Tool {name} {outcome} ({execution.duration}ms)")
        return execution

    def _calendar_retry(self, state, user_message, registry: ToolRegistry, max_steps, max_tool_calls, report) -> bool:
        """
        Force one more decision cycle for a calendar request no calendar tool has looked at.

        Failed calendar attempts are accepted as the outcome and never retried here.
        """
        if not is_calendar_query(user_message):
            return False
        calendar_tools = {d.name for d in registry.list_tools_by_category(CALENDAR_CATEGORY)}
        if not calendar_tools:
            return False

        attempted = [c for c in state.tool_calls if c.tool in calendar_tools]
        if attempted:
            if not any(c.result.success for c in attempted):
                report(f"Calendar tools attempted but failed ({len(attempted)}), answering with an explanation")
            return False

        if len(state.tool_calls) < max_tool_calls and len(state.steps) < max_steps:
            report(f"Calendar request without calendar tools, retrying ({len(state.tool_calls)}/{max_tool_calls} tool calls used)")
            return True
        return False

    #############################
    # SYNTHESIS / VALIDATION    #
    #############################
    def _guard(self, draft: StepDraft, user_message: str, state, report) -> StepDraft:
        content = guard_action_claims(user_message, draft.content, state.tool_calls)
        if content == draft.content:
            return draft
        logger.warning("Synthesis claimed an action no tool performed; replaced with a failure summary")
        report("Replaced unsupported success claim in the answer")
        return draft.model_copy(update={"content": content})

    def _synthesis_loop(self, state, user_message, chat_history, model_id, report) -> OrchestrationStep:
        report("Synthesizing final answer")
        draft = producers.synthesize_final_answer(
            self.gateway, model_id, user_message, chat_history, state.tool_calls, state.steps, self.settings,
        )
        draft = self._guard(draft, user_message, state, report)

        attempts = 1
        while True:
            validation = producers.validate_response_format(self.gateway, model_id, user_message, draft.content)
            state.record_draft(validation)
            if is_format_acceptable(validation.content):
                report("Format validation: acceptable")
                break
            if attempts >= MAX_SYNTHESIS_ATTEMPTS:
                report(f"Format validation: refinement limit ({MAX_SYNTHESIS_ATTEMPTS}) reached, keeping the current answer")
                break

            # rejected draft stays in the trace
            state.record_draft(draft)
            attempts += 1
            report(f"Format validation: needs refinement (attempt {attempts}/{MAX_SYNTHESIS_ATTEMPTS})")
            draft = producers.refine_synthesis(
                self.gateway, model_id, user_message, chat_history, state.tool_calls,
                draft.content, validation.content, self.settings,
            )
            draft = self._guard(draft, user_message, state, report)

        return state.record_draft(draft)
