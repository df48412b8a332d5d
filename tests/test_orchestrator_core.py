"""Tests for ToolOrchestrator.

Covers:
- the step sequence of a normal run and the trace visibility modes
- step and tool-call budgets
- the bounded validation/refinement tail
- calendar retry, knowledge routing and knowledge-search parameter injection
- tool-call timing
- failure transparency for unperformed actions
- fatal gateway errors and misbehaving progress reporters
"""

from typing import List

import pytest

from schemas.orchestration_schema import ChatMessage, OrchestratorConfig, ToolExecution, ToolResult
from services import orchestrator_core
from services.orchestrator_core import FATAL_APOLOGY, MAX_SYNTHESIS_ATTEMPTS, ToolOrchestrator
from services.orchestrator_steps import NO_RESPONSE
from settings import OrchestratorSettings
from tests.fixtures.builders import ScriptedGateway, build_registry, call_tools, events_found, tool_failed

DEV = OrchestratorConfig(development_mode=True)
MODEL = "gpt-4.1-mini"


def run(gateway, registry, message="show me my events", config=DEV, settings=None, **kwargs):
    orchestrator = ToolOrchestrator(gateway, settings or OrchestratorSettings())
    return orchestrator.orchestrate(message, kwargs.pop("history", []), registry, model_id=MODEL, config=config, **kwargs)


def kinds(result) -> List[str]:
    return [s.kind for s in result.steps]


@pytest.fixture
def events_registry():
    return build_registry({"get_events": ("calendar", events_found("Test Meeting"))})


class TestHappyPath:
    """Test the analysis -> decision -> tool -> evaluation -> synthesis sequence."""

    SCRIPT = {
        "decision": call_tools({"name": "get_events", "parameters": {}, "reasoning": "list events"}),
        "evaluation": "COMPLETE: the events were found",
        "synthesis": "You have **Test Meeting** tomorrow at 10:00.",
    }

    def test_step_sequence(self, events_registry) -> None:
        registry, received = events_registry
        gateway = ScriptedGateway(self.SCRIPT)

        result = run(gateway, registry)

        assert result.success is True
        assert result.error is None
        assert "Test Meeting" in result.final_answer
        assert kinds(result) == ["analysis", "evaluation", "tool_call", "evaluation", "evaluation", "synthesis"]
        assert [s.id for s in result.steps] == [1, 2, 3, 4, 5, 6]
        assert gateway.phases() == ["analysis", "decision", "evaluation", "synthesis", "validation"]
        assert received == [("get_events", {})]

    def test_tool_call_is_traced(self, events_registry) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(self.SCRIPT), registry)

        assert len(result.tool_calls) == 1
        execution = result.tool_calls[0]
        assert execution.tool == "get_events"
        assert execution.result.success is True
        assert execution.duration >= 0
        assert execution.end_time >= execution.start_time
        tool_step = result.steps[2]
        assert tool_step.tool_execution == execution
        assert tool_step.reasoning == "list events"

    def test_final_answer_is_last_synthesis_step(self, events_registry) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(self.SCRIPT), registry)

        assert result.steps[-1].kind == "synthesis"
        assert result.steps[-1].content == result.final_answer

    def test_non_dev_mode_returns_synthesis_steps_only(self, events_registry) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(self.SCRIPT), registry, config=OrchestratorConfig())

        assert kinds(result) == ["synthesis"]
        assert len(result.tool_calls) == 1

    def test_chat_history_reaches_prompts(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway(self.SCRIPT)
        history = [ChatMessage(role="user", content="I prefer morning meetings")]

        run(gateway, registry, history=history)

        analysis_prompt = gateway.calls[0]["prompt"]
        assert "I prefer morning meetings" in analysis_prompt
        assert "get_events" in analysis_prompt

    def test_runs_are_independent(self, events_registry) -> None:
        """Test that one orchestrator instance keeps no state between runs."""
        registry, _ = events_registry
        orchestrator = ToolOrchestrator(ScriptedGateway(self.SCRIPT))

        first = orchestrator.orchestrate("show me my events", [], registry, config=DEV)
        second = orchestrator.orchestrate("show me my events", [], registry, config=DEV)

        assert [s.id for s in first.steps] == [s.id for s in second.steps]
        assert len(second.tool_calls) == 1


class TestNoTools:
    """Test runs that go straight to synthesis."""

    def test_zero_tool_budget_skips_decisions(self) -> None:
        registry, received = build_registry({"get_events": ("calendar", events_found("A"))})
        gateway = ScriptedGateway()

        result = run(gateway, registry, config=OrchestratorConfig(max_tool_calls=0, development_mode=True))

        assert "decision" not in gateway.phases()
        assert kinds(result) == ["analysis", "evaluation", "synthesis"]
        assert result.tool_calls == []
        assert received == []

    def test_sufficient_info_skips_tools(self) -> None:
        registry, _ = build_registry({"get_events": ("calendar", events_found("A"))})
        gateway = ScriptedGateway({"decision": "SUFFICIENT_INFO: the user just said hello"})

        result = run(gateway, registry, message="hello")

        assert gateway.phases() == ["analysis", "decision", "synthesis", "validation"]
        assert result.tool_calls == []

    def test_unparseable_decision_moves_to_synthesis(self) -> None:
        registry, _ = build_registry({"get_events": ("calendar", events_found("A"))})
        gateway = ScriptedGateway({"decision": "I think we should look at calendar"})

        result = run(gateway, registry)

        assert result.success is True
        assert result.tool_calls == []
        assert "evaluation" not in gateway.phases()
        assert kinds(result) == ["analysis", "evaluation", "evaluation", "synthesis"]

    def test_empty_call_list_moves_to_synthesis(self) -> None:
        """Test that an explicit empty CALL_TOOLS list ends the tool loop at once."""
        registry, received = build_registry({"get_events": ("calendar", events_found("A"))})
        gateway = ScriptedGateway({"decision": "CALL_TOOLS: []", "evaluation": "COMPLETE: done"})

        result = run(gateway, registry, message="show me my events")

        assert gateway.phases() == ["analysis", "decision", "synthesis", "validation"]
        assert result.tool_calls == []
        assert received == []

    def test_broken_call_list_gets_an_evaluation(self) -> None:
        registry, _ = build_registry({"get_events": ("calendar", events_found("A"))})
        gateway = ScriptedGateway({
            "decision": ["CALL_TOOLS: [{\"name\": ", call_tools({"name": "get_events", "parameters": {}})],
            "evaluation": "COMPLETE: done",
        })

        result = run(gateway, registry)

        assert gateway.phases()[:3] == ["analysis", "decision", "evaluation"]
        assert [c.tool for c in result.tool_calls] == ["get_events"]

    def test_empty_model_text_becomes_placeholder(self) -> None:
        registry, _ = build_registry({})
        gateway = ScriptedGateway({"synthesis": ""})

        result = run(gateway, registry, message="hello")

        assert result.final_answer == NO_RESPONSE


class TestBudgets:
    """Test that the tool loop always terminates within its budgets."""

    LOOPING = {
        "decision": call_tools({"name": "get_events", "parameters": {}}),
        "evaluation": "CONTINUE: try again",
    }

    def test_default_budgets(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway(self.LOOPING)

        result = run(gateway, registry)

        assert len(result.tool_calls) == 3
        # 10 loop steps, then one validation and one synthesis
        assert len(result.steps) == 12
        assert kinds(result)[-2:] == ["evaluation", "synthesis"]

    def test_tool_call_budget(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway(self.LOOPING)

        result = run(gateway, registry, config=OrchestratorConfig(max_steps=50, max_tool_calls=2, development_mode=True))

        assert len(result.tool_calls) == 2
        assert gateway.phases().count("decision") == 2

    def test_budget_applies_inside_one_decision(self, events_registry) -> None:
        registry, received = events_registry
        gateway = ScriptedGateway({
            "decision": call_tools(*[{"name": "get_events", "parameters": {}}] * 4),
            "evaluation": "COMPLETE: done",
        })

        result = run(gateway, registry, config=OrchestratorConfig(max_tool_calls=2, development_mode=True))

        assert len(result.tool_calls) == 2
        assert len(received) == 2

    def test_settings_supply_default_budgets(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway(self.LOOPING)

        result = run(gateway, registry, settings=OrchestratorSettings(max_tool_calls=1))

        assert len(result.tool_calls) == 1

    @pytest.mark.parametrize("max_steps", [1, 2, 3, 4])
    def test_tiny_step_budgets_still_answer(self, events_registry, max_steps) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(self.LOOPING), registry, config=OrchestratorConfig(max_steps=max_steps, development_mode=True))

        assert result.success is True
        assert result.steps[-1].kind == "synthesis"


class TestValidationLoop:
    """Test the bounded format validation and refinement tail."""

    def test_refinement_is_bounded(self) -> None:
        registry, _ = build_registry({})
        gateway = ScriptedGateway({
            "synthesis": "draft 1",
            "validation": "FORMAT_NEEDS_REFINEMENT: use bullets",
            "refinement": ["draft 2", "draft 3"],
        })

        result = run(gateway, registry, message="hello")

        synthesis = [s for s in result.steps if s.kind == "synthesis"]
        assert len(synthesis) == MAX_SYNTHESIS_ATTEMPTS
        assert [s.content for s in synthesis] == ["draft 1", "draft 2", "draft 3"]
        assert result.final_answer == "draft 3"
        assert gateway.phases().count("refinement") == 2
        assert gateway.phases().count("validation") == 3
        assert result.steps[-1].kind == "synthesis"

    def test_accepted_after_one_refinement(self) -> None:
        registry, _ = build_registry({})
        gateway = ScriptedGateway({
            "synthesis": "draft 1",
            "validation": ["FORMAT_NEEDS_REFINEMENT: too terse", "FORMAT_ACCEPTABLE: good"],
            "refinement": "draft 2",
        })

        result = run(gateway, registry, message="hello", config=OrchestratorConfig())

        assert [s.content for s in result.steps] == ["draft 1", "draft 2"]
        assert result.final_answer == "draft 2"

    def test_feedback_reaches_refinement(self) -> None:
        registry, _ = build_registry({})
        gateway = ScriptedGateway({
            "validation": ["FORMAT_NEEDS_REFINEMENT: use a bullet per event", "FORMAT_ACCEPTABLE: ok"],
        })

        run(gateway, registry, message="hello")

        refinement = next(c for c in gateway.calls if c["phase"] == "refinement")
        assert "use a bullet per event" in refinement["prompt"]
        assert "Here is your answer." in refinement["prompt"]


class TestCalendarRetry:
    """Test the forced retry for calendar questions no calendar tool looked at."""

    MESSAGE = "what meetings do I have tomorrow"

    def test_forces_calendar_lookup(self) -> None:
        registry, received = build_registry({
            "get_events": ("calendar", events_found("Standup")),
            "vector_file_search": ("knowledge", ToolResult(success=True, data=None, message="nothing found")),
        })
        gateway = ScriptedGateway({
            "decision": [
                call_tools({"name": "vector_file_search", "parameters": {"query": "meetings"}}),
                call_tools({"name": "get_events", "parameters": {}}),
            ],
            "evaluation": "COMPLETE: done",
        })

        result = run(gateway, registry, message=self.MESSAGE, settings=OrchestratorSettings(vector_store_ids=["vs_1"]))

        assert [c.tool for c in result.tool_calls] == ["vector_file_search", "get_events"]
        assert gateway.phases().count("decision") == 2
        assert received[0] == ("vector_file_search", {"query": self.MESSAGE, "vector_store_ids": ["vs_1"]})

    def test_failed_calendar_tools_are_not_retried(self) -> None:
        registry, _ = build_registry({"get_events": ("calendar", tool_failed())})
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "get_events", "parameters": {}}),
            "evaluation": "COMPLETE: the calendar is down",
        })

        result = run(gateway, registry, message=self.MESSAGE)

        assert len(result.tool_calls) == 1
        assert gateway.phases().count("decision") == 1

    def test_no_retry_without_tool_budget(self) -> None:
        registry, _ = build_registry({
            "get_events": ("calendar", events_found("Standup")),
            "vector_file_search": ("knowledge", ToolResult(success=True, data="doc")),
        })
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "vector_file_search", "parameters": {"query": "x"}}),
            "evaluation": "COMPLETE: done",
        })

        result = run(gateway, registry, message=self.MESSAGE,
                     config=OrchestratorConfig(max_tool_calls=1, development_mode=True))

        assert [c.tool for c in result.tool_calls] == ["vector_file_search"]

    def test_non_calendar_question_is_not_retried(self) -> None:
        registry, _ = build_registry({
            "get_events": ("calendar", events_found("Standup")),
            "vector_file_search": ("knowledge", ToolResult(success=True, data="Visa rules")),
        })
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "vector_file_search", "parameters": {"query": "visa"}}),
            "evaluation": "COMPLETE: found it",
        })

        result = run(gateway, registry, message="what is the visa policy?")

        assert [c.tool for c in result.tool_calls] == ["vector_file_search"]


class TestToolResolution:
    """Test how proposed tool calls are mapped onto the registry."""

    def test_namespaced_name_is_stripped(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "calendar.get_events", "parameters": {}}),
            "evaluation": "COMPLETE: ok",
        })

        result = run(gateway, registry)

        assert result.tool_calls[0].tool == "get_events"
        assert result.tool_calls[0].result.success is True

    def test_unknown_tool_is_a_failed_call(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "does_not_exist", "parameters": {}}),
            "evaluation": "COMPLETE: nothing else to do",
        })

        result = run(gateway, registry, message="hello")

        assert result.success is True
        assert result.tool_calls[0].result.success is False
        assert result.tool_calls[0].result.error == "Tool 'does_not_exist' not found"

    def test_explicit_store_ids_are_kept(self) -> None:
        registry, received = build_registry({"vector_file_search": ("knowledge", ToolResult(success=True, data="doc"))})
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "vector_file_search", "parameters": {"query": "x", "vector_store_ids": ["vs_9"]}}),
            "evaluation": "COMPLETE: ok",
        })

        run(gateway, registry, message="what is the visa policy?", settings=OrchestratorSettings(vector_store_ids=["vs_1"]))

        assert received[0][1]["vector_store_ids"] == ["vs_9"]


class SteppedClock:
    """Stands in for the ``time`` module: each call returns the next reading, the last one repeats."""

    def __init__(self, wall, monotonic):
        self._wall = list(wall)
        self._monotonic = list(monotonic)

    @staticmethod
    def _next(readings):
        return readings.pop(0) if len(readings) > 1 else readings[0]

    def time(self) -> float:
        return self._next(self._wall)

    def monotonic(self) -> float:
        return self._next(self._monotonic)


class TestToolTiming:
    """Test how tool calls are timed."""

    def test_duration_comes_from_the_monotonic_clock(self, events_registry, monkeypatch) -> None:
        """Test that a wall clock stepping backwards does not distort the duration."""
        registry, _ = events_registry
        monkeypatch.setattr(orchestrator_core, "time", SteppedClock(wall=[1_000.0, 999.0], monotonic=[50.0, 50.25]))
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "get_events", "parameters": {}}),
            "evaluation": "COMPLETE: ok",
        })

        result = run(gateway, registry)

        execution = result.tool_calls[0]
        assert execution.duration == 250
        assert execution.start_time == 1_000_000
        assert execution.end_time == 1_000_000

    def test_derived_duration_without_explicit_value(self) -> None:
        execution = ToolExecution(tool="get_events", result=events_found("A"), start_time=10, end_time=35)

        assert execution.duration == 25


class TestKnowledgeRouting:
    """Test the knowledge-base hint in the decision prompt."""

    MESSAGE = "What does the travel policy say about visas?"

    @staticmethod
    def decision_prompts(gateway) -> List[str]:
        return [c["prompt"] for c in gateway.calls if c["phase"] == "decision"]

    def test_policy_question_gets_the_hint(self) -> None:
        registry, _ = build_registry({
            "get_events": ("calendar", events_found("Standup")),
            "vector_file_search": ("knowledge", ToolResult(success=True, data="Visas are booked by travel desk")),
        })
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "vector_file_search", "parameters": {"query": "visa"}}),
            "evaluation": ["CONTINUE: check once more", "COMPLETE: done"],
        })

        run(gateway, registry, message=self.MESSAGE, settings=OrchestratorSettings(vector_store_ids=["vs_1"]))

        first, second = self.decision_prompts(gateway)
        assert "ROUTING HINT" in first
        assert "`vector_file_search`" in first
        assert "ROUTING HINT" not in second

    def test_calendar_question_gets_no_hint(self) -> None:
        registry, _ = build_registry({
            "get_events": ("calendar", events_found("Standup")),
            "vector_file_search": ("knowledge", ToolResult(success=True, data="doc")),
        })
        gateway = ScriptedGateway({"decision": "SUFFICIENT_INFO: nothing to look up"})

        run(gateway, registry, message="what meetings do I have tomorrow")

        assert "ROUTING HINT" not in self.decision_prompts(gateway)[0]

    def test_no_hint_without_knowledge_tools(self) -> None:
        registry, _ = build_registry({"get_events": ("calendar", events_found("Standup"))})
        gateway = ScriptedGateway({"decision": "SUFFICIENT_INFO: nothing to look up"})

        run(gateway, registry, message=self.MESSAGE)

        assert "ROUTING HINT" not in self.decision_prompts(gateway)[0]


class TestFailureTransparency:
    """Test that an action nobody performed is never reported as done."""

    MESSAGE = "Create an event called Demo tomorrow at 3pm"

    def test_false_success_claim_is_replaced(self) -> None:
        registry, _ = build_registry({"create_event": ("calendar", tool_failed("calendar unavailable"))})
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "create_event", "parameters": {"event_data": {"summary": "Demo"}}}),
            "evaluation": "COMPLETE: the tool failed, nothing more to try",
            "synthesis": "Event created: Demo tomorrow at 3pm.",
        })

        result = run(gateway, registry, message=self.MESSAGE)

        assert result.success is True
        assert "Event created" not in result.final_answer
        assert "calendar unavailable" in result.final_answer
        synthesis_prompt = next(c["prompt"] for c in gateway.calls if c["phase"] == "synthesis")
        assert "no data-changing tool succeeded" in synthesis_prompt
        assert "FAILED" in synthesis_prompt

    def test_refined_claim_is_replaced_too(self) -> None:
        registry, _ = build_registry({"create_event": ("calendar", tool_failed())})
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "create_event", "parameters": {}}),
            "evaluation": "COMPLETE: failed",
            "synthesis": "Sorry, the calendar did not respond.",
            "validation": ["FORMAT_NEEDS_REFINEMENT: shorter", "FORMAT_ACCEPTABLE: ok"],
            "refinement": "Done! The event has been created.",
        })

        result = run(gateway, registry, message=self.MESSAGE)

        assert "has been created" not in result.final_answer
        assert result.final_answer.startswith("I wasn't able to complete that request")

    def test_successful_action_keeps_the_answer(self) -> None:
        registry, _ = build_registry({
            "create_event": ("calendar", ToolResult(success=True, data={"id": "1"}, message="Event created: Demo")),
        })
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "create_event", "parameters": {}}),
            "evaluation": "COMPLETE: created",
            "synthesis": "Event created: Demo tomorrow at 3pm.",
        })

        result = run(gateway, registry, message=self.MESSAGE)

        assert result.final_answer == "Event created: Demo tomorrow at 3pm."

    def test_answer_about_a_past_change_is_kept(self) -> None:
        """Test that a lookup answer describing an earlier reschedule is not replaced."""
        registry, _ = build_registry({"get_events": ("calendar", events_found("Standup"))})
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "get_events", "parameters": {}}),
            "evaluation": "COMPLETE: found the standup",
            "synthesis": "Yes. Your Standup was rescheduled to 10:00 on Friday.",
        })

        result = run(gateway, registry, message="Did the time of my standup change?")

        assert result.final_answer == "Yes. Your Standup was rescheduled to 10:00 on Friday."
        synthesis_prompt = next(c["prompt"] for c in gateway.calls if c["phase"] == "synthesis")
        assert "no data-changing tool succeeded" not in synthesis_prompt


class TestFatalErrors:
    """Test that gateway failures end the run with the fixed apology."""

    def test_failed_decision_call(self, events_registry) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(fail_on=["decision"]), registry, config=OrchestratorConfig())

        assert result.success is False
        assert result.final_answer == FATAL_APOLOGY
        assert result.steps == []
        assert "decision call failed" in result.error

    def test_dev_mode_keeps_partial_trace(self, events_registry) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(fail_on=["decision"]), registry)

        assert kinds(result) == ["analysis"]

    def test_failed_synthesis_keeps_tool_calls(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway(
            {"decision": call_tools({"name": "get_events", "parameters": {}}), "evaluation": "COMPLETE: ok"},
            fail_on=["synthesis"],
        )

        result = run(gateway, registry)

        assert result.success is False
        assert len(result.tool_calls) == 1
        assert "synthesis" not in kinds(result)

    def test_failed_analysis(self, events_registry) -> None:
        registry, _ = events_registry

        result = run(ScriptedGateway(fail_on=["analysis"]), registry)

        assert result.success is False
        assert result.steps == []


class TestProgressAndTemperature:
    """Test progress reporting and per-step sampling temperature."""

    def test_progress_messages(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway({
            "decision": call_tools({"name": "get_events", "parameters": {}}),
            "evaluation": "COMPLETE: ok",
        })
        from_constructor: List[str] = []
        from_run: List[str] = []
        orchestrator = ToolOrchestrator(gateway, progress_callback=from_constructor.append)

        orchestrator.orchestrate("show me my events", [], registry, progress_callback=from_run.append)

        assert from_constructor == from_run
        assert from_run[0].startswith("Starting orchestration")
        assert "Analysis complete" in from_run
        assert "Executing tool: get_events" in from_run
        assert from_run[-1].startswith("Orchestration finished")

    def test_failing_reporter_is_ignored(self, events_registry) -> None:
        registry, _ = events_registry

        def broken(message: str) -> None:
            raise RuntimeError("reporter is down")

        result = run(ScriptedGateway(), registry, progress_callback=broken)

        assert result.success is True

    def test_control_and_prose_temperatures(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway()

        run(gateway, registry, message="hello")

        by_phase = {c["phase"]: c["temperature"] for c in gateway.calls}
        assert by_phase == {"analysis": 0.1, "decision": 0.1, "synthesis": 0.3, "validation": 0.1}

    def test_reasoning_models_get_no_temperature(self, events_registry) -> None:
        registry, _ = events_registry
        gateway = ScriptedGateway()

        ToolOrchestrator(gateway).orchestrate("hello", [], registry, model_id="o3-mini")

        assert all(c["temperature"] is None for c in gateway.calls)
        assert all(c["model_id"] == "o3-mini" for c in gateway.calls)
