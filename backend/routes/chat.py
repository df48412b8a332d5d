# routes/chat.py
# Chat endpoint: user message -> ToolOrchestrator -> reply (+ trace in development mode)

import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from database import SessionLocal
from schemas.orchestration_schema import ChatMessage, OrchestrationStep, OrchestratorConfig, ToolExecution
from services.llm_gateway import ModelGateway
from services.orchestrator_core import ToolOrchestrator
from services.tool_registry import ToolRegistry, create_tool_registry
from settings import OPENAI_MODEL, OrchestratorSettings, load_orchestrator_settings

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/schedules", tags=["schedules"])


class ChatIn(BaseModel):
    """
    /schedules/chat input
    """
    user_message: str = Field(min_length=1)
    history: Optional[List[ChatMessage]] = None
    session_id: Optional[str] = None
    model: Optional[str] = None
    development_mode: bool = False


class ChatOut(BaseModel):
    """
    /schedules/chat output

    ``steps`` holds the full trace in development mode, otherwise the synthesis steps only.
    """
    reply: str
    success: bool
    steps: List[OrchestrationStep] = Field(default_factory=list)
    tool_calls: List[ToolExecution] = Field(default_factory=list)
    progress: List[str] = Field(default_factory=list)
    error: Optional[str] = None


@lru_cache(maxsize=1)
def get_settings() -> OrchestratorSettings:
    return load_orchestrator_settings()


def get_orchestrator(settings: OrchestratorSettings = Depends(get_settings)) -> ToolOrchestrator:
    return ToolOrchestrator(ModelGateway(), settings)


def get_registry(settings: OrchestratorSettings = Depends(get_settings)) -> ToolRegistry:
    return create_tool_registry(SessionLocal, settings)


@router.post("/chat", response_model=ChatOut)
def chat(
    input: ChatIn,
    orchestrator: ToolOrchestrator = Depends(get_orchestrator),
    registry: ToolRegistry = Depends(get_registry),
):
    """
    Run one orchestration for the user's message.

    Always answers 200; a failed run carries the fixed apology as ``reply``
    and exposes ``error`` only in development mode.

    :param input: message, prior turns, model override, trace mode
    :type input: ChatIn
    :return: reply with tool calls and progress messages
    :rtype: ChatOut
    """
    progress: List[str] = []
    sid = (input.session_id or "").strip() or "-"
    logger.info(f"[chat] session={sid} model={input.model or OPENAI_MODEL} dev={input.development_mode}")

    result = orchestrator.orchestrate(
        input.user_message,
        input.history or [],
        registry,
        model_id=input.model or OPENAI_MODEL,
        config=OrchestratorConfig(development_mode=input.development_mode),
        progress_callback=progress.append,
    )

    return ChatOut(
        reply=result.final_answer,
        success=result.success,
        steps=result.steps,
        tool_calls=result.tool_calls,
        progress=progress,
        error=result.error if input.development_mode else None,
    )
