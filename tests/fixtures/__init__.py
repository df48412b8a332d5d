"""Test fixtures package."""

from .builders import (
    FakeResponse,
    RecordingPost,
    ScriptedGateway,
    build_registry,
    call_tools,
    events_found,
    make_execution,
    make_session_factory,
    tool_failed,
)

__all__ = [
    "FakeResponse",
    "RecordingPost",
    "ScriptedGateway",
    "build_registry",
    "call_tools",
    "events_found",
    "make_execution",
    "make_session_factory",
    "tool_failed",
]
