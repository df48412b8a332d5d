# services/tool_registry.py
# Tool registry - name -> (definition, executor), parameter validation, uniform results

import logging
import types
from typing import Any, Callable, Dict, List, Literal, Optional, Type, Union, get_args, get_origin

from pydantic import BaseModel, ConfigDict, ValidationError

from schemas.orchestration_schema import ToolResult
from settings import OrchestratorSettings, load_enabled_categories

logger = logging.getLogger(__name__)

# executor receives the validated parameter model
ToolExecutor = Callable[[BaseModel], Union[ToolResult, Dict[str, Any]]]


def _type_name(annotation) -> str:
    """
    Short, model-readable rendering of a field annotation.

    :param annotation: typing annotation of a pydantic field
    :return: e.g. "str", "int[]", "'startTime' | 'updated'"
    :rtype: str
    """
    origin = get_origin(annotation)
    args = get_args(annotation)
    if origin is Union or origin is types.UnionType:
        return " | ".join(_type_name(a) for a in args if a is not type(None))
    if origin in (list, List):
        return f"{_type_name(args[0]) if args else 'any'}[]"
    if origin in (dict, Dict):
        return "object"
    if origin is Literal:
        return " | ".join(repr(a) for a in args)
    if isinstance(annotation, type) and issubclass(annotation, BaseModel):
        return describe_parameters(annotation)
    return getattr(annotation, "__name__", str(annotation))


def describe_parameters(model: Type[BaseModel]) -> str:
    """
    Compact parameter hint for prompts, e.g. ``{ query: str (required), max_results?: int }``.

    :param model: pydantic parameter model of a tool
    :type model: Type[BaseModel]
    :return: one-line hint
    :rtype: str
    """
    parts = []
    for name, field in model.model_fields.items():
        type_name = _type_name(field.annotation)
        if field.is_required():
            parts.append(f"{name}: {type_name} (required)")
        else:
            parts.append(f"{name}?: {type_name}")
    return "{ " + ", ".join(parts) + " }" if parts else "{}"


class ToolDefinition(BaseModel):
    """Declared interface of one tool: name, description, category and parameter schema."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str
    description: str
    category: str
    parameters_model: Type[BaseModel]
    parameter_hint: Optional[str] = None

    @property
    def hint(self) -> str:
        return self.parameter_hint or describe_parameters(self.parameters_model)


class ToolRegistry:
    """
    Closed set of registered tools.

    Every ordinary failure (unknown tool, invalid parameters, executor error)
    comes back as ``ToolResult(success=False, ...)``; nothing is raised.
    """

    def __init__(self):
        self._tools: Dict[str, tuple] = {}

    def register_tool(self, definition: ToolDefinition, executor: ToolExecutor) -> None:
        if definition.name in self._tools:
            logger.warning(f"Tool {definition.name} registered twice; keeping the latest")
        self._tools[definition.name] = (definition, executor)

    def get_available_tools(self) -> List[ToolDefinition]:
        return [d for d, _ in self._tools.values()]

    def get_tool_definition(self, name: str) -> Optional[ToolDefinition]:
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def list_tools_by_category(self, category: str) -> List[ToolDefinition]:
        return [d for d, _ in self._tools.values() if d.category == category]

    def list_categories(self) -> List[str]:
        return sorted({d.category for d, _ in self._tools.values()})

    def execute(self, name: str, parameters: Optional[Dict[str, Any]]) -> ToolResult:
        """
        Validate ``parameters`` against the tool's schema and run it.

        :param name: registered tool name
        :type name: str
        :param parameters: raw arguments proposed by the model
        :type parameters: Optional[Dict[str, Any]]
        :return: uniform result envelope
        :rtype: ToolResult
        """
        entry = self._tools.get(name)
        if entry is None:
            return ToolResult(success=False, error=f"Tool '{name}' not found", message=f"Unknown tool: {name}")
        definition, executor = entry

        try:
            params = definition.parameters_model.model_validate(parameters or {})
        except ValidationError as e:
            logger.warning(f"Invalid parameters for tool {name}: {e.error_count()} error(s)")
            return ToolResult(
                success=False,
                error=str(e),
                message=f"Invalid parameters for tool: {name}",
            )

        try:
            result = executor(params)
        except Exception as e:
            logger.error(f"Error in tool {name}: {e}")
            return ToolResult(success=False, error=str(e), message=f"Failed to execute tool: {name}")

        if isinstance(result, ToolResult):
            return result
        return ToolResult.model_validate(result)


def create_tool_registry(
    session_factory,
    settings: OrchestratorSettings,
    enabled: Optional[Dict[str, bool]] = None,
) -> ToolRegistry:
    """
    Build a registry holding the enabled tool categories.

    :param session_factory: SQLAlchemy session factory used by calendar tools
    :param settings: orchestrator settings (vector store ids for knowledge search)
    :type settings: OrchestratorSettings
    :param enabled: category -> flag; read from settings/enabled-tools-categories.json when None
    :type enabled: Optional[Dict[str, bool]]
    :return: populated registry
    :rtype: ToolRegistry
    """
    from services.calendar_tools import register_calendar_tools
    from services.knowledge_tools import register_knowledge_tools

    registry = ToolRegistry()
    enabled = enabled if enabled is not None else load_enabled_categories(settings=settings)

    if enabled.get("calendar"):
        register_calendar_tools(registry, session_factory)
    if enabled.get("knowledge"):
        if settings.vector_store_ids:
            register_knowledge_tools(registry, settings.vector_store_ids)
        else:
            logger.warning("Knowledge tools enabled but no vector store ids configured; skipping")

    logger.info(f"Tool registry ready: {[d.name for d in registry.get_available_tools()]}")
    return registry
