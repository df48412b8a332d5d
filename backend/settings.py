# settings.py
# Environment constants / JSON settings files

import os
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

###############################################################
# OPENAI_API_KEY : OpenAI API key                              #
# OPENAI_BASE : OpenAI-compatible endpoint base URL            #
# OPENAI_MODEL : default model id                              #
# OPENROUTER_API_KEY / OPENROUTER_BASE : models "vendor/name"  #
# LLM_TIMEOUT : seconds to wait for one completion             #
# DATABASE_URL : SQLAlchemy URL of the calendar store          #
# CALENDAR_TZ : IANA zone for naive times (default UTC)        #
###############################################################
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_BASE = os.getenv("OPENAI_BASE", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "")
OPENROUTER_BASE = os.getenv("OPENROUTER_BASE", "https://openrouter.ai/api/v1")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "60"))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./calendar.db")
CALENDAR_TZ = os.getenv("CALENDAR_TZ", "UTC")
WEB_ORIGIN = os.getenv("WEB_ORIGIN", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
SETTINGS_DIR = Path(os.getenv("SETTINGS_DIR", "settings"))

VECTOR_SEARCH_SETTINGS = SETTINGS_DIR / "vector-search.json"
ENABLED_CATEGORIES_SETTINGS = SETTINGS_DIR / "enabled-tools-categories.json"


class OrchestratorSettings(BaseModel):
    """
    Read-only configuration handed to the orchestrator at construction time.

    Per-run budgets passed to ``orchestrate`` override ``max_steps`` and
    ``max_tool_calls``; the preview limits bound how much of earlier steps and
    tool output is repeated inside later prompts.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    vector_store_ids: List[str] = Field(default_factory=list, alias="vectorStoreIds")
    max_steps: int = Field(10, ge=1)
    max_tool_calls: int = Field(5, ge=0)
    step_preview_chars: int = Field(200, ge=20)
    tool_result_preview_chars: int = Field(800, ge=50)
    synthesis_data_chars: int = Field(2000, ge=100)


def _read_json(path: Path) -> Optional[dict]:
    """
    Read a JSON object from ``path``.

    :param path: settings file
    :type path: Path
    :return: the decoded object, or None when the file is absent or unusable
    :rtype: Optional[dict]
    """
    if not path.exists():
        logger.debug(f"Settings file not found: {path}")
        return None
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read settings file {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Settings file {path} does not hold a JSON object")
        return None
    return data


def load_orchestrator_settings(path: Path = VECTOR_SEARCH_SETTINGS) -> OrchestratorSettings:
    """
    Load orchestrator settings from ``settings/vector-search.json``.

    A missing or invalid file falls back to defaults (no vector stores).

    :param path: settings file location
    :type path: Path
    :return: frozen settings object
    :rtype: OrchestratorSettings
    """
    data = _read_json(path) or {}
    ids = data.get("vectorStoreIds")
    if ids is not None and not isinstance(ids, list):
        logger.warning(f"vectorStoreIds in {path} is not a list; ignoring it")
        data = {k: v for k, v in data.items() if k != "vectorStoreIds"}
    try:
        return OrchestratorSettings.model_validate(data)
    except ValidationError as e:
        logger.warning(f"Invalid orchestrator settings in {path}: {e}")
        return OrchestratorSettings()


def load_enabled_categories(
    path: Path = ENABLED_CATEGORIES_SETTINGS,
    settings: Optional[OrchestratorSettings] = None,
) -> Dict[str, bool]:
    """
    Load which tool categories are switched on.

    Defaults: calendar on, knowledge on only when vector stores are configured.

    :param path: settings file location
    :type path: Path
    :param settings: orchestrator settings used for the knowledge default
    :type settings: Optional[OrchestratorSettings]
    :return: category name -> enabled flag
    :rtype: Dict[str, bool]
    """
    enabled = {
        "calendar": True,
        "knowledge": bool(settings and settings.vector_store_ids),
    }
    data = _read_json(path)
    if data:
        enabled.update({str(k): bool(v) for k, v in data.items()})
    return enabled
