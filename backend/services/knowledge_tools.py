# services/knowledge_tools.py
# Knowledge base search over OpenAI vector stores

import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import Field

import settings
from schemas.event_schema import CamelModel
from schemas.orchestration_schema import ToolResult
from services.tool_registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

CATEGORY = "knowledge"
NOT_FOUND_MESSAGE = "I couldn't find the answer in the uploaded knowledge base"
# top chunks handed back to the model
MAX_CHUNKS = 3


class VectorSearchParams(CamelModel):
    query: str = Field(min_length=1)
    max_results: int = Field(10, ge=1, le=50)
    vector_store_ids: List[str] = Field(default_factory=list)


def _chunk_text(hit: Dict[str, Any]) -> str:
    """
    Text of one search hit; the API returns ``content: [{type: "text", text}]``.

    :param hit: one entry of the response ``data`` list
    :type hit: Dict[str, Any]
    :return: joined text, possibly empty
    :rtype: str
    """
    content = hit.get("content")
    if isinstance(content, list):
        parts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
        return " ".join(p for p in parts if p.strip())
    if isinstance(hit.get("text"), str):
        return hit["text"]
    return ""


def _search_store(store_id: str, query: str, max_results: int) -> List[Dict[str, Any]]:
    """
    POST {OPENAI_BASE}/vector_stores/{id}/search

    :raises requests.RequestException: transport failure or non-2xx status
    """
    r = requests.post(
        f"{settings.OPENAI_BASE}/vector_stores/{store_id}/search",
        headers={
            "Authorization": f"Bearer {settings.OPENAI_API_KEY}",
            "Content-Type": "application/json",
            "OpenAI-Beta": "assistants=v2",
        },
        json={"query": query, "max_num_results": max_results},
        timeout=settings.LLM_TIMEOUT,
    )
    if not r.ok:
        logger.error(f"Vector search API error: {r.status_code} {r.text}")
        r.raise_for_status()
    hits = r.json().get("data") or []
    logger.debug(f"[vector] store={store_id} hits={len(hits)}")
    return [h for h in hits if isinstance(h, dict)]


def vector_file_search(params: VectorSearchParams, default_store_ids: Optional[List[str]] = None) -> ToolResult:
    """
    Search every configured vector store and return the best chunks.

    Hits from all stores are merged by score; at most ``MAX_CHUNKS`` chunks are
    joined into the result text. An empty search is a success with no data.

    :param params: validated parameters
    :type params: VectorSearchParams
    :param default_store_ids: stores used when the call names none
    :type default_store_ids: Optional[List[str]]
    :return: tool result with the joined chunk text as data
    :rtype: ToolResult
    """
    store_ids = params.vector_store_ids or list(default_store_ids or [])
    if not store_ids:
        return ToolResult(
            success=False,
            error="No vector store IDs provided",
            message="Vector search failed - no vector stores configured.",
        )

    hits: List[Dict[str, Any]] = []
    try:
        for store_id in store_ids:
            hits.extend(_search_store(store_id, params.query, params.max_results))
    except (requests.RequestException, ValueError) as e:
        return ToolResult(success=False, error=str(e), message="Vector search failed.")

    hits.sort(key=lambda h: h.get("score") or 0, reverse=True)
    chunks = [t for t in (_chunk_text(h) for h in hits) if t.strip()][:MAX_CHUNKS]
    if not chunks:
        return ToolResult(success=True, data=None, message=NOT_FOUND_MESSAGE)

    return ToolResult(
        success=True,
        data="\n\n---\n\n".join(chunks),
        message=f"Results found in the knowledge base ({len(chunks)} passages).",
    )


def register_knowledge_tools(registry: ToolRegistry, vector_store_ids: List[str]) -> None:
    ids = list(vector_store_ids)
    registry.register_tool(
        ToolDefinition(
            name="vector_file_search",
            description=(
                "Searches the company knowledge base (uploaded documents) and returns only "
                "passages found there. Never guesses."
            ),
            category=CATEGORY,
            parameters_model=VectorSearchParams,
            parameter_hint=(
                "{ query: str (required), max_results?: int, vector_store_ids: ["
                + ", ".join(f'"{i}"' for i in ids)
                + "] (required) }"
            ),
        ),
        lambda params: vector_file_search(params, ids),
    )
