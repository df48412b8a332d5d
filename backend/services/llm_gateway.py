# services/llm_gateway.py
# Language model gateway - plain text completions over the OpenAI-compatible REST API

import logging
from typing import Any, Dict, Optional, Tuple

import requests
from pydantic import BaseModel

import settings

logger = logging.getLogger(__name__)

# reasoning models reject the temperature parameter
TEMPERATURE_UNSUPPORTED_MODELS = {"o4-mini", "o4-mini-high", "o3", "o3-mini"}


class LLMGatewayError(Exception):
    """Completion could not be obtained (credentials, transport, HTTP status or body)."""


class CompletionResult(BaseModel):
    text: str = ""


def supports_temperature(model_id: str) -> bool:
    return model_id not in TEMPERATURE_UNSUPPORTED_MODELS


def resolve_provider(model_id: str) -> Tuple[str, str, str]:
    """
    Pick the provider for a model id.

    Ids such as ``"vendor/model"`` or ``"model:variant"`` go to OpenRouter,
    everything else to OpenAI.

    :param model_id: model identifier
    :type model_id: str
    :return: (provider name, base URL, API key)
    :rtype: Tuple[str, str, str]
    """
    if "/" in model_id or ":" in model_id:
        return "openrouter", settings.OPENROUTER_BASE, settings.OPENROUTER_API_KEY
    return "openai", settings.OPENAI_BASE, settings.OPENAI_API_KEY


def _content_text(content: Any) -> str:
    """
    Reply text from a message ``content`` field.

    Some providers send a list of parts (``{"type": "text", "text": ...}``)
    instead of a string; the text parts are joined in order.

    :raises LLMGatewayError: content of any other shape
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)
    raise LLMGatewayError(f"Unexpected message content type: {type(content).__name__}")


class ModelGateway:
    """
    Single-turn text completion client.

    Nothing here interprets the text; a reply that is nonsense is still a
    successful completion.

    :param timeout: seconds to wait for one completion
    :type timeout: float
    """

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT

    def complete(self, prompt: str, model_id: str, temperature: Optional[float] = None) -> CompletionResult:
        """
        Send ``prompt`` as one user message and return the reply text.

        :param prompt: full prompt text
        :type prompt: str
        :param model_id: model identifier, decides the provider
        :type model_id: str
        :param temperature: sampling temperature; dropped for models that reject it
        :type temperature: Optional[float]
        :raises LLMGatewayError: missing API key, transport failure, non-2xx status or undecodable body
        :return: completion text (empty when the model returned no content)
        :rtype: CompletionResult
        """
        provider, base, api_key = resolve_provider(model_id)
        if not api_key:
            raise LLMGatewayError(f"API key for provider '{provider}' not set")

        body: Dict[str, Any] = {
            "model": model_id,
            "messages": [{"role": "user", "content": prompt}],
        }
        if temperature is not None and supports_temperature(model_id):
            body["temperature"] = temperature

        logger.debug(f"[LLM] req: provider={provider} model={model_id} prompt_chars={len(prompt)}")
        try:
            r = requests.post(
                f"{base}/chat/completions",
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"{provider} request failed: {e}")
            raise LLMGatewayError(f"{provider} request failed: {e}") from e

        if not r.ok:
            logger.error(f"{provider} API error: {r.status_code} {r.text}")
            raise LLMGatewayError(f"LLM call failed with status {r.status_code}")

        try:
            data = r.json()
            message = data["choices"][0]["message"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMGatewayError(f"Unexpected {provider} response body: {e}") from e

        if not isinstance(message, dict):
            raise LLMGatewayError(f"Unexpected {provider} response body: message is {type(message).__name__}")
        text = _content_text(message.get("content"))
        logger.debug(f"[LLM] res: chars={len(text)} content='{text[:80]}...'")
        return CompletionResult(text=text)
