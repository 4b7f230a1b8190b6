"""
Copyright © 2026 Vladimir Vaulin-Belskii. All rights reserved.

Lightweight text-generation client for structured field extraction.
"""
import json
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import httpx
from pydantic import ValidationError

from .config import settings
from .schemas import ExtractionResult, ExtractionUpdate, TemplateField, UpdateAction

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN_ESTIMATE = 4
CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


class GenerationError(Exception):
    """The text-generation service could not produce a response."""


def estimate_token_count(text: str) -> int:
    """Lightweight token estimate using average characters per token."""
    return max(1, math.ceil(len(text) / CHARS_PER_TOKEN_ESTIMATE))


# ==================================================================================
# Prompt & Response Helpers
# ==================================================================================

def build_extraction_prompt(
    template: Iterable[TemplateField],
    known_values: Dict[str, str],
    user_notes: str,
    transcript_delta: str,
) -> str:
    """Build the extraction prompt for the unprocessed part of the transcript.

    Known values are included so the generator can avoid repeating facts that
    are already recorded.
    """
    template = list(template)
    field_lines = "\n".join(f"- {f.name or f.id} (ID: {f.id}): {f.hint}".rstrip() for f in template)

    known_lines = []
    for f in template:
        value = (known_values.get(f.id) or "").strip()
        if value:
            known_lines.append(f"[{f.id}]\n{value}")
    known_block = "\n\n".join(known_lines) if known_lines else "(nothing recorded yet)"

    notes_block = user_notes.strip() or "(none)"

    return (
        "You maintain a live document while listening to a conversation.\n"
        "Extract facts for these fields:\n"
        f"{field_lines}\n\n"
        "Already recorded (do not repeat these facts):\n"
        f"{known_block}\n\n"
        "Notes from the user:\n"
        f"{notes_block}\n\n"
        "Rules: bullets only, factual, no speaker labels. One fact per bullet, each starting with \"* \". "
        "Use APPEND for new facts, REPLACE only when the transcript corrects a recorded value "
        "(give the full new value), SKIP when there is nothing new. Only use the IDs listed above.\n\n"
        "Respond with JSON only, in the form "
        "{\"updates\": [{\"fieldId\": \"<ID>\", \"action\": \"APPEND|REPLACE|SKIP\", \"value\": \"<text>\"}]}\n\n"
        f"New transcript:\n\"{transcript_delta.strip()}\""
    )


def _first_json_object(text: str) -> Optional[dict]:
    """Return the first well-formed brace-delimited JSON object embedded in ``text``."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def _updates_from_object(obj: dict) -> list[ExtractionUpdate]:
    raw_updates = obj.get("updates")
    if raw_updates is None and "fieldId" in obj:
        raw_updates = [obj]
    elif raw_updates is None:
        # Flat {fieldId: value} output is read as a batch of appends.
        raw_updates = [
            {"fieldId": key, "action": UpdateAction.APPEND.value, "value": value}
            for key, value in obj.items()
            if isinstance(value, (str, list))
        ]
    if not isinstance(raw_updates, list):
        return []

    updates = []
    for raw in raw_updates:
        try:
            updates.append(ExtractionUpdate.model_validate(raw))
        except ValidationError as e:
            logger.warning("Dropping malformed update %r: %s", raw, e.errors()[0].get("msg") if e.errors() else e)
    return updates


def parse_extraction(raw_text: str) -> Optional[ExtractionResult]:
    """Parse generator output into an ``ExtractionResult``.

    Falls back to the first embedded JSON object when the whole text is not
    valid JSON (e.g. prose around it or a truncated tail). Returns None when
    nothing usable is found.
    """
    text = CODE_FENCE_RE.sub("", raw_text or "").strip()
    if not text:
        return None

    obj: Any
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        obj = None

    if not isinstance(obj, dict):
        obj = _first_json_object(text)
        if obj is None:
            logger.warning("Unparsable extraction output (%d chars)", len(text))
            return None
        logger.info("Recovered JSON object from malformed extraction output")

    return ExtractionResult(updates=_updates_from_object(obj))


# ==================================================================================
# Base Client & Helpers
# ==================================================================================

class BaseLLMClient(ABC):
    """
    Abstract base class for text-generation services.
    Subclasses implement the provider-specific request and response shapes.
    """

    def __init__(self, model_name: str, temperature: float = settings.llm_temperature):
        self.model_name = model_name
        self.temperature = temperature

    @abstractmethod
    async def extract(self, prompt: str, timeout: float = 30.0) -> str:
        """Send an extraction prompt and return the raw generated text."""
        pass

    async def _post(
        self,
        base_url: str,
        endpoint: str,
        payload: Dict[str, Any],
        timeout: float,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """Shared HTTP execution logic."""
        logger.debug("LLM extraction via %s (%s)", self.model_name, endpoint)
        try:
            async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
                response = await client.post(endpoint, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            raise GenerationError(f"{self.model_name} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"{self.model_name} request failed: {e!r}") from e
        except ValueError as e:
            raise GenerationError(f"{self.model_name} returned invalid JSON") from e


# ==================================================================================
# Gemini Implementation
# ==================================================================================

class GeminiClient(BaseLLMClient):
    """
    Client for Gemini models over the Generative Language REST API.
    """

    def __init__(self, model_name: str, api_key: str = "", base_url: str = "", temperature: float = settings.llm_temperature):
        super().__init__(model_name, temperature)
        self.api_key = api_key or settings.gemini_api_key
        self.base_url = base_url or settings.gemini_base_url

    def _extract_text(self, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback") or {}
            raise GenerationError(f"No candidates returned (block reason: {feedback.get('blockReason', 'unknown')})")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts if isinstance(part, dict))

    async def extract(self, prompt: str, timeout: float = 30.0) -> str:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
            },
        }
        data = await self._post(
            self.base_url,
            f"/v1beta/models/{self.model_name}:generateContent",
            payload,
            timeout,
            headers={"x-goog-api-key": self.api_key},
        )
        return self._extract_text(data)


# ==================================================================================
# Ollama Implementation
# ==================================================================================

class OllamaClient(BaseLLMClient):
    """
    Client for locally served models through Ollama's generate endpoint.
    """

    def __init__(self, model_name: str, base_url: str = "", temperature: float = settings.llm_temperature):
        super().__init__(model_name, temperature)
        self.base_url = base_url or settings.ollama_base_url

    def _extract_response(self, data: Dict[str, Any]) -> str:
        """Extract content from either chat or generate response."""
        message = data.get("message")
        if isinstance(message, dict):
            return message.get("content") or ""
        return data.get("response") or data.get("output") or ""

    async def extract(self, prompt: str, timeout: float = 30.0) -> str:
        payload = {
            "model": self.model_name,
            "prompt": prompt,
            "format": "json",
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        data = await self._post(self.base_url, "/api/generate", payload, timeout)
        return self._extract_response(data)


# ==================================================================================
# Factory & Public Interface
# ==================================================================================

def get_llm_client(provider: str = "", model_name: str = "") -> BaseLLMClient:
    """Factory to return the configured text-generation client."""
    provider = (provider or settings.llm_provider).lower()
    model_name = model_name or settings.llm_model

    if provider == "ollama":
        return OllamaClient(model_name)
    if provider != "gemini":
        logger.warning("Unknown llm_provider %r; falling back to Gemini", provider)
    return GeminiClient(model_name)
