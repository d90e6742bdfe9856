import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import anthropic
import openai
from google import genai

from mcq_core.config import ModelSpec
from mcq_core.exceptions import APIKeyMissingError, ModelCallFailed
from mcq_core.models import RawModelReply

logger = logging.getLogger(__name__)

CEREBRAS_BASE_URL = "https://api.cerebras.ai/v1"
SYSTEM_PROMPT = "You are an assistant that returns JSON only as requested."


def extract_gemini_text(response: Any) -> str:
    """
    Text of a Gemini response, skipping thought parts.

    response.text is None for thought-only responses and concatenates every
    text part otherwise, so fall back to the first non-thought text part.
    """
    text = getattr(response, "text", None)
    if isinstance(text, str) and text.strip():
        return text
    if not getattr(response, "candidates", None):
        raise ValueError("Gemini response has no candidates")
    content = response.candidates[0].content
    if not content or not content.parts:
        raise ValueError("Gemini response has no content parts")
    for part in content.parts:
        if getattr(part, "thought", False) is True:
            continue  # reasoning trace, not the answer
        if part.text and part.text.strip():
            return part.text
    raise ValueError("No text part in Gemini response")


class ModelBackend(ABC):
    """One provider family. invoke() raises on any transport or provider error."""

    family: str = ""

    @abstractmethod
    async def invoke(self, spec: ModelSpec, prompt: str, temperature: float, max_tokens: int) -> RawModelReply:
        pass


class OpenAIBackend(ModelBackend):
    """OpenAI chat completions."""

    family = "openai"
    base_url: Optional[str] = None

    def __init__(self, api_key: Optional[str] = None):
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=self.base_url) if api_key else None

    async def invoke(self, spec: ModelSpec, prompt: str, temperature: float, max_tokens: int) -> RawModelReply:
        if not self.client:
            raise APIKeyMissingError(f"{self.__class__.__name__} requires an API key")
        response = await self.client.chat.completions.create(
            model=spec.model_name,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt}
            ],
            temperature=temperature,
            max_tokens=max_tokens
        )
        content = response.choices[0].message.content if response.choices else ""
        return RawModelReply(model=spec.identity, text=content or "", raw_metadata=response)


class CerebrasBackend(OpenAIBackend):
    """Cerebras inference through its OpenAI-compatible endpoint (fast primary family)."""

    family = "cerebras"
    base_url = CEREBRAS_BASE_URL


class GeminiBackend(ModelBackend):
    """Google Gemini via google-genai."""

    family = "gemini"

    def __init__(self, api_key: Optional[str] = None):
        self.client = genai.Client(api_key=api_key) if api_key else None

    async def invoke(self, spec: ModelSpec, prompt: str, temperature: float, max_tokens: int) -> RawModelReply:
        if not self.client:
            raise APIKeyMissingError("GeminiBackend requires an API key")
        response = await self.client.aio.models.generate_content(
            model=spec.model_name,
            contents=prompt,
            config={
                "temperature": temperature,
                "max_output_tokens": max_tokens
            }
        )
        return RawModelReply(model=spec.identity, text=extract_gemini_text(response), raw_metadata=response)


class AnthropicBackend(ModelBackend):
    """Anthropic Claude messages API."""

    family = "anthropic"

    def __init__(self, api_key: Optional[str] = None):
        self.client = anthropic.AsyncAnthropic(api_key=api_key) if api_key else None

    async def invoke(self, spec: ModelSpec, prompt: str, temperature: float, max_tokens: int) -> RawModelReply:
        if not self.client:
            raise APIKeyMissingError("AnthropicBackend requires an API key")
        message = await self.client.messages.create(
            model=spec.model_name,
            max_tokens=max_tokens,
            temperature=temperature,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}]
        )
        text = "".join(block.text for block in message.content if getattr(block, "type", "") == "text")
        return RawModelReply(model=spec.identity, text=text, raw_metadata=message)


class BackendRegistry:
    """Provider family -> backend client."""

    def __init__(self, backends: Optional[Dict[str, ModelBackend]] = None):
        self._backends: Dict[str, ModelBackend] = dict(backends or {})

    def register(self, backend: ModelBackend, family: Optional[str] = None) -> None:
        self._backends[family or backend.family] = backend

    def get(self, family: str) -> ModelBackend:
        if family not in self._backends:
            raise ModelCallFailed(f"unknown_provider_family: {family or '<none>'}")
        return self._backends[family]

    def __contains__(self, family: str) -> bool:
        return family in self._backends

    async def invoke(self, spec: ModelSpec, prompt: str, temperature: float, max_tokens: int) -> RawModelReply:
        return await self.get(spec.provider_family).invoke(spec, prompt, temperature, max_tokens)

    @classmethod
    def from_api_keys(cls, api_keys: Dict[str, str]) -> "BackendRegistry":
        registry = cls()
        registry.register(CerebrasBackend(api_keys.get("cerebras") or None))
        registry.register(GeminiBackend(api_keys.get("gemini") or None))
        registry.register(OpenAIBackend(api_keys.get("openai") or None))
        registry.register(AnthropicBackend(api_keys.get("anthropic") or None))
        for family in ("cerebras", "gemini", "openai", "anthropic"):
            if not api_keys.get(family):
                logger.debug(f"No API key for provider family '{family}'; its models will fail per call")
        return registry
