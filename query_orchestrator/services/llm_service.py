"""
LLM invocation with a primary/fallback provider strategy.

Agents never talk to a provider directly; they go through ``LLMService`` so
that every call gets the same fallback, accounting and structured-output
validation.  Callers are expected to catch ``LLMServiceError`` and degrade.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from query_orchestrator.core.config import settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class LLMServiceError(RuntimeError):
    pass


class LLMOutputError(LLMServiceError):
    """The provider answered but the structured output did not validate."""


# Raised while reading a 200 response whose body is not the documented shape
_MALFORMED_BODY = (ValueError, KeyError, IndexError, TypeError, AttributeError)


@dataclass(frozen=True)
class ChatMessage:
    role: str  # system | user | assistant
    content: str


@dataclass(frozen=True)
class CallOptions:
    temperature: float | None = None
    max_output_tokens: int | None = None
    structured_output: bool = False
    purpose: str = "generic"


@dataclass(frozen=True)
class LLMResponse:
    text: str
    resource_units_used: int
    provider: str
    fallback_used: bool = False


def estimate_units(*texts: str) -> int:
    # Rough token-equivalent when the provider reports no usage
    return max(1, sum(len(text) for text in texts) // 4)


def strip_code_fences(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("```"):
        lines = cleaned.splitlines()
        cleaned = "\n".join(line for line in lines if not line.startswith("```")).strip()
    return cleaned


class LLMProvider(ABC):
    """One concrete model endpoint."""

    name: str = "provider"

    @abstractmethod
    async def complete(self, messages: list[ChatMessage], options: CallOptions) -> LLMResponse:
        """Return the model's text answer or raise ``LLMServiceError``."""


class GeminiProvider(LLMProvider):
    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._model = model or settings.gemini_model
        self._timeout = timeout or settings.gemini_timeout_seconds
        self._transport = transport

    def _payload(self, messages: list[ChatMessage], options: CallOptions) -> dict:
        system = "\n\n".join(m.content for m in messages if m.role == "system")
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ]
        generation_config: dict = {
            "temperature": options.temperature if options.temperature is not None else settings.gemini_temperature,
            "maxOutputTokens": options.max_output_tokens or settings.gemini_max_output_tokens,
        }
        if options.structured_output:
            generation_config["responseMimeType"] = "application/json"

        payload: dict = {"contents": contents, "generationConfig": generation_config}
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return payload

    @staticmethod
    def _extract_text(response_data: dict) -> str:
        candidates = response_data.get("candidates") or []
        if not candidates:
            raise LLMServiceError("Gemini returned no candidates")

        content = candidates[0].get("content") or {}
        parts = content.get("parts") or []
        text_parts = [part.get("text", "") for part in parts if part.get("text")]
        if not text_parts:
            raise LLMServiceError("Gemini response contained no text")
        return "\n".join(text_parts).strip()

    async def complete(self, messages: list[ChatMessage], options: CallOptions) -> LLMResponse:
        if not self._api_key:
            raise LLMServiceError("GEMINI_API_KEY is not set")

        url = _GEMINI_URL.format(model=self._model)
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    params={"key": self._api_key},
                    json=self._payload(messages, options),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LLMServiceError(
                f"Gemini request failed with status {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMServiceError(f"Gemini request failed: {exc}") from exc

        try:
            data = response.json()
            text = self._extract_text(data)
            usage = data.get("usageMetadata") or {}
            units = int(usage.get("totalTokenCount") or estimate_units(text, *(m.content for m in messages)))
        except _MALFORMED_BODY as exc:
            raise LLMServiceError(f"Gemini returned an unexpected response: {exc!r}") from exc
        return LLMResponse(text=text, resource_units_used=units, provider=self.name)


class OpenAICompatibleProvider(LLMProvider):
    name = "openai_compatible"

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.fallback_llm_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.fallback_llm_api_key
        self._model = model or settings.fallback_llm_model
        self._timeout = timeout or settings.fallback_llm_timeout_seconds
        self._transport = transport

    async def complete(self, messages: list[ChatMessage], options: CallOptions) -> LLMResponse:
        if not self._api_key:
            raise LLMServiceError("FALLBACK_LLM_API_KEY is not set")

        payload: dict = {
            "model": self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": options.temperature if options.temperature is not None else settings.gemini_temperature,
            "max_tokens": options.max_output_tokens or settings.gemini_max_output_tokens,
        }
        if options.structured_output:
            payload["response_format"] = {"type": "json_object"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self._api_key}"},
                    json=payload,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise LLMServiceError(
                f"Fallback LLM request failed with status {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LLMServiceError(f"Fallback LLM request failed: {exc}") from exc

        try:
            data = response.json()
            choices = data.get("choices") or []
            text = ((choices[0].get("message") or {}).get("content") or "").strip() if choices else ""
            reported = int((data.get("usage") or {}).get("total_tokens") or 0)
        except _MALFORMED_BODY as exc:
            raise LLMServiceError(f"Fallback LLM returned an unexpected response: {exc!r}") from exc
        if not text:
            raise LLMServiceError("Fallback LLM returned no content")
        units = reported or estimate_units(text, *(m.content for m in messages))
        return LLMResponse(text=text, resource_units_used=units, provider=self.name)


class LLMService:
    """
    Calls the primary provider and retries once on the fallback provider.

    Parameters
    ----------
    primary : LLMProvider | None
        Preferred provider. Defaults to Gemini.
    fallback : LLMProvider | None
        Provider used when the primary raises. Defaults to the
        OpenAI-compatible endpoint.
    use_fallback : bool
        ``False`` calls the primary only.
    """

    def __init__(
        self,
        primary: LLMProvider | None = None,
        fallback: LLMProvider | None = None,
        use_fallback: bool = True,
    ) -> None:
        self._primary = primary or GeminiProvider()
        self._fallback = (fallback or OpenAICompatibleProvider()) if use_fallback else None

    async def call(self, messages: list[ChatMessage], options: CallOptions | None = None) -> LLMResponse:
        opts = options or CallOptions()
        try:
            return await self._primary.complete(messages, opts)
        except LLMServiceError as primary_exc:
            if self._fallback is None:
                raise
            logger.warning(
                "LLMService: %s failed for %s (%s), trying %s",
                self._primary.name,
                opts.purpose,
                primary_exc,
                self._fallback.name,
            )
            try:
                response = await self._fallback.complete(messages, opts)
            except LLMServiceError as fallback_exc:
                raise LLMServiceError(
                    f"All LLM providers failed for {opts.purpose}: {primary_exc}; {fallback_exc}"
                ) from fallback_exc

        return LLMResponse(
            text=response.text,
            resource_units_used=response.resource_units_used,
            provider=response.provider,
            fallback_used=True,
        )

    async def call_json(
        self,
        messages: list[ChatMessage],
        model_cls: type[ModelT],
        options: CallOptions | None = None,
    ) -> tuple[ModelT, LLMResponse]:
        """
        Call the model for structured output and validate it into *model_cls*.

        Raises
        ------
        LLMOutputError
            When the text is not valid JSON for *model_cls*.
        LLMServiceError
            When no provider could answer.
        """
        opts = options or CallOptions()
        if not opts.structured_output:
            opts = CallOptions(
                temperature=opts.temperature,
                max_output_tokens=opts.max_output_tokens,
                structured_output=True,
                purpose=opts.purpose,
            )
        response = await self.call(messages, opts)
        cleaned = strip_code_fences(response.text)
        try:
            parsed = model_cls.model_validate(json.loads(cleaned))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise LLMOutputError(
                f"{opts.purpose}: model output failed validation as {model_cls.__name__}: {exc}"
            ) from exc
        return parsed, response
