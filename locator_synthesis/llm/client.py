from __future__ import annotations

import asyncio
import base64
import binascii
import http.client
import json
import os
from abc import ABC, abstractmethod
from typing import Any
from urllib import error, request

from google import genai
from google.genai import types as genai_types

from locator_synthesis.config.schema import GenerationSettings
from locator_synthesis.core.exceptions import ConfigurationError, GenerationError
from locator_synthesis.llm.prompts import build_user_prompt, image_payload, split_screenshots, system_prompt
from locator_synthesis.llm.tasks import GenerationTask, RawModelOutput


class GenerativeClient(ABC):
    """Provider-neutral interface for structured generation."""

    provider_name = "unknown"

    @abstractmethod
    async def generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        raise NotImplementedError


class OpenAIGenerativeClient(GenerativeClient):
    provider_name = "openai"
    endpoint = "https://api.openai.com/v1/chat/completions"

    def __init__(self, api_key: str, settings: GenerationSettings | None = None) -> None:
        self.api_key = api_key
        self.settings = settings or GenerationSettings()
        self.model = self.settings.model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    async def generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        screenshots, _ = split_screenshots(context)
        content: list[dict[str, Any]] = [{"type": "text", "text": build_user_prompt(task, context)}]
        for screenshot in screenshots:
            mime_type, data = image_payload(screenshot)
            content.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{data}"}})
        body = {
            "model": self.model,
            "temperature": self.settings.temperature,
            "top_p": self.settings.top_p,
            "max_tokens": self.settings.max_output_tokens,
            "messages": [
                {"role": "system", "content": system_prompt(task)},
                {"role": "user", "content": content},
            ],
        }
        response = await asyncio.to_thread(
            _post_json,
            self.endpoint,
            body,
            {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            self.settings.request_timeout_seconds,
        )
        try:
            return response["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationError("OpenAI returned no message content") from exc


class AnthropicGenerativeClient(GenerativeClient):
    provider_name = "anthropic"
    endpoint = "https://api.anthropic.com/v1/messages"

    def __init__(self, api_key: str, settings: GenerationSettings | None = None) -> None:
        self.api_key = api_key
        self.settings = settings or GenerationSettings()
        self.model = self.settings.model or os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")

    async def generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        screenshots, _ = split_screenshots(context)
        content: list[dict[str, Any]] = []
        for screenshot in screenshots:
            mime_type, data = image_payload(screenshot)
            content.append(
                {
                    "type": "image",
                    "source": {"type": "base64", "media_type": mime_type, "data": data},
                }
            )
        content.append({"type": "text", "text": build_user_prompt(task, context)})
        body = {
            "model": self.model,
            "max_tokens": self.settings.max_output_tokens,
            "temperature": self.settings.temperature,
            "system": system_prompt(task),
            "messages": [{"role": "user", "content": content}],
        }
        response = await asyncio.to_thread(
            _post_json,
            self.endpoint,
            body,
            {
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            self.settings.request_timeout_seconds,
        )
        blocks = response.get("content", [])
        text = "".join(block.get("text", "") for block in blocks if isinstance(block, dict)).strip()
        if not text:
            raise GenerationError("Anthropic returned an empty response")
        return text


class GeminiGenerativeClient(GenerativeClient):
    provider_name = "gemini"

    def __init__(self, api_key: str, settings: GenerationSettings | None = None) -> None:
        self.settings = settings or GenerationSettings()
        self.model = self.settings.model or os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
        self._client = genai.Client(api_key=api_key)

    async def generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        screenshots, _ = split_screenshots(context)
        parts = [genai_types.Part.from_text(text=build_user_prompt(task, context))]
        for screenshot in screenshots:
            mime_type, data = image_payload(screenshot)
            try:
                image_bytes = base64.b64decode(data)
            except (binascii.Error, ValueError) as exc:
                raise GenerationError(f"Screenshot is not valid base64: {exc}") from exc
            parts.append(genai_types.Part.from_bytes(data=image_bytes, mime_type=mime_type))
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=parts,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_prompt(task),
                    temperature=self.settings.temperature,
                    top_p=self.settings.top_p,
                    max_output_tokens=self.settings.max_output_tokens,
                    response_mime_type="application/json",
                ),
            )
        except Exception as exc:  # noqa: BLE001
            raise GenerationError(f"Gemini request failed: {exc}") from exc
        content = (response.text or "").strip()
        if not content:
            raise GenerationError("Gemini returned an empty response")
        return content


def create_generative_client(settings: GenerationSettings | None = None) -> GenerativeClient:
    provider = os.getenv("LLM_PROVIDER", "openai").lower()
    if provider == "openai":
        api_key = os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigurationError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")
        return OpenAIGenerativeClient(api_key, settings)
    if provider == "anthropic":
        api_key = os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required when LLM_PROVIDER=anthropic")
        return AnthropicGenerativeClient(api_key, settings)
    if provider == "gemini":
        api_key = os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise ConfigurationError("GEMINI_API_KEY is required when LLM_PROVIDER=gemini")
        return GeminiGenerativeClient(api_key, settings)
    raise ConfigurationError(f"Unsupported LLM provider: {provider}")


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str], timeout: int) -> dict[str, Any]:
    encoded = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=encoded, headers=headers, method="POST")
    try:
        with request.urlopen(req, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise GenerationError(f"LLM request failed with status {exc.code}: {detail}") from exc
    except (error.URLError, TimeoutError) as exc:
        reason = getattr(exc, "reason", exc)
        raise GenerationError(f"LLM request could not be completed: {reason}") from exc
    except (http.client.HTTPException, OSError) as exc:
        raise GenerationError(f"LLM connection failed: {type(exc).__name__}: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise GenerationError(f"LLM response was not JSON: {exc}") from exc
