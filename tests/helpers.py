from __future__ import annotations

import os
from typing import Any, Callable

import pytest

from locator_synthesis.core.models import MatchOutcome, XPathEvaluationResult
from locator_synthesis.llm.client import GenerativeClient
from locator_synthesis.llm.tasks import GenerationTask, RawModelOutput

Response = Any


class FakeGenerativeClient(GenerativeClient):
    """Scripted client: each task replays a queue (the last entry repeats) or calls a responder."""

    provider_name = "fake"

    def __init__(self, scripts: dict[GenerationTask, list[Response] | Callable[[dict[str, Any]], Response]]) -> None:
        self.scripts = {task: list(value) if isinstance(value, list) else value for task, value in scripts.items()}
        self.calls: list[tuple[GenerationTask, dict[str, Any]]] = []

    async def generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        self.calls.append((task, context))
        script = self.scripts.get(task)
        if script is None:
            raise AssertionError(f"No scripted response for {task.value}")
        if callable(script):
            response = script(context)
        elif len(script) > 1:
            response = script.pop(0)
        else:
            response = script[0]
        if isinstance(response, BaseException):
            raise response
        return response

    def calls_for(self, task: GenerationTask) -> list[dict[str, Any]]:
        return [context for called, context in self.calls if called is task]


class RecordingSink:
    def __init__(self) -> None:
        self.records: list[tuple[str, Any]] = []

    def record(self, label: str, data: Any) -> None:
        self.records.append((label, data))

    def labels(self) -> list[str]:
        return [label for label, _ in self.records]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def locator(expression: str, matches: int, success: MatchOutcome = MatchOutcome.SUCCESS) -> XPathEvaluationResult:
    return XPathEvaluationResult(
        xpath_expression=expression,
        number_of_matches=matches,
        is_valid=success is not MatchOutcome.FAILURE,
        success=success,
    )


def require_llm_credentials() -> None:
    provider = os.getenv("LLM_PROVIDER", "openai").lower()
    if not os.getenv(f"{provider.upper()}_API_KEY"):
        pytest.skip(f"{provider.upper()}_API_KEY is required for live generation tests")
