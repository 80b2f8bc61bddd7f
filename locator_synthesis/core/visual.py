from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Sequence

from pydantic import ValidationError

from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.metadata import AnalysisRun, PlatformMappingResult, VisualAnalysisReport
from locator_synthesis.core.models import Element, Page
from locator_synthesis.core.validation import resolve_target_state_id, validate_against_page
from locator_synthesis.llm.client import GenerativeClient
from locator_synthesis.llm.parser import Malformed, Parsed, dict_items, parse_generation_output
from locator_synthesis.llm.tasks import GenerationTask, RawModelOutput
from locator_synthesis.logging.audit import DiagnosticSink, NullDiagnosticSink
from locator_synthesis.utils.dedup import remove_duplicates
from locator_synthesis.utils.scoring import score_elements, select_best
from locator_synthesis.utils.wait import retry_with_backoff

log = logging.getLogger(__name__)


class VisualAnalysisOrchestrator:
    """Identifies the elements of a page with best-of-N generation and maps them onto other platforms."""

    def __init__(
        self,
        client: GenerativeClient,
        config: PipelineConfig,
        sink: DiagnosticSink | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.config = config
        self.sink = sink or NullDiagnosticSink()
        self._sleep = sleep

    async def identify_elements(
        self,
        page: Page,
        target_platforms: Sequence[str] | None = None,
        runs: int | None = None,
    ) -> list[Element]:
        report = await self.analyze(page, target_platforms, runs)
        return report.elements

    async def analyze(
        self,
        page: Page,
        target_platforms: Sequence[str] | None = None,
        runs: int | None = None,
    ) -> VisualAnalysisReport:
        platforms = [platform.lower() for platform in (target_platforms or self.config.platforms)]
        run_count = runs or self.config.analysis_runs
        default_platform = self.config.default_platform
        context = self._identify_context(page, default_platform)

        log.info("Running element identification %d time(s) for page %s", run_count, page.id)
        analysis_runs: list[AnalysisRun] = []
        for index in range(run_count):
            raw = await self._generate(GenerationTask.IDENTIFY_ELEMENTS, context)
            run = self._build_run(index, raw, page, default_platform)
            analysis_runs.append(run)
            self.sink.record(f"visual_run_{index}", run)

        best_run = select_best(analysis_runs, key=lambda run: run.score)
        log.info(
            "Best identification run %d scored %d (valid=%s)",
            best_run.index,
            best_run.score,
            best_run.validation.valid,
        )

        elements = best_run.elements
        if self.config.refine_elements:
            elements = await self._refine(page, elements, context)
        elements = [with_platform_state(element, default_platform) for element in elements]

        report = VisualAnalysisReport(elements=elements, best_run=best_run, runs=analysis_runs)
        for platform in platforms:
            if platform == default_platform:
                continue
            result, elements = await self._map_platform(page, elements, platform)
            report.platform_results[platform] = result
        report.elements = elements
        self.sink.record("visual_final_elements", elements)
        return report

    def _build_run(self, index: int, raw: RawModelOutput, page: Page, platform: str) -> AnalysisRun:
        parsed = parse_generation_output(raw)
        malformed_reason = None
        if isinstance(parsed, Malformed):
            malformed_reason = parsed.reason
            log.warning("Identification run %d returned malformed output: %s", index, parsed.reason)
        items = dict_items(parsed)
        deduplicated = remove_duplicates(parse_elements(items))
        validation = validate_against_page(deduplicated.elements, page, platform)
        return AnalysisRun(
            index=index,
            raw_output=raw,
            parsed_count=len(items),
            elements=deduplicated.elements,
            validation=validation,
            score=score_elements(deduplicated.elements, validation),
            duplicate_keys=deduplicated.duplicate_keys,
            malformed_reason=malformed_reason,
        )

    async def _refine(self, page: Page, elements: list[Element], context: dict[str, Any]) -> list[Element]:
        log.info("Running element refinement for page %s", page.id)
        raw = await self._generate(
            GenerationTask.REFINE_ELEMENTS,
            {**context, "elements": [element.to_payload() for element in elements]},
        )
        refined = parse_elements(dict_items(parse_generation_output(raw)))
        if not refined:
            log.warning("Element refinement returned no usable elements, keeping the best run")
            return elements
        return remove_duplicates(refined).elements

    async def _map_platform(
        self,
        page: Page,
        elements: list[Element],
        platform: str,
    ) -> tuple[PlatformMappingResult, list[Element]]:
        log.info("Mapping %d elements onto platform %s", len(elements), platform)
        context = {
            "platform": platform,
            "allowedStateIds": [state.id for state in page.states],
            "elements": [
                {
                    "devName": element.dev_name,
                    "name": element.name,
                    "description": element.description,
                    "stateId": resolve_target_state_id(element, self.config.default_platform),
                }
                for element in elements
            ],
            "states": state_payloads(page, platform),
        }
        try:
            raw = await self._generate(GenerationTask.MAP_STATE_ID, context)
        except Exception as exc:  # noqa: BLE001
            log.error("Error processing platform %s, skipping it: %s", platform, exc)
            return PlatformMappingResult(platform=platform, success=False, error=str(exc)), elements

        parsed = parse_generation_output(raw)
        if not isinstance(parsed, Parsed):
            reason = parsed.reason if isinstance(parsed, Malformed) else "empty output"
            log.warning("State id mapping for platform %s was unusable: %s", platform, reason)
            return PlatformMappingResult(platform=platform, success=False, error=reason), elements

        mappings = parse_elements(dict_items(parsed))
        state_by_dev_name: dict[str, str] = {}
        for mapping in mappings:
            state_id = resolve_target_state_id(mapping, platform)
            if state_id:
                state_by_dev_name.setdefault(mapping.dev_name, state_id)
        updated = [
            merge_platform_state(element, platform, state_by_dev_name.get(element.dev_name))
            for element in elements
        ]

        validation = validate_against_page(mappings, page, platform)
        self.sink.record(f"validation_{platform}", validation)
        if validation.valid:
            log.info("Validation passed for platform %s", platform)
        else:
            log.warning(
                "Validation failed for platform %s: %d missing elements, duplicate devNames: %s",
                platform,
                len(validation.missing_elements),
                ", ".join(validation.duplicate_dev_names) or "none",
            )
        return PlatformMappingResult(platform=platform, success=validation.valid, validation=validation), updated

    def _identify_context(self, page: Page, platform: str) -> dict[str, Any]:
        return {
            "platform": platform,
            "pageName": page.name,
            "pageDescription": page.description,
            "allowedStateIds": [state.id for state in page.states],
            "states": state_payloads(page, platform),
        }

    async def _generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        return await retry_with_backoff(
            lambda: self.client.generate(task, context),
            max_retries=self.config.retry.max_retries,
            initial_delay=self.config.retry.initial_delay_seconds,
            sleep=self._sleep,
        )


def parse_elements(items: Iterable[dict[str, Any]]) -> list[Element]:
    elements: list[Element] = []
    for item in items:
        try:
            elements.append(Element.model_validate(item))
        except ValidationError as exc:
            log.warning("Skipping element that does not match the element shape: %s", exc.errors()[:1])
    return elements


def with_platform_state(element: Element, platform: str) -> Element:
    if element.state_ids.get(platform):
        return element
    state_id = resolve_target_state_id(element, platform)
    if not state_id:
        return element
    return element.model_copy(update={"state_ids": {**element.state_ids, platform: state_id}})


def merge_platform_state(element: Element, platform: str, state_id: str | None) -> Element:
    if not state_id:
        return element
    return element.model_copy(update={"state_ids": {**element.state_ids, platform: state_id}})


def state_payloads(page: Page, platform: str) -> list[dict[str, Any]]:
    payloads = []
    for state in page.states:
        payload: dict[str, Any] = {"id": state.id, "title": state.title, "description": state.description}
        resolved = state.version_for(platform)
        if resolved is not None:
            _, version = resolved
            payload["screenshot"] = version.screenshot
            payload["pageSource"] = version.page_source
        payloads.append(payload)
    return payloads
