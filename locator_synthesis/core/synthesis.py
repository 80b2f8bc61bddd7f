from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Sequence

from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.metadata import GroupStatus, SynthesisGroup, SynthesisRun
from locator_synthesis.core.models import (
    SENTINEL_XPATH,
    Element,
    ElementWithLocator,
    MatchOutcome,
    Page,
    XPathEvaluationResult,
)
from locator_synthesis.llm.client import GenerativeClient
from locator_synthesis.llm.parser import Malformed, dict_items, parse_generation_output
from locator_synthesis.llm.tasks import GenerationTask, RawModelOutput
from locator_synthesis.logging.audit import DiagnosticSink, NullDiagnosticSink
from locator_synthesis.utils.scoring import select_best, valid_ratio
from locator_synthesis.utils.wait import retry_with_backoff
from locator_synthesis.utils.xpath_eval import evaluate_xpath

log = logging.getLogger(__name__)


class LocatorSynthesisOrchestrator:
    """Generates XPath locators per (state, platform) group and keeps the run with the best unique-match ratio."""

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

    async def synthesize_locators(
        self,
        elements: Sequence[Element],
        page: Page,
        platforms: Sequence[str] | None = None,
        runs: int | None = None,
    ) -> list[ElementWithLocator]:
        groups = await self.synthesize_groups(elements, page, platforms, runs)
        results: list[ElementWithLocator] = []
        for group in groups:
            if group.best_run is not None:
                results.extend(group.best_run.locators)
        self.sink.record("synthesis_final_locators", results)
        return results

    async def synthesize_groups(
        self,
        elements: Sequence[Element],
        page: Page,
        platforms: Sequence[str] | None = None,
        runs: int | None = None,
    ) -> list[SynthesisGroup]:
        requested = {platform.lower() for platform in (platforms or self.config.platforms)}
        run_count = runs or self.config.xpath_runs
        groups = group_elements(elements, page, requested)
        log.info("Processing %d element groups for XPath generation", len(groups))

        for group in groups:
            if group.status is not GroupStatus.READY:
                log.warning("Skipping XPath generation for group %s: %s", group.key, group.status.value)
                continue
            log.info(
                "Running XPath generation for state %s, platform %s (%d runs)",
                group.state_id,
                group.platform,
                run_count,
            )
            context = {
                "platform": group.platform,
                "stateId": group.state_id,
                "screenshot": group.screenshot,
                "xml": group.page_source,
                "elements": [element.to_payload() for element in group.elements],
            }
            group_runs: list[SynthesisRun] = []
            for index in range(run_count):
                raw = await self._generate(GenerationTask.GENERATE_XPATHS, context)
                run = build_synthesis_run(index, raw, group)
                group_runs.append(run)
                self.sink.record(
                    f"xpath_run_score_{group.key}_run{index}",
                    {"validCount": run.valid_count, "totalCount": run.total_count, "score": run.score},
                )
            group.best_run = select_best(group_runs, key=lambda run: run.score)
            group.status = GroupStatus.COMPLETE
            log.info(
                "Best XPath run for %s: %d/%d (%.2f%%)",
                group.key,
                group.best_run.valid_count,
                group.best_run.total_count,
                group.best_run.score * 100,
            )
        return groups

    async def _generate(self, task: GenerationTask, context: dict[str, Any]) -> RawModelOutput:
        return await retry_with_backoff(
            lambda: self.client.generate(task, context),
            max_retries=self.config.retry.max_retries,
            initial_delay=self.config.retry.initial_delay_seconds,
            sleep=self._sleep,
        )


def element_placements(element: Element) -> list[tuple[str, str]]:
    """Lists (platform, state id) pairs using state_ids, then state_Ids, then the flat fields."""

    placements: dict[str, str] = {}
    for mapping in (element.state_ids, element.legacy_state_ids):
        for platform, state_id in mapping.items():
            if state_id:
                placements.setdefault(platform.lower(), state_id)
    if element.state_id and element.platform:
        placements.setdefault(element.platform.lower(), element.state_id)
    return list(placements.items())


def group_elements(elements: Iterable[Element], page: Page, platforms: set[str]) -> list[SynthesisGroup]:
    groups: dict[str, SynthesisGroup] = {}
    for element in elements:
        placements = element_placements(element)
        if not placements:
            log.warning("Element %s has no state ids, skipping it", element.dev_name)
        for platform, state_id in placements:
            if platform not in platforms:
                continue
            key = f"{state_id}_{platform}"
            group = groups.get(key)
            if group is None:
                group = SynthesisGroup(key=key, state_id=state_id, platform=platform)
                groups[key] = group
            group.elements.append(element)

    for group in groups.values():
        state = page.state(group.state_id)
        if state is None:
            log.warning("No state found with id %s for group %s", group.state_id, group.key)
            group.status = GroupStatus.MISSING_STATE_DATA
            continue
        resolved = state.version_for(group.platform)
        if resolved is None:
            log.warning("State %s has no version for platform %s", group.state_id, group.platform)
            group.status = GroupStatus.MISSING_PLATFORM_VERSION
            continue
        _, version = resolved
        if not version.page_source:
            log.warning("Missing page source for group %s", group.key)
            group.status = GroupStatus.MISSING_STATE_DATA
            continue
        group.page_source = version.page_source
        group.screenshot = version.screenshot
    return list(groups.values())


def build_synthesis_run(index: int, raw: RawModelOutput, group: SynthesisGroup) -> SynthesisRun:
    parsed = parse_generation_output(raw)
    malformed_reason = None
    if isinstance(parsed, Malformed):
        malformed_reason = parsed.reason
        log.warning("XPath run %d for %s returned malformed output: %s", index, group.key, parsed.reason)

    evaluations: list[XPathEvaluationResult] = []
    by_dev_name: dict[str, XPathEvaluationResult] = {}
    for item in dict_items(parsed):
        expression = item.get("xpathLocator")
        evaluation = evaluate_xpath(group.page_source, expression if isinstance(expression, str) else "")
        evaluations.append(evaluation)
        dev_name = item.get("devName")
        if isinstance(dev_name, str):
            by_dev_name.setdefault(dev_name, evaluation)

    locators = [
        attach_locator(element, group.state_id, group.platform, by_dev_name.get(element.dev_name))
        for element in group.elements
    ]
    return SynthesisRun(
        index=index,
        raw_output=raw,
        locators=locators,
        valid_count=sum(1 for evaluation in evaluations if evaluation.is_unique),
        total_count=len(evaluations),
        score=valid_ratio(evaluations),
        malformed_reason=malformed_reason,
    )


def attach_locator(
    element: Element,
    state_id: str,
    platform: str,
    evaluation: XPathEvaluationResult | None,
) -> ElementWithLocator:
    if evaluation is None:
        evaluation = XPathEvaluationResult(
            xpath_expression=SENTINEL_XPATH,
            is_valid=False,
            success=MatchOutcome.UNKNOWN,
        )
    fields = {**element.model_dump(), "state_id": state_id, "platform": platform}
    return ElementWithLocator(**fields, xpath=evaluation)
