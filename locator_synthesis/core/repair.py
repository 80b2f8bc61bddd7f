from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Sequence

from pydantic import ValidationError

from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.metadata import GroupStatus, RepairGroup
from locator_synthesis.core.models import (
    SENTINEL_XPATH,
    AlternativeXPath,
    Confidence,
    ElementWithLocator,
    MatchOutcome,
    Page,
    RepairCandidate,
    RepairedElement,
)
from locator_synthesis.llm.client import GenerativeClient
from locator_synthesis.llm.parser import Parsed, dict_items, parse_generation_output
from locator_synthesis.llm.tasks import GenerationTask
from locator_synthesis.logging.audit import DiagnosticSink, NullDiagnosticSink
from locator_synthesis.utils.wait import retry_with_backoff
from locator_synthesis.utils.xpath_eval import evaluate_xpath, simplify_xml

log = logging.getLogger(__name__)

CANDIDATE_PRIORITIES = (0, 1, 2)


class PlaceholderCause(str, Enum):
    API_ERROR = "API error"
    PARSE_ERROR = "parsing error"
    PROCESSING_ERROR = "processing error"


PLACEHOLDER_FIX_TEXT = {
    PlaceholderCause.API_ERROR: "Failed to generate repair due to API error",
    PlaceholderCause.PARSE_ERROR: "Failed to parse AI response",
    PlaceholderCause.PROCESSING_ERROR: "Failed to process AI response",
}


class LocatorRepairOrchestrator:
    """Repairs locators that do not match exactly one node, batch by batch, with ranked fallbacks."""

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

    async def repair(self, elements: list[ElementWithLocator], page: Page) -> list[ElementWithLocator]:
        repaired, _ = await self.repair_with_report(elements, page)
        return repaired

    async def repair_with_report(
        self,
        elements: list[ElementWithLocator],
        page: Page,
    ) -> tuple[list[ElementWithLocator], list[RepairGroup]]:
        failing = [element for element in elements if needs_repair(element)]
        log.info("Found %d failing XPaths out of %d total", len(failing), len(elements))
        if not failing:
            log.info("No failing XPaths found, skipping repair")
            return elements, []

        groups = group_failing_elements(failing)
        attach_state_data(groups, page)
        log.info("Grouped failing XPaths into %d groups by state and platform", len(groups))

        for group in groups:
            if group.status is not GroupStatus.READY:
                log.warning("Skipping XPath repair for group %s due to status: %s", group.key, group.status.value)
                continue
            try:
                group.fixed_elements = await self._repair_group(group)
                group.status = GroupStatus.COMPLETE
            except Exception as exc:  # noqa: BLE001
                log.error("Error processing XPath repairs for group %s: %s", group.key, exc)
                group.status = GroupStatus.ERROR
                group.error = str(exc)
        self.sink.record("repair_groups", groups)

        updated = merge_fixes(elements, groups)
        self.sink.record("repair_updated_elements", updated)
        return updated, groups

    async def _repair_group(self, group: RepairGroup) -> list[RepairedElement]:
        settings = self.config.repair
        log.info("Processing XPath repairs for state %s, platform %s", group.state_id, group.platform)
        log.debug(
            "Request stats - screenshot %.2f KB, XML %.2f KB, elements %d",
            len(group.screenshot) / 1024,
            len(group.page_source) / 1024,
            len(group.elements),
        )
        if len(group.screenshot) > settings.max_screenshot_bytes:
            log.warning(
                "Screenshot for %s is very large (%.2f MB) and may exceed API limits",
                group.key,
                len(group.screenshot) / 1024 / 1024,
            )
        if len(group.page_source) > settings.max_xml_bytes:
            log.warning(
                "Page source for %s is very large (%.2f MB), simplifying to depth %d",
                group.key,
                len(group.page_source) / 1024 / 1024,
                settings.simplify_depth,
            )
            group.page_source = simplify_xml(group.page_source, settings.simplify_depth)

        batches = chunk(group.elements, settings.batch_size)
        fixed: list[RepairedElement] = []
        for index, batch in enumerate(batches):
            log.info("Processing batch %d/%d for group %s", index + 1, len(batches), group.key)
            fixed.extend(await self._repair_batch(group, batch, index))
        return fixed

    async def _repair_batch(
        self,
        group: RepairGroup,
        batch: list[ElementWithLocator],
        index: int,
    ) -> list[RepairedElement]:
        settings = self.config.repair
        context = {
            "platform": group.platform,
            "stateId": group.state_id,
            "screenshot": group.screenshot,
            "xml": group.page_source,
            "failingElements": [element.to_payload() for element in batch],
        }
        try:
            raw = await retry_with_backoff(
                lambda: self.client.generate(GenerationTask.REPAIR_XPATHS, context),
                max_retries=settings.max_attempts - 1,
                initial_delay=settings.initial_delay_seconds,
                sleep=self._sleep,
            )
        except Exception as exc:  # noqa: BLE001
            log.error("Failed to process batch %d after %d attempts: %s", index + 1, settings.max_attempts, exc)
            return [placeholder_repair(element, PlaceholderCause.API_ERROR) for element in batch]

        try:
            parsed = parse_generation_output(raw)
            if not isinstance(parsed, Parsed):
                log.error("Failed to parse repair response for batch %d of %s", index + 1, group.key)
                return [placeholder_repair(element, PlaceholderCause.PARSE_ERROR) for element in batch]
            originals = {element.dev_name: element for element in batch}
            fixed = [
                normalize_repaired_element(entry, group, originals)
                for entry in dict_items(parsed)
                if isinstance(entry.get("devName"), str)
            ]
            validated = validate_fixed_xpaths(fixed, group.page_source)
        except Exception as exc:  # noqa: BLE001
            log.error("Error processing repair response for batch %d of %s: %s", index + 1, group.key, exc)
            return [placeholder_repair(element, PlaceholderCause.PROCESSING_ERROR) for element in batch]

        self.sink.record(f"fixed_elements_{group.key}_batch{index}", validated)
        return validated


def needs_repair(element: ElementWithLocator) -> bool:
    xpath = element.xpath
    return (
        xpath.success is not MatchOutcome.SUCCESS
        or xpath.number_of_matches == 0
        or xpath.number_of_matches > 1
        or xpath.xpath_expression == SENTINEL_XPATH
    )


def repair_key(identity: str | None, state_id: str | None, platform: str | None) -> str:
    return f"{identity}_{state_id}_{platform}"


def group_failing_elements(elements: Iterable[ElementWithLocator]) -> list[RepairGroup]:
    groups: dict[str, RepairGroup] = {}
    for element in elements:
        key = f"{element.state_id}_{element.platform}"
        group = groups.get(key)
        if group is None:
            group = RepairGroup(key=key, state_id=element.state_id, platform=element.platform)
            groups[key] = group
        group.elements.append(element)
    return list(groups.values())


def attach_state_data(groups: Iterable[RepairGroup], page: Page) -> None:
    for group in groups:
        state = page.state(group.state_id) if group.state_id else None
        if state is None:
            log.warning("State with id %s not found", group.state_id)
            group.status = GroupStatus.MISSING_STATE_DATA
            continue
        resolved = state.version_for(group.platform) if group.platform else None
        if resolved is None:
            log.warning("No version for platform %s in state %s", group.platform, group.state_id)
            group.status = GroupStatus.MISSING_PLATFORM_VERSION
            continue
        version_key, version = resolved
        if version_key != group.platform:
            log.info("Found case-insensitive match %r for platform %s", version_key, group.platform)
        group.version_key = version_key
        group.screenshot = version.screenshot
        group.page_source = version.page_source
        group.status = GroupStatus.READY


def chunk(items: Sequence[Any], size: int) -> list[list[Any]]:
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


def placeholder_candidates(cause: PlaceholderCause) -> list[RepairCandidate]:
    return [
        RepairCandidate(
            priority=priority,
            xpath=SENTINEL_XPATH,
            confidence=Confidence.LOW,
            description=f"Placeholder due to {cause.value}",
            fix=PLACEHOLDER_FIX_TEXT[cause],
            valid=False,
        )
        for priority in CANDIDATE_PRIORITIES
    ]


def placeholder_repair(element: ElementWithLocator, cause: PlaceholderCause) -> RepairedElement:
    return RepairedElement(
        id=element.id,
        dev_name=element.dev_name,
        state_id=element.state_id,
        platform=element.platform,
        candidates=placeholder_candidates(cause),
    )


def default_candidates(primary_xpath: str) -> list[RepairCandidate]:
    return [
        RepairCandidate(
            priority=0,
            xpath=primary_xpath or SENTINEL_XPATH,
            confidence=Confidence.LOW,
            description="Default placeholder - missing xpathFix",
            fix="Created default xpathFix",
        ),
        RepairCandidate(
            priority=1,
            xpath=SENTINEL_XPATH,
            confidence=Confidence.LOW,
            description="Default alternative 1",
            fix="Placeholder alternative xpath",
        ),
        RepairCandidate(
            priority=2,
            xpath=SENTINEL_XPATH,
            confidence=Confidence.LOW,
            description="Default alternative 2",
            fix="Placeholder alternative xpath",
        ),
    ]


def parse_candidates(raw: Any) -> list[RepairCandidate] | None:
    """Keeps the usable candidates, first one per priority, or returns None when no primary survives."""

    if not isinstance(raw, list) or not raw:
        return None
    by_priority: dict[int, RepairCandidate] = {}
    for item in raw:
        try:
            candidate = RepairCandidate.model_validate(item)
        except ValidationError as exc:
            log.warning("Dropping unusable repair candidate: %s", exc.errors()[:1])
            continue
        # Validity is decided by evaluation only.
        by_priority.setdefault(candidate.priority, candidate.model_copy(update={"evaluation": None, "valid": None}))
    if 0 not in by_priority:
        return None
    return ordered(by_priority)


def normalize_repaired_element(
    entry: dict[str, Any],
    group: RepairGroup,
    originals: dict[str, ElementWithLocator],
) -> RepairedElement:
    dev_name = entry["devName"]
    original = originals.get(dev_name)
    candidates = parse_candidates(entry.get("xpathFix"))
    if candidates is None:
        log.warning("Element %s is missing a proper xpathFix structure", dev_name)
        candidates = default_candidates(original.xpath.xpath_expression if original else SENTINEL_XPATH)
    entry_id = entry.get("id")
    return RepairedElement(
        id=original.id if original else (entry_id if isinstance(entry_id, str) else None),
        dev_name=dev_name,
        state_id=group.state_id,
        platform=group.platform,
        candidates=candidates,
    )


def validate_fixed_xpaths(elements: Iterable[RepairedElement], page_source: str) -> list[RepairedElement]:
    return [validate_candidates(element, page_source) for element in elements]


def validate_candidates(element: RepairedElement, page_source: str) -> RepairedElement:
    """Accepts the primary candidate, promotes the first uniquely matching alternative, or falls back to the sentinel."""

    evaluated = {candidate.priority: candidate for candidate in element.candidates}
    primary = evaluated.get(0)
    if primary is None:
        primary = default_candidates(SENTINEL_XPATH)[0]
    primary = evaluate_candidate(primary, page_source)
    evaluated[0] = primary
    if primary.valid:
        return element.model_copy(update={"candidates": ordered(evaluate_pending(evaluated, page_source))})

    log.warning("Primary XPath for %s failed, trying alternatives", element.dev_name)
    for priority in sorted(p for p in evaluated if p > 0):
        evaluated[priority] = evaluate_candidate(evaluated[priority], page_source)
        if evaluated[priority].valid:
            log.info("Found valid alternative XPath for %s at priority %d", element.dev_name, priority)
            promoted = evaluate_pending(promote(evaluated, priority), page_source)
            return element.model_copy(update={"candidates": ordered(promoted)})

    log.warning("All XPaths failed for %s, using placeholder", element.dev_name)
    evaluated[0] = primary.model_copy(
        update={
            "xpath": SENTINEL_XPATH,
            "confidence": Confidence.LOW,
            "description": "Placeholder due to no valid XPath found",
            "fix": "No valid XPath could be generated",
            "valid": False,
        }
    )
    return element.model_copy(update={"candidates": ordered(evaluated)})


def evaluate_candidate(candidate: RepairCandidate, page_source: str) -> RepairCandidate:
    result = evaluate_xpath(page_source, candidate.xpath)
    return candidate.model_copy(update={"evaluation": result, "valid": result.is_unique})


def evaluate_pending(candidates: dict[int, RepairCandidate], page_source: str) -> dict[int, RepairCandidate]:
    """Evaluates the alternatives the primary search did not reach, without reordering them."""

    return {
        priority: evaluate_candidate(candidate, page_source) if candidate.evaluation is None else candidate
        for priority, candidate in candidates.items()
    }


def promote(candidates: dict[int, RepairCandidate], priority: int) -> dict[int, RepairCandidate]:
    """Swaps the candidate at priority with the primary one."""

    swapped = dict(candidates)
    swapped[0] = candidates[priority].model_copy(update={"priority": 0, "valid": True})
    swapped[priority] = candidates[0].model_copy(update={"priority": priority})
    return swapped


def ordered(candidates: dict[int, RepairCandidate]) -> list[RepairCandidate]:
    return [candidates[priority] for priority in sorted(candidates)]


def merge_fixes(
    elements: Iterable[ElementWithLocator],
    groups: Iterable[RepairGroup],
) -> list[ElementWithLocator]:
    fixes: dict[str, RepairedElement] = {}
    for group in groups:
        if group.status is not GroupStatus.COMPLETE:
            continue
        for fixed in group.fixed_elements:
            fixes[repair_key(fixed.id or fixed.dev_name, fixed.state_id, fixed.platform)] = fixed

    merged: list[ElementWithLocator] = []
    for element in elements:
        if element.xpath.is_unique:
            merged.append(element)
            continue
        fixed = fixes.get(repair_key(element.id or element.dev_name, element.state_id, element.platform))
        merged.append(apply_fix(element, fixed) if fixed is not None else element)
    return merged


def apply_fix(element: ElementWithLocator, fixed: RepairedElement) -> ElementWithLocator:
    primary = fixed.candidate(0)
    if primary is None or primary.xpath == SENTINEL_XPATH or not primary.valid:
        return element
    evaluation = primary.evaluation
    xpath = element.xpath.model_copy(
        update={
            "xpath_expression": primary.xpath,
            "is_valid": True,
            "success": MatchOutcome.SUCCESS,
            "number_of_matches": evaluation.number_of_matches if evaluation else 1,
            "matching_nodes": list(evaluation.matching_nodes) if evaluation else [],
            "error": None,
            "original_xpath_expression": element.xpath.xpath_expression,
        }
    )
    alternatives = [
        AlternativeXPath(
            xpath_expression=candidate.xpath,
            confidence=candidate.confidence,
            description=candidate.description,
            number_of_matches=candidate.evaluation.number_of_matches if candidate.evaluation else 0,
            is_valid=True,
        )
        for candidate in fixed.candidates
        if candidate.priority > 0 and candidate.valid and candidate.xpath != primary.xpath
    ]
    return element.model_copy(update={"xpath": xpath, "alternative_xpaths": alternatives})
