from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.metadata import RepairGroup, VisualAnalysisReport
from locator_synthesis.core.models import Element, ElementWithLocator, Page
from locator_synthesis.core.repair import LocatorRepairOrchestrator
from locator_synthesis.core.synthesis import LocatorSynthesisOrchestrator
from locator_synthesis.core.visual import VisualAnalysisOrchestrator
from locator_synthesis.llm.client import GenerativeClient
from locator_synthesis.logging.audit import DiagnosticSink, NullDiagnosticSink

log = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineResult:
    visual: VisualAnalysisReport
    synthesized: list[ElementWithLocator]
    repaired: list[ElementWithLocator]
    repair_groups: list[RepairGroup] = field(default_factory=list)

    @property
    def elements(self) -> list[Element]:
        return self.visual.elements


class LocatorPipeline:
    """Runs identification, locator synthesis and repair for one page."""

    def __init__(
        self,
        client: GenerativeClient,
        config: PipelineConfig,
        sink: DiagnosticSink | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.sink = sink or NullDiagnosticSink()
        self.visual = VisualAnalysisOrchestrator(client, config, self.sink, sleep)
        self.synthesis = LocatorSynthesisOrchestrator(client, config, self.sink, sleep)
        self.repair = LocatorRepairOrchestrator(client, config, self.sink, sleep)

    async def run(self, page: Page, platforms: Sequence[str] | None = None) -> PipelineResult:
        targets = list(platforms or self.config.platforms)
        log.info("Starting locator pipeline for page %s on %s", page.id, ", ".join(targets))

        report = await self.visual.analyze(page, targets)
        self.sink.record("pipeline_identified", report.elements)

        synthesized = await self.synthesis.synthesize_locators(report.elements, page, targets)
        self.sink.record("pipeline_synthesized", synthesized)

        repaired, groups = await self.repair.repair_with_report(synthesized, page)
        self.sink.record("pipeline_repaired", repaired)

        unique = sum(1 for element in repaired if element.xpath.is_unique)
        log.info("Locator pipeline finished for page %s: %d/%d unique locators", page.id, unique, len(repaired))
        return PipelineResult(visual=report, synthesized=synthesized, repaired=repaired, repair_groups=groups)
