from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from locator_synthesis.core.models import Element, ElementWithLocator, RepairedElement, ValidationResult


class GroupStatus(str, Enum):
    READY = "ready"
    MISSING_STATE_DATA = "missing_state_data"
    MISSING_PLATFORM_VERSION = "missing_platform_version"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(slots=True)
class AnalysisRun:
    index: int
    raw_output: Any
    parsed_count: int
    elements: list[Element]
    validation: ValidationResult
    score: int
    duplicate_keys: list[str] = field(default_factory=list)
    malformed_reason: str | None = None


@dataclass(slots=True)
class PlatformMappingResult:
    platform: str
    success: bool
    validation: ValidationResult | None = None
    error: str | None = None


@dataclass(slots=True)
class VisualAnalysisReport:
    elements: list[Element]
    best_run: AnalysisRun
    runs: list[AnalysisRun]
    platform_results: dict[str, PlatformMappingResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(result.success for result in self.platform_results.values())


@dataclass(slots=True)
class SynthesisRun:
    index: int
    raw_output: Any
    locators: list[ElementWithLocator]
    valid_count: int
    total_count: int
    score: float
    malformed_reason: str | None = None


@dataclass(slots=True)
class SynthesisGroup:
    key: str
    state_id: str
    platform: str
    elements: list[Element] = field(default_factory=list)
    page_source: str = ""
    screenshot: str = ""
    status: GroupStatus = GroupStatus.READY
    best_run: SynthesisRun | None = None


@dataclass(slots=True)
class RepairGroup:
    key: str
    state_id: str | None
    platform: str | None
    elements: list[ElementWithLocator] = field(default_factory=list)
    version_key: str | None = None
    screenshot: str = ""
    page_source: str = ""
    status: GroupStatus = GroupStatus.READY
    fixed_elements: list[RepairedElement] = field(default_factory=list)
    error: str | None = None
