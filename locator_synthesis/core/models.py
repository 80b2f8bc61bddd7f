from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator
from pydantic.alias_generators import to_camel

SENTINEL_XPATH = "//*[99=0]"


class DomainModel(BaseModel):
    """Immutable base with camelCase JSON aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MatchOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNKNOWN = "unknown"

    def as_bool(self) -> bool | None:
        if self is MatchOutcome.UNKNOWN:
            return None
        return self is MatchOutcome.SUCCESS


class Confidence(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class StateVersion(DomainModel):
    screenshot: str = Field(
        default="",
        validation_alias=AliasChoices("screenShot", "screenshot"),
        serialization_alias="screenShot",
    )
    page_source: str = ""
    device_info: dict[str, Any] | None = None


class State(DomainModel):
    id: str
    title: str = ""
    description: str = ""
    versions: dict[str, StateVersion] = Field(default_factory=dict)

    def version_for(self, platform: str) -> tuple[str, StateVersion] | None:
        """Returns the version key actually used and its version, tolerating key casing."""

        if platform in self.versions:
            return platform, self.versions[platform]
        lowered = platform.lower()
        for key, version in self.versions.items():
            if key.lower() == lowered:
                return key, version
        return None


class Page(DomainModel):
    id: str
    name: str = ""
    description: str = ""
    states: list[State] = Field(min_length=1)

    def state(self, state_id: str) -> State | None:
        for state in self.states:
            if state.id == state_id:
                return state
        return None

    def state_ids(self) -> set[str]:
        return {state.id for state in self.states}


class XPathEvaluationResult(DomainModel):
    xpath_expression: str
    number_of_matches: int = Field(default=0, ge=0)
    matching_nodes: list[str] = Field(default_factory=list)
    is_valid: bool = False
    success: MatchOutcome = MatchOutcome.UNKNOWN
    error: str | None = None
    original_xpath_expression: str | None = None

    @field_validator("success", mode="before")
    @classmethod
    def coerce_success(cls, value: Any) -> Any:
        if value is None:
            return MatchOutcome.UNKNOWN
        if isinstance(value, bool):
            return MatchOutcome.SUCCESS if value else MatchOutcome.FAILURE
        return value

    @field_serializer("success")
    def serialize_success(self, value: MatchOutcome) -> bool | None:
        return value.as_bool()

    @property
    def is_unique(self) -> bool:
        return self.success is MatchOutcome.SUCCESS and self.number_of_matches == 1


class Element(DomainModel):
    id: str | None = None
    dev_name: str
    name: str = ""
    description: str = ""
    value: str | None = None
    is_dynamic_value: bool | None = False
    state_id: str | None = None
    platform: str | None = None
    state_ids: dict[str, str | None] = Field(default_factory=dict, alias="state_ids")
    legacy_state_ids: dict[str, str | None] = Field(default_factory=dict, alias="state_Ids")

    @field_validator("value", mode="before")
    @classmethod
    def stringify_scalar_value(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, (int, float)):
            return str(value)
        return value


class AlternativeXPath(DomainModel):
    xpath_expression: str
    confidence: Confidence = Confidence.LOW
    description: str | None = None
    number_of_matches: int = 0
    is_valid: bool = False


class ElementWithLocator(Element):
    xpath: XPathEvaluationResult
    alternative_xpaths: list[AlternativeXPath] = Field(default_factory=list)


class RepairCandidate(DomainModel):
    priority: int = Field(ge=0, le=2)
    xpath: str
    confidence: Confidence = Confidence.LOW
    description: str | None = None
    fix: str = ""
    evaluation: XPathEvaluationResult | None = None
    valid: bool | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def normalize_confidence(cls, value: Any) -> Any:
        if value is None:
            return Confidence.LOW
        if isinstance(value, str):
            normalized = value.strip().capitalize()
            if normalized in {confidence.value for confidence in Confidence}:
                return normalized
        return Confidence.LOW


class RepairedElement(DomainModel):
    id: str | None = None
    dev_name: str
    state_id: str | None = None
    platform: str | None = None
    candidates: list[RepairCandidate] = Field(default_factory=list, alias="xpathFix")

    def candidate(self, priority: int) -> RepairCandidate | None:
        for candidate in self.candidates:
            if candidate.priority == priority:
                return candidate
        return None


class ValidationResult(DomainModel):
    valid: bool
    missing_elements: list[Element] = Field(default_factory=list)
    duplicate_dev_names: list[str] = Field(default_factory=list)
    timestamp: str
