from __future__ import annotations

from pydantic import BaseModel, Field, field_validator, model_validator


class GenerationSettings(BaseModel):
    model: str | None = None
    temperature: float = 0.0
    top_p: float = 0.1
    max_output_tokens: int = 4096
    request_timeout_seconds: int = 120


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    initial_delay_seconds: float = Field(default=2.0, ge=0)


class RepairSettings(BaseModel):
    batch_size: int = Field(default=5, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_seconds: float = Field(default=1.0, ge=0)
    max_xml_bytes: int = 1024 * 1024
    max_screenshot_bytes: int = 5 * 1024 * 1024
    simplify_depth: int = Field(default=10, ge=0)


class PipelineConfig(BaseModel):
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    repair: RepairSettings = Field(default_factory=RepairSettings)
    default_platform: str = "ios"
    platforms: list[str] = Field(default_factory=lambda: ["ios", "android"])
    analysis_runs: int = Field(default=1, ge=1)
    xpath_runs: int = Field(default=1, ge=1)
    refine_elements: bool = False

    @field_validator("platforms")
    @classmethod
    def normalize_platforms(cls, value: list[str]) -> list[str]:
        normalized = [item.strip().lower() for item in value if item.strip()]
        if not normalized:
            raise ValueError("At least one platform is required")
        return normalized

    @field_validator("default_platform")
    @classmethod
    def normalize_default_platform(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def validate_default_platform(self) -> PipelineConfig:
        if self.default_platform not in self.platforms:
            raise ValueError(
                f"default_platform '{self.default_platform}' must be one of: {', '.join(self.platforms)}"
            )
        return self
