from __future__ import annotations

import json
import os
from pathlib import Path

from locator_synthesis.config.schema import PipelineConfig
from locator_synthesis.core.models import Page


class ConfigLoader:
    """Loads and validates pipeline configuration and page documents."""

    @staticmethod
    def load(path: str | Path) -> PipelineConfig:
        config_path = Path(path)
        with config_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return PipelineConfig.model_validate(payload)

    @staticmethod
    def from_env() -> PipelineConfig:
        generation = {}
        for key, env_name in (
            ("model", "AI_MODEL"),
            ("temperature", "TEMPERATURE"),
            ("top_p", "TOP_P"),
            ("max_output_tokens", "MAX_OUTPUT_TOKENS"),
        ):
            value = os.getenv(env_name)
            if value:
                generation[key] = value
        payload: dict = {"generation": generation}
        if os.getenv("ANALYSIS_RUNS"):
            payload["analysis_runs"] = os.environ["ANALYSIS_RUNS"]
        if os.getenv("XPATH_ANALYSIS_RUNS"):
            payload["xpath_runs"] = os.environ["XPATH_ANALYSIS_RUNS"]
        if os.getenv("DEFAULT_OS"):
            payload["default_platform"] = os.environ["DEFAULT_OS"]
        if os.getenv("OS_VERSIONS"):
            payload["platforms"] = os.environ["OS_VERSIONS"].split(",")
        return PipelineConfig.model_validate(payload)

    @staticmethod
    def load_page(path: str | Path) -> Page:
        page_path = Path(path)
        with page_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        return Page.model_validate(payload)
