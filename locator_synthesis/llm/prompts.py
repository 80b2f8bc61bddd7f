from __future__ import annotations

import json
from typing import Any

from locator_synthesis.llm.tasks import GenerationTask

JSON_ONLY_RULE = "Respond with JSON only: no markdown, no code fence, no explanation."

SYSTEM_PROMPTS: dict[GenerationTask, str] = {
    GenerationTask.IDENTIFY_ELEMENTS: f"""You identify the interactive and informative UI elements of a mobile app page.
Rules:
1. Use only elements visible in the provided screenshots and XML page sources.
2. Return a JSON array of objects with devName, name, description, value, isDynamicValue and state_ids.
3. devName is a unique camelCase identifier; state_ids maps the platform to one of the allowed state ids.
4. {JSON_ONLY_RULE}""",
    GenerationTask.REFINE_ELEMENTS: f"""You review a list of UI elements identified on a mobile app page.
Rules:
1. Remove elements that are not present, merge duplicates, and fix wrong state ids.
2. Keep the same JSON array shape you were given.
3. {JSON_ONLY_RULE}""",
    GenerationTask.MAP_STATE_ID: f"""You map already identified UI elements onto the states of another platform.
Rules:
1. For each element return an object with devName and stateId.
2. stateId must be one of the allowed state ids for the target platform.
3. {JSON_ONLY_RULE}""",
    GenerationTask.GENERATE_XPATHS: f"""You write XPath 1.0 locators for Appium page sources.
Rules:
1. Return a JSON array with one object per element: devName, name, description, value, xpathLocator.
2. Each xpathLocator must match exactly one node of the provided XML.
3. Prefer stable attributes (resource-id, accessibility id, name, label) over indexes.
4. {JSON_ONLY_RULE}""",
    GenerationTask.REPAIR_XPATHS: f"""You repair XPath 1.0 locators that no longer match exactly one node.
Rules:
1. For each failing element return the element with an xpathFix array of 1 to 3 candidates.
2. Each candidate has priority (0 primary, 1 and 2 alternatives), xpath, confidence (High, Medium, Low), description and fix.
3. Use only nodes and attributes present in the provided XML.
4. {JSON_ONLY_RULE}""",
}

SCREENSHOT_PLACEHOLDER = "<attached image>"


def system_prompt(task: GenerationTask) -> str:
    return SYSTEM_PROMPTS[task]


def build_user_prompt(task: GenerationTask, context: dict[str, Any]) -> str:
    """Formats a deterministic user payload for the model, with screenshots detached."""

    _, stripped = split_screenshots(context)
    return json.dumps({"task": task.value, "context": stripped}, indent=2, sort_keys=True, default=str)


def split_screenshots(context: dict[str, Any]) -> tuple[list[str], dict[str, Any]]:
    screenshots: list[str] = []
    stripped = dict(context)
    single = stripped.get("screenshot")
    if single:
        screenshots.append(single)
        stripped["screenshot"] = SCREENSHOT_PLACEHOLDER
    states = stripped.get("states")
    if isinstance(states, list):
        detached = []
        for state in states:
            if isinstance(state, dict) and state.get("screenshot"):
                screenshots.append(state["screenshot"])
                state = {**state, "screenshot": SCREENSHOT_PLACEHOLDER}
            detached.append(state)
        stripped["states"] = detached
    return screenshots, stripped


def image_payload(screenshot: str) -> tuple[str, str]:
    """Returns (mime_type, base64_data) from a data URL or bare base64 string."""

    if screenshot.startswith("data:") and "," in screenshot:
        header, data = screenshot.split(",", 1)
        mime_type = header[5:].split(";", 1)[0] or "image/png"
        return mime_type, data
    return "image/png", screenshot
