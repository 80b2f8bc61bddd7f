from __future__ import annotations

from datetime import UTC, datetime
from typing import Iterable

from locator_synthesis.core.models import Element, Page, ValidationResult


def resolve_target_state_id(element: Element, platform: str) -> str | None:
    """Reads the element's state id for platform from state_ids, then state_Ids, then stateId."""

    return (
        element.state_ids.get(platform)
        or element.legacy_state_ids.get(platform)
        or element.state_id
    )


def validate_against_page(
    elements: Iterable[Element],
    page: Page,
    target_platform: str,
) -> ValidationResult:
    state_ids = page.state_ids()
    seen_dev_names: set[str] = set()
    duplicate_dev_names: list[str] = []
    missing_elements: list[Element] = []

    for element in elements:
        if element.dev_name in seen_dev_names:
            if element.dev_name not in duplicate_dev_names:
                duplicate_dev_names.append(element.dev_name)
        else:
            seen_dev_names.add(element.dev_name)

        target_state_id = resolve_target_state_id(element, target_platform)
        if target_state_id and target_state_id not in state_ids:
            missing_elements.append(element)

    return ValidationResult(
        valid=not missing_elements and not duplicate_dev_names,
        missing_elements=missing_elements,
        duplicate_dev_names=duplicate_dev_names,
        timestamp=datetime.now(UTC).isoformat(),
    )
