from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from locator_synthesis.core.models import Element

log = logging.getLogger(__name__)


@dataclass(slots=True)
class DeduplicationReport:
    elements: list[Element]
    duplicate_keys: list[str] = field(default_factory=list)
    removed_count: int = 0


def remove_duplicates(elements: Iterable[Element]) -> DeduplicationReport:
    """Keeps the first element for each devName, preserving input order."""

    seen: set[str] = set()
    duplicate_keys: list[str] = []
    kept: list[Element] = []
    removed = 0
    for element in elements:
        if element.dev_name in seen:
            removed += 1
            if element.dev_name not in duplicate_keys:
                duplicate_keys.append(element.dev_name)
            continue
        seen.add(element.dev_name)
        kept.append(element)

    if removed:
        log.warning(
            "Removed %d elements with duplicate devNames, keeping first occurrence: %s",
            removed,
            ", ".join(duplicate_keys),
        )
    return DeduplicationReport(elements=kept, duplicate_keys=duplicate_keys, removed_count=removed)
