from __future__ import annotations

from typing import Callable, Sequence, TypeVar

from locator_synthesis.core.models import Element, ValidationResult, XPathEvaluationResult

MISSING_ELEMENT_PENALTY = 2
DUPLICATE_DEV_NAME_PENALTY = 3

RunT = TypeVar("RunT")


def score_elements(elements: Sequence[Element], validation: ValidationResult) -> int:
    penalty = (
        len(validation.missing_elements) * MISSING_ELEMENT_PENALTY
        + len(validation.duplicate_dev_names) * DUPLICATE_DEV_NAME_PENALTY
    )
    return len(elements) - penalty


def valid_ratio(evaluations: Sequence[XPathEvaluationResult]) -> float:
    if not evaluations:
        return 0.0
    unique = sum(1 for evaluation in evaluations if evaluation.is_unique)
    return unique / len(evaluations)


def select_best(runs: Sequence[RunT], key: Callable[[RunT], float]) -> RunT:
    """Stable max: an equal score never replaces the earlier run."""

    if not runs:
        raise ValueError("select_best requires at least one run")
    best = runs[0]
    for run in runs[1:]:
        if key(run) > key(best):
            best = run
    return best
