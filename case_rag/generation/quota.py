"""Category quotas and per-category defaults for generated test cases."""

from __future__ import annotations

from dataclasses import dataclass

from case_rag.models import CATEGORY_ORDER, Category, Priority, Severity

# Relative weights; for the standard batch of 15 these are the exact counts.
CATEGORY_WEIGHTS: dict[Category, int] = {
    Category.functional: 6,
    Category.edge_case: 5,
    Category.compliance: 3,
    Category.integration: 1,
}


@dataclass(frozen=True)
class CategoryDefaults:
    """Values used when the model omits priority, severity or persona."""

    priority: Priority
    severity: Severity
    persona: str


CATEGORY_DEFAULTS: dict[Category, CategoryDefaults] = {
    Category.functional: CategoryDefaults(Priority.high, Severity.High, "End User"),
    Category.edge_case: CategoryDefaults(Priority.medium, Severity.Medium, "QA Engineer"),
    Category.compliance: CategoryDefaults(Priority.high, Severity.High, "Compliance Officer"),
    Category.integration: CategoryDefaults(Priority.medium, Severity.Medium, "System Integrator"),
}


def category_quotas(total: int) -> dict[Category, int]:
    """Split *total* test cases across categories.

    Each category gets ``floor(total * weight / sum(weights))``; whatever
    rounding leaves over goes to ``functional``.  The result is ordered by
    generation order and always sums to *total*; for 15 it is 6/5/3/1.
    """
    if total < 0:
        raise ValueError(f"total must be >= 0, got {total}")
    weight_sum = sum(CATEGORY_WEIGHTS.values())
    quotas = {cat: total * CATEGORY_WEIGHTS[cat] // weight_sum for cat in CATEGORY_ORDER}
    quotas[Category.functional] += total - sum(quotas.values())
    return quotas
