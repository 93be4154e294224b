"""Denomination splitting and scheduled execution."""

from velo.scheduler.split import (
    PartState,
    PartStatus,
    SplitExecution,
    SplitPart,
    SplitPlan,
    describe,
    execute_split,
    plan_split,
    validate_notes,
)

__all__ = [
    "PartState",
    "PartStatus",
    "SplitExecution",
    "SplitPart",
    "SplitPlan",
    "describe",
    "execute_split",
    "plan_split",
    "validate_notes",
]
