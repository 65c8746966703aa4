"""Prediction core: probability model, per-lane projector, cross-lane adjuster.

Everything here is synchronous and free of I/O.
"""

from __future__ import annotations

from rankwatch.cadence import DEFAULT_RULES, Rules
from rankwatch.lanes import QueueState
from rankwatch.predict.adjuster import adjust, reassess_overdue
from rankwatch.predict.probability import irwin_hall_cdf, promotion_chance
from rankwatch.predict.projector import project, project_all

__all__ = [
    "adjust",
    "irwin_hall_cdf",
    "project",
    "project_all",
    "promotion_chance",
    "reassess_overdue",
    "recalculate",
]


def recalculate(state: QueueState, rules: Rules = DEFAULT_RULES) -> None:
    """Project every lane from scratch, then correct across lanes."""
    project_all(state.lanes, rules)
    adjust(state.lanes, rules)
