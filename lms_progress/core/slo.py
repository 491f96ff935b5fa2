"""SLO definitions for the progress service.

Three objectives, each answering one question an operator asks:

  availability          "Does the API answer?"
      SLI: share of non-5xx responses
      SLO: 99.5% over 30 days

  completion_delivery   "Do queued completions eventually land?"
      SLI: of the completions that needed a retry, the share that
           ended succeeded rather than exhausted
      SLO: 99% over 7 days

  progress_consistency  "Do rollups agree with the unit rows?"
      SLI: the integrity health score from the last diagnosis
      SLO: 99% (point-in-time)

ERROR BUDGET
------------
A 99% delivery SLO allows 1 exhausted retry per 100 queued completions.
Every exhausted retry is a learner who saw "please refresh", so the
budget is small on purpose.

The evaluation functions below are pure: callers pass in counts read
from Prometheus, the functions return a status.  /health wires them up.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SLODefinition:
    """A single SLO target.

    target: percentage (99.5 means 99.5%)
    window: rolling evaluation window ("30d"), or "instant"
    """

    name: str
    description: str
    target: float
    window: str


@dataclass(frozen=True, slots=True)
class SLOStatus:
    slo: SLODefinition
    current: float
    budget_remaining: float
    healthy: bool


AVAILABILITY_SLO = SLODefinition(
    name="availability",
    description="Percentage of non-5xx responses",
    target=99.5,
    window="30d",
)

COMPLETION_DELIVERY_SLO = SLODefinition(
    name="completion_delivery",
    description="Queued completions that were delivered rather than exhausted",
    target=99.0,
    window="7d",
)

PROGRESS_CONSISTENCY_SLO = SLODefinition(
    name="progress_consistency",
    description="Integrity health score of course progress rollups",
    target=99.0,
    window="instant",
)

ALL_SLOS = [AVAILABILITY_SLO, COMPLETION_DELIVERY_SLO, PROGRESS_CONSISTENCY_SLO]


def _status(slo: SLODefinition, current: float) -> SLOStatus:
    return SLOStatus(
        slo=slo,
        current=round(current, 3),
        budget_remaining=round(current - slo.target, 3),
        healthy=current >= slo.target,
    )


def evaluate_availability(total_requests: int, error_requests: int) -> SLOStatus:
    """availability = (total - errors) / total × 100; no traffic counts as 100."""
    if total_requests == 0:
        current = 100.0
    else:
        current = ((total_requests - error_requests) / total_requests) * 100
    return _status(AVAILABILITY_SLO, current)


def evaluate_completion_delivery(succeeded: int, exhausted: int) -> SLOStatus:
    """Share of finished retry entries that succeeded.

    Entries still in the queue are not counted either way.
    """
    finished = succeeded + exhausted
    current = 100.0 if finished == 0 else succeeded / finished * 100
    return _status(COMPLETION_DELIVERY_SLO, current)


def evaluate_progress_consistency(health_score: float) -> SLOStatus:
    current = max(0.0, min(100.0, health_score))
    return _status(PROGRESS_CONSISTENCY_SLO, current)
