"""Admission gate for proposed allocation vectors."""

from __future__ import annotations

from typing import Mapping

from backend.domain.constraints import capacity_ceiling
from backend.domain.models import AdmissionDecision, DailyAllotment, GlobalDefaults


def admit(
    current: DailyAllotment,
    proposed: Mapping[str, int],
    defaults: GlobalDefaults,
) -> AdmissionDecision:
    """Decide whether ``proposed`` fits the day's capacity ceiling.

    ``defaults`` must already carry any per-allotment overbooking overrides.
    """
    proposed_total = sum(proposed.values())
    ceiling = capacity_ceiling(current.total_inventory, defaults)
    if proposed_total <= ceiling:
        return AdmissionDecision(
            ok=True,
            reason="",
            ceiling=ceiling,
            proposed_total=proposed_total,
        )

    if defaults.overbooking_allowed:
        reason = (
            f"allocation total {proposed_total} exceeds inventory {current.total_inventory} "
            f"plus {defaults.overbooking_limit}% overbooking (ceiling {ceiling}) "
            f"by {proposed_total - ceiling}"
        )
    else:
        reason = (
            f"allocation total {proposed_total} exceeds inventory {current.total_inventory} "
            f"by {proposed_total - ceiling}; overbooking is disabled"
        )
    return AdmissionDecision(
        ok=False,
        reason=reason,
        ceiling=ceiling,
        proposed_total=proposed_total,
    )
