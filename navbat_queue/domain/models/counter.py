from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from navbat_queue.domain.models.ticket import OrgId


@dataclass(slots=True)
class OrgCounterState:
    org_id: OrgId
    next_number: int = 1
    current_served_number: int = 0
    cycle: int = 1
    updated_at: datetime | None = None

    @property
    def now_serving(self) -> int:
        return self.current_served_number + 1

    @property
    def last_number(self) -> int:
        return self.next_number - 1

    @property
    def has_pending(self) -> bool:
        return self.now_serving <= self.last_number

    def clone(self) -> "OrgCounterState":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "org_id": str(self.org_id),
            "next_number": self.next_number,
            "current_served_number": self.current_served_number,
            "cycle": self.cycle,
            "now_serving": self.now_serving,
            "last_number": self.last_number,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def normalize_counter(counter: OrgCounterState, max_issued: int) -> OrgCounterState:
    """
    Repairs counter drift from the ticket table.

    The serving pointer never passes the last issued number and the next
    number always lies above every issued ticket of the current cycle.
    Returns a new state; an already consistent state comes back equal.
    """
    next_number = max(
        counter.next_number,
        counter.current_served_number + 1,
        max(max_issued, 0) + 1,
    )
    current_served = max(counter.current_served_number, 0)
    if next_number == counter.next_number and current_served == counter.current_served_number:
        return counter.clone()
    return replace(counter, next_number=next_number, current_served_number=current_served)


def reset_counter(counter: OrgCounterState, at: datetime) -> OrgCounterState:
    return OrgCounterState(
        org_id=counter.org_id,
        next_number=1,
        current_served_number=0,
        cycle=counter.cycle + 1,
        updated_at=at,
    )
