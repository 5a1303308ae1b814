from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, NewType

from navbat_queue.domain.errors import ValidationError

TicketId = NewType("TicketId", str)
OrgId = NewType("OrgId", str)

MetadataValue = str | int | float | bool | None


class TicketStatus(StrEnum):
    WAITING = "waiting"
    MISSED = "missed"
    SERVED = "served"
    CANCELLED = "cancelled"

    @property
    def is_pending(self) -> bool:
        return self in (TicketStatus.WAITING, TicketStatus.MISSED)

    @property
    def is_terminal(self) -> bool:
        return self in (TicketStatus.SERVED, TicketStatus.CANCELLED)


PENDING_STATUSES = (TicketStatus.WAITING, TicketStatus.MISSED)


def new_ticket_id() -> TicketId:
    return TicketId(uuid.uuid4().hex)


@dataclass(slots=True)
class Ticket:
    id: TicketId
    org_id: OrgId
    number: int
    cycle: int
    created_at: datetime
    updated_at: datetime
    status: TicketStatus = TicketStatus.WAITING
    metadata: dict[str, MetadataValue] = field(default_factory=dict)
    served_at: datetime | None = None

    def clone(self) -> "Ticket":
        return Ticket(
            id=self.id,
            org_id=self.org_id,
            number=self.number,
            cycle=self.cycle,
            created_at=self.created_at,
            updated_at=self.updated_at,
            status=self.status,
            metadata=dict(self.metadata),
            served_at=self.served_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "org_id": str(self.org_id),
            "number": self.number,
            "cycle": self.cycle,
            "status": self.status.value,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "served_at": self.served_at.isoformat() if self.served_at else None,
        }


def validate_metadata(
    metadata: Any,
    *,
    max_fields: int,
    max_value_length: int,
) -> dict[str, MetadataValue]:
    """
    Checks caller-supplied ticket metadata without interpreting it.
    Keys must be non-empty strings, values scalars; strings are stripped.
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")
    if len(metadata) > max_fields:
        raise ValidationError(f"metadata must not have more than {max_fields} fields")
    out: dict[str, MetadataValue] = {}
    for raw_key, value in metadata.items():
        if not isinstance(raw_key, str) or not raw_key.strip():
            raise ValidationError("metadata keys must be non-empty strings")
        key = raw_key.strip()
        if isinstance(value, str):
            value = value.strip()
            if len(value) > max_value_length:
                raise ValidationError(f"metadata field {key!r} exceeds {max_value_length} characters")
        elif value is not None and not isinstance(value, (bool, int, float)):
            raise ValidationError(f"metadata field {key!r} must be a scalar value")
        out[key] = value
    return out
