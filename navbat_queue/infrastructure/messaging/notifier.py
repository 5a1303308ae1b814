from __future__ import annotations

import logging

from navbat_queue.application.ports import EventBusPort
from navbat_queue.domain.events import TicketPromoted

log = logging.getLogger(__name__)


class EventBusNotifier:
    def __init__(self, event_bus: EventBusPort) -> None:
        self._event_bus = event_bus

    async def notify(self, event: TicketPromoted) -> None:
        log.info(
            "Ticket promoted org_id=%s number=%s platform=%s",
            event.org_id,
            event.ticket.number,
            event.ticket.metadata.get("platform"),
        )
        await self._event_bus.publish(event)
