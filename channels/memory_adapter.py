"""
In-memory gateway — records outbound actions instead of sending them.

Used for development and tests. Failures can be scripted per contact with
`fail_next(contact_id, times)` to exercise the dispatch queue's retry path.
"""
from __future__ import annotations

import uuid
import structlog
from collections import defaultdict
from typing import Any, Optional

from channels.base import GatewayError, MessagingGateway
from channels.evolution_adapter import EvolutionGateway, parse_upsert_event
from models.schemas import ActionKind, MessageReceived

logger = structlog.get_logger()


class InMemoryGateway(MessagingGateway):

    name = "memory"

    def __init__(self):
        super().__init__(failure_threshold=1000)
        self.sent: list[dict[str, Any]] = []
        self._failures: dict[str, int] = defaultdict(int)

    def fail_next(self, contact_id: str, times: int = 1) -> None:
        self._failures[contact_id] += times

    async def _do_send(self, contact_id: str, kind: ActionKind, payload: dict[str, Any]) -> str:
        if self._failures[contact_id] > 0:
            self._failures[contact_id] -= 1
            raise GatewayError(f"Scripted failure for {contact_id}", self.name)

        delivery_id = f"mem_{uuid.uuid4().hex[:12]}"
        self.sent.append({
            "delivery_id": delivery_id,
            "contact_id": contact_id,
            "kind": kind.value,
            "payload": dict(payload),
        })
        logger.info("memory_message_sent", to=contact_id, kind=kind.value, delivery_id=delivery_id)
        return delivery_id

    def _parse_inbound(self, raw_payload: dict[str, Any]) -> Optional[tuple[str, MessageReceived]]:
        if "data" in raw_payload:
            return parse_upsert_event(raw_payload)
        return super()._parse_inbound(raw_payload)

    def texts_for(self, contact_id: str) -> list[str]:
        return [
            s["payload"].get("text", "")
            for s in self.sent
            if s["contact_id"] == contact_id and s["kind"] == ActionKind.MESSAGE.value
        ]


def create_gateway(config) -> MessagingGateway:
    """Factory: build the configured gateway (`evolution` or `memory`)."""
    if config.type == "evolution":
        logger.info("gateway_created", type="evolution", instance=config.instance_name)
        return EvolutionGateway(config)
    logger.info("gateway_created", type="memory")
    return InMemoryGateway()
