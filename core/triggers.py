"""
Trigger Index — resolves an inbound message to the flow that should start.

Indexed lookups instead of scanning every flow per message:
  KEYWORD_EXACT        hash on the lower-cased keyword
  KEYWORD_STARTS_WITH  hash on the keyword, probed with every prefix of the
                       message (longest first)
  KEYWORD_CONTAINS,
  ANY_RESPONSE, legacy linear scan

Matching normalizes the message with strip() + lower(); keywords are
lower-cased only. Among matching flows the lowest `priority` wins; two
matches at the winning priority raise TriggerConflictError.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import Optional

from core.errors import TriggerConflictError
from models.schemas import Flow, TriggerType

logger = structlog.get_logger()

# Trigger types that never start a flow from an inbound message
_NON_MESSAGE = {TriggerType.TIMER.value, TriggerType.WEBHOOK.value, TriggerType.MANUAL.value}
_INDEXED = {TriggerType.KEYWORD_EXACT.value, TriggerType.KEYWORD_STARTS_WITH.value}


@dataclass(frozen=True)
class TriggerEntry:
    flow_id: str
    trigger_type: str
    keyword: str                              # lower-cased, not trimmed
    priority: int

    def matches(self, message: str) -> bool:
        """`message` is already stripped and lower-cased."""
        if self.trigger_type == TriggerType.KEYWORD_EXACT.value:
            return message == self.keyword
        if self.trigger_type == TriggerType.KEYWORD_CONTAINS.value:
            return self.keyword in message
        if self.trigger_type == TriggerType.KEYWORD_STARTS_WITH.value:
            return message.startswith(self.keyword)
        if self.trigger_type == TriggerType.ANY_RESPONSE.value:
            return len(message) > 0
        if self.trigger_type in _NON_MESSAGE:
            return False
        # legacy trigger types: equals or contains
        return bool(self.keyword) and (message == self.keyword or self.keyword in message)


def trigger_entry(flow: Flow) -> Optional[TriggerEntry]:
    """Build the index entry for a flow's START node (None if it has no START)."""
    start = flow.start_node
    if start is None:
        return None
    config = start.config or {}
    keyword = config.get("keyword") or flow.trigger_keyword or ""
    return TriggerEntry(
        flow_id=flow.id,
        trigger_type=str(config.get("triggerType") or "").upper(),
        keyword=str(keyword).lower(),
        priority=flow.priority,
    )


class TriggerIndex:

    def __init__(self):
        self._flows: dict[str, Flow] = {}
        self._exact: dict[str, list[TriggerEntry]] = {}
        self._prefix: dict[str, list[TriggerEntry]] = {}
        self._scan: list[TriggerEntry] = []

    def __len__(self) -> int:
        return len(self._flows)

    def rebuild(self, flows: list[Flow]) -> None:
        self._flows.clear()
        self._exact.clear()
        self._prefix.clear()
        self._scan.clear()
        for flow in flows:
            if flow.is_active:
                self._add(flow)
        logger.info("trigger_index_rebuilt",
                    flows=len(self._flows),
                    exact=len(self._exact),
                    prefix=len(self._prefix),
                    scanned=len(self._scan))

    def _add(self, flow: Flow) -> None:
        entry = trigger_entry(flow)
        if entry is None:
            logger.warning("flow_without_start_node", flow_id=flow.id)
            return
        self._flows[flow.id] = flow
        if entry.trigger_type == TriggerType.KEYWORD_EXACT.value:
            self._exact.setdefault(entry.keyword, []).append(entry)
        elif entry.trigger_type == TriggerType.KEYWORD_STARTS_WITH.value:
            self._prefix.setdefault(entry.keyword, []).append(entry)
        elif entry.trigger_type not in _NON_MESSAGE:
            self._scan.append(entry)

    def validate(self, flow: Flow) -> None:
        """
        Reject an active flow whose EXACT / STARTS_WITH keyword duplicates
        another active flow's at the same priority.
        """
        if not flow.is_active:
            return
        entry = trigger_entry(flow)
        if entry is None or entry.trigger_type not in _INDEXED:
            return
        table = self._exact if entry.trigger_type == TriggerType.KEYWORD_EXACT.value else self._prefix
        clashing = [
            e.flow_id for e in table.get(entry.keyword, [])
            if e.flow_id != flow.id and e.priority == entry.priority
        ]
        if clashing:
            raise TriggerConflictError(
                f"Keyword '{entry.keyword}' ({entry.trigger_type}) is already used by "
                f"flow(s) {', '.join(clashing)} at priority {entry.priority}",
                flow_ids=[flow.id, *clashing],
            )

    def candidates(self, text: str) -> list[TriggerEntry]:
        message = (text or "").strip().lower()
        found = list(self._exact.get(message, []))
        for end in range(len(message), -1, -1):
            found.extend(self._prefix.get(message[:end], []))
        found.extend(e for e in self._scan if e.matches(message))
        return found

    def match(self, text: str) -> Optional[Flow]:
        found = self.candidates(text)
        if not found:
            return None

        best = min(e.priority for e in found)
        winners = sorted({e.flow_id for e in found if e.priority == best})
        if len(winners) > 1:
            raise TriggerConflictError(
                f"{len(winners)} flows match the same message at priority {best}",
                flow_ids=winners,
            )
        return self._flows[winners[0]]
