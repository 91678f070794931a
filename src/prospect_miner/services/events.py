"""Change notifications for observers of the mining engine.

Publishing is fire-and-forget: a subscriber that raises is logged and
skipped, and never affects the operation that published the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


JOB_SAVED = "job_saved"
LEADS_IMPORTED = "leads_imported"
MILESTONE = "milestone"
ENV_CHANGED = "env_changed"


@dataclass(frozen=True)
class MiningEvent:
    kind: str
    job_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[MiningEvent], None]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""

        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event: MiningEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as exc:
                logger.warning(
                    "Subscriber %r failed for event %s (job_id=%s): %s",
                    callback,
                    event.kind,
                    event.job_id,
                    exc,
                )
