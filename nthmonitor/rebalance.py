"""Monitor for rebalance recommendations reported by instance metadata."""

from __future__ import annotations

import json
import queue
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional

from nthmonitor.asglifecycle import _apply_taint, _fetch, _hashed_id, _NoticeMonitor
from nthmonitor.types import (
    REBALANCE_RECOMMENDATION_KIND,
    InterruptionEvent,
    MetadataService,
    MonitorError,
    NodeOperations,
    parse_rfc3339,
)

REBALANCE_RECOMMENDATION_MONITOR_KIND = "REBALANCE_RECOMMENDATION_MONITOR"


def _notice_time(document: Mapping[str, object], key: str, subject: str) -> tuple[str, datetime]:
    """Return the raw and parsed RFC 3339 time held under ``key``."""
    text = str(document.get(key, ""))
    try:
        return text, parse_rfc3339(text)
    except ValueError as err:
        raise MonitorError(f"Could not parse time from {subject} metadata json: {err}") from err


def _notice_id(prefix: str, document: Mapping[str, object]) -> str:
    # No event ID is returned, so one is derived from the content to avoid duplicates.
    return _hashed_id(prefix, json.dumps(dict(document), sort_keys=True))


@dataclass
class RebalanceRecommendationMonitor(_NoticeMonitor):
    """Watches instance metadata for rebalance recommendations."""

    imds: MetadataService
    interruption_queue: "queue.Queue[InterruptionEvent]"
    node_name: str

    _event_kind = REBALANCE_RECOMMENDATION_KIND

    def monitor(self) -> None:
        """Check metadata once and queue an interruption if one is found."""
        self._poll()

    def kind(self) -> str:
        return REBALANCE_RECOMMENDATION_MONITOR_KIND

    def _check(self) -> Optional[InterruptionEvent]:
        recommendation = _fetch(
            self.imds.get_rebalance_recommendation_event, "rebalance recommendations"
        )
        if recommendation is None:
            return None
        text, notice_time = _notice_time(recommendation, "noticeTime", "rebalance recommendation")
        return InterruptionEvent(
            event_id=_notice_id("rebalance-recommendation", recommendation),
            kind=REBALANCE_RECOMMENDATION_KIND,
            monitor=REBALANCE_RECOMMENDATION_MONITOR_KIND,
            start_time=notice_time,
            node_name=self.node_name,
            description=f"Rebalance recommendation received. Instance will be cordoned at {text} \n",
            pre_drain_task=set_interruption_taint,
        )


def set_interruption_taint(event: InterruptionEvent, node: NodeOperations) -> None:
    """Taint the node for a rebalance recommendation."""
    _apply_taint(node.taint_rebalance_recommendation, "rebalance recommendation", event)