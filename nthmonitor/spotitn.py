"""Monitor for spot instance interruption notices reported by instance metadata."""

from __future__ import annotations

import queue
from dataclasses import dataclass
from typing import Optional

from nthmonitor.asglifecycle import _apply_taint, _fetch, _NoticeMonitor
from nthmonitor.rebalance import _notice_id, _notice_time
from nthmonitor.types import SPOT_ITN_KIND, InterruptionEvent, MetadataService, NodeOperations

SPOT_ITN_MONITOR_KIND = "SPOT_ITN_MONITOR"


@dataclass
class SpotInterruptionMonitor(_NoticeMonitor):
    """Watches instance metadata for spot interruption notices."""

    imds: MetadataService
    interruption_queue: "queue.Queue[InterruptionEvent]"
    cancel_queue: "queue.Queue[InterruptionEvent]"
    node_name: str

    _event_kind = SPOT_ITN_KIND

    def monitor(self) -> None:
        """Check metadata once and queue an interruption if one is found."""
        self._poll()

    def kind(self) -> str:
        return SPOT_ITN_MONITOR_KIND

    def _check(self) -> Optional[InterruptionEvent]:
        instance_action = _fetch(self.imds.get_spot_itn_event, "spot ITNs")
        if instance_action is None:
            return None
        text, interruption_time = _notice_time(
            instance_action, "time", "spot interruption notice"
        )
        return InterruptionEvent(
            event_id=_notice_id("spot-itn", instance_action),
            kind=SPOT_ITN_KIND,
            monitor=SPOT_ITN_MONITOR_KIND,
            start_time=interruption_time,
            node_name=self.node_name,
            description=f"Spot ITN received. Instance will be interrupted at {text} \n",
            pre_drain_task=set_interruption_taint,
        )


def set_interruption_taint(event: InterruptionEvent, node: NodeOperations) -> None:
    """Taint the node for a spot interruption."""
    _apply_taint(node.taint_spot_itn, "spot interruption", event)