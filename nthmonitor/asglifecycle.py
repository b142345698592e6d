"""Monitor for the ASG target lifecycle state reported by instance metadata.

It also holds the pieces that all single-notice metadata monitors share.
"""

from __future__ import annotations

import hashlib
import queue
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from nthmonitor.types import (
    ASG_LIFECYCLE_KIND,
    InterruptionEvent,
    MetadataService,
    Monitor,
    MonitorError,
    NodeOperations,
)

ASG_LIFECYCLE_MONITOR_KIND = "ASG_LIFECYCLE_MONITOR"

_T = TypeVar("_T")


def _fetch(query: Callable[[], _T], subject: str) -> _T:
    """Run a metadata query, turning any failure into a MonitorError."""
    try:
        return query()
    except Exception as err:
        raise MonitorError(f"There was a problem checking for {subject}: {err}") from err


def _hashed_id(prefix: str, content: str) -> str:
    """Build an event ID from a prefix and the SHA-256 of some content."""
    return f"{prefix}-{hashlib.sha256(content.encode()).hexdigest()}"


def _apply_taint(
    taint: Callable[[str, str], object], taint_name: str, event: InterruptionEvent
) -> None:
    """Apply a node taint for an event, raising MonitorError on failure."""
    try:
        taint(event.node_name, event.event_id)
    except Exception as err:
        raise MonitorError(
            f"Unable to taint node with {taint_name} taint for event {event.event_id}: {err}"
        ) from err


class _NoticeMonitor(Monitor):
    """Base for monitors that find at most one interruption per poll.

    Subclasses set ``_event_kind`` and provide ``_check``.
    """

    _event_kind = ""
    interruption_queue: "queue.Queue[InterruptionEvent]"

    def _poll(self) -> None:
        """Check once and queue the event found, if it is of the expected kind."""
        event = self._check()  # type: ignore[attr-defined]
        if event is not None and event.kind == self._event_kind:
            self.interruption_queue.put(event)


@dataclass
class ASGLifecycleMonitor(_NoticeMonitor):
    """Watches instance metadata for a 'Terminated' ASG target lifecycle state."""

    imds: MetadataService
    interruption_queue: "queue.Queue[InterruptionEvent]"
    cancel_queue: "queue.Queue[InterruptionEvent]"
    node_name: str

    _event_kind = ASG_LIFECYCLE_KIND

    def monitor(self) -> None:
        """Check metadata once and queue an interruption if one is found."""
        self._poll()

    def kind(self) -> str:
        return ASG_LIFECYCLE_MONITOR_KIND

    def _check(self) -> Optional[InterruptionEvent]:
        state = _fetch(self.imds.get_asg_target_lifecycle_state, "ASG target lifecycle state")
        # An empty state means no lifecycle hook is configured.
        if state != "Terminated":
            return None

        # The response carries no time, so the time of this check is used.
        interruption_time = datetime.now(timezone.utc)
        return InterruptionEvent(
            event_id=_hashed_id(
                "target-lifecycle-state-terminated",
                f"{state}:{interruption_time.isoformat()}",
            ),
            kind=ASG_LIFECYCLE_KIND,
            monitor=ASG_LIFECYCLE_MONITOR_KIND,
            start_time=interruption_time,
            node_name=self.node_name,
            description="AST target lifecycle state received. Instance will be terminated\n",
            pre_drain_task=set_interruption_taint,
        )


def set_interruption_taint(event: InterruptionEvent, node: NodeOperations) -> None:
    """Taint the node for an ASG lifecycle termination."""
    _apply_taint(node.taint_asg_lifecycle_termination, "ASG lifecycle termination", event)