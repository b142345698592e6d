"""Core types shared by the interruption monitors."""

from __future__ import annotations

import abc
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

SPOT_ITN_KIND = "SPOT_ITN"
SCHEDULED_EVENT_KIND = "SCHEDULED_EVENT"
REBALANCE_RECOMMENDATION_KIND = "REBALANCE_RECOMMENDATION"
STATE_CHANGE_KIND = "STATE_CHANGE"
ASG_LIFECYCLE_KIND = "ASG_LIFECYCLE"
ASG_LAUNCH_LIFECYCLE_KIND = "ASG_LAUNCH_LIFECYCLE"
SQS_TERMINATE_KIND = "SQS_TERMINATE"

ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)

_RFC3339 = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(\.\d+)?([Zz]|[+-]\d{2}:\d{2})$"
)


class MonitorError(Exception):
    """Raised when a monitor cannot check for or handle an interruption."""


def parse_rfc3339(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into a timezone-aware datetime."""
    match = _RFC3339.match(text)
    if match is None:
        raise ValueError(f"invalid RFC 3339 timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    microsecond = int(fraction[1:7].ljust(6, "0")) if fraction else 0
    if offset in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
        tz = timezone(sign * delta)
    return datetime(
        int(year), int(month), int(day),
        int(hour), int(minute), int(second),
        microsecond, tzinfo=tz,
    )


class NodeOperations(Protocol):
    """Operations a drain task may perform on the Kubernetes node.

    Each method raises on failure.
    """

    def taint_asg_lifecycle_termination(self, node_name: str, event_id: str) -> None: ...

    def taint_rebalance_recommendation(self, node_name: str, event_id: str) -> None: ...

    def taint_spot_itn(self, node_name: str, event_id: str) -> None: ...

    def taint_scheduled_maintenance(self, node_name: str, event_id: str) -> None: ...

    def mark_with_event_id(self, node_name: str, event_id: str) -> None: ...

    def is_unschedulable(self, node_name: str) -> bool: ...

    def mark_for_uncordon_after_reboot(self, node_name: str) -> None: ...


class MetadataService(Protocol):
    """Access to the instance metadata service.

    Methods raise on transport or decoding failure. Documents are the decoded
    JSON as returned by the service; ``None`` or empty means nothing is pending.
    """

    def get_asg_target_lifecycle_state(self) -> str: ...

    def get_rebalance_recommendation_event(self) -> Optional[Mapping[str, Any]]: ...

    def get_spot_itn_event(self) -> Optional[Mapping[str, Any]]: ...

    def get_scheduled_maintenance_events(self) -> Sequence[Mapping[str, Any]]: ...


DrainTask = Callable[["InterruptionEvent", NodeOperations], None]


@dataclass
class InterruptionEvent:
    """An interruption that may require the node to be drained."""

    event_id: str = ""
    kind: str = ""
    monitor: str = ""
    description: str = ""
    state: str = ""
    auto_scaling_group_name: str = ""
    node_name: str = ""
    node_labels: dict[str, str] = field(default_factory=dict)
    pods: list[str] = field(default_factory=list)
    instance_id: str = ""
    provider_id: str = ""
    is_managed: bool = False
    start_time: datetime = ZERO_TIME
    end_time: datetime = ZERO_TIME
    node_processed: bool = False
    in_progress: bool = False
    pre_drain_task: Optional[DrainTask] = field(default=None, repr=False, compare=False)
    post_drain_task: Optional[DrainTask] = field(default=None, repr=False, compare=False)

    def time_until_event(self) -> timedelta:
        """Time remaining until the event starts (negative once it has started)."""
        return self.start_time - datetime.now(timezone.utc)

    def is_rebalance_recommendation(self) -> bool:
        return "rebalance-recommendation" in self.event_id


class Monitor(abc.ABC):
    """A source of interruption events."""

    @abc.abstractmethod
    def monitor(self) -> None:
        """Check once for events and dispatch any that are found."""

    @abc.abstractmethod
    def kind(self) -> str:
        """The kind of this monitor."""