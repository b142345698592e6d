"""EventBridge event envelope and the records shared by the queue monitor."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

from nthmonitor.types import InterruptionEvent, parse_rfc3339

SQS_MONITOR_KIND = "SQS_MONITOR"

_STRING_FIELDS = {
    "version": "version",
    "id": "id",
    "detail-type": "detail_type",
    "source": "source",
    "account": "account",
    "time": "time",
    "region": "region",
}

log = logging.getLogger(__name__)


def describe_time(moment: datetime) -> str:
    """Render a timestamp as 'YYYY-MM-DD HH:MM:SS[.frac] +hhmm ZONE'."""
    text = moment.strftime("%Y-%m-%d %H:%M:%S")
    if moment.microsecond:
        text += "." + f"{moment.microsecond:06d}".rstrip("0")
    offset = moment.utcoffset()
    if offset is None or offset == timedelta(0):
        return f"{text} +0000 UTC"
    numeric = moment.strftime("%z")
    return f"{text} {numeric} {numeric}"


@dataclass
class EventBridgeEvent:
    """Generic event details delivered by EventBridge."""

    version: str = ""
    id: str = ""
    detail_type: str = ""
    source: str = ""
    account: str = ""
    time: str = ""
    region: str = ""
    resources: list[str] = field(default_factory=list)
    detail: Any = None

    @classmethod
    def from_json(cls, text: Union[str, bytes]) -> "EventBridgeEvent":
        """Decode an event from its JSON text; raises ValueError if malformed."""
        data = json.loads(text)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("EventBridge event must be a JSON object")

        values: dict[str, Any] = {}
        for key, attribute in _STRING_FIELDS.items():
            value = data.get(key)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"EventBridge event field {key!r} must be a string")
            values[attribute] = value

        resources = data.get("resources")
        if resources is not None:
            if not isinstance(resources, list) or not all(
                isinstance(resource, str) for resource in resources
            ):
                raise ValueError("EventBridge event field 'resources' must be a list of strings")
            values["resources"] = list(resources)

        values["detail"] = data.get("detail")
        return cls(**values)

    def get_time(self) -> datetime:
        """The event time, or the current time when it cannot be parsed."""
        try:
            return parse_rfc3339(self.time)
        except ValueError:
            log.warning(
                "Unable to parse time as RFC3339 from event %s (%s), using current time instead.",
                self.detail_type,
                self.id,
            )
            return datetime.now(timezone.utc)


@dataclass
class NodeInfo:
    """What is known about the node that runs a given instance."""

    asg_name: str = ""
    instance_id: str = ""
    provider_id: str = ""
    is_managed: bool = False
    name: str = ""
    tags: dict[str, str] = field(default_factory=dict)


class SkipError(Exception):
    """An error to acknowledge without counting the event as failed."""


@dataclass
class InterruptionEventWrapper:
    """An interruption event paired with the error met while building it, if any."""

    interruption_event: Optional[InterruptionEvent] = None
    error: Optional[BaseException] = None