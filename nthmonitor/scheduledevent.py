"""Monitor for scheduled maintenance events reported by instance metadata."""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from nthmonitor.types import (
    SCHEDULED_EVENT_KIND,
    DrainTask,
    InterruptionEvent,
    MetadataService,
    Monitor,
    MonitorError,
    NodeOperations,
)

SCHEDULED_EVENT_MONITOR_KIND = "SCHEDULED_EVENT_MONITOR"

_STATE_COMPLETED = "completed"
_STATE_CANCELED = "canceled"
_DATE_FORMAT = "%d %b %Y %H:%M:%S GMT"
_RESTART_CODES = frozenset(
    {"instance-stop", "system-reboot", "instance-reboot", "instance-retirement"}
)

log = logging.getLogger(__name__)


def _parse_event_time(text: str) -> datetime:
    return datetime.strptime(text, _DATE_FORMAT).replace(tzinfo=timezone.utc)


@dataclass
class ScheduledEventMonitor(Monitor):
    """Watches instance metadata for scheduled maintenance events."""

    imds: MetadataService
    interruption_queue: "queue.Queue[InterruptionEvent]"
    cancel_queue: "queue.Queue[InterruptionEvent]"
    node_name: str

    def monitor(self) -> None:
        for event in self._check_for_scheduled_events():
            if is_state_canceled_or_completed(event.state):
                self.cancel_queue.put(event)
            else:
                self.interruption_queue.put(event)

    def kind(self) -> str:
        return SCHEDULED_EVENT_MONITOR_KIND

    def _check_for_scheduled_events(self) -> list[InterruptionEvent]:
        try:
            scheduled_events = self.imds.get_scheduled_maintenance_events()
        except Exception as err:
            raise MonitorError(f"Unable to parse metadata response: {err}") from err

        events = []
        for scheduled in scheduled_events:
            code = scheduled.get("Code", "")
            state = scheduled.get("State", "")
            not_before_text = scheduled.get("NotBefore", "")
            not_after_text = scheduled.get("NotAfter", "")

            pre_drain: Optional[DrainTask] = None
            if is_restart_event(code) and not is_state_canceled_or_completed(state):
                pre_drain = uncordon_after_reboot_pre_drain

            try:
                not_before = _parse_event_time(not_before_text)
            except ValueError as err:
                raise MonitorError(
                    f"Unable to parse scheduled event start time: {err}"
                ) from err

            not_after = not_before
            if not_after_text:
                try:
                    not_after = _parse_event_time(not_after_text)
                except ValueError as err:
                    log.error("Unable to parse scheduled event end time, continuing: %s", err)

            events.append(
                InterruptionEvent(
                    event_id=scheduled.get("EventId", ""),
                    kind=SCHEDULED_EVENT_KIND,
                    monitor=SCHEDULED_EVENT_MONITOR_KIND,
                    description=(
                        f"{code} will occur between {not_before_text} and "
                        f"{not_after_text} because {scheduled.get('Description', '')}\n"
                    ),
                    state=state,
                    node_name=self.node_name,
                    start_time=datetime.now(timezone.utc),
                    end_time=not_after,
                    pre_drain_task=pre_drain,
                )
            )
        return events


def uncordon_after_reboot_pre_drain(event: InterruptionEvent, node: NodeOperations) -> None:
    """Mark and taint the node, and label it for uncordoning after reboot."""
    node_name = event.node_name
    try:
        node.mark_with_event_id(node_name, event.event_id)
    except Exception as err:
        raise MonitorError(f"Unable to mark node with event ID: {err}") from err

    try:
        node.taint_scheduled_maintenance(node_name, event.event_id)
    except Exception as err:
        raise MonitorError(
            f"Unable to taint node with scheduled maintenance taint for event "
            f"{event.event_id}: {err}"
        ) from err

    try:
        unschedulable = node.is_unschedulable(node_name)
    except Exception as err:
        raise MonitorError(
            "Encountered an error while checking if the node is unschedulable. "
            f"Not setting an uncordon label: {err}"
        ) from err
    if unschedulable:
        log.debug("Node is already marked unschedulable, not taking any action to add uncordon label.")
        return

    try:
        node.mark_for_uncordon_after_reboot(node_name)
    except Exception as err:
        raise MonitorError(f"Unable to mark the node for uncordon: {err}") from err
    log.info("Successfully applied uncordon after reboot action label to node.")


def is_state_canceled_or_completed(state: str) -> bool:
    return state in (_STATE_CANCELED, _STATE_COMPLETED)


def is_restart_event(code: str) -> bool:
    return code in _RESTART_CODES