"""Conversion of EventBridge events into interruption events."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence

from nthmonitor.eventbridge import (
    SQS_MONITOR_KIND,
    EventBridgeEvent,
    InterruptionEventWrapper,
    NodeInfo,
    SkipError,
    describe_time,
)
from nthmonitor.types import (
    REBALANCE_RECOMMENDATION_KIND,
    SCHEDULED_EVENT_KIND,
    SPOT_ITN_KIND,
    STATE_CHANGE_KIND,
    DrainTask,
    InterruptionEvent,
    NodeOperations,
)

# Matched as a substring, so any fragment of these names also drains.
_INSTANCE_STATES_TO_DRAIN = "stopping,stopped,shutting-down,terminated"

log = logging.getLogger(__name__)


class EventSource(Protocol):
    """The queue monitor services a converter relies on."""

    def get_node_info(self, instance_id: str) -> NodeInfo: ...

    def delete_messages(self, messages: Sequence[Any]) -> list[Exception]: ...


def _detail_object(event: EventBridgeEvent) -> Mapping[str, Any]:
    detail = event.detail
    if detail is None:
        return {}
    if not isinstance(detail, Mapping):
        raise ValueError("event detail must be a JSON object")
    return detail


def _string_field(obj: Mapping[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"event detail field {key!r} must be a string")
    return value


def _hex_id(event: EventBridgeEvent) -> str:
    return event.id.encode().hex()


def _delete_message_task(source: EventSource, message: Any) -> DrainTask:
    def post_drain(_event: InterruptionEvent, _node: NodeOperations) -> None:
        errors = source.delete_messages([message])
        if errors:
            raise errors[0]

    return post_drain


def ec2_state_change_to_interruption_event(
    event: EventBridgeEvent, message: Any, source: EventSource
) -> Optional[InterruptionEvent]:
    """Build an event for an instance state change, or None if it needs no drain."""
    detail = _detail_object(event)
    instance_id = _string_field(detail, "instance-id")
    state = _string_field(detail, "state")

    if state.lower() not in _INSTANCE_STATES_TO_DRAIN:
        return None

    node_info = source.get_node_info(instance_id)
    start_time = event.get_time()
    return InterruptionEvent(
        event_id=f"ec2-state-change-event-{_hex_id(event)}",
        kind=STATE_CHANGE_KIND,
        monitor=SQS_MONITOR_KIND,
        start_time=start_time,
        node_name=node_info.name,
        is_managed=node_info.is_managed,
        auto_scaling_group_name=node_info.asg_name,
        instance_id=instance_id,
        provider_id=node_info.provider_id,
        description=(
            f"EC2 State Change event received. Instance {instance_id} went into "
            f"{state} at {describe_time(start_time)} \n"
        ),
        post_drain_task=_delete_message_task(source, message),
    )


def spot_itn_to_interruption_event(
    event: EventBridgeEvent, message: Any, source: EventSource
) -> InterruptionEvent:
    """Build an event for a spot instance interruption warning."""
    detail = _detail_object(event)
    instance_id = _string_field(detail, "instance-id")
    _string_field(detail, "instance-action")

    node_info = source.get_node_info(instance_id)
    start_time = event.get_time()

    def pre_drain(interruption: InterruptionEvent, node: NodeOperations) -> None:
        try:
            node.taint_spot_itn(interruption.node_name, interruption.event_id)
        except Exception as err:
            log.error(
                "Unable to taint node with spot interruption taint for event %s: %s",
                interruption.event_id,
                err,
            )

    return InterruptionEvent(
        event_id=f"spot-itn-event-{_hex_id(event)}",
        kind=SPOT_ITN_KIND,
        monitor=SQS_MONITOR_KIND,
        auto_scaling_group_name=node_info.asg_name,
        start_time=start_time,
        node_name=node_info.name,
        is_managed=node_info.is_managed,
        instance_id=instance_id,
        provider_id=node_info.provider_id,
        description=(
            f"Spot Interruption notice for instance {instance_id} was sent at "
            f"{describe_time(start_time)} \n"
        ),
        pre_drain_task=pre_drain,
        post_drain_task=_delete_message_task(source, message),
    )


def rebalance_recommendation_to_interruption_event(
    event: EventBridgeEvent, message: Any, source: EventSource
) -> InterruptionEvent:
    """Build an event for a rebalance recommendation."""
    detail = _detail_object(event)
    instance_id = _string_field(detail, "instance-id")

    node_info = source.get_node_info(instance_id)
    start_time = event.get_time()

    def pre_drain(interruption: InterruptionEvent, node: NodeOperations) -> None:
        try:
            node.taint_rebalance_recommendation(interruption.node_name, interruption.event_id)
        except Exception as err:
            log.error(
                "Unable to taint node with rebalance recommendation taint for event %s: %s",
                interruption.event_id,
                err,
            )

    return InterruptionEvent(
        event_id=f"rebalance-recommendation-event-{_hex_id(event)}",
        kind=REBALANCE_RECOMMENDATION_KIND,
        monitor=SQS_MONITOR_KIND,
        auto_scaling_group_name=node_info.asg_name,
        start_time=start_time,
        node_name=node_info.name,
        is_managed=node_info.is_managed,
        instance_id=node_info.instance_id,
        provider_id=node_info.provider_id,
        description=(
            f"Rebalance recommendation event received. Instance {instance_id} will be "
            f"cordoned at {describe_time(start_time)} \n"
        ),
        pre_drain_task=pre_drain,
        post_drain_task=_delete_message_task(source, message),
    )


def _affected_entity_values(detail: Mapping[str, Any]) -> list[str]:
    entities = detail.get("affectedEntities")
    if entities is None:
        return []
    if not isinstance(entities, list):
        raise ValueError("event detail field 'affectedEntities' must be a list")
    values = []
    for entity in entities:
        if entity is None:
            values.append("")
            continue
        if not isinstance(entity, Mapping):
            raise ValueError("affected entity must be a JSON object")
        values.append(_string_field(entity, "entityValue"))
    return values


def scheduled_change_to_interruption_events(
    event: EventBridgeEvent, message: Any, source: EventSource
) -> list[InterruptionEventWrapper]:
    """Build one wrapper per affected instance of a scheduled health change."""
    try:
        detail = _detail_object(event)
        category = _string_field(detail, "eventTypeCategory")
        service = _string_field(detail, "service")
        entity_values = _affected_entity_values(detail)
    except ValueError as err:
        return [InterruptionEventWrapper(None, err)]

    if service != "EC2":
        error = SkipError(
            f"events from Amazon EventBridge for service ({service}) are not supported"
        )
        return [InterruptionEventWrapper(None, error)]

    if category != "scheduledChange":
        error = SkipError(
            "events from Amazon EventBridge with EventTypeCategory "
            f"({category}) are not supported"
        )
        return [InterruptionEventWrapper(None, error)]

    def pre_drain(interruption: InterruptionEvent, node: NodeOperations) -> None:
        try:
            node.taint_scheduled_maintenance(interruption.node_name, interruption.event_id)
        except Exception as err:
            log.error(
                "Unable to taint node with scheduled maintenance taint for event %s: %s",
                interruption.event_id,
                err,
            )

    wrappers = []
    for entity_value in entity_values:
        try:
            node_info = source.get_node_info(entity_value)
        except Exception as err:
            wrappers.append(InterruptionEventWrapper(None, err))
            continue

        # Drain at once to avoid disruption from, for example, degraded hardware.
        interruption = InterruptionEvent(
            event_id=f"aws-health-scheduled-change-event-{_hex_id(event)}",
            kind=SCHEDULED_EVENT_KIND,
            monitor=SQS_MONITOR_KIND,
            auto_scaling_group_name=node_info.asg_name,
            start_time=datetime.now(timezone.utc),
            node_name=node_info.name,
            instance_id=node_info.instance_id,
            provider_id=node_info.provider_id,
            is_managed=node_info.is_managed,
            description=(
                "AWS Health scheduled change event received. Instance "
                f"{node_info.instance_id} will be interrupted at "
                f"{describe_time(event.get_time())} \n"
            ),
            pre_drain_task=pre_drain,
            post_drain_task=_delete_message_task(source, message),
        )
        wrappers.append(InterruptionEventWrapper(interruption, None))

    return wrappers