"""Monitor that turns queued EventBridge and ASG lifecycle messages into interruption events."""

from __future__ import annotations

import json
import logging
import queue
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from nthmonitor.converters import (
    ec2_state_change_to_interruption_event,
    rebalance_recommendation_to_interruption_event,
    scheduled_change_to_interruption_events,
    spot_itn_to_interruption_event,
)
from nthmonitor.eventbridge import (
    SQS_MONITOR_KIND,
    EventBridgeEvent,
    InterruptionEventWrapper,
    NodeInfo,
    SkipError,
)
from nthmonitor.retryer import AwsError
from nthmonitor.types import InterruptionEvent, Monitor, MonitorError

ASG_TAG_NAME = "aws:autoscaling:groupName"
ASG_TERMINATING_LIFECYCLE_TRANSITION = "autoscaling:EC2_INSTANCE_TERMINATING"
ASG_LAUNCHING_LIFECYCLE_TRANSITION = "autoscaling:EC2_INSTANCE_LAUNCHING"
TEST_NOTIFICATION = "autoscaling:TEST_NOTIFICATION"

_INSTANCE_STATE_RUNNING = "running"

_INVALID_INSTANCE_MESSAGES = {
    "InvalidInstanceID": "Invalid instance id {} provided",
    "InvalidInstanceID.NotFound": "No instance found with instance-id {}",
    "InvalidInstanceID.Malformed": "Malformed instance-id {}",
    "InvalidInstanceID.NotLinkable": "Instance-id {} not linkable",
}

log = logging.getLogger(__name__)

LifecycleConverter = Callable[
    [EventBridgeEvent, Mapping[str, Any], "SQSMonitor"], Optional[InterruptionEvent]
]


class QueueClient(Protocol):
    """The queue operations the monitor uses."""

    def receive_message(self, **params: Any) -> Mapping[str, Any]: ...

    def delete_message(self, **params: Any) -> Any: ...


class InstanceClient(Protocol):
    """The instance description operation the monitor uses."""

    def describe_instances(self, **params: Any) -> Mapping[str, Any]: ...


class AutoScalingClient(Protocol):
    """The auto scaling operation the monitor uses."""

    def complete_lifecycle_action(self, **params: Any) -> Any: ...


def _is_skip(error: Optional[BaseException]) -> bool:
    while error is not None:
        if isinstance(error, SkipError):
            return True
        error = error.__cause__
    return False


def _parse_lifecycle_event(text: str) -> dict[str, Any]:
    try:
        envelope = json.loads(text)
    except ValueError as err:
        raise ValueError(f"unmarshalling SQS message: {err}") from err
    if not isinstance(envelope, dict):
        raise ValueError("unmarshalling SQS message: not a JSON object")

    inner = envelope.get("Message")
    if inner is not None:
        if not isinstance(inner, str):
            raise ValueError("unmarshalling message body from '.Message': not a string")
        try:
            lifecycle = json.loads(inner)
        except ValueError as err:
            raise ValueError(f"unmarshalling message body from '.Message': {err}") from err
        if not isinstance(lifecycle, dict):
            raise ValueError("unmarshalling message body from '.Message': not a JSON object")
        return lifecycle
    return envelope


@dataclass
class SQSMonitor(Monitor):
    """Processes events from an SQS queue fed by EventBridge or ASG lifecycle hooks."""

    interruption_queue: "queue.Queue[InterruptionEvent]" = field(default_factory=queue.Queue)
    cancel_queue: "queue.Queue[InterruptionEvent]" = field(default_factory=queue.Queue)
    queue_url: str = ""
    sqs: Optional[QueueClient] = None
    asg: Optional[AutoScalingClient] = None
    ec2: Optional[InstanceClient] = None
    check_if_managed: bool = False
    managed_tag: str = ""
    before_complete_lifecycle_action: Optional[Callable[[], None]] = None
    asg_launch_converter: Optional[LifecycleConverter] = None
    asg_termination_converter: Optional[LifecycleConverter] = None

    def kind(self) -> str:
        return SQS_MONITOR_KIND

    def monitor(self) -> None:
        log.debug("Checking for queue messages")
        messages = self.receive_queue_messages()

        failed = 0
        for message in messages:
            try:
                event = self.process_sqs_message(message)
            except Exception as err:
                if _is_skip(err):
                    log.warning("skip processing SQS message: %s", err)
                else:
                    log.error("error processing SQS message: %s", err)
                    failed += 1
                continue

            wrappers = self.process_event_bridge_event(event, message)
            try:
                self.process_interruption_events(wrappers, message)
            except Exception as err:
                log.error("error processing interruption events: %s", err)
                failed += 1

        if messages and failed == len(messages):
            raise MonitorError("none of the waiting queue events could be processed")

    def process_sqs_message(self, message: Mapping[str, Any]) -> EventBridgeEvent:
        """Interpret a queue message as an EventBridge event."""
        try:
            event = EventBridgeEvent.from_json(message.get("Body") or "")
        except ValueError as err:
            raise MonitorError(f"unable to decode SQS message body: {err}") from err
        if not event.detail_type:
            event = self._process_lifecycle_event_from_asg(message)
        return event

    def _process_lifecycle_event_from_asg(
        self, message: Optional[Mapping[str, Any]]
    ) -> EventBridgeEvent:
        log.debug("processing lifecycle event from ASG: %s", message)
        if message is None:
            raise MonitorError("ASG event message is nil")
        try:
            lifecycle = _parse_lifecycle_event(message.get("Body") or "")
        except ValueError as err:
            raise MonitorError(
                f"parsing lifecycle event messsage from ASG: {err}"
            ) from err

        transition = lifecycle.get("LifecycleTransition", "")
        if lifecycle.get("Event") == TEST_NOTIFICATION or transition == TEST_NOTIFICATION:
            text = "message is a test notification"
            errors = self.delete_messages([message])
            if errors:
                text = f"{text}; {errors[0]}"
            raise SkipError(text)

        if transition not in (
            ASG_TERMINATING_LIFECYCLE_TRANSITION,
            ASG_LAUNCHING_LIFECYCLE_TRANSITION,
        ):
            raise MonitorError(
                f"lifecycle transition must be {ASG_TERMINATING_LIFECYCLE_TRANSITION} or "
                f"{ASG_LAUNCHING_LIFECYCLE_TRANSITION}. Got {transition}"
            )

        return EventBridgeEvent(
            source="aws.autoscaling",
            time=str(lifecycle.get("Time") or ""),
            id=str(lifecycle.get("RequestId") or ""),
            detail=lifecycle,
        )

    def process_event_bridge_event(
        self, event: Optional[EventBridgeEvent], message: Optional[Mapping[str, Any]]
    ) -> list[InterruptionEventWrapper]:
        """Convert an EventBridge event into interruption event wrappers."""
        if event is None:
            return [InterruptionEventWrapper(None, MonitorError("eventBridgeEvent is nil"))]
        if message is None:
            return [InterruptionEventWrapper(None, MonitorError("message is nil"))]

        if event.source == "aws.autoscaling":
            return self._process_lifecycle_event(event, message)

        if event.source == "aws.ec2":
            converters = {
                "EC2 Instance State-change Notification": ec2_state_change_to_interruption_event,
                "EC2 Spot Instance Interruption Warning": spot_itn_to_interruption_event,
                "EC2 Instance Rebalance Recommendation": rebalance_recommendation_to_interruption_event,
            }
            converter = converters.get(event.detail_type)
            if converter is None:
                return [InterruptionEventWrapper(InterruptionEvent(), None)]
            try:
                return [InterruptionEventWrapper(converter(event, message, self), None)]
            except Exception as err:
                return [InterruptionEventWrapper(None, err)]

        if event.source == "aws.health" and event.detail_type == "AWS Health Event":
            return scheduled_change_to_interruption_events(event, message, self)

        error = MonitorError(f"event source ({event.source}) is not supported")
        return [InterruptionEventWrapper(None, error)]

    def _process_lifecycle_event(
        self, event: EventBridgeEvent, message: Mapping[str, Any]
    ) -> list[InterruptionEventWrapper]:
        wrappers: list[InterruptionEventWrapper] = []
        detail = event.detail
        if not isinstance(detail, Mapping):
            error = MonitorError(
                f"unmarshaling message, {message.get('MessageId')}, from ASG lifecycle event: "
                "detail is not a JSON object"
            )
            wrappers.append(InterruptionEventWrapper(None, error))
            detail = {}

        transition = detail.get("LifecycleTransition")
        if transition == ASG_LAUNCHING_LIFECYCLE_TRANSITION:
            converter, name = self.asg_launch_converter, "launch"
        elif transition == ASG_TERMINATING_LIFECYCLE_TRANSITION:
            converter, name = self.asg_termination_converter, "termination"
        else:
            return wrappers

        if converter is None:
            error = MonitorError(f"no ASG {name} lifecycle handler is configured")
            wrappers.append(InterruptionEventWrapper(None, error))
            return wrappers
        try:
            wrappers.append(InterruptionEventWrapper(converter(event, message, self), None))
        except Exception as err:
            wrappers.append(InterruptionEventWrapper(None, err))
        return wrappers

    def process_interruption_events(
        self, wrappers: Sequence[InterruptionEventWrapper], message: Mapping[str, Any]
    ) -> None:
        """Send actionable events on, and delete the message if none were actionable."""
        dropped = 0
        failed = 0

        for wrapper in wrappers:
            interruption = wrapper.interruption_event
            if _is_skip(wrapper.error):
                log.warning("dropping event: %s", wrapper.error)
                dropped += 1
            elif wrapper.error is not None:
                # Keep the message so that it is retried.
                log.error("ignoring interruption event due to error: %s", wrapper.error)
                failed += 1
            elif interruption is None:
                log.debug("dropping non-actionable interruption event")
                dropped += 1
            elif self.check_if_managed and not interruption.is_managed:
                log.debug(
                    "dropping interruption event for unmanaged node %s",
                    interruption.instance_id,
                )
                dropped += 1
            elif interruption.monitor == SQS_MONITOR_KIND:
                log.info("Sending %s interruption event to the interruption channel", interruption.kind)
                self.interruption_queue.put(interruption)
            else:
                log.warning("dropping interruption event of an unrecognized kind: %r", interruption)
                dropped += 1

        if dropped == len(wrappers):
            errors = self.delete_messages([message])
            if errors:
                log.error("Error deleting message from SQS: %s", errors[0])
                failed += 1

        if failed:
            raise MonitorError(
                "some interruption events for message Id "
                f"{message.get('MessageId')} could not be processed"
            )

    def receive_queue_messages(self) -> list[Mapping[str, Any]]:
        """Poll the configured queue for new messages."""
        if self.sqs is None:
            raise MonitorError("no SQS client is configured")
        result = self.sqs.receive_message(
            QueueUrl=self.queue_url,
            AttributeNames=["SentTimestamp"],
            MessageAttributeNames=["All"],
            MaxNumberOfMessages=10,
            VisibilityTimeout=20,
            WaitTimeSeconds=20,
        )
        return list(result.get("Messages") or [])

    def delete_messages(self, messages: Sequence[Mapping[str, Any]]) -> list[Exception]:
        """Delete messages from the configured queue, returning the errors met."""
        errors: list[Exception] = []
        for message in messages:
            try:
                if self.sqs is None:
                    raise MonitorError("no SQS client is configured")
                self.sqs.delete_message(
                    ReceiptHandle=message.get("ReceiptHandle"),
                    QueueUrl=self.queue_url,
                )
            except Exception as err:
                errors.append(err)
            log.debug("SQS Deleted Message: %s", message)
        return errors

    def complete_lifecycle_action(self, request: Mapping[str, Any]) -> Any:
        """Complete an ASG lifecycle action after running the configured hook."""
        if self.before_complete_lifecycle_action is not None:
            self.before_complete_lifecycle_action()
        if self.asg is None:
            raise MonitorError("no auto scaling client is configured")
        return self.asg.complete_lifecycle_action(**request)

    def get_node_info(self, instance_id: str) -> NodeInfo:
        """Describe the instance and return what is known about its node."""
        if self.ec2 is None:
            raise MonitorError("no EC2 client is configured")
        try:
            result = self.ec2.describe_instances(InstanceIds=[instance_id])
        except AwsError as err:
            template = _INVALID_INSTANCE_MESSAGES.get(err.code)
            if template is None:
                raise
            text = template.format(instance_id)
            log.warning(text)
            raise SkipError(text) from err

        reservations = result.get("Reservations") or []
        if not reservations or not (reservations[0].get("Instances") or []):
            text = f"No reservation with instance-id {instance_id}"
            log.warning(text)
            raise SkipError(text)

        instance = reservations[0]["Instances"][0]
        log.debug(
            "Got instance data from ec2 describe call: %s",
            json.dumps(instance, indent=4, default=str),
        )

        private_dns_name = instance.get("PrivateDnsName") or ""
        if not private_dns_name:
            state = (instance.get("State") or {}).get("Name") or "unknown"
            # Instances that are not running may have no private DNS name.
            if state != _INSTANCE_STATE_RUNNING:
                raise SkipError(f"node: '{instance_id}' in state '{state}'")
            raise MonitorError(
                f"unable to retrieve PrivateDnsName name for '{instance_id}' in state '{state}'"
            )

        zone = (instance.get("Placement") or {}).get("AvailabilityZone") or ""
        provider_id = f"aws:///{zone}/{instance_id}" if zone else ""

        info = NodeInfo(
            name=private_dns_name,
            instance_id=instance_id,
            provider_id=provider_id,
            is_managed=True,
        )
        for tag in instance.get("Tags") or []:
            key = tag.get("Key", "")
            value = tag.get("Value", "")
            info.tags[key] = value
            if key == ASG_TAG_NAME:
                info.asg_name = value

        if self.check_if_managed and self.managed_tag not in info.tags:
            info.is_managed = False

        log.debug("Got node info from AWS: %r", info)
        return info