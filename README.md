# nthmonitor

`nthmonitor` watches for the events that mean a cloud instance, and the
cluster node on it, is about to go away. It turns each event into an
`InterruptionEvent` that a node handler can act on by tainting, cordoning and
draining the node before the instance stops.

It has no dependencies outside the standard library.

## Event sources

The instance metadata monitors read the instance's own metadata through an
object that provides the `MetadataService` protocol from `nthmonitor.types`:

| Monitor | Module | What it reports |
|---|---|---|
| `SpotInterruptionMonitor` | `nthmonitor.spotitn` | Spot interruption notices |
| `RebalanceRecommendationMonitor` | `nthmonitor.rebalance` | Rebalance recommendations |
| `ScheduledEventMonitor` | `nthmonitor.scheduledevent` | Scheduled maintenance events |
| `ASGLifecycleMonitor` | `nthmonitor.asglifecycle` | Auto Scaling target lifecycle state `Terminated` |

The queue monitor, `SQSMonitor` in `nthmonitor.sqs_monitor`, reads EventBridge
and Auto Scaling lifecycle messages from a queue. It turns EC2 state changes
(stopping, stopped, shutting-down, terminated), Spot interruption warnings,
rebalance recommendations and AWS Health scheduled changes for EC2 into
interruption events. It looks up each affected instance with
`SQSMonitor.get_node_info`. It deletes a message when nothing in it can be
acted on, and an event's post-drain task deletes the message the event came
from. Auto Scaling test notifications are deleted and skipped.

Every monitor subclasses the abstract `Monitor` class:

- `monitor()` runs one check. It puts interruptions on the monitor's
  `interruption_queue` (a `queue.Queue`), and the scheduled event monitor puts
  cancelled or completed events on its `cancel_queue`. It raises
  `MonitorError` when the check fails.
- `kind()` returns the monitor's name, such as `"SPOT_ITN_MONITOR"`.

```python
import queue

from nthmonitor.spotitn import SpotInterruptionMonitor


class Metadata:
    def get_spot_itn_event(self):
        return {"action": "terminate", "time": "2017-09-18T08:22:00Z"}


events = queue.Queue()
SpotInterruptionMonitor(Metadata(), events, queue.Queue(), "node-1").monitor()
event = events.get_nowait()
print(event.kind, event.start_time)  # SPOT_ITN 2017-09-18 08:22:00+00:00
```

## Interruption events

An `InterruptionEvent` is a dataclass with the event's id, kind, the monitor
that found it, a description, state, node name, instance and provider ids,
Auto Scaling group name, start and end times, and optional pre-drain and
post-drain tasks.

- `time_until_event()` returns the `timedelta` until the event starts; it is
  negative once the event has started.
- `is_rebalance_recommendation()` is true when the event id contains
  `rebalance-recommendation`, whichever monitor produced it.

Drain tasks act on the node through an object with the `NodeOperations`
protocol. For example, `nthmonitor.spotitn.set_interruption_taint` taints the
node for a Spot interruption, and
`nthmonitor.scheduledevent.uncordon_after_reboot_pre_drain` marks and taints
the node and, unless it is already unschedulable, labels it to be uncordoned
after a maintenance reboot.

## Queue monitor clients

`SQSMonitor` takes client objects with keyword-argument methods in the shape
of the AWS SDK clients:

- `sqs`: `receive_message(...)` and `delete_message(...)`
- `ec2`: `describe_instances(InstanceIds=[...])`
- `asg`: `complete_lifecycle_action(...)`, used by
  `SQSMonitor.complete_lifecycle_action` after the optional
  `before_complete_lifecycle_action` hook

With `check_if_managed` set, events for instances that lack the
`managed_tag` tag are dropped. An `AwsError` with one of the
`InvalidInstanceID` codes raised by `describe_instances` makes the event a
skipped one rather than a failed one.

## Helpers

- `nthmonitor.eventbridge`: `EventBridgeEvent.from_json` parses an EventBridge
  envelope and raises `ValueError` if it is malformed. `EventBridgeEvent.get_time`
  reads its RFC 3339 time and falls back to the current time if the value
  cannot be parsed. `SkipError` marks an event that is dropped on purpose
  rather than failed. `NodeInfo` and `InterruptionEventWrapper` hold the
  results of instance lookups and conversions.
- `nthmonitor.converters`: one function per supported EventBridge event type.
- `nthmonitor.retryer`: `sqs_retryer()` returns the `SqsRetryer` policy for the
  queue client, with retry delays capped at 1.2 seconds. `should_retry` is true
  for throttling, timeouts, server errors and other retryable `AwsError`s, and
  also for any error whose text contains "connection reset".

## What the package does not do

- It has no clients of its own. The metadata service, the node operations and
  the queue, EC2 and Auto Scaling clients are all supplied by the caller.
- It has no built-in handling for Auto Scaling launch and terminate lifecycle
  messages. `SQSMonitor` recognises them, but turns them into events only
  through the `asg_launch_converter` and `asg_termination_converter`
  callables you give it; without them such a message is reported as failed.
- It does not drain or taint nodes itself, run a polling loop, or provide a
  command to run.

## Running the tests

```
pip install "nthmonitor[test]"
pytest
```