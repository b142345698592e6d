import json

import pytest

from nthmonitor.eventbridge import SQS_MONITOR_KIND, EventBridgeEvent, SkipError
from nthmonitor.retryer import AwsError
from nthmonitor.sqs_monitor import (
    ASG_LAUNCHING_LIFECYCLE_TRANSITION,
    ASG_TAG_NAME,
    ASG_TERMINATING_LIFECYCLE_TRANSITION,
    SQSMonitor,
)
from nthmonitor.types import SPOT_ITN_KIND, InterruptionEvent, MonitorError


def describe_instances_response(instance_id, private_dns_name, tags, zone="us-east-2a", state=None):
    instance = {
        "InstanceId": instance_id,
        "Placement": {"AvailabilityZone": zone, "GroupName": "", "Tenancy": "default"},
        "PrivateDnsName": private_dns_name,
        "Tags": [{"Key": k, "Value": v} for k, v in tags.items()],
    }
    if state is not None:
        instance["State"] = {"Name": state}
    return {"Reservations": [{"Instances": [instance]}]}


class FakeEC2:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    def describe_instances(self, **params):
        if self.error is not None:
            raise self.error
        return self.response


class FakeSQS:
    def __init__(self, messages=(), delete_error=None):
        self.messages = list(messages)
        self.deleted = []
        self.received_params = None
        self.delete_error = delete_error

    def receive_message(self, **params):
        self.received_params = params
        return {"Messages": self.messages}

    def delete_message(self, **params):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(params["ReceiptHandle"])


class FakeASG:
    def __init__(self):
        self.requests = []

    def complete_lifecycle_action(self, **params):
        self.requests.append(params)
        return {"ok": True}


def make_message(body, message_id="msg-1", receipt="receipt-1"):
    if not isinstance(body, str):
        body = json.dumps(body)
    return {"Body": body, "MessageId": message_id, "ReceiptHandle": receipt}


def spot_body(instance_id="i-0123456789"):
    return {
        "version": "0",
        "id": "1e5527d7-bb36-4607-3370-4164db56a40e",
        "detail-type": "EC2 Spot Instance Interruption Warning",
        "source": "aws.ec2",
        "account": "000000000000",
        "time": "1970-01-01T00:00:00Z",
        "region": "us-east-1",
        "resources": [],
        "detail": {"instance-id": instance_id, "instance-action": "terminate"},
    }


def test_get_node_info_with_tags():
    ec2 = FakeEC2(describe_instances_response(
        "i-beebeebe", "mydns.example.com", {"name": "lisa", ASG_TAG_NAME: "test-asg"}))
    monitor = SQSMonitor(ec2=ec2, asg=FakeASG())
    info = monitor.get_node_info("i-0123456789")
    assert info.instance_id == "i-0123456789"
    assert info.name == "mydns.example.com"
    assert info.tags["name"] == "lisa"
    assert info.tags[ASG_TAG_NAME] == "test-asg"
    assert info.is_managed is True
    assert info.provider_id == "aws:///us-east-2a/i-0123456789"


def test_get_node_info_both_tags_managed():
    ec2 = FakeEC2(describe_instances_response(
        "i-beebeebe", "mydns.example.com", {"aws-nth/managed": "true", ASG_TAG_NAME: "test-asg"}))
    monitor = SQSMonitor(ec2=ec2, asg=FakeASG(), check_if_managed=True, managed_tag="aws-nth/managed")
    assert monitor.get_node_info("i-0123456789").is_managed is True


def test_get_node_info_no_asg_managed():
    ec2 = FakeEC2(describe_instances_response("i-beebeebe", "mydns.example.com", {}))
    info = SQSMonitor(ec2=ec2).get_node_info("i-0123456789")
    assert info.asg_name == ""
    assert info.is_managed is True


def test_get_node_info_no_asg_not_managed():
    ec2 = FakeEC2(describe_instances_response("i-beebeebe", "mydns.example.com", {}))
    monitor = SQSMonitor(ec2=ec2, check_if_managed=True, managed_tag="aws-nth/managed")
    info = monitor.get_node_info("i-0123456789")
    assert info.asg_name == ""
    assert info.is_managed is False


def test_get_node_info_asg_client_not_consulted():
    ec2 = FakeEC2(describe_instances_response("i-beebeebe", "mydns.example.com", {}))
    asg = FakeASG()
    info = SQSMonitor(ec2=ec2, asg=asg).get_node_info("i-0123456789")
    assert info.asg_name == ""
    assert info.is_managed is True
    assert asg.requests == []


def test_get_node_info_asg_managed():
    tags = {"aws-nth/managed": "", ASG_TAG_NAME: "test-asg"}
    ec2 = FakeEC2(describe_instances_response("i-beebeebe", "mydns.example.com", tags))
    monitor = SQSMonitor(ec2=ec2, check_if_managed=True, managed_tag="aws-nth/managed")
    info = monitor.get_node_info("i-0123456789")
    assert info.asg_name == "test-asg"
    assert info.is_managed is True


def test_get_node_info_asg_not_managed():
    ec2 = FakeEC2(describe_instances_response("i-beebeebe", "mydns.example.com", {ASG_TAG_NAME: "test-asg"}))
    monitor = SQSMonitor(ec2=ec2, check_if_managed=True, managed_tag="aws-nth/managed")
    info = monitor.get_node_info("i-0123456789")
    assert info.asg_name == "test-asg"
    assert info.is_managed is False


def test_get_node_info_error():
    monitor = SQSMonitor(ec2=FakeEC2(error=RuntimeError("error")))
    with pytest.raises(RuntimeError):
        monitor.get_node_info("i-0123456789")


@pytest.mark.parametrize("code", [
    "InvalidInstanceID",
    "InvalidInstanceID.NotFound",
    "InvalidInstanceID.Malformed",
    "InvalidInstanceID.NotLinkable",
])
def test_get_node_info_invalid_instance_is_skipped(code):
    monitor = SQSMonitor(ec2=FakeEC2(error=AwsError(code, "bad")))
    with pytest.raises(SkipError):
        monitor.get_node_info("i-0123456789")


def test_get_node_info_other_aws_error_propagates():
    monitor = SQSMonitor(ec2=FakeEC2(error=AwsError("UnauthorizedOperation", "denied")))
    with pytest.raises(AwsError):
        monitor.get_node_info("i-0123456789")


def test_get_node_info_no_reservation_is_skipped():
    monitor = SQSMonitor(ec2=FakeEC2({"Reservations": []}))
    with pytest.raises(SkipError, match="No reservation"):
        monitor.get_node_info("i-0123456789")


def test_get_node_info_missing_dns_not_running_is_skipped():
    ec2 = FakeEC2(describe_instances_response("i-1", "", {}, state="terminated"))
    with pytest.raises(SkipError, match="terminated"):
        SQSMonitor(ec2=ec2).get_node_info("i-1")


def test_get_node_info_missing_dns_running_is_error():
    ec2 = FakeEC2(describe_instances_response("i-1", "", {}, state="running"))
    with pytest.raises(MonitorError, match="PrivateDnsName"):
        SQSMonitor(ec2=ec2).get_node_info("i-1")


def test_get_node_info_no_zone_gives_empty_provider_id():
    ec2 = FakeEC2(describe_instances_response("i-1", "dns.example.com", {}, zone=""))
    assert SQSMonitor(ec2=ec2).get_node_info("i-1").provider_id == ""


def test_kind():
    assert SQSMonitor().kind() == "SQS_MONITOR"


def test_monitor_sends_spot_event_and_post_drain_deletes():
    sqs = FakeSQS([make_message(spot_body())])
    ec2 = FakeEC2(describe_instances_response("i-0123456789", "mydns.example.com", {}))
    monitor = SQSMonitor(queue_url="queue", sqs=sqs, ec2=ec2)
    monitor.monitor()
    event = monitor.interruption_queue.get_nowait()
    assert event.kind == SPOT_ITN_KIND
    assert event.monitor == SQS_MONITOR_KIND
    assert event.node_name == "mydns.example.com"
    assert event.event_id.startswith("spot-itn-event-")
    assert sqs.deleted == []
    event.post_drain_task(event, None)
    assert sqs.deleted == ["receipt-1"]


def test_receive_queue_messages_parameters():
    sqs = FakeSQS([make_message("{}")])
    monitor = SQSMonitor(queue_url="queue-url", sqs=sqs)
    messages = monitor.receive_queue_messages()
    assert len(messages) == 1
    assert sqs.received_params["QueueUrl"] == "queue-url"
    assert sqs.received_params["MaxNumberOfMessages"] == 10
    assert sqs.received_params["WaitTimeSeconds"] == 20


def test_monitor_all_messages_failing_raises():
    sqs = FakeSQS([make_message("not json")])
    with pytest.raises(MonitorError, match="none of the waiting queue events"):
        SQSMonitor(sqs=sqs).monitor()


def test_monitor_test_notification_is_deleted_and_skipped():
    sqs = FakeSQS([make_message({"Event": "autoscaling:TEST_NOTIFICATION"})])
    monitor = SQSMonitor(sqs=sqs)
    monitor.monitor()
    assert sqs.deleted == ["receipt-1"]
    assert monitor.interruption_queue.empty()


def test_non_draining_state_change_deletes_message():
    body = {
        "id": "abc",
        "detail-type": "EC2 Instance State-change Notification",
        "source": "aws.ec2",
        "time": "2015-11-11T21:29:54Z",
        "detail": {"instance-id": "i-abcd1111", "state": "pending"},
    }
    sqs = FakeSQS([make_message(body)])
    monitor = SQSMonitor(sqs=sqs, ec2=FakeEC2())
    monitor.monitor()
    assert sqs.deleted == ["receipt-1"]
    assert monitor.interruption_queue.empty()


def test_unmanaged_event_is_dropped_and_deleted():
    sqs = FakeSQS([make_message(spot_body())])
    ec2 = FakeEC2(describe_instances_response("i-0123456789", "mydns.example.com", {}))
    monitor = SQSMonitor(sqs=sqs, ec2=ec2, check_if_managed=True, managed_tag="aws-nth/managed")
    monitor.monitor()
    assert monitor.interruption_queue.empty()
    assert sqs.deleted == ["receipt-1"]


def test_unsupported_source_is_error():
    event = EventBridgeEvent(source="aws.s3")
    wrappers = SQSMonitor().process_event_bridge_event(event, make_message("{}"))
    assert len(wrappers) == 1
    assert wrappers[0].interruption_event is None
    assert "not supported" in str(wrappers[0].error)


def test_unknown_ec2_detail_type_is_dropped():
    event = EventBridgeEvent(source="aws.ec2", detail_type="Something Else")
    sqs = FakeSQS()
    monitor = SQSMonitor(sqs=sqs)
    wrappers = monitor.process_event_bridge_event(event, make_message("{}"))
    assert wrappers[0].interruption_event == InterruptionEvent()
    monitor.process_interruption_events(wrappers, make_message("{}"))
    assert sqs.deleted == ["receipt-1"]


def test_process_event_bridge_event_none_inputs():
    monitor = SQSMonitor()
    assert "eventBridgeEvent is nil" in str(monitor.process_event_bridge_event(None, {})[0].error)
    assert "message is nil" in str(monitor.process_event_bridge_event(EventBridgeEvent(), None)[0].error)


def test_process_sqs_message_unwraps_lifecycle_message():
    lifecycle = {
        "LifecycleTransition": ASG_TERMINATING_LIFECYCLE_TRANSITION,
        "RequestId": "req-1",
        "Time": "2020-07-01T22:19:58Z",
    }
    message = make_message({"Message": json.dumps(lifecycle)})
    event = SQSMonitor().process_sqs_message(message)
    assert event.source == "aws.autoscaling"
    assert event.id == "req-1"
    assert event.time == "2020-07-01T22:19:58Z"
    assert event.detail["LifecycleTransition"] == ASG_TERMINATING_LIFECYCLE_TRANSITION


def test_process_sqs_message_bad_transition():
    message = make_message({"LifecycleTransition": "autoscaling:OTHER"})
    with pytest.raises(MonitorError, match="lifecycle transition must be"):
        SQSMonitor().process_sqs_message(message)


def test_lifecycle_termination_uses_converter():
    def convert(event, message, source):
        return InterruptionEvent(event_id=event.id, monitor=SQS_MONITOR_KIND, kind="ASG_LIFECYCLE")

    lifecycle = {"LifecycleTransition": ASG_TERMINATING_LIFECYCLE_TRANSITION, "RequestId": "req-9"}
    sqs = FakeSQS([make_message(lifecycle)])
    monitor = SQSMonitor(sqs=sqs, asg_termination_converter=convert)
    monitor.monitor()
    event = monitor.interruption_queue.get_nowait()
    assert event.event_id == "req-9"
    assert event.kind == "ASG_LIFECYCLE"


def test_lifecycle_launch_without_converter_is_error():
    event = EventBridgeEvent(
        source="aws.autoscaling",
        detail={"LifecycleTransition": ASG_LAUNCHING_LIFECYCLE_TRANSITION},
    )
    wrappers = SQSMonitor().process_event_bridge_event(event, make_message("{}"))
    assert len(wrappers) == 1
    assert isinstance(wrappers[0].error, MonitorError)


def test_process_interruption_events_failure_raises():
    from nthmonitor.eventbridge import InterruptionEventWrapper

    sqs = FakeSQS()
    monitor = SQSMonitor(sqs=sqs)
    wrappers = [InterruptionEventWrapper(None, RuntimeError("boom"))]
    with pytest.raises(MonitorError, match="msg-1"):
        monitor.process_interruption_events(wrappers, make_message("{}"))
    assert sqs.deleted == []


def test_delete_messages_collects_errors():
    sqs = FakeSQS(delete_error=RuntimeError("cannot delete"))
    errors = SQSMonitor(sqs=sqs).delete_messages([make_message("{}"), make_message("{}")])
    assert [str(e) for e in errors] == ["cannot delete", "cannot delete"]


def test_complete_lifecycle_action_runs_hook_first():
    calls = []
    asg = FakeASG()
    monitor = SQSMonitor(asg=asg, before_complete_lifecycle_action=lambda: calls.append("hook"))
    result = monitor.complete_lifecycle_action({"LifecycleHookName": "hook-1"})
    assert calls == ["hook"]
    assert asg.requests == [{"LifecycleHookName": "hook-1"}]
    assert result == {"ok": True}