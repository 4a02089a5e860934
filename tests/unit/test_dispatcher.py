#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import json

import pytest

from opsconductor.automation import AutomationRunner
from opsconductor.dispatcher import DispatchResult, Dispatcher, compute_quota
from opsconductor.errors import CapacityQueryFailure, DependencyFailure, MalformedMessage
from opsconductor.workqueue import WorkQueue


@pytest.fixture
def runner(mocker):
    r = mocker.MagicMock(spec=AutomationRunner)
    r.active_executions.return_value = []
    r.start_execution.return_value = "exec-1"
    return r


@pytest.fixture
def queue(mocker):
    q = mocker.MagicMock(spec=WorkQueue)
    q.queue_url = "https://sqs.us-east-1.amazonaws.com/111111111111/resources"
    q.receive.return_value = []
    return q


@pytest.fixture
def dispatcher(runner):
    return Dispatcher(runner, concurrency_limit=25, padding=2, receive_max=10, max_workers=4)


def executions(count):
    return [{"AutomationExecutionId": f"exec-{i}"} for i in range(count)]


def message(i, body=None, params=None):
    if body is None:
        body = json.dumps(
            {
                "MessageType": "Resource",
                "AutomationDocumentName": "Operations-Conductor-StopInstances",
                "TaskId": "task-1",
                "ParentExecutionId": "run-1",
                "ResourceARN": f"arn:aws:ec2:us-east-1:111111111111:instance/i-{i}",
                "TaskParameters": params or [],
            }
        )
    return {"MessageId": f"m-{i}", "ReceiptHandle": f"rh-{i}", "Body": body}


def test_quota_is_monotonic():
    quotas = [compute_quota(s) for s in range(40)]
    assert quotas[0] == 10
    assert all(a >= b for a, b in zip(quotas, quotas[1:]))
    assert all(q == 0 for q in quotas[23:])
    for steps in range(40):
        assert quotas[steps] == max(0, min(23 - steps, 10))


@pytest.mark.parametrize(
    "steps, ceiling, padding, receive_max, expected",
    [
        (0, 25, 2, 10, 10),
        (13, 25, 2, 10, 10),
        (14, 25, 2, 10, 9),
        (22, 25, 2, 10, 1),
        (23, 25, 2, 10, 0),
        (100, 25, 2, 10, 0),
        (0, 5, 1, 10, 4),
        (0, 25, 2, 3, 3),
    ],
)
def test_compute_quota(steps, ceiling, padding, receive_max, expected):
    assert compute_quota(steps, ceiling, padding, receive_max) == expected


def test_quota_when_idle(dispatcher, runner):
    assert dispatcher.quota() == 10
    runner.active_executions.assert_called_once_with(25)
    runner.active_step_count.assert_not_called()


@pytest.mark.parametrize("count", [23, 24, 25])
def test_quota_when_saturated(dispatcher, runner, count):
    runner.active_executions.return_value = executions(count)
    assert dispatcher.quota() == 0
    runner.active_step_count.assert_not_called()


def test_quota_counts_active_steps(dispatcher, runner):
    runner.active_executions.return_value = executions(3)
    runner.active_step_count.side_effect = lambda execution_id, limit: {
        "exec-0": 4,
        "exec-1": 5,
        "exec-2": 6,
    }[execution_id]

    assert dispatcher.quota() == 8
    assert runner.active_step_count.call_count == 3
    runner.active_step_count.assert_any_call("exec-1", 25)


def test_quota_step_query_failure(dispatcher, runner):
    runner.active_executions.return_value = executions(2)
    runner.active_step_count.side_effect = [1, RuntimeError("ThrottlingException")]
    with pytest.raises(CapacityQueryFailure):
        dispatcher.quota()


def test_quota_execution_query_failure(dispatcher, runner):
    runner.active_executions.side_effect = RuntimeError("AccessDenied")
    with pytest.raises(CapacityQueryFailure, match="AccessDenied"):
        dispatcher.quota()


def test_tick_saturated_does_not_read_queue(dispatcher, runner, queue):
    runner.active_executions.return_value = executions(24)

    result = dispatcher.tick(queue)

    assert result.saturated
    assert result.message == (
        "Automation runner is at its limit for active automations. "
        "Not going to read from the queue at this time."
    )
    queue.receive.assert_not_called()
    runner.start_execution.assert_not_called()


def test_tick_empty_queue(dispatcher, queue):
    result = dispatcher.tick(queue)
    queue.receive.assert_called_once_with(10)
    assert result.message == "No messages on the queue to process"


def test_tick_receives_at_most_quota(dispatcher, runner, queue):
    runner.active_executions.return_value = executions(1)
    runner.active_step_count.return_value = 20
    dispatcher.tick(queue)
    queue.receive.assert_called_once_with(3)


def test_tick_all_started(dispatcher, runner, queue):
    queue.receive.return_value = [message(i) for i in range(4)]

    result = dispatcher.tick(queue)

    assert result.message == "All (4) automation executions were successfully started"
    assert runner.start_execution.call_count == 4
    assert [c[0] for c in queue.method_calls] == ["receive"]


def test_tick_partial_failure(dispatcher, runner, queue):
    queue.receive.return_value = [message(0), message(1, body="{not json"), message(2)]

    result = dispatcher.tick(queue)

    assert (result.total, result.failed, result.started) == (3, 1, 2)
    assert result.message == (
        "1 of 3 (33.33%) were not processed successfully. "
        "They are going to remain on the queue."
    )
    assert runner.start_execution.call_count == 2


def test_tick_start_failures_are_tallied(dispatcher, runner, queue):
    queue.receive.return_value = [message(i) for i in range(2)]
    runner.start_execution.side_effect = RuntimeError("InvalidDocument")
    result = dispatcher.tick(queue)
    assert result.failed == 2
    assert result.message.startswith("2 of 2 (100.00%)")


def test_tick_receive_failure(dispatcher, queue):
    queue.receive.side_effect = RuntimeError("QueueDoesNotExist")
    with pytest.raises(DependencyFailure):
        dispatcher.tick(queue)


def test_start_request_parameters(dispatcher):
    msg = message(
        7,
        params=[
            {"name": "Force", "value": "true"},
            {"name": "Comment", "value": "  "},
            {"name": "SQSMsgBody", "value": "spoofed"},
            {"name": "SQSMsgReceiptHandle", "value": "spoofed"},
            {"name": "TargetResourceType", "value": "AWS::EC2::Instance"},
        ],
    )

    document_name, parameters = dispatcher.start_request(msg)

    assert document_name == "Operations-Conductor-StopInstances"
    assert parameters == {
        "Force": "true",
        "TargetResourceType": "AWS::EC2::Instance",
        "SQSMsgBody": msg["Body"],
        "SQSMsgReceiptHandle": "rh-7",
    }


@pytest.mark.parametrize(
    "msg",
    [
        {"ReceiptHandle": "rh"},
        {"Body": json.dumps({"MessageType": "Resource"}), "ReceiptHandle": "rh"},
        {"Body": json.dumps({"AutomationDocumentName": "doc"})},
    ],
)
def test_start_request_malformed(dispatcher, msg):
    with pytest.raises(MalformedMessage):
        dispatcher.start_request(msg)


def test_dispatch_result_percentage():
    assert DispatchResult(7, 2).message.startswith("2 of 7 (28.57%)")


def test_tick_non_string_parameter_stays_on_queue(dispatcher, runner, queue):
    queue.receive.return_value = [
        message(0),
        message(1, params=[{"name": "Count", "value": 5}]),
    ]
    result = dispatcher.tick(queue)
    assert (result.total, result.failed) == (2, 1)
    runner.start_execution.assert_called_once()
