#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

import pytest

from opsconductor import handlers
from opsconductor.config import EmptyConfig, Settings
from opsconductor.dispatcher import DispatchResult, Dispatcher
from opsconductor.errors import InvalidRequest
from opsconductor.metrics import Metrics
from opsconductor.selector import ResourceSelector, SelectionResult
from opsconductor.session.aws import CredsViaDefault, CredsViaTaskRole

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/111111111111/resources"

TASK_EVENT = {
    "taskId": "task-1",
    "name": "Stop instances",
    "targetTag": "AutoStop",
    "actionName": "Operations-Conductor-StopInstances",
    "accounts": ["111111111111"],
    "regions": ["us-east-1"],
    "enabled": True,
    "taskParameters": [{"Name": "TargetResourceType", "Value": "AWS::EC2::Instance"}],
}

ENVIRON = {
    "ResourceQueueUrl": QUEUE_URL,
    "TaskExecutionsTableName": "TaskExecutions",
    "AutomationConcurrencyLimit": "20",
    "AutomationConcurrencyPadding": "3",
    "LogLevel": "debug",
}


@pytest.fixture(autouse=True)
def fresh_provider(monkeypatch):
    monkeypatch.setattr(handlers, "_task_role_provider", None)


@pytest.fixture
def settings(mocker):
    s = Settings(EmptyConfig, environ=dict(ENVIRON))
    mocker.patch("opsconductor.handlers.Settings.load", return_value=s)
    return s


@pytest.fixture
def work_queue(mocker):
    return mocker.patch("opsconductor.handlers.WorkQueue")


@pytest.fixture
def ledger(mocker):
    return mocker.patch("opsconductor.handlers.ExecutionLedger")


def test_build_selector(settings, work_queue, ledger):
    selector = handlers.build_selector(settings)

    work_queue.assert_called_once_with(QUEUE_URL)
    ledger.assert_called_once_with("TaskExecutions")
    assert isinstance(selector.credential_provider, CredsViaTaskRole)
    assert selector.metrics is None


def test_build_selector_with_provider(settings, work_queue, ledger):
    # pylint: disable=unused-argument
    provider = CredsViaDefault()
    assert handlers.build_selector(settings, provider).credential_provider is provider


@pytest.mark.parametrize("missing", ["ResourceQueueUrl", "TaskExecutionsTableName"])
def test_build_selector_requires_environment(missing, work_queue):
    environ = dict(ENVIRON)
    del environ[missing]
    with pytest.raises(InvalidRequest, match=missing):
        handlers.build_selector(Settings(EmptyConfig, environ=environ))
    work_queue.assert_not_called()


def test_build_dispatcher(mocker, settings):
    mocker.patch("opsconductor.handlers.AutomationRunner")
    dispatcher = handlers.build_dispatcher(settings)
    assert dispatcher.concurrency_limit == 20
    assert dispatcher.padding == 3
    assert dispatcher.receive_max == 10


@pytest.fixture
def selector(mocker):
    s = mocker.MagicMock(spec=ResourceSelector)
    s.metrics = mocker.MagicMock(spec=Metrics)
    mocker.patch("opsconductor.handlers.build_selector", return_value=s)
    return s


def test_resource_selector(settings, selector):
    # pylint: disable=unused-argument
    result = SelectionResult(None, [], "run-1", skipped=True)
    selector.select.return_value = result

    event = dict(TASK_EVENT, enabled=False)
    assert handlers.resource_selector(event, None) == result.message
    assert selector.select.call_args.args[0].task_id == "task-1"


def test_resource_selector_invalid_event(settings, selector):
    # pylint: disable=unused-argument
    with pytest.raises(InvalidRequest):
        handlers.resource_selector({"name": "no id"}, None)
    selector.metrics.send.assert_called_once_with("TaskExecutionFailed")
    selector.select.assert_not_called()


def test_queue_consumer(mocker, settings, work_queue):
    # pylint: disable=unused-argument
    dispatcher = mocker.MagicMock(spec=Dispatcher)
    dispatcher.tick.return_value = DispatchResult(3, 0)
    mocker.patch("opsconductor.handlers.build_dispatcher", return_value=dispatcher)

    message = handlers.queue_consumer({"QueueUrl": QUEUE_URL}, None)

    assert message == "All (3) automation executions were successfully started"
    work_queue.assert_called_once_with(QUEUE_URL)
    dispatcher.tick.assert_called_once_with(work_queue.return_value)


@pytest.mark.parametrize("event", [{}, {"QueueUrl": ""}, None])
def test_queue_consumer_requires_queue_url(settings, event):
    # pylint: disable=unused-argument
    with pytest.raises(InvalidRequest, match="QueueUrl"):
        handlers.queue_consumer(event, None)


def test_task_role_credentials_reused_across_invocations(mocker, settings, work_queue, ledger):
    # pylint: disable=unused-argument
    sts = mocker.MagicMock()
    sts.assume_role.return_value = {
        "Credentials": {
            "AccessKeyId": "AKIAEXAMPLE",
            "SecretAccessKey": "secret",
            "SessionToken": "token",
        }
    }
    mocker.patch("opsconductor.session.aws.boto3.client", return_value=sts)
    session = mocker.patch("opsconductor.session.aws.boto3.Session")
    tagging = session.return_value.client.return_value
    tagging.get_resources.return_value = {"ResourceTagMappingList": []}

    handlers.resource_selector(TASK_EVENT, None)
    handlers.resource_selector(TASK_EVENT, None)

    sts.assume_role.assert_called_once()
    assert sts.assume_role.call_args.kwargs["DurationSeconds"] == 900
    assert session.call_count == 2
    assert ledger.return_value.record.call_count == 2


def test_task_role_provider_is_shared(settings):
    first = handlers.task_role_provider(settings)
    assert handlers.task_role_provider(settings) is first
