#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""AWS Lambda entry points.

`resource_selector`
:  Invoked by a schedule rule, by an SNS notification for event-driven tasks,
or synchronously by `opsconductor.tasks.TaskLifecycle.execute_task`. Requires
the `ResourceQueueUrl` and `TaskExecutionsTableName` environment variables.

`queue_consumer`
:  Invoked periodically with `{"QueueUrl": "..."}` to run one dispatcher tick.

Both return a plain summary message. Errors are logged and re-raised, so the
retry policy of the trigger applies.
"""

import json
import logging

from opsconductor.automation import AutomationRunner
from opsconductor.config import Settings
from opsconductor.dispatcher import Dispatcher
from opsconductor.errors import InvalidRequest
from opsconductor.ledger import ExecutionLedger
from opsconductor.metrics import Metrics
from opsconductor.models import TaskRunRequest
from opsconductor.selector import ResourceSelector
from opsconductor.session.aws import CredsViaTaskRole
from opsconductor.workqueue import WorkQueue

LOG = logging.getLogger(__name__)

# Shared by the invocations of a warm Lambda container, so assumed task role
# credentials are reused until they expire.
_task_role_provider = None


def _configure_logging(settings):
    # The Lambda runtime installs its own handler on the root logger.
    logging.getLogger().setLevel(settings.log_level)


def task_role_provider(settings):
    """Returns the process-wide `CredsViaTaskRole`, creating it on first use."""
    global _task_role_provider  # pylint: disable=global-statement
    if _task_role_provider is None:
        _task_role_provider = CredsViaTaskRole(duration=settings.role_duration)
    return _task_role_provider


def build_selector(settings, credential_provider=None):
    """Returns a `ResourceSelector` configured from `settings`.

    The per-task role is assumed with the shared `task_role_provider` unless
    another `credential_provider` is given.
    """
    if not settings.resource_queue_url:
        raise InvalidRequest("ResourceQueueUrl was not found in environment variables")
    if not settings.executions_table:
        raise InvalidRequest(
            "TaskExecutionsTableName was not found in environment variables"
        )

    return ResourceSelector(
        credential_provider or task_role_provider(settings),
        WorkQueue(settings.resource_queue_url),
        ExecutionLedger(settings.executions_table),
        metrics=Metrics.from_settings(settings),
        max_workers=settings.max_workers,
        max_pages=settings.max_pages,
    )


def build_dispatcher(settings):
    """Returns a `Dispatcher` configured from `settings`."""
    return Dispatcher(
        AutomationRunner(),
        concurrency_limit=settings.concurrency_limit,
        padding=settings.concurrency_padding,
        receive_max=settings.receive_max,
        max_workers=settings.max_workers,
    )


def resource_selector(event, context):  # pylint: disable=unused-argument
    """Selects the resources of a task run and enqueues them."""
    settings = Settings.load()
    _configure_logging(settings)
    LOG.info("received event: %s", json.dumps(event))

    try:
        selector = build_selector(settings)
        try:
            request = TaskRunRequest.from_event(event)
        except InvalidRequest:
            if selector.metrics:
                selector.metrics.send("TaskExecutionFailed")
            raise
        return selector.select(request).message

    except Exception as e:
        LOG.error("resource selection failed: %s", e)
        raise


def queue_consumer(event, context):  # pylint: disable=unused-argument
    """Runs one admission-controlled dispatch of the queue in the event."""
    settings = Settings.load()
    _configure_logging(settings)
    LOG.info("received event: %s", json.dumps(event))

    try:
        queue_url = event.get("QueueUrl") if isinstance(event, dict) else None
        if not queue_url:
            raise InvalidRequest("QueueUrl was not passed")

        dispatcher = build_dispatcher(settings)
        return dispatcher.tick(WorkQueue(queue_url)).message

    except Exception as e:
        LOG.error("dispatch failed: %s", e)
        raise
