#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Drains the work queue into the automation runner without overloading it.

## Overview

The automation runner executes a limited number of automations at once
(`concurrency_limit`, 25 by default). Automations started beyond that limit are
queued by the runner itself, where they can no longer be throttled. The
`Dispatcher` therefore reads only as many messages from the work queue as the
runner can start right away. On each tick:

1. The quota is computed from the runner's live load:
   - If at least `concurrency_limit - padding` executions are active, the
     quota is 0 and the queue is not read at all.
   - If no executions are active, the quota is `receive_max`.
   - Otherwise, the active steps of every active execution are counted
     concurrently and summed, and the quota is
     `clamp(concurrency_limit - padding - steps, 0, receive_max)`.
2. A single receive of up to quota messages is made.
3. One automation is started per message, concurrently. Messages that cannot
   be decoded or started are counted and left on the queue, where they become
   visible again after the visibility timeout. Nothing is deleted here.

Because the quota is recomputed on every tick from the runner's state,
dispatchers that overlap in time limit each other.

## Quick Start

    dispatcher = Dispatcher(AutomationRunner())
    result = dispatcher.tick(WorkQueue(queue_url))
    print(result.message)
"""

import logging

from opsconductor.errors import CapacityQueryFailure, DependencyFailure, MalformedMessage
from opsconductor.models import WorkItem
from opsconductor.runner import execute_function
from opsconductor.workqueue import RECEIVE_MAX

LOG = logging.getLogger(__name__)

MSG_BODY_PARAM = "SQSMsgBody"
RECEIPT_HANDLE_PARAM = "SQSMsgReceiptHandle"
RESERVED_PARAMS = (MSG_BODY_PARAM, RECEIPT_HANDLE_PARAM)


def compute_quota(total_active_steps, ceiling=25, padding=2, receive_max=RECEIVE_MAX):
    """Returns the number of messages that are safe to read.

    The result never increases as `total_active_steps` grows:

        >>> [compute_quota(s) for s in (0, 10, 15, 20, 23, 30)]
        [10, 10, 8, 3, 0, 0]
    """
    return max(0, min(ceiling - padding - total_active_steps, receive_max))


class DispatchResult:
    """Outcome of a dispatcher tick."""

    def __init__(self, total=0, failed=0, saturated=False):
        self.total = total
        self.failed = failed
        self.saturated = saturated

    @property
    def started(self):
        return self.total - self.failed

    @property
    def message(self):
        if self.saturated:
            return (
                "Automation runner is at its limit for active automations. "
                "Not going to read from the queue at this time."
            )
        if self.total == 0:
            return "No messages on the queue to process"
        if self.failed == 0:
            return f"All ({self.total}) automation executions were successfully started"
        percent = self.failed / self.total * 100
        return (
            f"{self.failed} of {self.total} ({percent:.2f}%) were not processed "
            "successfully. They are going to remain on the queue."
        )


class Dispatcher:
    """Starts automations for work queue messages within the runner's capacity.

    `runner` is an `opsconductor.automation.AutomationRunner`. `max_workers`
    bounds the concurrency of the step count queries and of the starts.
    """

    def __init__(
        self,
        runner,
        concurrency_limit=25,
        padding=2,
        receive_max=RECEIVE_MAX,
        max_workers=10,
    ):
        self.runner = runner
        self.concurrency_limit = concurrency_limit
        self.padding = padding
        self.receive_max = min(receive_max, RECEIVE_MAX)
        self.max_workers = max_workers

    def quota(self):
        """Returns the number of messages to read on this tick.

        Raises `opsconductor.errors.CapacityQueryFailure` if the runner's load
        cannot be determined.
        """
        try:
            executions = self.runner.active_executions(self.concurrency_limit)
        except CapacityQueryFailure:
            raise
        except Exception as e:
            raise CapacityQueryFailure(
                f"Unable to query the automation runner for active executions: {e}"
            ) from e

        if len(executions) >= self.concurrency_limit - self.padding:
            LOG.info(
                "runner is at or close to its limit of %d active executions",
                self.concurrency_limit,
            )
            return 0

        if not executions:
            LOG.info("there are no automations running")
            return self.receive_max

        LOG.info("current active/pending automations: %d", len(executions))
        try:
            ids = [e["AutomationExecutionId"] for e in executions]
        except (KeyError, TypeError) as e:
            raise CapacityQueryFailure(
                "Unexpected response listing the active executions"
            ) from e

        results, errors = execute_function(
            ids,
            lambda i: self.runner.active_step_count(i, self.concurrency_limit),
            max_workers=self.max_workers,
        )
        if errors:
            execution_id, e = next(iter(errors.items()))
            raise CapacityQueryFailure(
                f"Unable to count the active steps of automation {execution_id}: {e}"
            ) from e

        steps = sum(results.values())
        LOG.info("current active/pending automation steps: %d", steps)
        return compute_quota(
            steps, self.concurrency_limit, self.padding, self.receive_max
        )

    def start_request(self, message):
        """Returns the document name and parameters to start for `message`.

        Declared task parameters with a blank value are omitted. The raw body
        and receipt handle of the message are always passed to the automation
        so it can report back and delete the message. Declared parameters
        cannot override them.
        """
        body = message.get("Body")
        item = WorkItem.from_body(body)

        receipt_handle = message.get("ReceiptHandle")
        if not receipt_handle:
            raise MalformedMessage("Queue message did not contain a ReceiptHandle")

        parameters = {
            p.name: p.value
            for p in item.task_parameters
            if p.name and p.name not in RESERVED_PARAMS and not p.is_blank()
        }
        parameters[MSG_BODY_PARAM] = body
        parameters[RECEIPT_HANDLE_PARAM] = receipt_handle
        return item.automation_document_name, parameters

    def start(self, message):
        """Starts the automation for `message` and returns the execution ID."""
        document_name, parameters = self.start_request(message)
        return self.runner.start_execution(document_name, parameters)

    def tick(self, work_queue):
        """Runs one admission-controlled pass over `work_queue`."""
        quota = self.quota()
        LOG.info("max number of messages to read from queue: %d", quota)

        if quota == 0:
            result = DispatchResult(saturated=True)
            LOG.info(result.message)
            return result

        try:
            messages = work_queue.receive(quota)
        except Exception as e:
            raise DependencyFailure(
                f"Error while getting messages from queue {work_queue.queue_url}: {e}"
            ) from e

        if not messages:
            result = DispatchResult()
            LOG.info(result.message)
            return result

        _, errors = execute_function(
            range(len(messages)),
            lambda i: self.start(messages[i]),
            max_workers=self.max_workers,
        )
        for i, e in sorted(errors.items()):
            LOG.error(
                "error while attempting to process message %s from queue: %s",
                messages[i].get("MessageId"),
                e,
            )

        result = DispatchResult(len(messages), len(errors))
        LOG.info(result.message)
        return result
