#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Client for the automation runner, which is SSM Automation.

The dispatcher needs three things from the runner: the executions that are
still occupying capacity, the number of steps each of them has in flight, and
a way to start a new execution. An execution or step occupies capacity while
its status is one of `ACTIVE_STATUSES`.
"""

import logging

import boto3

from opsconductor.errors import CapacityQueryFailure

LOG = logging.getLogger(__name__)

ACTIVE_STATUSES = ["Pending", "InProgress", "Waiting", "Cancelling"]


class AutomationRunner:
    """Queries and starts automation executions."""

    def __init__(self, client=None):
        self._client = client or boto3.client("ssm")

    def active_executions(self, limit):
        """Returns up to `limit` executions in one of the active statuses."""
        resp = self._client.describe_automation_executions(
            Filters=[{"Key": "ExecutionStatus", "Values": ACTIVE_STATUSES}],
            MaxResults=limit,
        )
        executions = resp.get("AutomationExecutionMetadataList")
        if executions is None:
            raise CapacityQueryFailure(
                "Unable to determine the active automation executions"
            )
        return executions

    def active_step_count(self, execution_id, limit):
        """Returns the number of active steps of an execution, up to `limit`."""
        resp = self._client.describe_automation_step_executions(
            AutomationExecutionId=execution_id,
            Filters=[{"Key": "StepExecutionStatus", "Values": ACTIVE_STATUSES}],
            MaxResults=limit,
        )
        steps = resp.get("StepExecutions")
        if steps is None:
            raise CapacityQueryFailure(
                f"Unable to determine the active steps of automation {execution_id}"
            )
        return len(steps)

    def start_execution(self, document_name, parameters):
        """Starts an execution and returns its ID.

        `parameters` maps parameter names to string values. Each one is sent
        as a single-element list as the automation API expects.
        """
        resp = self._client.start_automation_execution(
            DocumentName=document_name,
            Parameters={k: [v] for k, v in parameters.items()},
        )
        execution_id = resp.get("AutomationExecutionId")
        LOG.info("started automation %s of %s", execution_id, document_name)
        return execution_id
