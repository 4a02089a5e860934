#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Writes one row per selector run to the execution ledger.

The ledger is a DynamoDB table read by the UI. A row is written once, before
any work item is enqueued, so the run is visible even if enqueueing fails
afterwards. The `completedResourceCount` column is maintained downstream by
the automations themselves and is always written as zero here.
"""

import logging

import boto3

from opsconductor.errors import LedgerWriteFailure

LOG = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
"""Format of the UTC timestamps stored in the ledger and in work items."""


class RunRecord:
    """The ledger row of a single selector run."""

    def __init__(self, task_id, parent_execution_id, start_time, total_resource_count):
        self.task_id = task_id
        self.parent_execution_id = parent_execution_id
        self.start_time = start_time
        self.total_resource_count = total_resource_count
        self.completed_resource_count = 0

    @property
    def status(self):
        return "Success" if self.total_resource_count == 0 else "InProgress"

    def to_item(self):
        return {
            "taskId": self.task_id,
            "parentExecutionId": self.parent_execution_id,
            "startTime": self.start_time,
            "lastUpdateTime": self.start_time,
            "status": self.status,
            "totalResourceCount": self.total_resource_count,
            "completedResourceCount": self.completed_resource_count,
        }


class ExecutionLedger:
    """Puts `RunRecord` rows into the ledger table."""

    def __init__(self, table_name, resource=None):
        self.table_name = table_name
        self._table = (resource or boto3.resource("dynamodb")).Table(table_name)

    def record(self, run):
        """Writes `run`, raising `LedgerWriteFailure` on any error."""
        try:
            self._table.put_item(Item=run.to_item())
        except Exception as e:
            raise LedgerWriteFailure(
                f"Unable to record run {run.parent_execution_id} of task "
                f"{run.task_id} in {self.table_name}: {e}"
            ) from e
        LOG.info(
            "recorded run %s of task %s with %d resource(s)",
            run.parent_execution_id,
            run.task_id,
            run.total_resource_count,
        )
