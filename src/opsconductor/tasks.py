#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Wires task triggers to the resource selector.

## Overview

Tasks are stored as items in the tasks table. A task has one of two trigger
types:

`Schedule`
:  The task runs on a schedule. `TaskLifecycle.put_schedule` creates an
EventBridge rule named after the task whose target is the resource selector
function. The task definition itself is the target's input.

`Event`
:  The task runs when a resource emits an event. The event reaches the
selector through SNS, so there is nothing to wire here, and such a task
cannot be run on demand.

Any task that is not event-driven can be run on demand with
`TaskLifecycle.execute_task`, which synchronously invokes the selector with
`manualTrigger` set.

Scheduled tasks describe their schedule with either a cron expression:

    {"scheduledType": "CronExpression", "scheduledCronExpression": "0 12 * * ? *"}

or a fixed rate:

    {"scheduledType": "FixedRate", "scheduledFixedRateInterval": 5,
     "scheduledFixedRateType": "minutes"}
"""

import json
import logging
from decimal import Decimal

import boto3

from opsconductor.errors import InvalidRequest, TaskLifecycleFailure, TaskNotFound

LOG = logging.getLogger(__name__)

SCHEDULE_TRIGGER = "Schedule"
EVENT_TRIGGER = "Event"

RATE_UNITS = ("minute", "minutes", "hour", "hours", "day", "days")


def _json_default(obj):
    # Numbers read from DynamoDB are Decimals.
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def to_json(obj):
    return json.dumps(obj, default=_json_default)


def schedule_expression(task):
    """Returns the EventBridge schedule expression of a scheduled task.

        >>> schedule_expression({'scheduledType': 'FixedRate',
        ...     'scheduledFixedRateInterval': 1, 'scheduledFixedRateType': 'hours'})
        'rate(1 hour)'
    """
    scheduled_type = task.get("scheduledType")

    if scheduled_type == "CronExpression":
        expr = task.get("scheduledCronExpression")
        if not expr:
            raise InvalidRequest("Missing key/value: scheduledCronExpression")
        return f"cron({expr})"

    if scheduled_type == "FixedRate":
        try:
            interval = int(task.get("scheduledFixedRateInterval"))
        except (TypeError, ValueError) as e:
            raise InvalidRequest("Invalid fixed rate interval") from e
        if interval < 1:
            raise InvalidRequest("Invalid fixed rate interval")

        unit = task.get("scheduledFixedRateType")
        if unit not in RATE_UNITS:
            raise InvalidRequest(f"Invalid rate type: {unit}.")
        if interval == 1 and unit.endswith("s"):
            unit = unit[:-1]
        elif interval > 1 and not unit.endswith("s"):
            unit = unit + "s"
        return f"rate({interval} {unit})"

    raise InvalidRequest(f"Invalid schedule type: {scheduled_type}")


def run_event(task, manual):
    """Returns the selector payload that runs `task`."""
    event = dict(task)
    event["manualTrigger"] = manual
    return event


class TaskStore:
    """Reads task definitions from the tasks table."""

    def __init__(self, table_name, resource=None):
        self.table_name = table_name
        self._table = (resource or boto3.resource("dynamodb")).Table(table_name)

    def get_task(self, task_id):
        if not task_id or not task_id.strip():
            raise InvalidRequest("Task ID cannot be empty.")

        resp = self._table.get_item(Key={"taskId": task_id})
        task = resp.get("Item")
        if not task:
            raise TaskNotFound(f"Task not found: {task_id}")
        return task


class TaskLifecycle:
    """Creates and removes schedule rules, and runs tasks on demand.

    `store` is a `TaskStore`. `events` and `lambda_client` are boto3 clients
    for EventBridge and Lambda. `selector_function_arn` is the ARN of the
    resource selector function.
    """

    def __init__(self, store, selector_function_arn, events=None, lambda_client=None):
        self.store = store
        self.selector_function_arn = selector_function_arn
        self.events = events or boto3.client("events")
        self.lambda_client = lambda_client or boto3.client("lambda")

    def put_schedule(self, task):
        """Creates or updates the schedule rule of `task`.

        Tasks that are not scheduled are ignored. Returns the rule ARN, or
        `None` if nothing was done.
        """
        if task.get("triggerType") != SCHEDULE_TRIGGER:
            return None

        task_id = task["taskId"]
        expression = schedule_expression(task)

        def fail(what, e):
            LOG.error("unable to put schedule of task %s: %s", task_id, e)
            return TaskLifecycleFailure(
                f"Error occurred while {what}.", code="PutScheduleRuleFailure"
            )

        try:
            rule_arn = self.events.put_rule(
                Name=task_id,
                Description=task.get("description") or "",
                ScheduleExpression=expression,
                State="ENABLED" if task.get("enabled") else "DISABLED",
            )["RuleArn"]
        except Exception as e:
            raise fail("putting a schedule rule", e) from e

        try:
            self.events.put_targets(
                Rule=task_id,
                Targets=[
                    {
                        "Id": task_id,
                        "Arn": self.selector_function_arn,
                        "Input": to_json(run_event(task, manual=False)),
                    }
                ],
            )
        except Exception as e:
            raise fail("putting schedule rule targets", e) from e

        try:
            self.lambda_client.add_permission(
                Action="lambda:InvokeFunction",
                FunctionName=self.selector_function_arn,
                Principal="events.amazonaws.com",
                SourceArn=rule_arn,
                StatementId=task_id,
            )
        except Exception as e:
            raise fail("adding the invoke permission", e) from e

        LOG.info("scheduled task %s with %s", task_id, expression)
        return rule_arn

    def delete_schedule(self, task_id):
        """Removes the schedule rule of a task. Does nothing if it has none.

        Returns `True` if a rule was removed.
        """

        def fail(what, e):
            LOG.error("unable to delete schedule of task %s: %s", task_id, e)
            return TaskLifecycleFailure(
                f"Error occurred while {what}.", code="DeleteScheduleRuleFailure"
            )

        try:
            rules = self.events.list_rules(NamePrefix=task_id).get("Rules") or []
        except Exception as e:
            raise fail("listing schedule rules", e) from e

        if not rules:
            return False

        try:
            self.lambda_client.remove_permission(
                FunctionName=self.selector_function_arn, StatementId=task_id
            )
        except Exception as e:
            raise fail("removing the invoke permission", e) from e

        try:
            self.events.remove_targets(Rule=task_id, Ids=[task_id])
        except Exception as e:
            raise fail("removing schedule rule targets", e) from e

        try:
            self.events.delete_rule(Name=task_id)
        except Exception as e:
            raise fail("deleting a schedule rule", e) from e

        LOG.info("deleted schedule of task %s", task_id)
        return True

    def execute_task(self, task_id):
        """Runs a task now and returns the selector's decoded response."""
        try:
            task = self.store.get_task(task_id)
        except TaskNotFound:
            raise
        except Exception as e:
            raise TaskLifecycleFailure(
                f"Error occurred while getting task {task_id}: {e}",
                code="ExecuteTaskFailure",
            ) from e

        if task.get("triggerType") == EVENT_TRIGGER:
            raise TaskLifecycleFailure(
                "Event type cannot be executed manually.", code="ExecuteTaskFailure"
            )

        try:
            resp = self.lambda_client.invoke(
                FunctionName=self.selector_function_arn,
                InvocationType="RequestResponse",
                Payload=to_json(run_event(task, manual=True)),
            )
            payload = json.loads(resp["Payload"].read() or b"null")
        except Exception as e:
            LOG.error("unable to execute task %s: %s", task_id, e)
            raise TaskLifecycleFailure(
                "Error occurred while executing a task.", code="ExecuteTaskFailure"
            ) from e

        if resp.get("FunctionError"):
            message = payload.get("errorMessage") if isinstance(payload, dict) else payload
            raise TaskLifecycleFailure(
                f"Task {task_id} failed: {message}", code="ExecuteTaskFailure"
            )

        LOG.info("executed task %s: %s", task_id, payload)
        return payload
