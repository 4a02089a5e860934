#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Task run requests and work queue messages.

## Overview

`TaskRunRequest` is the validated input of the resource selector. It is built
from a trigger payload via `TaskRunRequest.from_event`, which understands the
two payloads the selector is invoked with:

1. A scheduled or manual run, where the payload is the task definition itself:

        {
          "taskId": "...", "name": "...", "targetTag": "...",
          "actionName": "...", "accounts": ["111122223333"],
          "regions": ["us-east-1"], "enabled": true, "manualTrigger": true,
          "taskParameters": [{"Name": "TargetResourceType", "Value": "AWS::EC2::Instance"}]
        }

2. An event-driven run delivered through SNS. The notification message
   contains the same task fields along with the single resource that raised
   the event (`resources`, `resourceAccount`, and `resourceRegion`). This is
   the passthrough path.

`WorkItem` is the body of one work queue message. The selector creates one per
resource and the dispatcher decodes it with `WorkItem.from_body`, which raises
`opsconductor.errors.MalformedMessage` for anything that is not a well-formed
`Resource` message.
"""

import json

from opsconductor.arn import ResourceRef
from opsconductor.errors import InvalidRequest, MalformedMessage

TARGET_RESOURCE_TYPE = "TargetResourceType"
"""Name of the task parameter holding the resource type filter."""

MESSAGE_TYPE = "Resource"
"""Discriminator of work queue messages."""


def _is_blank(value):
    return not isinstance(value, str) or value.strip() == ""


class TaskParameter:
    """A name/value automation parameter."""

    def __init__(self, name, value):
        self.name = name
        self.value = value

    def is_blank(self):
        return _is_blank(self.value)

    def to_dict(self):
        return {"name": self.name, "value": self.value}

    def __eq__(self, other):
        if not isinstance(other, TaskParameter):
            return NotImplemented
        return (self.name, self.value) == (other.name, other.value)

    def __repr__(self):
        return f"TaskParameter({self.name!r}, {self.value!r})"


class TaskRunRequest:
    """Validated request to run a task once.

    Exactly one of the following holds: `passthrough` is a `ResourceRef` and
    `accounts` / `regions` are empty, or `passthrough` is `None` and both
    `accounts` and `regions` are non-empty.
    """

    def __init__(
        self,
        task_id,
        name,
        target_tag,
        target_resource_type,
        action_name,
        parameters=(),
        accounts=(),
        regions=(),
        description="",
        enabled=False,
        manual_trigger=False,
        passthrough=None,
    ):
        self.task_id = task_id
        self.name = name
        self.target_tag = target_tag
        self.target_resource_type = target_resource_type
        self.action_name = action_name
        self.parameters = list(parameters)
        self.accounts = list(accounts)
        self.regions = list(regions)
        self.description = description
        self.enabled = enabled
        self.manual_trigger = manual_trigger
        self.passthrough = passthrough
        self.validate()

    @classmethod
    def from_event(cls, event):
        """Factory to build a request from a selector trigger payload.

        Raises `opsconductor.errors.InvalidRequest` if the payload is
        incomplete. No side effects occur before validation succeeds.
        """
        if not isinstance(event, dict):
            raise InvalidRequest("Event payload must be a JSON object")

        passthrough = None
        records = event.get("Records")

        if isinstance(records, list) and len(records) == 1:
            # Event-driven runs arrive as an SNS notification wrapping the
            # task definition and the resource that triggered the event.
            try:
                event = json.loads(records[0]["Sns"]["Message"])
            except (KeyError, TypeError, ValueError) as e:
                raise InvalidRequest(
                    f"Unable to read the SNS notification message: {e}"
                ) from e
            if not isinstance(event, dict):
                raise InvalidRequest("SNS notification message must be a JSON object")
            passthrough = _passthrough_resource(event)

        for key in ("taskId", "name", "targetTag", "actionName"):
            if _is_blank(event.get(key)):
                raise InvalidRequest(f'"{key}" was not present in the event')

        raw_params = event.get("taskParameters")
        if not isinstance(raw_params, list):
            raise InvalidRequest('"taskParameters" array not present in the event')

        resource_type = next(
            (
                p.get("Value")
                for p in raw_params
                if isinstance(p, dict) and p.get("Name") == TARGET_RESOURCE_TYPE
            ),
            None,
        )
        if resource_type is None:
            raise InvalidRequest(
                f'"taskParameters" did not contain "{TARGET_RESOURCE_TYPE}"'
            )
        if _is_blank(resource_type):
            raise InvalidRequest(
                f'"{TARGET_RESOURCE_TYPE}" in "taskParameters" did not contain a "Value"'
            )

        parameters = [
            TaskParameter(p.get("Name"), p.get("Value"))
            for p in raw_params
            if isinstance(p, dict)
        ]

        accounts, regions = [], []
        if passthrough is None:
            accounts = _string_list(event, "accounts")
            regions = _string_list(event, "regions")

        return cls(
            task_id=event["taskId"],
            name=event["name"],
            target_tag=event["targetTag"],
            target_resource_type=resource_type.strip(),
            action_name=event["actionName"],
            parameters=[p for p in parameters if not p.is_blank()],
            accounts=accounts,
            regions=regions,
            description=event.get("description") or "",
            enabled=event.get("enabled") is True,
            manual_trigger=passthrough is None and event.get("manualTrigger") is True,
            passthrough=passthrough,
        )

    def validate(self):
        """Raises `InvalidRequest` if the request is incomplete."""
        for attr in ("task_id", "name", "target_tag", "action_name"):
            if _is_blank(getattr(self, attr)):
                raise InvalidRequest(f'"{attr}" must be a non-empty string')

        if self.passthrough is not None:
            if self.accounts or self.regions:
                raise InvalidRequest(
                    "A passthrough resource cannot be combined with accounts or regions"
                )
            return

        if not self.accounts:
            raise InvalidRequest('"accounts" array not present in the event')
        if not self.regions:
            raise InvalidRequest('"regions" array not present in the event')

    @property
    def is_passthrough(self):
        return self.passthrough is not None

    @property
    def event_type(self):
        """Event type reported in the usage metric for this run."""
        if self.is_passthrough:
            return "EventTaskExecution"
        if self.manual_trigger:
            return "ManualTaskExecution"
        return "ScheduledTaskExecution"

    @property
    def should_run(self):
        """Manual runs always proceed, automatic runs only if enabled."""
        return self.manual_trigger or self.enabled

    def __repr__(self):
        return f"TaskRunRequest({self.task_id!r}, {self.name!r})"


def _passthrough_resource(event):
    resources = event.get("resources")
    if not isinstance(resources, list) or len(resources) != 1:
        raise InvalidRequest(
            '"resources" must contain exactly one resource for event-driven runs'
        )

    ref = ResourceRef.parse(resources[0])
    ref.resource_account = event.get("resourceAccount") or None
    ref.resource_region = event.get("resourceRegion") or None

    if not ref.owner_account or not ref.owner_region:
        raise InvalidRequest(
            f"Unable to determine the owning account and region of {ref.arn}"
        )
    return ref


def _string_list(event, key):
    value = event.get(key)
    if not isinstance(value, list) or not value:
        raise InvalidRequest(f'"{key}" array not present in the event')
    if any(_is_blank(v) for v in value):
        raise InvalidRequest(f'"{key}" must only contain non-empty strings')
    return [v.strip() for v in value]


class WorkItem:
    """The body of a work queue message for a single resource."""

    def __init__(
        self,
        automation_document_name,
        task_id,
        task_name,
        target_tag,
        parent_execution_id,
        start_time,
        resource_arn,
        resource_region,
        resource_account,
        resource_id,
        task_description="",
        task_parameters=(),
    ):
        self.automation_document_name = automation_document_name
        self.task_id = task_id
        self.task_name = task_name
        self.target_tag = target_tag
        self.parent_execution_id = parent_execution_id
        self.start_time = start_time
        self.resource_arn = resource_arn
        self.resource_region = resource_region
        self.resource_account = resource_account
        self.resource_id = resource_id
        self.task_description = task_description
        self.task_parameters = list(task_parameters)

    @classmethod
    def for_resource(cls, request, ref, parent_execution_id, start_time):
        """Factory to build the work item for `ref` selected by `request`."""
        return cls(
            automation_document_name=request.action_name,
            task_id=request.task_id,
            task_name=request.name,
            target_tag=request.target_tag,
            parent_execution_id=parent_execution_id,
            start_time=start_time,
            resource_arn=ref.arn,
            resource_region=ref.owner_region,
            resource_account=ref.owner_account,
            resource_id=ref.resource_id,
            task_description=request.description,
            task_parameters=request.parameters,
        )

    @classmethod
    def from_body(cls, body):
        """Decodes a message body, raising `MalformedMessage` if invalid."""
        if not body:
            raise MalformedMessage("Queue message did not contain a body")

        try:
            data = json.loads(body)
        except ValueError as e:
            raise MalformedMessage("Unable to parse the queue message body") from e

        if not isinstance(data, dict):
            raise MalformedMessage("Queue message body is not a JSON object")

        if data.get("MessageType", MESSAGE_TYPE) != MESSAGE_TYPE:
            raise MalformedMessage(
                f"Unexpected queue message type: {data.get('MessageType')}"
            )

        if _is_blank(data.get("AutomationDocumentName")):
            raise MalformedMessage(
                "Queue message body is missing AutomationDocumentName"
            )

        raw_params = data.get("TaskParameters") or []
        if not isinstance(raw_params, list) or not all(
            isinstance(p, dict) for p in raw_params
        ):
            raise MalformedMessage("TaskParameters in queue message is not a list")

        for p in raw_params:
            value = p.get("value")
            if value is not None and not isinstance(value, str):
                raise MalformedMessage(
                    f"Value of task parameter {p.get('name')} is not a string: {value!r}"
                )

        return cls(
            automation_document_name=data["AutomationDocumentName"],
            task_id=data.get("TaskId"),
            task_name=data.get("TaskName"),
            target_tag=data.get("TargetTag"),
            parent_execution_id=data.get("ParentExecutionId"),
            start_time=data.get("StartTime"),
            resource_arn=data.get("ResourceARN"),
            resource_region=data.get("ResourceRegion"),
            resource_account=data.get("ResourceAccount"),
            resource_id=data.get("ResourceId"),
            task_description=data.get("TaskDescription") or "",
            task_parameters=[
                TaskParameter(p.get("name"), p.get("value")) for p in raw_params
            ],
        )

    def to_dict(self):
        return {
            "MessageType": MESSAGE_TYPE,
            "AutomationDocumentName": self.automation_document_name,
            "TaskDescription": self.task_description,
            "TaskName": self.task_name,
            "TargetTag": self.target_tag,
            "TaskId": self.task_id,
            "ParentExecutionId": self.parent_execution_id,
            "TaskParameters": [p.to_dict() for p in self.task_parameters],
            "StartTime": self.start_time,
            "ResourceARN": self.resource_arn,
            "ResourceRegion": self.resource_region,
            "ResourceAccount": self.resource_account,
            "ResourceId": self.resource_id,
        }

    def to_body(self):
        return json.dumps(self.to_dict())
