#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Sends the optional anonymous usage metric.

When usage data is enabled and the solution identifiers are configured, the
selector reports one metric per run:

    {
      "Solution": "SO0065", "Version": "v1.0.0", "UUID": "...",
      "TimeStamp": "2019-07-13 15:04:30.1",
      "Data": {
        "EventType": "ScheduledTaskExecution",
        "EventData": {"TaskName": "...", "AutomationDocument": "...", "ResourceCount": "3"}
      }
    }

Sending a metric never fails the caller. Errors are logged and discarded.
"""

import logging
from datetime import datetime, timezone

import requests

LOG = logging.getLogger(__name__)

METRICS_ENDPOINT = "https://metrics.awssolutionsbuilder.com"


def _timestamp(now=None):
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%d %H:%M:%S") + f".{now.microsecond // 100000}"


def event_data(task_name, document_name, resource_count=None):
    """Returns the `EventData` describing a task run."""
    data = {"TaskName": task_name, "AutomationDocument": document_name}
    if resource_count is not None:
        data["ResourceCount"] = str(resource_count)
    return data


class Metrics:
    """Posts anonymous usage metrics for a solution deployment."""

    def __init__(self, solution_id, version, uuid, endpoint=METRICS_ENDPOINT, timeout=10.0):
        self.solution_id = solution_id
        self.version = version
        self.uuid = uuid
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings):
        """Factory returning a `Metrics`, or `None` if metrics are disabled."""
        if not settings.metrics_enabled:
            return None
        return cls(settings.solution_id, settings.solution_version, settings.solution_uuid)

    def payload(self, event_type, data=None):
        metric = {
            "Solution": self.solution_id,
            "Version": self.version,
            "UUID": self.uuid,
            "TimeStamp": _timestamp(),
            "Data": {"EventType": event_type},
        }
        if data:
            metric["Data"]["EventData"] = data
        return metric

    def send(self, event_type, data=None):
        """Sends a metric, returning `True` if it was accepted."""
        metric = self.payload(event_type, data)
        LOG.info("sending anonymous metric: %s", metric)
        try:
            r = requests.post(f"{self.endpoint}/generic", json=metric, timeout=self.timeout)
            r.raise_for_status()
        except requests.RequestException as e:
            LOG.error("sending anonymous metric failed: %s", e)
            return False
        return True
