#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Resolves the resources of a task run and puts one work item per resource
on the work queue.

## Overview

`ResourceSelector.select` processes a single `opsconductor.models.TaskRunRequest`:

1. An automatic run of a disabled task does nothing.
2. Resources are resolved. For an event-driven run, the single resource in
   the event is verified to carry the task's target tag. Otherwise, every
   account and region of the task is searched for tagged resources of the
   target type. The searches run concurrently with a `RegionalCommand`, and a
   failure in any one of them fails the run.
3. One `opsconductor.ledger.RunRecord` is written for the run, before anything
   is enqueued.
4. Work items are sent in batches of 10, all batches concurrently. Entries
   that fail are logged with the ARN of their resource and counted. If any
   failed, an `opsconductor.errors.EnqueueFailure` is raised. Entries that
   were sent stay on the queue.
5. If metrics are enabled, one usage metric is sent for the run.

## Quick Start

    request = TaskRunRequest.from_event(event)
    selector = ResourceSelector(
        CredsViaTaskRole(),
        WorkQueue(queue_url),
        ExecutionLedger(table_name))
    print(selector.select(request).message)
"""

import logging
import uuid
from datetime import datetime, timezone

from opsconductor.arn import ResourceRef
from opsconductor.directory import ResourceDirectory
from opsconductor.errors import DiscoveryFailure, EnqueueFailure, TagVerificationFailure
from opsconductor.ledger import TIME_FORMAT, RunRecord
from opsconductor.metrics import event_data
from opsconductor.models import WorkItem
from opsconductor.runner import (
    DEFAULT_MAX_PAGES,
    ConcurrentRunner,
    RegionalCommand,
    chunked,
    execute_function,
)
from opsconductor.workqueue import SEND_BATCH_MAX

LOG = logging.getLogger(__name__)

DISABLED_MESSAGE = "Automatic task execution is disabled"
NO_RESOURCES_MESSAGE = "Did not find any resources that needed to be processed."


class SelectionResult:
    """Outcome of a selector run."""

    def __init__(self, request, resources=(), parent_execution_id=None, skipped=False):
        self.request = request
        self.resources = list(resources)
        self.parent_execution_id = parent_execution_id
        self.skipped = skipped

    @property
    def message(self):
        if self.skipped:
            return DISABLED_MESSAGE
        if not self.resources:
            return NO_RESOURCES_MESSAGE
        return (
            f"Successfully added {len(self.resources)} resource(s) to the queue "
            "to be processed"
        )


class TagSearch(RegionalCommand):
    """Searches each account and region of a task for its tagged resources."""

    def __init__(self, credential_provider, request, max_pages=DEFAULT_MAX_PAGES):
        super().__init__(credential_provider, request.task_id)
        self.request = request
        self.max_pages = max_pages
        self.resources = {}

    def regional_execute(self, session, acct, region):
        directory = ResourceDirectory(session, region, self.max_pages)
        arns = directory.tagged_resources(
            self.request.target_tag, [self.request.target_resource_type]
        )
        return [ResourceRef.parse(a) for a in arns]

    def regional_collect_results(self, acct, region, get_result):
        try:
            self.resources[(acct, region)] = get_result()
        except Exception as e:
            LOG.error("tag search failed in %s/%s: %s", acct, region, e)
            raise DiscoveryFailure(
                f"Unable to search for resources tagged {self.request.target_tag} "
                f"in {acct}/{region}: {e}"
            ) from e

    def ordered_resources(self):
        """Returns the resources found, ordered by account then region."""
        return [
            ref
            for acct in self.request.accounts
            for region in self.request.regions
            for ref in self.resources.get((acct, region), [])
        ]


class ResourceSelector:
    """Fans a task run out into one work item per resource.

    The `credential_provider` is used to access the task's target accounts,
    `work_queue` is an `opsconductor.workqueue.WorkQueue`, `ledger` is an
    `opsconductor.ledger.ExecutionLedger`, and `metrics` is an optional
    `opsconductor.metrics.Metrics`. `max_workers` bounds the number of
    concurrent searches and batch sends.
    """

    def __init__(
        self,
        credential_provider,
        work_queue,
        ledger,
        metrics=None,
        max_workers=10,
        max_pages=DEFAULT_MAX_PAGES,
    ):
        self.credential_provider = credential_provider
        self.work_queue = work_queue
        self.ledger = ledger
        self.metrics = metrics
        self.max_workers = max_workers
        self.max_pages = max_pages

    def select(self, request):
        """Runs the task described by `request` and returns a `SelectionResult`."""
        if not request.should_run:
            LOG.info("%s: %s", request.task_id, DISABLED_MESSAGE)
            return SelectionResult(request, skipped=True)

        try:
            resources = self.resources(request)

            parent_execution_id = str(uuid.uuid4())
            start_time = datetime.now(timezone.utc).strftime(TIME_FORMAT)
            LOG.info("number of resources to process: %d", len(resources))

            self.ledger.record(
                RunRecord(request.task_id, parent_execution_id, start_time, len(resources))
            )

            items = [
                WorkItem.for_resource(request, ref, parent_execution_id, start_time)
                for ref in resources
            ]
            if items:
                self.enqueue(items)

        except Exception:
            self._send_metric(
                "TaskExecutionFailed", event_data(request.name, request.action_name)
            )
            raise

        self._send_metric(
            request.event_type,
            event_data(request.name, request.action_name, len(resources)),
        )
        return SelectionResult(request, resources, parent_execution_id)

    def resources(self, request):
        """Returns the resources the run applies to as `ResourceRef` objects."""
        if request.is_passthrough:
            return [self._verify_passthrough(request)]

        LOG.info('searching for resources with tag "%s"', request.target_tag)
        cmd = TagSearch(self.credential_provider, request, self.max_pages)
        pairs = [(a, r) for a in request.accounts for r in request.regions]
        ConcurrentRunner(self.max_workers).run(cmd, pairs)
        return cmd.ordered_resources()

    def _verify_passthrough(self, request):
        ref = request.passthrough
        acct, region = ref.owner_account, ref.owner_region

        try:
            session = self.credential_provider.acquire(acct, region, request.task_id)
            directory = ResourceDirectory(session, region, self.max_pages)
            tagged = directory.has_tagged_resource(request.target_tag, ref)
        except Exception as e:
            raise DiscoveryFailure(
                f"Unable to verify the tags of {ref.arn} in {acct}/{region}: {e}"
            ) from e

        if not tagged:
            raise TagVerificationFailure(
                f"Resource {ref.arn} did not contain the tag: {request.target_tag}"
            )
        return ref

    def enqueue(self, items):
        """Sends the work `items` in concurrent batches.

        Raises `EnqueueFailure` naming the number of items that could not be
        sent. A batch whose send call raised counts all of its entries.
        """
        id_to_arn = {}
        entries = []
        for i, item in enumerate(items):
            msg_id = f"msg_id_{i}"
            id_to_arn[msg_id] = item.resource_arn
            entries.append({"Id": msg_id, "MessageBody": item.to_body()})

        batches = chunked(entries, SEND_BATCH_MAX)
        LOG.info("number of message batches to send to queue: %d", len(batches))

        results, errors = execute_function(
            range(len(batches)),
            lambda i: self.work_queue.send_batch(batches[i]),
            max_workers=self.max_workers,
        )

        failures = 0
        for failed in results.values():
            for f in failed:
                LOG.error(
                    "failed to add %s to the resource queue. Reason: %s (%s)",
                    id_to_arn.get(f.get("Id")),
                    f.get("Message"),
                    f.get("Code"),
                )
                failures += 1

        for i, e in errors.items():
            for entry in batches[i]:
                LOG.error(
                    "failed to add %s to the resource queue. Reason: %s",
                    id_to_arn[entry["Id"]],
                    e,
                )
            failures += len(batches[i])

        if failures:
            raise EnqueueFailure(
                f"Got {failures} error(s) while adding messages to the Resource Queue"
            )

    def _send_metric(self, event_type, data):
        if self.metrics is None:
            return
        self.metrics.send(event_type, data)
