#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Executes a `Command` across a set of independent work items concurrently.

## Overview

Both halves of the pipeline spend their time waiting on I/O-bound service
calls: the resource selector searches for tagged resources in every account and
region of a task and sends batches of messages to the work queue, while the
dispatcher counts the active steps of each running automation and starts one
automation per message. Each of these is a set of independent calls that is
fanned out, awaited, and aggregated. This module provides that primitive.

`Command` is the unit of work executed for each item by the
`ConcurrentRunner`. `RegionalCommand` is a `Command` whose items are
(account, region) pairs. It acquires a session for each pair from a
`opsconductor.session.CredentialProvider` before invoking
`RegionalCommand.regional_execute`.

## Basic Usage

    from opsconductor.runner import ConcurrentRunner, RegionalCommand
    from opsconductor.session.aws import CredsViaTaskRole

    class CountInstances(RegionalCommand):
        def __init__(self, credential_provider, task_id):
            super().__init__(credential_provider, task_id)
            self.counts = {}

        def regional_execute(self, session, acct, region):
            ec2 = session.client('ec2')
            return len(ec2.describe_instances()['Reservations'])

        def regional_collect_results(self, acct, region, get_result):
            self.counts[(acct, region)] = get_result()

    cmd = CountInstances(CredsViaTaskRole(), task_id)
    ConcurrentRunner(max_workers=10).run(cmd, [('111122223333', 'us-east-1')])

## Collecting Results

`Command.execute` is invoked concurrently, so it must not mutate instance
variables without synchronization. `Command.collect_results` is guaranteed to
be called sequentially by the thread that invoked `ConcurrentRunner.run`, so
commands accumulate results there. The default implementation re-raises the
exception of a failed item, which aborts the run after the pool drains.

For ad-hoc fan-outs, `execute_function` wraps a plain function and returns two
dicts of results and errors keyed by item.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from opsconductor.errors import PaginationLimitExceeded
from opsconductor.session import CredentialProvider

LOG = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 1000
"""Default cap on the number of pages fetched by `paginate`."""


class Command:
    """Abstract base class that represents work to execute for each item.

    A command is executed concurrently across a list of items by the
    `ConcurrentRunner`. Subclasses must implement `Command.execute`.
    """

    def pre_hook(self):
        """Invoked by `ConcurrentRunner.run` once before any item is processed.

        The default implementation does nothing.
        """

    def post_hook(self):
        """Invoked by `ConcurrentRunner.run` once after all items are processed.

        The default implementation does nothing. It is not invoked if
        `Command.collect_results` raised an exception.
        """

    def execute(self, item):
        """Invoked by `ConcurrentRunner.run` in a worker thread for each item.

        The return value can be of any type and is made available to
        `Command.collect_results`, as is any exception raised. This method is
        invoked concurrently, so modification of instance variables requires
        synchronization.
        """
        raise NotImplementedError

    def collect_results(self, item, get_result):
        """Invoked by `ConcurrentRunner.run` after an item has been processed.

        `get_result` is a callable that returns the value returned by
        `Command.execute` or raises the exception it raised. This method is
        called sequentially, so it is safe to mutate instance variables here.

        The default implementation invokes `get_result`, which re-raises the
        exception of a failed item and aborts the run.
        """
        get_result()


class RegionalCommand(Command):
    """Abstract base class for commands run across accounts and regions.

    Items processed by a regional command are `(acct_id, region)` tuples. For
    each item, a session is acquired from `credential_provider` on behalf of
    `task_id`, then `RegionalCommand.regional_execute` is invoked with it. A
    failure to acquire the session is reported the same way as a failure
    within `regional_execute`.
    """

    def __init__(self, credential_provider, task_id):
        if not isinstance(credential_provider, CredentialProvider):
            raise TypeError(
                f"'{credential_provider}' must be a subclass of "
                "opsconductor.session.CredentialProvider"
            )
        self.credential_provider = credential_provider
        self.task_id = task_id

    def execute(self, item):
        acct, region = item
        session = self.credential_provider.acquire(acct, region, self.task_id)
        return self.regional_execute(session, acct, region)

    def regional_execute(self, session, acct, region):
        """Invoked in a worker thread to process an account / region pair.

        Subclasses must implement this method. The `session` is a boto3
        Session with credentials for `acct` bound to `region`.
        """
        raise NotImplementedError

    def collect_results(self, item, get_result):
        acct, region = item
        self.regional_collect_results(acct, region, get_result)

    def regional_collect_results(self, acct, region, get_result):
        """Invoked sequentially after an account / region pair is processed.

        The default implementation re-raises the exception of a failed pair.
        """
        get_result()


class CommandFunctionAdapter(Command):
    """Function adapter for a `Command`.

    This adapter wraps `func` in a `Command` that collects the results of the
    function and any exceptions raised in two instance variables. These are
    available for inspection after `ConcurrentRunner.run` has returned.
    """

    def __init__(self, func):
        super().__init__()
        self.func = func

        self.results = {}
        """Dict containing results keyed by item."""

        self.errors = {}
        """Dict containing exceptions keyed by item."""

    def execute(self, item):
        return self.func(item)

    def collect_results(self, item, get_result):
        try:
            self.results[item] = get_result()
        except Exception as e:  # pylint: disable=broad-except
            self.errors[item] = e


def execute_function(items, func, max_workers=10):
    """Executes `func` for each of the `items` concurrently.

    Returns a tuple of dicts representing the results and errors after all
    items have been processed. Both dicts are keyed by item, so items must be
    hashable and distinct.
    """
    command = CommandFunctionAdapter(func)
    ConcurrentRunner(max_workers=max_workers).run(command, items)
    return (command.results, command.errors)


class ConcurrentRunner:
    """Runs a `Command` across a list of items.

    A thread pool is used to process the items. By default, the number of
    workers is 10 unless the `max_workers` argument has been specified. Any
    exceptions raised during the execution of a command are caught in the
    worker and handed to `Command.collect_results`.
    """

    def __init__(self, max_workers=10):
        if max_workers < 1:
            raise ValueError("max_workers must be a positive integer")
        self.max_workers = max_workers

    def run(self, cmd, items):
        """Execute a command concurrently on the specified items.

        This method blocks until all items have been processed and returns the
        number of seconds it took. `Command.pre_hook` is invoked once first,
        `Command.execute` is invoked by a worker for each item, and as each
        one finishes, `Command.collect_results` is invoked by the calling
        thread. Finally, `Command.post_hook` is called.
        """
        if not isinstance(cmd, Command):
            raise TypeError(f"'{cmd}' must be a subclass of opsconductor.runner.Command")

        items = list(items)
        start = time.time()
        cmd.pre_hook()

        if items:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(items))) as pool:
                f2i = {pool.submit(_wrap_result, cmd.execute, i): i for i in items}
                for future in as_completed(f2i):
                    cmd.collect_results(f2i[future], future.result())

        cmd.post_hook()
        elapsed = time.time() - start
        LOG.debug("processed %d item(s) in %.3fs", len(items), elapsed)
        return elapsed


def paginate(
    fetch,
    token_key="PaginationToken",
    max_pages=DEFAULT_MAX_PAGES,
    **kwargs,
):
    """Yields the pages of a token-paginated API call.

    `fetch` is a callable such as a boto3 client method. It is called with the
    `kwargs` and, after the first page, with the token from the previous page
    under `token_key`. The sequence ends when a page has no token or a blank
    one. If more than `max_pages` pages would be fetched, a
    `opsconductor.errors.PaginationLimitExceeded` is raised instead of looping
    forever on a misbehaving service.

    The sequence is lazy, so a consumer can stop early:

        for page in paginate(client.get_resources, TagFilters=[{'Key': tag}]):
            if found(page):
                break
    """
    token = None
    for _ in range(max_pages):
        request = dict(kwargs)
        if token:
            request[token_key] = token

        page = fetch(**request)
        yield page

        token = (page.get(token_key) or "").strip()
        if not token:
            return

    raise PaginationLimitExceeded(
        f"Stopped after {max_pages} pages, the service kept returning a {token_key}"
    )


def get_paginated_resources(
    fetch,
    page_key,
    predicate: Callable[[dict], bool] = lambda _: True,
    token_key="PaginationToken",
    max_pages=DEFAULT_MAX_PAGES,
    **kwargs,
):
    """Return the full list of resources via `paginate`.

    `page_key` is the name of the list in each page. `predicate` is a function
    that determines which resources are included in the list. For example, to
    collect the ARNs of resources tagged with `Owner`:

        mappings = get_paginated_resources(
            tagging.get_resources,
            "ResourceTagMappingList",
            TagFilters=[{"Key": "Owner"}])
    """
    resources = []
    for page in paginate(fetch, token_key, max_pages, **kwargs):
        for resource in page.get(page_key) or []:
            if predicate(resource):
                resources.append(resource)
    return resources


def chunked(items, size):
    """Splits `items` into consecutive lists of at most `size` elements."""
    if size < 1:
        raise ValueError("chunk size must be a positive integer")
    items = list(items)
    return [items[i : i + size] for i in range(0, len(items), size)]


def _wrap_result(fn, *args, **kwargs):
    """Returns a function that encapsulates the result of `fn(*args, **kwargs)`.

    When the returned function is invoked, it will return the result of the
    original computation or re-raise any exception that was thrown.
    """
    try:
        result = fn(*args, **kwargs)
        return lambda: result
    except Exception as e:  # pylint: disable=broad-except
        return _wrap_exception(e)


def _wrap_exception(exception):
    """Returns a function that when invoked will raise `exception`."""

    def fn():
        raise exception

    return fn
