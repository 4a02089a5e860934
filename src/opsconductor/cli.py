#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""The operator CLI for running the pipeline outside of Lambda.

## Overview

The `opsconductor` command runs the same code as the Lambda functions from a
workstation, which is useful to test a task definition or to drain a queue by
hand. Settings are resolved as described in `opsconductor.config`, and the
`CLI` section of the configuration file provides defaults for the flags:

    CLI:
      threads: 10
      log_level: ERROR
      credentials: task-role
      queue_url: https://sqs.us-east-1.amazonaws.com/111122223333/resource-queue

## Commands

`select --event FILE`
:  Run the resource selector with the trigger payload in FILE (`-` for stdin).

`select --task-id ID`
:  Run the resource selector for a stored task as a manual run.

`dispatch [--queue-url URL]`
:  Run one admission-controlled dispatcher tick.

`quota`
:  Print the number of messages the dispatcher would read right now.

`run-task ID`
:  Run a task through the deployed resource selector function.

`schedule ID` / `unschedule ID`
:  Create or remove the schedule rule of a stored task.

Errors are printed to standard error as JSON. Set `OPSCONDUCTOR_TRACE=1` to
include a stack trace.
"""

import argparse
import json
import logging
import os
import sys
import traceback
from functools import partial

from opsconductor import __version__
from opsconductor.config import URL, Choice, Config, Int, Settings, Str, config_filename
from opsconductor.errors import InvalidRequest, OpsConductorError
from opsconductor.handlers import build_dispatcher, build_selector
from opsconductor.models import TaskRunRequest
from opsconductor.session.aws import CredsViaDefault
from opsconductor.tasks import TaskLifecycle, TaskStore, run_event
from opsconductor.workqueue import WorkQueue

LOG = logging.getLogger(__name__)

SHORT_DESCRIPTION = """
Select tagged resources for a task and dispatch them to the automation runner.
"""

LOG_LEVELS = ["DEBUG", "INFO", "WARN", "ERROR"]


def main():
    """The main entry point for the `opsconductor` CLI tool.

    Exits with a `0` status code upon success. Upon error, prints the error to
    standard error and exits with `1`. A stack trace is printed only if the
    `OPSCONDUCTOR_TRACE` environment variable is set.
    """
    try:
        _cli(sys.argv[1:])

    except Exception as e:  # pylint: disable=broad-except
        if os.getenv("OPSCONDUCTOR_TRACE"):
            traceback.print_exc(file=sys.stderr)

        if isinstance(e, OpsConductorError):
            print(json.dumps(e.to_dict()), file=sys.stderr)
        else:
            print(e, file=sys.stderr)
        sys.exit(1)


def _parser(cfg):
    parser = argparse.ArgumentParser(
        prog="opsconductor",
        allow_abbrev=False,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
        description=SHORT_DESCRIPTION,
    )

    parser.add_argument(
        "--threads",
        metavar="N",
        type=int,
        default=cfg("threads", type=Int, default=None),
        help="number of concurrent threads to use",
    )

    parser.add_argument(
        "--log-level",
        default=cfg("log_level", type=Choice(*LOG_LEVELS), default="ERROR"),
        choices=LOG_LEVELS,
        help="set the logging level",
    )

    parser.add_argument(
        "--credentials",
        default=cfg("credentials", type=Choice("task-role", "default"), default="task-role"),
        choices=["task-role", "default"],
        help="assume the per-task role or use the ambient credentials",
    )

    parser.add_argument("--version", action="version", version="%(prog)s " + __version__)

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    select = commands.add_parser("select", help="run the resource selector")
    source = select.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--event",
        metavar="FILE",
        type=argparse.FileType("r"),
        help="JSON trigger payload",
    )
    source.add_argument("--task-id", metavar="ID", help="stored task to run")

    dispatch = commands.add_parser("dispatch", help="run one dispatcher tick")
    dispatch.add_argument(
        "--queue-url",
        metavar="URL",
        default=cfg("queue_url", type=URL),
        help="work queue to drain (defaults to the resource queue)",
    )

    commands.add_parser("quota", help="print the current admission quota")

    for name, desc in (
        ("run-task", "run a task through the deployed selector function"),
        ("schedule", "create or update the schedule rule of a task"),
        ("unschedule", "remove the schedule rule of a task"),
    ):
        cmd = commands.add_parser(name, help=desc)
        cmd.add_argument("task_id", metavar="ID", help="task identifier")

    return parser


def _cli(argv):
    """Parses command line arguments and runs the requested command."""
    config = Config.from_file(config_filename())
    cfg = partial(config.get, "CLI", type=Str)
    args = _parser(cfg).parse_args(argv)

    logging.basicConfig(
        level=args.log_level,
        format="%(asctime)s %(name)s %(levelname)s [%(threadName)s] %(message)s",
    )

    settings = Settings(config)
    if args.threads is not None:
        settings.max_workers = args.threads

    if args.command == "select":
        print(_select(settings, args))

    elif args.command == "dispatch":
        queue_url = args.queue_url or settings.resource_queue_url
        if not queue_url:
            raise InvalidRequest("No queue URL, use --queue-url or set ResourceQueueUrl")
        print(build_dispatcher(settings).tick(WorkQueue(queue_url)).message)

    elif args.command == "quota":
        print(build_dispatcher(settings).quota())

    else:
        lifecycle = _lifecycle(settings)
        if args.command == "run-task":
            print(json.dumps(lifecycle.execute_task(args.task_id)))
        elif args.command == "schedule":
            task = lifecycle.store.get_task(args.task_id)
            print(lifecycle.put_schedule(task) or "Task is not scheduled")
        elif args.command == "unschedule":
            removed = lifecycle.delete_schedule(args.task_id)
            print("Schedule removed" if removed else "Task has no schedule")


def _select(settings, args):
    if args.event:
        with args.event as f:
            event = json.load(f)
    else:
        event = run_event(_task_store(settings).get_task(args.task_id), manual=True)

    request = TaskRunRequest.from_event(event)
    provider = CredsViaDefault() if args.credentials == "default" else None
    return build_selector(settings, provider).select(request).message


def _task_store(settings):
    if not settings.tasks_table:
        raise InvalidRequest("No tasks table, set TasksTableName or Tasks.table")
    return TaskStore(settings.tasks_table)


def _lifecycle(settings):
    if not settings.selector_function_arn:
        raise InvalidRequest(
            "No selector function, set ResourceSelectorArn or Tasks.selector_function_arn"
        )
    return TaskLifecycle(_task_store(settings), settings.selector_function_arn)


if __name__ == "__main__":
    main()
