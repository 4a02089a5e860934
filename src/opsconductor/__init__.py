#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Fan tagged resources out to automations with admission control.

## Overview

`opsconductor` runs an operational action, an automation document, against
every resource that carries a given tag across a set of accounts and regions.
A run flows through two stages connected by a durable work queue:

1. The resource selector (`opsconductor.selector`) receives a task run
   request from a schedule, an event, or an operator. It resolves the
   resources to act on, records the run in the execution ledger, and enqueues
   one work item per resource.
2. The dispatcher (`opsconductor.dispatcher`) runs periodically. It measures
   the live load of the automation runner, reads only as many work items as
   the runner can start without queueing them itself, and starts one
   automation per item.

The task lifecycle manager (`opsconductor.tasks`) wires stored tasks to the
selector through schedule rules and runs them on demand.

### Lambda Usage

The two stages are deployed as the Lambda functions
`opsconductor.handlers.resource_selector` and
`opsconductor.handlers.queue_consumer`, configured with environment variables
as described in `opsconductor.config`.

### Library Usage

Every component receives its AWS clients in its constructor, so the pipeline
can be driven from a script:

    from opsconductor.automation import AutomationRunner
    from opsconductor.dispatcher import Dispatcher
    from opsconductor.workqueue import WorkQueue

    result = Dispatcher(AutomationRunner()).tick(WorkQueue(queue_url))
    print(result.message)

### CLI Usage

The `opsconductor` command is documented in `opsconductor.cli`.
"""

name = "opsconductor"
__version__ = "1.0.0"
