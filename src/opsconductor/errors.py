#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Exceptions raised by the resource selector, dispatcher, and task manager.

## Overview

Every error surfaced to a caller of opsconductor is a subclass of
`OpsConductorError`. Each carries a stable `code`, an HTTP-like
`status_code`, and a human readable `message`. Callers that need a structured
result, such as the CLI or a synchronous Lambda invocation, can use
`OpsConductorError.to_dict`:

    >>> InvalidRequest('"taskId" was not present in the event').to_dict()
    {'code': 'InvalidRequest', 'statusCode': 400, 'message': '"taskId" was not present in the event'}

The hierarchy mirrors how errors are propagated:

`InputValidationError`
:  Bad or missing input. Never retried.

`DependencyFailure`
:  An external collaborator (role assumption, tag search, automation runner,
ledger) failed. Fatal for the whole invocation, so the trigger's own retry
policy applies.

`TagVerificationFailure`
:  An event-driven resource did not carry the task's target tag.

`EnqueueFailure`
:  Some work items could not be added to the work queue.

A partially failed dispatch tick and a saturated automation runner are not
errors. They are reported by `opsconductor.dispatcher.DispatchResult`.
"""


class OpsConductorError(Exception):
    """Base class of all opsconductor errors."""

    code = "InternalError"
    status_code = 500

    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        """Returns the structured representation of this error."""
        return {
            "code": self.code,
            "statusCode": self.status_code,
            "message": self.message,
        }


class InputValidationError(OpsConductorError):
    """Raised when required input is missing or malformed."""

    code = "InputValidation"
    status_code = 400


class InvalidRequest(InputValidationError):
    """Raised when a trigger payload fails validation."""

    code = "InvalidRequest"


class MalformedMessage(InputValidationError):
    """Raised when a work queue message body cannot be decoded."""

    code = "MalformedMessage"


class TaskNotFound(InputValidationError):
    """Raised when a task does not exist in the task store."""

    code = "TaskNotFound"
    status_code = 404


class TagVerificationFailure(OpsConductorError):
    """Raised when a passthrough resource does not carry the target tag."""

    code = "TagVerificationFailure"
    status_code = 400


class DependencyFailure(OpsConductorError):
    """Raised when an external service call fails during setup."""

    code = "DependencyFailure"
    status_code = 500


class DiscoveryFailure(DependencyFailure):
    """Raised if a role cannot be assumed or the tag search fails."""

    code = "DiscoveryFailure"


class CapacityQueryFailure(DependencyFailure):
    """Raised if the automation runner's load cannot be determined."""

    code = "CapacityQueryFailure"


class LedgerWriteFailure(DependencyFailure):
    """Raised if the run record cannot be written to the execution ledger."""

    code = "LedgerWriteFailure"


class PaginationLimitExceeded(DependencyFailure):
    """Raised if a paginated API keeps returning tokens past the page cap."""

    code = "PaginationLimitExceeded"


class TaskLifecycleFailure(DependencyFailure):
    """Raised when schedule wiring or a remote task execution fails."""

    code = "TaskLifecycleFailure"


class EnqueueFailure(OpsConductorError):
    """Raised when one or more work items could not be enqueued."""

    code = "EnqueueFailure"
    status_code = 500
