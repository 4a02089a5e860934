#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Obtain sessions scoped to an account and region.

## Overview

This module provides a `CredentialProvider` interface to acquire credentials
for the accounts and regions a task targets. Regardless of the mechanism, the
provider is responsible for returning a boto3 Session loaded with the requested
credentials and bound to the requested region.

`opsconductor.session.aws`
:  Providers that assume the per-task role deployed in each target account, or
that use the ambient credentials of the process.
"""


class CredentialProvider:
    """A credential provider is used to obtain sessions for accounts.

    This is an abstract base class and cannot be instantiated directly.
    """

    def acquire(self, acct_id, region, task_id):
        """Returns a session with credentials for the requested account.

        The `acct_id` is a string containing the account ID, `region` is the
        region the session is bound to, and `task_id` identifies the task on
        whose behalf the session is used. The returned session object is ready
        to use and loaded with the requested credentials.
        """
        raise NotImplementedError
