#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Obtain boto3 sessions for the accounts and regions targeted by a task.

## Overview

When a task is created, a role is deployed into every target account for every
target region. The role is named after the account, region, and task:

    arn:aws:iam::111122223333:role/111122223333-us-east-1-<taskId>

The resource selector assumes this role to search for tagged resources. There
are two `CredentialProvider` implementations in this module:

`CredsViaTaskRole`
:  Credentials are obtained by assuming the per-task role from the identity of
the running process (the Lambda execution role in production).

`CredsViaDefault`
:  The ambient credentials of the process are used for every account. This is
only useful for local development against a single account.

## Quick Start

    session_provider = CredsViaTaskRole()
    session = session_provider.acquire('111122223333', 'us-east-1', task_id)
    tagging = session.client('resourcegroupstaggingapi')

## Caching

Credentials obtained via `assume_role` are cached in memory for half of the
session duration. Subsequent calls to `CredentialProvider.acquire` for the same
account, region, and task return a new boto3 Session built from the cached
credentials. STS grants sessions of at least 900 seconds and the task roles allow
at most 900, so the session duration is always 900 seconds.

## Thread Safety

The providers are thread-safe. A single instance can be shared by the workers
of `opsconductor.runner.ConcurrentRunner`. boto3 sessions, however, should not
be shared between threads, which is why a new Session is returned on every
call.
"""

import logging
import threading

import boto3

from opsconductor.cache import ExpiringCache
from opsconductor.config import MAX_ROLE_DURATION
from opsconductor.session import CredentialProvider

LOG = logging.getLogger(__name__)

ROLE_SESSION_NAME = "ops_conductor_query_by_tag"


class CachingCredentialProvider(CredentialProvider):
    """Abstract base class for providers that cache credentials.

    Users of this class must provide an implementation for `credentials` and
    must invoke its constructor. Credentials are cached per account, region,
    and task for half of `duration` seconds.
    """

    def __init__(self, duration=MAX_ROLE_DURATION):
        self._duration = min(duration, MAX_ROLE_DURATION)
        self._creds = ExpiringCache(self._duration / 2)

    def acquire(self, acct_id, region, task_id):
        creds = self._creds.get(
            (acct_id, region, task_id),
            lambda: self.credentials(acct_id, region, task_id),
        )

        return boto3.Session(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
            region_name=region,
        )

    def credentials(self, acct_id, region, task_id):
        """Returns a dict containing AWS credentials for the requested account.

        The returned dict must include the following keys: "AccessKeyId",
        "SecretAccessKey", and "SessionToken". It will be cached by the
        provider.
        """
        raise NotImplementedError


class CredsViaTaskRole(CachingCredentialProvider):
    """A credential provider that assumes the per-task role in each account.

    `sts` is an optional boto3 STS client used to assume the role. If it is
    not provided, one is created from the default session the first time it is
    needed. `partition` is the AWS partition used to build role ARNs.
    """

    def __init__(self, sts=None, partition="aws", duration=MAX_ROLE_DURATION):
        if duration < MAX_ROLE_DURATION:
            raise ValueError(f"duration must be at least {MAX_ROLE_DURATION} seconds")
        super().__init__(duration)
        self._sts = sts
        self._sts_lock = threading.Lock()
        self._partition = partition

    def role_arn(self, acct_id, region, task_id):
        """Returns the ARN of the role deployed for the task in the account."""
        return f"arn:{self._partition}:iam::{acct_id}:role/{acct_id}-{region}-{task_id}"

    def _sts_client(self):
        with self._sts_lock:
            if self._sts is None:
                self._sts = boto3.client("sts")
            return self._sts

    def credentials(self, acct_id, region, task_id):
        role_arn = self.role_arn(acct_id, region, task_id)
        LOG.info("Assuming task role %s", role_arn)

        assumed_role = self._sts_client().assume_role(
            RoleArn=role_arn,
            RoleSessionName=ROLE_SESSION_NAME,
            DurationSeconds=self._duration,
        )

        if not assumed_role or "Credentials" not in assumed_role:
            raise AWSAssumeRoleException(f"Cannot assume role: {role_arn}")

        return assumed_role["Credentials"]


class CredsViaDefault(CredentialProvider):
    """A credential provider that uses the ambient credentials of the process.

    Every account is accessed with the same credentials, so the account ID and
    task ID are ignored. Intended for local development only.
    """

    def acquire(self, acct_id, region, task_id):
        LOG.info("using default credentials for %s/%s", acct_id, region)
        return boto3.Session(region_name=region)


class AWSAssumeRoleException(Exception):
    """Raised if AWS role cannot be assumed."""
