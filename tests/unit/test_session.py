#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#

# pylint: disable=redefined-outer-name,missing-docstring

from datetime import timedelta

import pytest
from freezegun import freeze_time

from opsconductor.session import CredentialProvider
from opsconductor.session.aws import (
    AWSAssumeRoleException,
    CredsViaDefault,
    CredsViaTaskRole,
)

CREDS = {
    "AccessKeyId": "AKIAEXAMPLE",
    "SecretAccessKey": "secret",
    "SessionToken": "token",
}


@pytest.fixture
def sts(mocker):
    client = mocker.MagicMock()
    client.assume_role.return_value = {"Credentials": CREDS}
    return client


@pytest.fixture
def boto3_session(mocker):
    return mocker.patch("opsconductor.session.aws.boto3.Session")


def test_credential_provider_is_abstract():
    with pytest.raises(NotImplementedError):
        CredentialProvider().acquire("111122223333", "us-east-1", "task-1")


def test_role_arn(sts):
    provider = CredsViaTaskRole(sts=sts)
    assert (
        provider.role_arn("111122223333", "us-east-1", "task-1")
        == "arn:aws:iam::111122223333:role/111122223333-us-east-1-task-1"
    )
    assert CredsViaTaskRole(sts=sts, partition="aws-cn").role_arn(
        "1", "cn-north-1", "t"
    ) == "arn:aws-cn:iam::1:role/1-cn-north-1-t"


def test_acquire_assumes_task_role(sts, boto3_session):
    provider = CredsViaTaskRole(sts=sts, duration=3600)
    session = provider.acquire("111122223333", "us-east-1", "task-1")

    sts.assume_role.assert_called_once_with(
        RoleArn="arn:aws:iam::111122223333:role/111122223333-us-east-1-task-1",
        RoleSessionName="ops_conductor_query_by_tag",
        DurationSeconds=900,
    )
    boto3_session.assert_called_once_with(
        aws_access_key_id="AKIAEXAMPLE",
        aws_secret_access_key="secret",
        aws_session_token="token",
        region_name="us-east-1",
    )
    assert session is boto3_session.return_value


def test_acquire_caches_credentials(sts, boto3_session):
    with freeze_time() as frozen_datetime:
        provider = CredsViaTaskRole(sts=sts)
        provider.acquire("111122223333", "us-east-1", "task-1")
        provider.acquire("111122223333", "us-east-1", "task-1")
        assert sts.assume_role.call_count == 1

        provider.acquire("111122223333", "us-west-2", "task-1")
        assert sts.assume_role.call_count == 2

        frozen_datetime.tick(delta=timedelta(seconds=451))
        provider.acquire("111122223333", "us-east-1", "task-1")
        assert sts.assume_role.call_count == 3
        assert boto3_session.call_count == 4


def test_acquire_empty_response(sts, boto3_session):
    sts.assume_role.return_value = {}
    provider = CredsViaTaskRole(sts=sts)
    with pytest.raises(AWSAssumeRoleException):
        provider.acquire("111122223333", "us-east-1", "task-1")
    boto3_session.assert_not_called()


def test_sts_client_created_lazily(mocker, sts, boto3_session):
    client = mocker.patch("opsconductor.session.aws.boto3.client", return_value=sts)
    provider = CredsViaTaskRole()
    client.assert_not_called()
    provider.acquire("111122223333", "us-east-1", "task-1")
    client.assert_called_once_with("sts")


def test_creds_via_default(boto3_session):
    CredsViaDefault().acquire("111122223333", "eu-west-1", "task-1")
    boto3_session.assert_called_once_with(region_name="eu-west-1")


@pytest.mark.parametrize("duration", [0, 300, 899])
def test_task_role_duration_below_minimum(sts, duration):
    with pytest.raises(ValueError):
        CredsViaTaskRole(sts=sts, duration=duration)
