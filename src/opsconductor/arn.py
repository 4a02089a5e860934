#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Parse Amazon Resource Names into their components.

## Overview

`ResourceRef` is the parsed identity of a resource selected by a task. ARNs are
accepted in the three shapes documented in [ARN
formats](https://docs.aws.amazon.com/general/latest/gr/aws-arns-and-namespaces.html):

    arn:partition:service:region:account-id:resource-id
    arn:partition:service:region:account-id:resource-type/resource-id
    arn:partition:service:region:account-id:resource-type:resource-id

For example:

    >>> ref = ResourceRef.parse('arn:aws:ec2:us-east-1:111122223333:instance/i-0abc')
    >>> ref.resource_type, ref.resource_id
    ('instance', 'i-0abc')
    >>> ref.to_arn()
    'arn:aws:ec2:us-east-1:111122223333:instance/i-0abc'

An ARN that does not match one of these shapes raises
`opsconductor.errors.InvalidRequest`. Unparseable references are never dropped.
"""

from opsconductor.errors import InvalidRequest


class ResourceRef:
    """The components of a parsed ARN.

    `arn` is the original, fully-qualified reference string. It is used as the
    correlation key when enqueueing work items. `resource_account` and
    `resource_region` optionally override the owner account and region, which
    is needed for event-driven resources whose ARN omits them (global
    resources such as S3 buckets have an empty region segment).
    """

    def __init__(
        self,
        partition,
        service,
        region,
        account_id,
        resource_type,
        resource_id,
        arn,
        resource_account=None,
        resource_region=None,
    ):
        self.partition = partition
        self.service = service
        self.region = region
        self.account_id = account_id
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.arn = arn
        self.resource_account = resource_account
        self.resource_region = resource_region

    @classmethod
    def parse(cls, arn):
        """Returns a `ResourceRef` for the `arn` string."""
        if not isinstance(arn, str):
            raise InvalidRequest(f"ARN ({arn}) is not in an expected format")

        parts = arn.split(":")
        if len(parts) not in (6, 7) or parts[0] != "arn":
            raise InvalidRequest(f"ARN ({arn}) is not in an expected format")

        _, partition, service, region, account_id = parts[:5]

        if len(parts) == 7:
            resource_type, resource_id = parts[5], parts[6]
        elif "/" in parts[5]:
            resource_type, resource_id = parts[5].split("/", 1)
        else:
            resource_type, resource_id = None, parts[5]

        if not resource_id:
            raise InvalidRequest(f"ARN ({arn}) does not contain a resource ID")

        return cls(
            partition, service, region, account_id, resource_type, resource_id, arn
        )

    @property
    def owner_account(self):
        """Account that owns the resource."""
        return self.resource_account or self.account_id

    @property
    def owner_region(self):
        """Region where the resource lives."""
        return self.resource_region or self.region

    def to_arn(self):
        """Returns the ARN rebuilt from the parsed components.

        Resource types are always joined with a slash, so a 7-segment ARN is
        serialized in the equivalent `resource-type/resource-id` form.
        """
        prefix = f"arn:{self.partition}:{self.service}:{self.region}:{self.account_id}"
        if self.resource_type:
            return f"{prefix}:{self.resource_type}/{self.resource_id}"
        return f"{prefix}:{self.resource_id}"

    def components(self):
        """Returns the identity tuple used for equivalence checks."""
        return (
            self.partition,
            self.service,
            self.region,
            self.account_id,
            self.resource_type,
            self.resource_id,
        )

    def matches_resource_id(self, other_arn):
        """Returns `True` if `other_arn` names the same resource.

        The tagging API and event sources do not always render ARNs the same
        way, so only the final colon-delimited segment is compared.
        """
        return other_arn.split(":")[-1] == self.arn.split(":")[-1]

    def __eq__(self, other):
        if not isinstance(other, ResourceRef):
            return NotImplemented
        return self.components() == other.components()

    def __hash__(self):
        return hash(self.components())

    def __repr__(self):
        return f"ResourceRef({self.arn!r})"

    def __str__(self):
        return self.arn
