#
# Copyright 2019 FMR LLC <opensource@fidelity.com>
#
# SPDX-License-Identifier: MIT
#
"""Searches an account and region for resources carrying a tag.

`ResourceDirectory` wraps the Resource Groups Tagging API of a boto3 session
obtained from a `opsconductor.session.CredentialProvider`:

    session = provider.acquire('111122223333', 'us-east-1', task_id)
    directory = ResourceDirectory(session, 'us-east-1')
    arns = directory.tagged_resources('Patch', ['ec2:instance'])

Pagination is bounded by `max_pages`. See `opsconductor.runner.paginate`.
"""

import logging

from opsconductor.arn import ResourceRef
from opsconductor.runner import DEFAULT_MAX_PAGES, get_paginated_resources, paginate

LOG = logging.getLogger(__name__)

RESOURCES_PER_PAGE = 100
"""Page size requested from the tagging API."""


class ResourceDirectory:
    """Tag search within a single account and region."""

    def __init__(self, session, region, max_pages=DEFAULT_MAX_PAGES):
        self.region = region
        self.max_pages = max_pages
        self._client = session.client("resourcegroupstaggingapi", region_name=region)

    def _search(self, tag_key, resource_types):
        request = {
            "TagFilters": [{"Key": tag_key}],
            "ResourcesPerPage": RESOURCES_PER_PAGE,
        }
        if resource_types:
            request["ResourceTypeFilters"] = list(resource_types)
        return request

    def tagged_resources(self, tag_key, resource_types=()):
        """Returns the ARNs of all resources tagged with `tag_key`.

        `resource_types` optionally restricts the search to resource types in
        the tagging API's `service[:resourceType]` form.
        """
        mappings = get_paginated_resources(
            self._client.get_resources,
            "ResourceTagMappingList",
            max_pages=self.max_pages,
            **self._search(tag_key, resource_types),
        )
        arns = [m["ResourceARN"] for m in mappings if m.get("ResourceARN")]
        LOG.info("found %d resource(s) tagged %s in %s", len(arns), tag_key, self.region)
        return arns

    def has_tagged_resource(self, tag_key, ref: ResourceRef, resource_types=()):
        """Returns `True` if the resource `ref` is tagged with `tag_key`.

        ARNs returned by the tagging API do not always have the same shape as
        the ones delivered in events, so resources are compared by their final
        ARN segment. Pages are fetched until the first match.
        """
        pages = paginate(
            self._client.get_resources,
            max_pages=self.max_pages,
            **self._search(tag_key, resource_types),
        )
        for page in pages:
            for mapping in page.get("ResourceTagMappingList") or []:
                if ref.matches_resource_id(mapping.get("ResourceARN") or ""):
                    return True
        return False
