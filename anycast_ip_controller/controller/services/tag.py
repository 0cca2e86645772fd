import logging
from typing import Dict, List, Optional, Sequence, Tuple

from anycast_ip_controller.controller.services.tencentcloud import TencentCloudClient
from anycast_ip_controller.controller.settings import TAG_SERVICE

logger = logging.getLogger(__name__)


class TagService:
    """Tag search and tag namespace operations of the cloud Tag API.

    Search methods return a single page together with the total count reported by the provider,
    paging is left to the caller."""

    def __init__(self, client: TencentCloudClient) -> None:
        self._client = client

    async def _call(self, action: str, params: Dict) -> Dict:
        return await self._client.call(TAG_SERVICE, action, params)

    async def describe_resources_by_tags(
        self,
        tag_filters: Dict[str, Sequence[str]],
        *,
        service_type: str,
        resource_prefix: Optional[str] = None,
        offset: int = 0,
        limit: int,
    ) -> Tuple[List[str], int]:
        params = {
            "TagFilters": [
                {"TagKey": key, "TagValue": list(values)} for key, values in tag_filters.items()
            ],
            "ServiceType": service_type,
            "Offset": offset,
            "Limit": limit,
        }

        if resource_prefix:
            params["ResourcePrefix"] = resource_prefix

        response = await self._call("DescribeResourcesByTags", params)

        resource_ids = [row["ResourceId"] for row in response.get("Rows") or []]
        return resource_ids, (response.get("TotalCount") or 0)

    async def describe_resource_tags_by_tag_keys(
        self,
        resource_ids: Sequence[str],
        tag_keys: Sequence[str],
        *,
        service_type: str,
        resource_prefix: str,
        resource_region: str,
        offset: int = 0,
        limit: int,
    ) -> Tuple[List[Tuple[str, Dict[str, str]]], int]:
        """Return page of `(resource id, {tag key: tag value})` rows and the total row count."""

        response = await self._call(
            "DescribeResourceTagsByTagKeys",
            {
                "ServiceType": service_type,
                "ResourcePrefix": resource_prefix,
                "ResourceRegion": resource_region,
                "ResourceIds": list(resource_ids),
                "TagKeys": list(tag_keys),
                "Offset": offset,
                "Limit": limit,
            },
        )

        rows = [
            (
                row["ResourceId"],
                {tag["TagKey"]: tag["TagValue"] for tag in row.get("TagKeyValues") or []},
            )
            for row in response.get("Rows") or []
        ]

        return rows, (response.get("TotalCount") or 0)

    async def create_tag(self, key: str, value: str) -> None:
        await self._call("CreateTag", {"TagKey": key, "TagValue": value})
