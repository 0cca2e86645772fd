import logging
from typing import Dict, List, Optional, Sequence

from anycast_ip_controller.controller.models import Address, Tags
from anycast_ip_controller.controller.services.tencentcloud import TencentCloudClient
from anycast_ip_controller.controller.settings import (
    DESCRIBE_ADDRESSES_BATCH_SIZE,
    VPC_SERVICE,
)
from anycast_ip_controller.utils import chunked

logger = logging.getLogger(__name__)


class VpcService:
    """Network address operations of the cloud VPC API."""

    def __init__(self, client: TencentCloudClient) -> None:
        self._client = client

    async def _call(self, action: str, params: Dict) -> Dict:
        return await self._client.call(VPC_SERVICE, action, params)

    async def allocate_addresses(
        self,
        *,
        address_type: str,
        address_name: str,
        tags: Tags,
        anycast_zone: Optional[str] = None,
        bandwidth: Optional[int] = None,
    ) -> List[str]:
        params = {
            "AddressCount": 1,
            "AddressType": address_type,
            "AddressName": address_name,
            "Tags": [{"Key": key, "Value": value} for key, value in tags.items()],
        }

        if anycast_zone:
            params["AnycastZone"] = anycast_zone

        if bandwidth and bandwidth > 0:
            params["InternetMaxBandwidthOut"] = bandwidth

        response = await self._call("AllocateAddresses", params)

        return list(response.get("AddressSet") or [])

    async def describe_addresses(
        self,
        address_ids: Optional[Sequence[str]] = None,
        filters: Optional[Dict[str, Sequence[str]]] = None,
    ) -> List[Address]:
        """Describe addresses either by their ids or by the `name -> values` filters."""

        if address_ids is not None:
            addresses = []
            for batch in chunked(list(address_ids), DESCRIBE_ADDRESSES_BATCH_SIZE):
                response = await self._call("DescribeAddresses", {"AddressIds": list(batch)})
                addresses.extend(
                    Address.from_api(data) for data in response.get("AddressSet") or []
                )

            return addresses

        params = {
            "Filters": [
                {"Name": name, "Values": list(values)} for name, values in (filters or {}).items()
            ],
            "Limit": DESCRIBE_ADDRESSES_BATCH_SIZE,
        }

        addresses = []
        while True:
            params["Offset"] = len(addresses)
            response = await self._call("DescribeAddresses", params)

            page = response.get("AddressSet") or []
            addresses.extend(Address.from_api(data) for data in page)

            if len(page) < DESCRIBE_ADDRESSES_BATCH_SIZE or len(addresses) >= (
                response.get("TotalCount") or 0
            ):
                return addresses

    async def associate_address(self, address_id: str, instance_id: str) -> None:
        await self._call("AssociateAddress", {"AddressId": address_id, "InstanceId": instance_id})

    async def disassociate_address(self, address_id: str) -> None:
        await self._call("DisassociateAddress", {"AddressId": address_id})

    async def release_addresses(self, address_ids: Sequence[str]) -> None:
        await self._call("ReleaseAddresses", {"AddressIds": list(address_ids)})
