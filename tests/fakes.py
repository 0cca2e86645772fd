"""In-memory stand-ins of the cloud and cluster services, recording every call made to them."""

import itertools
from typing import Dict, List, Optional, Sequence, Set, Tuple

from kubernetes_asyncio import client

from anycast_ip_controller.controller.models import Address, Tags
from anycast_ip_controller.controller.settings import (
    ADDRESS_STATUS_BOUND,
    ADDRESS_STATUS_UNBOUND,
)
from anycast_ip_controller.exceptions import CloudApiError, KubernetesError

CLUSTER_UUID = "11111111-2222-3333-4444-555555555555"
CLUSTER_ID = "cls-test"
REGION = "ap-guangzhou"

TAG_NOT_EXISTED = "InvalidParameterValue.TagNotExisted"
TAG_DUPLICATE = "ResourceInUse.TagDuplicate"


class FakeCloud:
    """Addresses and tag namespace shared by the fake VPC and Tag services.

    Associate and disassociate calls only schedule the status change, `settle` applies them, the
    same way the provider binds addresses asynchronously.
    """

    def __init__(self, *, require_existing_tags: bool = False) -> None:
        self.addresses: Dict[str, Address] = {}
        self.known_tags: Optional[Set[Tuple[str, str]]] = set() if require_existing_tags else None
        self.pending: Dict[str, Optional[str]] = {}
        self.calls: List[Tuple] = []
        self.errors: Dict[str, List[Exception]] = {}
        self._ids = itertools.count(1)

        self.vpc = FakeVpcService(self)
        self.tag = FakeTagService(self)

    def add_address(self, address: Address) -> Address:
        self.addresses[address.address_id] = address
        return address

    def fail(self, method: str, *errors: Exception) -> None:
        """Make the next calls of the method raise the errors, one per call."""

        self.errors.setdefault(method, []).extend(errors)

    def record(self, method: str, *args) -> None:
        self.calls.append((method, *args))

        errors = self.errors.get(method)
        if errors:
            raise errors.pop(0)

    def calls_of(self, method: str) -> List[Tuple]:
        return [call[1:] for call in self.calls if call[0] == method]

    def settle(self) -> None:
        for address_id, instance_id in self.pending.items():
            address = self.addresses.get(address_id)
            if address is None:
                continue

            address.instance_id = instance_id
            address.address_status = ADDRESS_STATUS_BOUND if instance_id else ADDRESS_STATUS_UNBOUND

        self.pending.clear()

    def next_address_id(self) -> str:
        return f"eip-{next(self._ids):03d}"


class FakeVpcService:
    def __init__(self, cloud: FakeCloud) -> None:
        self._cloud = cloud

    async def allocate_addresses(
        self,
        *,
        address_type: str,
        address_name: str,
        tags: Tags,
        anycast_zone: Optional[str] = None,
        bandwidth: Optional[int] = None,
    ) -> List[str]:
        self._cloud.record("allocate_addresses", address_type, dict(tags))

        if self._cloud.known_tags is not None and not set(tags.items()) <= self._cloud.known_tags:
            raise CloudApiError(TAG_NOT_EXISTED, "tag not existed", "req-1")

        address_id = self._cloud.next_address_id()
        self._cloud.add_address(
            Address(
                address_id=address_id,
                address_ip=f"198.51.100.{len(self._cloud.addresses) + 1}",
                address_status=ADDRESS_STATUS_UNBOUND,
                address_type=address_type,
                tags=dict(tags),
            )
        )
        return [address_id]

    async def describe_addresses(
        self,
        address_ids: Optional[Sequence[str]] = None,
        filters: Optional[Dict[str, Sequence[str]]] = None,
    ) -> List[Address]:
        self._cloud.record("describe_addresses", address_ids, filters)

        if address_ids is not None:
            addresses = [
                self._cloud.addresses[address_id]
                for address_id in address_ids
                if address_id in self._cloud.addresses
            ]
        else:
            filters = filters or {}
            addresses = [
                address
                for address in self._cloud.addresses.values()
                if address.instance_id in filters.get("instance-id", [address.instance_id])
                and address.address_type in filters.get("address-type", [address.address_type])
            ]

        return [address.model_copy(deep=True) for address in addresses]

    async def associate_address(self, address_id: str, instance_id: str) -> None:
        self._cloud.record("associate_address", address_id, instance_id)
        self._cloud.pending[address_id] = instance_id

    async def disassociate_address(self, address_id: str) -> None:
        self._cloud.record("disassociate_address", address_id)
        self._cloud.pending[address_id] = None

    async def release_addresses(self, address_ids: Sequence[str]) -> None:
        self._cloud.record("release_addresses", list(address_ids))

        for address_id in address_ids:
            address = self._cloud.addresses.get(address_id)
            if address is not None and address.address_status == ADDRESS_STATUS_BOUND:
                raise CloudApiError(
                    "InvalidAddressIdStatus.NotPermit", f"{address_id} is bound", "req-2"
                )

        for address_id in address_ids:
            self._cloud.addresses.pop(address_id, None)


class FakeTagService:
    def __init__(self, cloud: FakeCloud) -> None:
        self._cloud = cloud

    async def describe_resources_by_tags(
        self,
        tag_filters: Dict[str, Sequence[str]],
        *,
        service_type: str,
        resource_prefix: Optional[str] = None,
        offset: int = 0,
        limit: int,
    ) -> Tuple[List[str], int]:
        self._cloud.record("describe_resources_by_tags", dict(tag_filters), offset, limit)

        resource_ids = [
            address_id
            for address_id, address in self._cloud.addresses.items()
            if all(address.tags.get(key) in values for key, values in tag_filters.items())
        ]
        return resource_ids[offset : offset + limit], len(resource_ids)

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
        self._cloud.record("describe_resource_tags_by_tag_keys", list(resource_ids), offset)

        rows = [
            (
                address_id,
                {
                    key: self._cloud.addresses[address_id].tags[key]
                    for key in tag_keys
                    if key in self._cloud.addresses[address_id].tags
                },
            )
            for address_id in resource_ids
            if address_id in self._cloud.addresses
        ]
        return rows[offset : offset + limit], len(rows)

    async def create_tag(self, key: str, value: str) -> None:
        self._cloud.record("create_tag", key, value)

        if self._cloud.known_tags is None:
            return

        if (key, value) in self._cloud.known_tags:
            raise CloudApiError(TAG_DUPLICATE, "tag duplicate", "req-3")

        self._cloud.known_tags.add((key, value))


class FakeKubernetesService:
    def __init__(self, nodes: Sequence[client.V1Node] = ()) -> None:
        self.nodes: Dict[str, client.V1Node] = {node.metadata.name: node for node in nodes}
        self.config_maps: Dict[Tuple[str, str], client.V1ConfigMap] = {}
        self.events: List[Tuple[str, str, str]] = []
        self.patches: List[Tuple[str, Dict]] = []
        self.patch_error: Optional[Exception] = None

    def event_reasons(self, node_name: str) -> List[str]:
        return [reason for name, reason, _ in self.events if name == node_name]

    async def get_node(self, name: str) -> Optional[client.V1Node]:
        return self.nodes.get(name)

    async def list_node_names(self) -> List[str]:
        return list(self.nodes)

    async def patch_node(self, name: str, body: Dict) -> client.V1Node:
        self.patches.append((name, body))

        if self.patch_error is not None:
            raise self.patch_error

        node = self.nodes[name]

        if "spec" in body:
            node.spec.taints = list(body["spec"]["taints"]) or None

        if "metadata" in body:
            annotations = dict(node.metadata.annotations or {})
            for key, value in body["metadata"]["annotations"].items():
                if value is None:
                    annotations.pop(key, None)
                else:
                    annotations[key] = value
            node.metadata.annotations = annotations

        return node

    async def record_event(
        self, node: client.V1Node, reason: str, message: str, type_: str = "Warning"
    ) -> None:
        self.events.append((node.metadata.name, reason, message))

    async def read_config_map(self, namespace: str, name: str) -> Optional[client.V1ConfigMap]:
        return self.config_maps.get((namespace, name))

    async def create_config_map(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> client.V1ConfigMap:
        if (namespace, name) in self.config_maps:
            raise KubernetesError(f"config map `{namespace}/{name}` already exists", 409)

        config_map = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace), data=dict(data)
        )
        self.config_maps[(namespace, name)] = config_map
        return config_map
