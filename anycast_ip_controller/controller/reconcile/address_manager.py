import logging
from typing import Dict, List, Optional, Sequence

from kubernetes_asyncio import client

from anycast_ip_controller.controller.models import Address, AddressConfigData, Tags
from anycast_ip_controller.controller.services import KubernetesService, TagService, VpcService
from anycast_ip_controller.controller.settings import (
    ADDRESS_ID_PREFIX,
    ADDRESS_NAME_SUFFIX,
    ANNOTATION_ADDRESS_ID,
    ANNOTATION_ADDRESS_IP,
    EVENT_REASON_FAILED_ALLOCATE,
    EVENT_REASON_FAILED_ASSOCIATE,
    EVENT_REASON_FAILED_UNTAINT,
    NO_ADDRESS_TAINT_EFFECT,
    NO_ADDRESS_TAINT_KEY,
    NO_ADDRESS_TAINT_VALUE,
    NODE_INSTANCE_ID_LABEL,
    TAG_KEY_CLUSTER_ID,
    TAG_KEY_CLUSTER_UUID,
    TAG_KEY_NODE_INSTANCE_ID,
    TAG_KEY_NODE_NAME,
    TAG_KEYS_BATCH_SIZE,
    TAG_KEYS_MAX_ROUNDS,
    TAG_KEYS_PAGE_SIZE,
    TAG_RESOURCE_PREFIX,
    TAG_SEARCH_MAX_ROUNDS,
    TAG_SEARCH_PAGE_SIZE,
    TAG_SERVICE_TYPE,
)
from anycast_ip_controller.exceptions import (
    AddressConflict,
    AddressNotReady,
    CloudApiError,
    KubernetesError,
    MissingTagsError,
    ReconcileError,
)
from anycast_ip_controller.utils import chunked, unique

logger = logging.getLogger(__name__)


def get_instance_id(node: client.V1Node) -> Optional[str]:
    return (node.metadata.labels or {}).get(NODE_INSTANCE_ID_LABEL) or None


def get_taints(node: client.V1Node) -> List[client.V1Taint]:
    return (node.spec.taints if node.spec else None) or []


def has_no_address_taint(node: client.V1Node) -> bool:
    return any(taint.key == NO_ADDRESS_TAINT_KEY for taint in get_taints(node))


class AddressManager:
    """Address operations shared by the forward and the reverse reconciler.

    The manager keeps no state between calls, the only link between a node and its address are the
    tags put on the address at allocation time.
    """

    def __init__(
        self,
        *,
        vpc_service: VpcService,
        tag_service: TagService,
        kubernetes_service: KubernetesService,
        address_config: AddressConfigData,
        cluster_uuid: str,
        cluster_id: str,
        region: str,
    ) -> None:
        self._vpc_service = vpc_service
        self._tag_service = tag_service
        self._kubernetes_service = kubernetes_service
        self._address_config = address_config
        self._cluster_uuid = cluster_uuid
        self._cluster_id = cluster_id
        self._region = region

    @property
    def address_type(self) -> str:
        return self._address_config.address_type

    async def lookup(self, node_name: str) -> Optional[str]:
        """Return id of the address tagged for the node in this cluster, if there is one."""

        resource_ids, _ = await self._tag_service.describe_resources_by_tags(
            {
                TAG_KEY_CLUSTER_UUID: [self._cluster_uuid],
                TAG_KEY_NODE_NAME: [node_name],
            },
            service_type=TAG_SERVICE_TYPE,
            resource_prefix=TAG_RESOURCE_PREFIX,
            limit=TAG_SEARCH_PAGE_SIZE,
        )

        address_ids = [
            resource_id for resource_id in resource_ids if resource_id.startswith(ADDRESS_ID_PREFIX)
        ]
        if not address_ids:
            logger.debug("No address tagged for node `%s` found", node_name)
            return None

        if len(address_ids) > 1:
            logger.warning(
                "Multiple addresses tagged for node `%s` found: %s, using the first one",
                node_name,
                address_ids,
            )

        return address_ids[0]

    async def allocate(self, node: client.V1Node, extra_tags: Optional[Tags] = None) -> str:
        """Return id of the address tagged for the node, allocating a new one when there is none."""

        node_name = node.metadata.name

        address_id = await self.lookup(node_name)
        if address_id is not None:
            logger.info(
                "Not allocating address for node `%s`, as `%s` is already tagged for it",
                node_name,
                address_id,
            )
            return address_id

        tags = {
            **(extra_tags or {}),
            TAG_KEY_CLUSTER_UUID: self._cluster_uuid,
            TAG_KEY_CLUSTER_ID: self._cluster_id,
            TAG_KEY_NODE_NAME: node_name,
            TAG_KEY_NODE_INSTANCE_ID: get_instance_id(node),
        }

        logger.info("Allocating `%s` address for node `%s`...", self.address_type, node_name)

        try:
            address_ids = await self._vpc_service.allocate_addresses(
                address_type=self.address_type,
                address_name=f"{self._cluster_id}{ADDRESS_NAME_SUFFIX}",
                tags=tags,
                anycast_zone=self._address_config.anycast_zone,
                bandwidth=self._address_config.bandwidth,
            )
        except CloudApiError as e:
            await self._handle_allocate_error(node, tags, e)
            raise

        if len(address_ids) != 1:
            raise ReconcileError(
                f"Allocating address for node `{node_name}` returned {len(address_ids)} addresses"
                " instead of 1"
            )

        address_id = address_ids[0]
        if not address_id.startswith(ADDRESS_ID_PREFIX):
            raise ReconcileError(
                f"Allocating address for node `{node_name}` returned invalid id `{address_id}`"
            )

        logger.info(
            "Allocating `%s` address for node `%s` done: `%s`",
            self.address_type,
            node_name,
            address_id,
        )

        return address_id

    async def _handle_allocate_error(
        self, node: client.V1Node, tags: Tags, error: CloudApiError
    ) -> None:
        """Pre-create the request tags, so the next allocation attempt can succeed.

        Tags are created also for unrelated errors, as the provider may report missing tags with
        an unexpected code."""

        node_name = node.metadata.name

        logger.warning("Allocating address for node `%s` failed: %s", node_name, error)

        if not error.is_tag_not_existed():
            await self._kubernetes_service.record_event(
                node,
                EVENT_REASON_FAILED_ALLOCATE,
                f"Failed to allocate anycast ip (will retry): {error.summary}",
            )

        for key, value in tags.items():
            try:
                await self._tag_service.create_tag(key, value)
            except CloudApiError as e:
                if e.is_tag_duplicate():
                    continue

                logger.error("Creating tag `%s=%s` failed: %s", key, value, e)
                await self._kubernetes_service.record_event(
                    node,
                    EVENT_REASON_FAILED_ALLOCATE,
                    f"Failed to allocate anycast ip (will retry): {error.summary}",
                )
                raise ReconcileError(
                    f"Allocating address failed: {error}. Creating tag failed: {e}"
                ) from e

        if error.is_tag_not_existed():
            raise MissingTagsError(error) from error

    async def associate(self, node: client.V1Node, address_id: str) -> None:
        """Drive the address towards being bound to the node's instance.

        Returns only once the address is bound to the node's instance and the node is updated.
        Raises `AddressNotReady` while the address is transitioning, including right after the
        associate call was issued, and `AddressConflict` when the address is bound elsewhere."""

        node_name = node.metadata.name
        instance_id = get_instance_id(node)

        addresses = await self._vpc_service.describe_addresses([address_id])
        if len(addresses) != 1:
            raise AddressNotReady(
                f"Describing address `{address_id}` returned {len(addresses)} addresses"
                " instead of 1"
            )

        address = addresses[0]
        if not address.address_ip:
            raise AddressNotReady(f"Address `{address_id}` has no ip yet")

        if address.is_bound:
            if address.instance_id == instance_id:
                logger.debug(
                    "Address `%s` is already bound to instance `%s` of node `%s`",
                    address_id,
                    instance_id,
                    node_name,
                )
                await self.untaint_and_annotate(node, address)
                return

            await self._kubernetes_service.record_event(
                node,
                EVENT_REASON_FAILED_ASSOCIATE,
                f"Anycast ip {address_id} is associated with another instance"
                f" ({address.instance_id})",
            )
            raise AddressConflict(address_id, address.instance_id)

        if address.is_unbound:
            logger.info(
                "Associating address `%s` with instance `%s` of node `%s`...",
                address_id,
                instance_id,
                node_name,
            )

            await self._vpc_service.associate_address(address_id, instance_id)

            raise AddressNotReady(
                f"Associating address `{address_id}` with instance `{instance_id}` issued,"
                " waiting for it to become bound"
            )

        raise AddressNotReady(
            f"Address `{address_id}` is `{address.address_status}`, waiting for it to change"
        )

    async def disassociate(self, address_id: str) -> None:
        addresses = await self._vpc_service.describe_addresses([address_id])
        if not addresses:
            logger.info(
                "Not disassociating address `%s`, as it's already released", address_id
            )
            return

        if len(addresses) != 1:
            raise AddressNotReady(
                f"Describing address `{address_id}` returned {len(addresses)} addresses"
                " instead of 1"
            )

        address = addresses[0]
        if address.is_unbound:
            logger.debug("Not disassociating address `%s`, as it's already unbound", address_id)
            return

        if address.is_bound:
            logger.info(
                "Disassociating address `%s` from instance `%s`...",
                address_id,
                address.instance_id,
            )

            await self._vpc_service.disassociate_address(address_id)

            logger.info(
                "Disassociating address `%s` from instance `%s` done",
                address_id,
                address.instance_id,
            )
            return

        raise AddressNotReady(
            f"Address `{address_id}` is `{address.address_status}`, waiting for it to change"
        )

    async def release(self, address_id: str) -> None:
        logger.info("Releasing address `%s`...", address_id)

        try:
            await self._vpc_service.release_addresses([address_id])
        except CloudApiError as e:
            logger.warning("Releasing address `%s` failed: %s", address_id, e)
            raise

        logger.info("Releasing address `%s` done", address_id)

    async def needs_address(self, node: client.V1Node) -> bool:
        """Check addresses already present on the node's instance and update the node with it.

        Nodes whose instance has a conflicting address, or is still to get one, are tainted."""

        node_name = node.metadata.name
        instance_id = get_instance_id(node)
        conflicting_types = self._address_config.get_conflicting_types()

        addresses = await self._vpc_service.describe_addresses(
            filters={
                "instance-id": [instance_id],
                "address-type": [self.address_type, *conflicting_types],
            }
        )

        for address in addresses:
            if address.address_type == self.address_type:
                if not address.address_ip:
                    raise AddressNotReady(
                        f"Address `{address.address_id}` of node `{node_name}` has no ip yet"
                    )

                try:
                    await self.untaint_and_annotate(node, address)
                except KubernetesError:
                    await self._kubernetes_service.record_event(
                        node,
                        EVENT_REASON_FAILED_UNTAINT,
                        f"Failed to untaint node {node_name}, will retry",
                    )
                    raise

                logger.info(
                    "Not allocating address for node `%s`, as it already has `%s` address `%s`",
                    node_name,
                    self.address_type,
                    address.address_id,
                )
                return False

            if address.address_type in conflicting_types:
                logger.warning(
                    "Not allocating address for node `%s`, as it already has `%s` address `%s`",
                    node_name,
                    address.address_type,
                    address.address_id,
                )
                await self._kubernetes_service.record_event(
                    node,
                    EVENT_REASON_FAILED_ALLOCATE,
                    f"Node {node_name} has {address.address_type} {address.address_id}"
                    f"/{address.address_ip}, cannot allocate {self.address_type}",
                )
                await self.taint(node)
                return False

            logger.warning(
                "Ignoring address `%s` of unknown type `%s` on node `%s`",
                address.address_id,
                address.address_type,
                node_name,
            )

        await self.taint(node)
        return True

    async def taint(self, node: client.V1Node) -> None:
        """Put the no-address taint on the node and drop the address annotations."""

        annotations = node.metadata.annotations or {}
        stale_annotations = [
            key for key in (ANNOTATION_ADDRESS_ID, ANNOTATION_ADDRESS_IP) if key in annotations
        ]

        if has_no_address_taint(node) and not stale_annotations:
            return

        body = {}
        if not has_no_address_taint(node):
            body["spec"] = {
                "taints": [
                    *get_taints(node),
                    client.V1Taint(
                        key=NO_ADDRESS_TAINT_KEY,
                        value=NO_ADDRESS_TAINT_VALUE,
                        effect=NO_ADDRESS_TAINT_EFFECT,
                    ),
                ]
            }

        if stale_annotations:
            body["metadata"] = {"annotations": {key: None for key in stale_annotations}}

        logger.info("Tainting node `%s`...", node.metadata.name)

        await self._kubernetes_service.patch_node(node.metadata.name, body)

        logger.info("Tainting node `%s` done", node.metadata.name)

    async def untaint_and_annotate(self, node: client.V1Node, address: Address) -> None:
        """Remove the no-address taint from the node and record the address on it."""

        annotations = node.metadata.annotations or {}
        expected_annotations = {
            ANNOTATION_ADDRESS_ID: address.address_id,
            ANNOTATION_ADDRESS_IP: address.address_ip,
        }
        is_annotated = all(
            annotations.get(key) == value for key, value in expected_annotations.items()
        )

        if not has_no_address_taint(node) and is_annotated:
            return

        body = {}
        if has_no_address_taint(node):
            body["spec"] = {"taints": self._get_taints_without_no_address(node)}

        if not is_annotated:
            body["metadata"] = {"annotations": expected_annotations}

        logger.info(
            "Untainting node `%s` with address `%s`...", node.metadata.name, address.address_id
        )

        await self._kubernetes_service.patch_node(node.metadata.name, body)

        logger.info(
            "Untainting node `%s` with address `%s` done", node.metadata.name, address.address_id
        )

    @staticmethod
    def _get_taints_without_no_address(node: client.V1Node) -> List[client.V1Taint]:
        return [taint for taint in get_taints(node) if taint.key != NO_ADDRESS_TAINT_KEY]

    async def search_cluster_address_ids(self) -> List[str]:
        """Return ids of all the addresses tagged with this cluster's identity.

        Pages are requested while the reported total is not reached and the provider keeps
        returning rows, but no more than a fixed number of times."""

        resource_ids = []
        offset = 0

        for round_ in range(1, TAG_SEARCH_MAX_ROUNDS + 1):
            page, total_count = await self._tag_service.describe_resources_by_tags(
                {TAG_KEY_CLUSTER_UUID: [self._cluster_uuid]},
                service_type=TAG_SERVICE_TYPE,
                resource_prefix=TAG_RESOURCE_PREFIX,
                offset=offset,
                limit=TAG_SEARCH_PAGE_SIZE,
            )

            resource_ids.extend(page)
            offset += len(page)

            logger.debug(
                "Searching cluster addresses round %s: offset `%s` of total `%s`",
                round_,
                offset,
                total_count,
            )

            if not page or offset >= total_count:
                break
        else:
            logger.warning(
                "Searching cluster addresses stopped after %s rounds, with %s addresses found",
                TAG_SEARCH_MAX_ROUNDS,
                len(resource_ids),
            )

        return [
            resource_id
            for resource_id in unique(resource_ids)
            if resource_id.startswith(ADDRESS_ID_PREFIX)
        ]

    async def get_address_node_names(self, address_ids: Sequence[str]) -> Dict[str, str]:
        """Return `address id -> node name` from the node name tags of the addresses.

        Addresses without the node name tag are left out."""

        node_names = {}

        for batch in chunked(list(address_ids), TAG_KEYS_BATCH_SIZE):
            offset = 0

            for _ in range(TAG_KEYS_MAX_ROUNDS):
                rows, total_count = await self._tag_service.describe_resource_tags_by_tag_keys(
                    batch,
                    [TAG_KEY_CLUSTER_UUID, TAG_KEY_NODE_NAME],
                    service_type=TAG_SERVICE_TYPE,
                    resource_prefix=TAG_RESOURCE_PREFIX,
                    resource_region=self._region,
                    offset=offset,
                    limit=TAG_KEYS_PAGE_SIZE,
                )

                for resource_id, tags in rows:
                    node_name = tags.get(TAG_KEY_NODE_NAME)
                    if node_name:
                        node_names[resource_id] = node_name

                offset += len(rows)

                if not rows or offset >= total_count:
                    break
            else:
                logger.warning(
                    "Describing tags of addresses %s stopped after %s rounds",
                    list(batch),
                    TAG_KEYS_MAX_ROUNDS,
                )

        return node_names

    async def describe(self, address_ids: Sequence[str]) -> List[Address]:
        return await self._vpc_service.describe_addresses(address_ids)

    async def release_many(self, address_ids: Sequence[str]) -> None:
        logger.info("Releasing addresses %s...", list(address_ids))

        await self._vpc_service.release_addresses(address_ids)

        logger.info("Releasing addresses %s done", list(address_ids))
