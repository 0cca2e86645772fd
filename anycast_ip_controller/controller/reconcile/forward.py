import logging

from anycast_ip_controller.controller.models import Tags
from anycast_ip_controller.controller.reconcile.address_manager import (
    AddressManager,
    get_instance_id,
)
from anycast_ip_controller.controller.services import KubernetesService
from anycast_ip_controller.controller.settings import NODE_PHASE_TERMINATED
from anycast_ip_controller.exceptions import NodeTerminated

logger = logging.getLogger(__name__)


class ForwardReconciler:
    """Per-node state machine that acquires an address for a live node and frees it afterwards.

    Every failure is raised to the caller, which is expected to deliver the same node again later.
    """

    def __init__(
        self,
        *,
        kubernetes_service: KubernetesService,
        address_manager: AddressManager,
        extra_tags: Tags,
    ) -> None:
        self._kubernetes_service = kubernetes_service
        self._address_manager = address_manager
        self._extra_tags = extra_tags

    async def reconcile(self, node_name: str) -> None:
        node = await self._kubernetes_service.get_node(node_name)
        if node is None:
            await self._reconcile_deleted(node_name)
            return

        phase = node.status.phase if node.status else None
        if phase == NODE_PHASE_TERMINATED:
            raise NodeTerminated(
                f"Node `{node_name}` is `{phase}`, waiting for it to be removed from the cluster"
            )

        if not get_instance_id(node):
            logger.info("Not reconciling node `%s`, as it has no instance id yet", node_name)
            return

        logger.debug("Reconciling node `%s`...", node_name)

        if not await self._address_manager.needs_address(node):
            logger.debug("Reconciling node `%s` done, no address needed", node_name)
            return

        address_id = await self._address_manager.allocate(node, self._extra_tags)
        await self._address_manager.associate(node, address_id)

        logger.info("Reconciling node `%s` done, address `%s` is bound", node_name, address_id)

    async def _reconcile_deleted(self, node_name: str) -> None:
        address_id = await self._address_manager.lookup(node_name)
        if address_id is None:
            logger.info(
                "Not releasing address of deleted node `%s`, as there is none", node_name
            )
            return

        logger.info("Releasing address `%s` of deleted node `%s`...", address_id, node_name)

        await self._address_manager.disassociate(address_id)
        await self._address_manager.release(address_id)

        logger.info("Releasing address `%s` of deleted node `%s` done", address_id, node_name)
