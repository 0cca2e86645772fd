import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from anycast_ip_controller.controller.models import Address, SweepResult
from anycast_ip_controller.controller.reconcile.address_manager import AddressManager
from anycast_ip_controller.controller.services import KubernetesService, LeadershipStatus
from anycast_ip_controller.controller.settings import (
    REVERSE_RECONCILE_GRACE_WAIT,
    TAG_KEY_NODE_INSTANCE_ID,
)
from anycast_ip_controller.exceptions import AnycastIpControllerError

logger = logging.getLogger(__name__)


class ReverseReconciler:
    """Periodic sweep releasing addresses whose node is gone from the cluster.

    Legacy state is derived from scratch on every sweep, so an aborted sweep needs no cleanup.
    """

    def __init__(
        self,
        *,
        kubernetes_service: KubernetesService,
        address_manager: AddressManager,
        leadership: LeadershipStatus,
        grace_wait: timedelta = REVERSE_RECONCILE_GRACE_WAIT,
    ) -> None:
        self._kubernetes_service = kubernetes_service
        self._address_manager = address_manager
        self._leadership = leadership
        self._grace_wait = grace_wait

        self.last_result: Optional[SweepResult] = None

    async def reconcile(self) -> Optional[SweepResult]:
        if not self._leadership.is_leader():
            logger.info("Not running reverse reconcile, as this instance is not the leader")
            return None

        result = SweepResult(started_at=datetime.now(timezone.utc))
        self.last_result = result

        try:
            await self._sweep(result)
        except AnycastIpControllerError as e:
            result.error = str(e)
            raise
        finally:
            result.finished_at = datetime.now(timezone.utc)

        return result

    async def _sweep(self, result: SweepResult) -> None:
        node_names = set(await self._kubernetes_service.list_node_names())
        logger.debug("Found %s nodes in the cluster", len(node_names))

        address_ids = await self._address_manager.search_cluster_address_ids()
        if not address_ids:
            logger.info("Not releasing any address, as no cluster address was found")
            return

        logger.debug("Found %s cluster addresses: %s", len(address_ids), address_ids)

        address_node_names = await self._address_manager.get_address_node_names(address_ids)
        legacy_address_ids = [
            address_id
            for address_id, node_name in address_node_names.items()
            if node_name not in node_names
        ]
        if not legacy_address_ids:
            logger.info("Not releasing any address, as no legacy address was found")
            return

        logger.info("Found %s legacy addresses: %s", len(legacy_address_ids), legacy_address_ids)

        unbound_ids, disassociated_ids = await self._disassociate_legacy(legacy_address_ids)

        if unbound_ids:
            await self._address_manager.release_many(unbound_ids)
            result.released_unbound = unbound_ids

        if disassociated_ids:
            logger.debug(
                "Waiting `%s` for disassociated addresses to become unbound...", self._grace_wait
            )
            await asyncio.sleep(self._grace_wait.total_seconds())

            await self._address_manager.release_many(disassociated_ids)
            result.released_bound = disassociated_ids

        if unbound_ids or disassociated_ids:
            logger.info(
                "Released %s legacy addresses, %s bound %s and %s unbound %s originally",
                len(unbound_ids) + len(disassociated_ids),
                len(disassociated_ids),
                disassociated_ids,
                len(unbound_ids),
                unbound_ids,
            )

    async def _disassociate_legacy(self, address_ids: List[str]) -> Tuple[List[str], List[str]]:
        """Split legacy addresses into unbound and just disassociated ones."""

        unbound_ids = []
        disassociated_ids = []

        for address in await self._address_manager.describe(address_ids):
            if address.is_unbound:
                unbound_ids.append(address.address_id)
            elif address.is_bound:
                if not self._is_bound_to_tagged_instance(address):
                    logger.warning(
                        "Not disassociating address `%s`, as it's bound to `%s` instead of the"
                        " tagged instance `%s`",
                        address.address_id,
                        address.instance_id,
                        address.tags.get(TAG_KEY_NODE_INSTANCE_ID),
                    )
                    continue

                await self._address_manager.disassociate(address.address_id)
                disassociated_ids.append(address.address_id)
            else:
                logger.debug(
                    "Not processing address `%s`, as it's `%s`",
                    address.address_id,
                    address.address_status,
                )

        return unbound_ids, disassociated_ids

    @staticmethod
    def _is_bound_to_tagged_instance(address: Address) -> bool:
        return bool(address.instance_id) and (
            address.tags.get(TAG_KEY_NODE_INSTANCE_ID) == address.instance_id
        )
