import asyncio
import logging
import random
import uuid

from anycast_ip_controller.controller.services import KubernetesService
from anycast_ip_controller.controller.settings import (
    CLUSTER_IDENTITY_CONFIG_MAP,
    CLUSTER_IDENTITY_KEY,
    CLUSTER_IDENTITY_NAMESPACE,
    CLUSTER_IDENTITY_RETRY_DELAY,
    CLUSTER_IDENTITY_RETRY_JITTER,
    CLUSTER_IDENTITY_RETRY_STEPS,
)
from anycast_ip_controller.exceptions import ClusterIdentityError, KubernetesError

logger = logging.getLogger(__name__)


async def get_or_create_cluster_uuid(kubernetes_service: KubernetesService) -> str:
    """Return the cluster identity stored in the cluster, creating it on first start.

    Replicas racing on creation converge on the value of the one that created the record."""

    name = f"{CLUSTER_IDENTITY_NAMESPACE}/{CLUSTER_IDENTITY_CONFIG_MAP}"

    logger.info("Getting cluster identity from `%s`...", name)

    for step in range(1, CLUSTER_IDENTITY_RETRY_STEPS + 1):
        try:
            cluster_uuid = await _get_or_create(kubernetes_service)
        except KubernetesError as e:
            if not e.is_conflict or step == CLUSTER_IDENTITY_RETRY_STEPS:
                raise ClusterIdentityError(f"Can't get cluster identity from `{name}`: {e}") from e

            delay = CLUSTER_IDENTITY_RETRY_DELAY.total_seconds()
            delay += delay * CLUSTER_IDENTITY_RETRY_JITTER * random.random()
            logger.debug("Cluster identity conflict, retrying in `%.3f` seconds...", delay)
            await asyncio.sleep(delay)
            continue

        logger.info("Getting cluster identity from `%s` done: `%s`", name, cluster_uuid)
        return cluster_uuid


async def _get_or_create(kubernetes_service: KubernetesService) -> str:
    config_map = await kubernetes_service.read_config_map(
        CLUSTER_IDENTITY_NAMESPACE, CLUSTER_IDENTITY_CONFIG_MAP
    )

    if config_map is None:
        cluster_uuid = str(uuid.uuid4())
        await kubernetes_service.create_config_map(
            CLUSTER_IDENTITY_NAMESPACE,
            CLUSTER_IDENTITY_CONFIG_MAP,
            {CLUSTER_IDENTITY_KEY: cluster_uuid},
        )

        logger.info("Created new cluster identity `%s`", cluster_uuid)
        return cluster_uuid

    cluster_uuid = (config_map.data or {}).get(CLUSTER_IDENTITY_KEY)
    if not cluster_uuid:
        raise ClusterIdentityError(
            f"Config map `{CLUSTER_IDENTITY_NAMESPACE}/{CLUSTER_IDENTITY_CONFIG_MAP}` has empty"
            f" `{CLUSTER_IDENTITY_KEY}`"
        )

    return cluster_uuid
