from unittest import mock

import pytest
from kubernetes_asyncio import client

from anycast_ip_controller.controller.reconcile import get_or_create_cluster_uuid
from anycast_ip_controller.controller.settings import (
    CLUSTER_IDENTITY_CONFIG_MAP,
    CLUSTER_IDENTITY_KEY,
    CLUSTER_IDENTITY_NAMESPACE,
    CLUSTER_IDENTITY_RETRY_STEPS,
)
from anycast_ip_controller.exceptions import ClusterIdentityError, KubernetesError

CONFIG_MAP_KEY = (CLUSTER_IDENTITY_NAMESPACE, CLUSTER_IDENTITY_CONFIG_MAP)


def config_map(data):
    return client.V1ConfigMap(
        metadata=client.V1ObjectMeta(
            name=CLUSTER_IDENTITY_CONFIG_MAP, namespace=CLUSTER_IDENTITY_NAMESPACE
        ),
        data=data,
    )


async def test_create_cluster_uuid(kubernetes_service):
    cluster_uuid = await get_or_create_cluster_uuid(kubernetes_service)

    assert kubernetes_service.config_maps[CONFIG_MAP_KEY].data == {
        CLUSTER_IDENTITY_KEY: cluster_uuid
    }
    assert await get_or_create_cluster_uuid(kubernetes_service) == cluster_uuid


async def test_existing_cluster_uuid(kubernetes_service):
    kubernetes_service.config_maps[CONFIG_MAP_KEY] = config_map({CLUSTER_IDENTITY_KEY: "abc"})

    assert await get_or_create_cluster_uuid(kubernetes_service) == "abc"


@pytest.mark.parametrize("data", (None, {}, {CLUSTER_IDENTITY_KEY: ""}))
async def test_empty_cluster_uuid(kubernetes_service, data):
    kubernetes_service.config_maps[CONFIG_MAP_KEY] = config_map(data)

    with pytest.raises(ClusterIdentityError):
        await get_or_create_cluster_uuid(kubernetes_service)


async def test_creation_race(kubernetes_service):
    async def create_config_map(namespace, name, data):
        # another replica won the race
        kubernetes_service.config_maps[CONFIG_MAP_KEY] = config_map({CLUSTER_IDENTITY_KEY: "won"})
        raise KubernetesError("already exists", 409)

    with mock.patch.object(
        kubernetes_service, "create_config_map", side_effect=create_config_map
    ), mock.patch("asyncio.sleep") as sleep_mock:
        assert await get_or_create_cluster_uuid(kubernetes_service) == "won"

    sleep_mock.assert_awaited_once()


async def test_conflict_retries_exhausted(kubernetes_service):
    with mock.patch.object(
        kubernetes_service,
        "create_config_map",
        side_effect=KubernetesError("already exists", 409),
    ) as create_mock, mock.patch("asyncio.sleep"):
        with pytest.raises(ClusterIdentityError):
            await get_or_create_cluster_uuid(kubernetes_service)

    assert create_mock.await_count == CLUSTER_IDENTITY_RETRY_STEPS


async def test_other_error_is_not_retried(kubernetes_service):
    with mock.patch.object(
        kubernetes_service, "read_config_map", side_effect=KubernetesError("forbidden", 403)
    ) as read_mock:
        with pytest.raises(ClusterIdentityError, match="forbidden"):
            await get_or_create_cluster_uuid(kubernetes_service)

    assert read_mock.await_count == 1
