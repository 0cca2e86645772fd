import asyncio
from unittest import mock

import aiohttp
import pytest
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiException

from anycast_ip_controller.controller.services import KubernetesService
from anycast_ip_controller.exceptions import KubernetesError
from tests.factories.kubernetes import NodeFactory


@pytest.fixture
def kubernetes_service():
    kubernetes_service = KubernetesService(mock.Mock())
    kubernetes_service._core_api = mock.AsyncMock()
    return kubernetes_service


async def test_get_node(kubernetes_service):
    node = NodeFactory(name="n1")
    kubernetes_service._core_api.read_node.return_value = node

    assert await kubernetes_service.get_node("n1") is node


async def test_get_missing_node(kubernetes_service):
    kubernetes_service._core_api.read_node.side_effect = ApiException(status=404)

    assert await kubernetes_service.get_node("n1") is None


async def test_get_node_failure(kubernetes_service):
    kubernetes_service._core_api.read_node.side_effect = ApiException(
        status=403, reason="Forbidden"
    )

    with pytest.raises(KubernetesError, match="Forbidden") as exc_info:
        await kubernetes_service.get_node("n1")

    assert exc_info.value.status == 403


async def test_list_node_names_pages(kubernetes_service):
    kubernetes_service._core_api.list_node.side_effect = [
        client.V1NodeList(
            items=[NodeFactory(name="n1"), NodeFactory(name="n2")],
            metadata=client.V1ListMeta(_continue="token"),
        ),
        client.V1NodeList(items=[NodeFactory(name="n3")], metadata=client.V1ListMeta()),
    ]

    assert await kubernetes_service.list_node_names() == ["n1", "n2", "n3"]

    second_call = kubernetes_service._core_api.list_node.await_args_list[1]
    assert second_call.kwargs["_continue"] == "token"


async def test_record_event(kubernetes_service):
    node = NodeFactory(name="n1")

    await kubernetes_service.record_event(node, "FailedAllocateAnycastIp", "quota exceeded")

    namespace, body = kubernetes_service._core_api.create_namespaced_event.await_args.args
    assert namespace == "default"
    assert body["involvedObject"] == {
        "apiVersion": "v1",
        "kind": "Node",
        "name": "n1",
        "uid": "uid-n1",
    }
    assert body["reason"] == "FailedAllocateAnycastIp"
    assert body["type"] == "Warning"


async def test_record_event_failure_is_ignored(kubernetes_service):
    kubernetes_service._core_api.create_namespaced_event.side_effect = ApiException(status=500)

    await kubernetes_service.record_event(NodeFactory(), "FailedUntaintNode", "conflict")


async def test_create_config_map_conflict(kubernetes_service):
    kubernetes_service._core_api.create_namespaced_config_map.side_effect = ApiException(
        status=409, reason="Conflict"
    )

    with pytest.raises(KubernetesError) as exc_info:
        await kubernetes_service.create_config_map("kube-system", "cluster-uuid", {"uuid": "x"})

    assert exc_info.value.is_conflict


async def test_patch_node_failure(kubernetes_service):
    kubernetes_service._core_api.patch_node.side_effect = ApiException(status=409)

    with pytest.raises(KubernetesError) as exc_info:
        await kubernetes_service.patch_node("n1", {"spec": {"taints": []}})

    assert exc_info.value.is_conflict


@pytest.mark.parametrize(
    "error",
    (
        aiohttp.ServerDisconnectedError(),
        asyncio.TimeoutError(),
    ),
)
async def test_list_nodes_connection_failure(kubernetes_service, error):
    kubernetes_service._core_api.list_node.side_effect = error

    with pytest.raises(KubernetesError) as exc_info:
        await kubernetes_service.list_nodes()

    assert exc_info.value.status is None

    with pytest.raises(KubernetesError):
        await kubernetes_service.list_node_names()


class BrokenStream:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise aiohttp.ClientPayloadError("Response payload is not completed")


async def test_watch_nodes_connection_reset(kubernetes_service):
    with mock.patch.object(watch, "Watch") as watch_mock:
        watch_mock.return_value.stream.return_value = BrokenStream()

        with pytest.raises(KubernetesError, match="ClientPayloadError") as exc_info:
            async for _ in kubernetes_service.watch_nodes("10", 60):
                pass

    assert exc_info.value.status is None


async def test_record_event_connection_failure_is_ignored(kubernetes_service):
    kubernetes_service._core_api.create_namespaced_event.side_effect = (
        aiohttp.ServerDisconnectedError()
    )

    await kubernetes_service.record_event(NodeFactory(), "FailedUntaintNode", "conflict")
