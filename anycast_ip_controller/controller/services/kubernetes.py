import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional, Tuple

import aiohttp
from kubernetes_asyncio import client, watch
from kubernetes_asyncio.client import ApiException

from anycast_ip_controller.controller.settings import (
    EVENT_COMPONENT,
    EVENT_NAMESPACE,
    NODE_LIST_PAGE_SIZE,
)
from anycast_ip_controller.exceptions import KubernetesError

logger = logging.getLogger(__name__)

# connection level failures of the api client, raised next to `ApiException`
TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


class KubernetesService:
    """Node store, event recorder and config map store of the cluster control plane."""

    def __init__(self, api_client: client.ApiClient) -> None:
        self._core_api = client.CoreV1Api(api_client)

    async def get_node(self, name: str) -> Optional[client.V1Node]:
        """Return the node, or `None` if it does not exist."""

        try:
            return await self._core_api.read_node(name)
        except ApiException as e:
            if e.status == 404:
                return None

            raise KubernetesError(f"Can't read node `{name}`: {e.reason}", e.status) from e
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Can't read node `{name}`: {e!r}") from e

    async def list_nodes(self) -> client.V1NodeList:
        try:
            return await self._core_api.list_node()
        except ApiException as e:
            raise KubernetesError(f"Can't list nodes: {e.reason}", e.status) from e
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Can't list nodes: {e!r}") from e

    async def watch_nodes(
        self, resource_version: str, timeout_seconds: int
    ) -> AsyncIterator[Tuple[str, Optional[client.V1Node]]]:
        """Yield `(event type, node)` pairs of the node watch starting at the resource version.

        The stream ends when the server closes the watch, an expired resource version is raised
        as `KubernetesError` with status 410."""

        node_watch = watch.Watch()
        try:
            async with node_watch.stream(
                self._core_api.list_node,
                resource_version=resource_version,
                timeout_seconds=timeout_seconds,
            ) as stream:
                async for event in stream:
                    if event["type"] == "ERROR":
                        raw_object = event.get("raw_object") or {}
                        raise KubernetesError(
                            f"Node watch failed: {raw_object.get('message')}",
                            raw_object.get("code"),
                        )

                    yield event["type"], event["object"]
        except ApiException as e:
            raise KubernetesError(f"Can't watch nodes: {e.reason}", e.status) from e
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Can't watch nodes: {e!r}") from e

    async def list_node_names(self) -> List[str]:
        names = []
        continue_token = None

        while True:
            kwargs = {"limit": NODE_LIST_PAGE_SIZE}
            if continue_token:
                kwargs["_continue"] = continue_token

            try:
                node_list = await self._core_api.list_node(**kwargs)
            except ApiException as e:
                raise KubernetesError(f"Can't list nodes: {e.reason}", e.status) from e
            except TRANSPORT_ERRORS as e:
                raise KubernetesError(f"Can't list nodes: {e!r}") from e

            names.extend(node.metadata.name for node in node_list.items)

            continue_token = node_list.metadata._continue
            if not continue_token:
                return names

    async def patch_node(self, name: str, body: Dict) -> client.V1Node:
        """Apply a partial update that names only the fields being changed."""

        logger.debug("Patching node `%s` with %s", name, body)

        try:
            return await self._core_api.patch_node(name, body)
        except ApiException as e:
            raise KubernetesError(f"Can't patch node `{name}`: {e.reason}", e.status) from e
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Can't patch node `{name}`: {e!r}") from e

    async def record_event(
        self, node: client.V1Node, reason: str, message: str, type_: str = "Warning"
    ) -> None:
        """Record event against the node, failures are logged and ignored."""

        now = datetime.now(timezone.utc)
        body = {
            "metadata": {"generateName": f"{node.metadata.name}."},
            "involvedObject": {
                "apiVersion": "v1",
                "kind": "Node",
                "name": node.metadata.name,
                "uid": node.metadata.uid,
            },
            "reason": reason,
            "message": message,
            "type": type_,
            "source": {"component": EVENT_COMPONENT},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

        try:
            await self._core_api.create_namespaced_event(EVENT_NAMESPACE, body)
        except (ApiException, *TRANSPORT_ERRORS) as e:
            logger.warning(
                "Recording `%s` event for node `%s` failed: %s",
                reason,
                node.metadata.name,
                getattr(e, "reason", None) or repr(e),
            )
        else:
            logger.debug(
                "Recorded `%s` event for node `%s`: %s", reason, node.metadata.name, message
            )

    async def read_config_map(self, namespace: str, name: str) -> Optional[client.V1ConfigMap]:
        try:
            return await self._core_api.read_namespaced_config_map(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return None

            raise KubernetesError(
                f"Can't read config map `{namespace}/{name}`: {e.reason}", e.status
            ) from e
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Can't read config map `{namespace}/{name}`: {e!r}") from e

    async def create_config_map(
        self, namespace: str, name: str, data: Dict[str, str]
    ) -> client.V1ConfigMap:
        body = client.V1ConfigMap(
            metadata=client.V1ObjectMeta(name=name, namespace=namespace),
            data=data,
        )

        try:
            return await self._core_api.create_namespaced_config_map(namespace, body)
        except ApiException as e:
            raise KubernetesError(
                f"Can't create config map `{namespace}/{name}`: {e.reason}", e.status
            ) from e
        except TRANSPORT_ERRORS as e:
            raise KubernetesError(f"Can't create config map `{namespace}/{name}`: {e!r}") from e
