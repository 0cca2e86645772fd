import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from kubernetes_asyncio import client

from anycast_ip_controller.controller.models import (
    NodeCreated,
    NodeDeleted,
    NodeEvent,
    NodeSnapshot,
    NodeUpdated,
    Tags,
)
from anycast_ip_controller.controller.reconcile import node_snapshot, should_reconcile
from anycast_ip_controller.controller.services import KubernetesService
from anycast_ip_controller.controller.services.kubernetes import TRANSPORT_ERRORS
from anycast_ip_controller.controller.settings import NODE_WATCH_RETRY_DELAY, NODE_WATCH_TIMEOUT
from anycast_ip_controller.controller.workqueue import WorkQueue
from anycast_ip_controller.exceptions import KubernetesError
from anycast_ip_controller.utils import create_task_with_logging, ensure_cancelled

logger = logging.getLogger(__name__)


class NodeWatcher:
    """Turns node list/watch results into node events and queues names of the relevant nodes.

    The last seen state of every node is cached, so that updates can be compared with the previous
    labels and deletes observed during a relist carry the node that disappeared.
    """

    def __init__(
        self,
        *,
        kubernetes_service: KubernetesService,
        queue: WorkQueue,
        required_labels: Tags,
        watch_timeout: timedelta = NODE_WATCH_TIMEOUT,
        retry_delay: timedelta = NODE_WATCH_RETRY_DELAY,
    ) -> None:
        self._kubernetes_service = kubernetes_service
        self._queue = queue
        self._required_labels = required_labels
        self._watch_timeout = watch_timeout
        self._retry_delay = retry_delay

        self._cache: Dict[str, NodeSnapshot] = {}
        self._watch_task: Optional[asyncio.Task] = None

    def is_running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    async def start(self) -> None:
        if self.is_running():
            logger.info("Not starting NodeWatcher, as it's already running")
            return

        logger.info("Starting NodeWatcher...")

        self._watch_task = create_task_with_logging(self._run(), trace_id="node-watcher")

        logger.info("Starting NodeWatcher done")

    async def stop(self) -> None:
        if not self.is_running():
            logger.info("Not stopping NodeWatcher, as it's already stopped")
            return

        logger.info("Stopping NodeWatcher...")

        await ensure_cancelled(self._watch_task)
        self._watch_task = None

        logger.info("Stopping NodeWatcher done")

    async def _run(self) -> None:
        resource_version = None

        while True:
            try:
                if resource_version is None:
                    resource_version = await self.relist()

                async for event_type, node in self._kubernetes_service.watch_nodes(
                    resource_version, int(self._watch_timeout.total_seconds())
                ):
                    resource_version = self.handle_watch_event(event_type, node) or resource_version
            except (KubernetesError, *TRANSPORT_ERRORS) as e:
                resource_version = None

                if isinstance(e, KubernetesError) and e.status == 410:
                    logger.info("Node watch expired, relisting nodes")
                    continue

                logger.warning(
                    "Watching nodes failed, retrying in `%s`: %s", self._retry_delay, e
                )
                await asyncio.sleep(self._retry_delay.total_seconds())

    async def relist(self) -> str:
        """List all the nodes, emit events against the cache and return the list's version."""

        node_list = await self._kubernetes_service.list_nodes()

        snapshots = {}
        for node in node_list.items:
            snapshot = node_snapshot(node)
            if snapshot is not None:
                snapshots[snapshot.name] = snapshot

        for name in set(self._cache) - set(snapshots):
            self._dispatch(name, NodeDeleted(node=self._cache[name]))

        for name, snapshot in snapshots.items():
            old = self._cache.get(name)
            if old is None:
                self._dispatch(name, NodeCreated(node=snapshot))
            else:
                self._dispatch(name, NodeUpdated(old=old, new=snapshot))

        self._cache = snapshots

        logger.debug("Listed %s nodes", len(snapshots))

        return node_list.metadata.resource_version

    def handle_watch_event(self, event_type: str, node: Optional[client.V1Node]) -> Optional[str]:
        """Dispatch the watch event, return the resource version it carries."""

        if node is None or node.metadata is None or not node.metadata.name:
            logger.debug("Ignoring `%s` event of malformed node", event_type)
            return None

        name = node.metadata.name
        snapshot = node_snapshot(node)
        old = self._cache.get(name)

        if event_type == "DELETED":
            self._cache.pop(name, None)
            self._dispatch(name, NodeDeleted(node=old or snapshot))
        elif event_type in ("ADDED", "MODIFIED"):
            self._cache[name] = snapshot
            if old is None:
                self._dispatch(name, NodeCreated(node=snapshot))
            else:
                self._dispatch(name, NodeUpdated(old=old, new=snapshot))
        else:
            logger.debug("Ignoring `%s` event of node `%s`", event_type, name)

        return node.metadata.resource_version

    def _dispatch(self, name: str, event: NodeEvent) -> None:
        if should_reconcile(event, self._required_labels):
            logger.debug("Queueing node `%s` on `%s` event", name, event.type.value)
            self._queue.add(name)
