import logging
from typing import Optional

from kubernetes_asyncio import client

from anycast_ip_controller.controller.models import NodeEvent, NodeEventType, NodeSnapshot, Tags

logger = logging.getLogger(__name__)


def node_snapshot(node: Optional[client.V1Node]) -> Optional[NodeSnapshot]:
    """Return the part of the node the filter looks at, `None` for a malformed node object."""

    if node is None or node.metadata is None or not node.metadata.name:
        return None

    return NodeSnapshot(name=node.metadata.name, labels=node.metadata.labels or {})


def is_node_eligible(node: Optional[NodeSnapshot], required_labels: Tags) -> bool:
    if node is None:
        return False

    if not node.instance_id:
        logger.debug("Node `%s` has no instance id label yet, skipping", node.name)
        return False

    for key, value in required_labels.items():
        if node.labels.get(key) != value:
            logger.debug("Node `%s` has no `%s=%s` label, skipping", node.name, key, value)
            return False

    return True


def should_reconcile(event: NodeEvent, required_labels: Tags) -> bool:
    """Decide whether the node event should enter the reconcile queue."""

    if event.type in (NodeEventType.CREATE, NodeEventType.DELETE):
        return is_node_eligible(event.node, required_labels)

    if event.old is None or event.new is None:
        return False

    if event.old.labels == event.new.labels:
        return False

    return is_node_eligible(event.new, required_labels)
