from anycast_ip_controller.controller.reconcile.address_manager import AddressManager
from anycast_ip_controller.controller.reconcile.cluster_identity import get_or_create_cluster_uuid
from anycast_ip_controller.controller.reconcile.eligibility import (
    is_node_eligible,
    node_snapshot,
    should_reconcile,
)
from anycast_ip_controller.controller.reconcile.forward import ForwardReconciler
from anycast_ip_controller.controller.reconcile.reverse import ReverseReconciler

__all__ = (
    "AddressManager",
    "ForwardReconciler",
    "ReverseReconciler",
    "get_or_create_cluster_uuid",
    "is_node_eligible",
    "node_snapshot",
    "should_reconcile",
)
