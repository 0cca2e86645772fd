from anycast_ip_controller.controller.services.kubernetes import KubernetesService
from anycast_ip_controller.controller.services.leader import (
    LeadershipStatus,
    LeaseLeaderElector,
    StaticLeadership,
)
from anycast_ip_controller.controller.services.tag import TagService
from anycast_ip_controller.controller.services.tencentcloud import TencentCloudClient
from anycast_ip_controller.controller.services.vpc import VpcService

__all__ = (
    "KubernetesService",
    "LeadershipStatus",
    "LeaseLeaderElector",
    "StaticLeadership",
    "TagService",
    "TencentCloudClient",
    "VpcService",
)
