import os
from datetime import timedelta
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.getenv("ANYCAST_CONFIG_PATH", "/app/conf/values.yaml"))

ENV_CLUSTER_ID = "ANYCAST_CLUSTER_ID"
ENV_APP_ID = "ANYCAST_APP_ID"
ENV_SECRET_ID = "ANYCAST_SECRET_ID"
ENV_SECRET_KEY = "ANYCAST_SECRET_KEY"

# credential environment names of existing aia-ip-controller deployments
AIA_ENV_CLUSTER_ID = "AIA_CLUSTER_ID"
AIA_ENV_APP_ID = "AIA_APP_ID"
AIA_ENV_SECRET_ID = "AIA_SECRET_ID"
AIA_ENV_SECRET_KEY = "AIA_SECRET_KEY"

CLUSTER_ID_PREFIX = "cls-"

# cloud api
TENCENTCLOUD_ENDPOINT = os.getenv("ANYCAST_TENCENTCLOUD_ENDPOINT", "tencentcloudapi.com")
TENCENTCLOUD_REQUEST_TIMEOUT = timedelta(seconds=30)
VPC_SERVICE = "vpc"
TAG_SERVICE = "tag"

ADDRESS_ID_PREFIX = "eip-"
ADDRESS_STATUS_BOUND = "BIND"
ADDRESS_STATUS_UNBOUND = "UNBIND"
ADDRESS_TYPE_WAN_IP = "WanIP"
ADDRESS_TYPE_EIP = "EIP"
ADDRESS_TYPE_ANYCAST_EIP = "AnycastEIP"
ADDRESS_TYPE_HIGH_QUALITY_EIP = "HighQualityEIP"
DEFAULT_ADDRESS_TYPE = ADDRESS_TYPE_ANYCAST_EIP
DEFAULT_CONFLICTING_ADDRESS_TYPES = [
    ADDRESS_TYPE_WAN_IP,
    ADDRESS_TYPE_EIP,
    ADDRESS_TYPE_ANYCAST_EIP,
    ADDRESS_TYPE_HIGH_QUALITY_EIP,
]
ADDRESS_NAME_SUFFIX = "-aia"

# provider side limits
DESCRIBE_ADDRESSES_BATCH_SIZE = 100
TAG_SERVICE_TYPE = "vpc"
TAG_RESOURCE_PREFIX = "eip"
TAG_SEARCH_PAGE_SIZE = 200
TAG_SEARCH_MAX_ROUNDS = 100
TAG_KEYS_BATCH_SIZE = 20
TAG_KEYS_PAGE_SIZE = 400
TAG_KEYS_MAX_ROUNDS = 500

# tags put on every allocated address
TAG_KEY_CLUSTER_UUID = "aia-official-cluster-uuid"
TAG_KEY_CLUSTER_ID = "aia-official-cluster-id"
TAG_KEY_NODE_NAME = "aia-node-name"
TAG_KEY_NODE_INSTANCE_ID = "aia-node-ins-id"

# kubernetes
NODE_INSTANCE_ID_LABEL = "cloud.tencent.com/node-instance-id"
NODE_PHASE_TERMINATED = "Terminated"
NO_ADDRESS_TAINT_KEY = "tke.cloud.tencent.com/no-aia-ip"
NO_ADDRESS_TAINT_VALUE = "true"
NO_ADDRESS_TAINT_EFFECT = "NoSchedule"
ANNOTATION_ADDRESS_ID = "tke.cloud.tencent.com/anycast-ip-id"
ANNOTATION_ADDRESS_IP = "tke.cloud.tencent.com/anycast-ip-address"
EVENT_NAMESPACE = "default"
EVENT_COMPONENT = "anycast-ip-controller"
NODE_LIST_PAGE_SIZE = 500

EVENT_REASON_FAILED_ALLOCATE = "FailedAllocateAnycastIp"
EVENT_REASON_FAILED_ASSOCIATE = "FailedAssociateAnycastIp"
EVENT_REASON_FAILED_UNTAINT = "FailedUntaintNode"

CLUSTER_IDENTITY_NAMESPACE = "kube-system"
CLUSTER_IDENTITY_CONFIG_MAP = "aia-official-cluster-uuid"
CLUSTER_IDENTITY_KEY = "aia-official-cluster-uuid"
CLUSTER_IDENTITY_RETRY_STEPS = 5
CLUSTER_IDENTITY_RETRY_DELAY = timedelta(milliseconds=10)
CLUSTER_IDENTITY_RETRY_JITTER = 0.1

# reconcile
DEFAULT_MAX_CONCURRENT_RECONCILES = 1
DEFAULT_REVERSE_RECONCILE_INTERVAL = timedelta(minutes=1)

# how long released-after-disassociate addresses are given to reach the unbound state
REVERSE_RECONCILE_GRACE_WAIT = timedelta(seconds=10)

WORKQUEUE_BASE_DELAY = timedelta(milliseconds=5)
WORKQUEUE_MAX_DELAY = timedelta(seconds=1000)

# how long the watch stream is kept open before the node list is refreshed
NODE_WATCH_TIMEOUT = timedelta(minutes=5)
NODE_WATCH_RETRY_DELAY = timedelta(seconds=1)

# leader election
DEFAULT_RESOURCE_LOCK_NAME = "anycast-ip-controller"
DEFAULT_LEADER_ELECTION_NAMESPACE = "kube-system"
DEFAULT_LEASE_DURATION = timedelta(seconds=20)
DEFAULT_RENEW_DEADLINE = timedelta(seconds=15)
DEFAULT_RETRY_PERIOD = timedelta(seconds=5)

# webserver
DEFAULT_PORT = 8080
URL_STATUS = "/"
URL_HEALTHZ = "/healthz"

# how long we wait for the webserver connections to close on shutdown
SHUTDOWN_CONNECTIONS_TIMEOUT = timedelta(seconds=5)


def get_logging_config(log_level: str = "INFO"):
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "add_trace_id": {
                "()": "anycast_ip_controller.log.AddTraceIdFilter",
            },
        },
        "formatters": {
            "verbose": {
                "format": "[%(asctime)s] [%(levelname)-7s] [%(traceid)s] "
                "[%(name)s:%(lineno)d] %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": "DEBUG",
                "formatter": "verbose",
                "filters": ["add_trace_id"],
            },
        },
        "root": {
            "level": "INFO",
            "handlers": [
                "console",
            ],
        },
        "loggers": {
            "aiohttp.access": {
                "level": "WARNING",
            },
            "kubernetes_asyncio": {
                "level": "WARNING",
            },
            "anycast_ip_controller": {
                "level": log_level.upper(),
            },
        },
    }
