from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from anycast_ip_controller.controller import settings

Tags = Dict[str, str]


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)


class ControllerConfigData(ConfigModel):
    resource_lock_name: str = settings.DEFAULT_RESOURCE_LOCK_NAME


class RegionConfigData(ConfigModel):
    short_name: str = ""
    long_name: str


class CredentialConfigData(ConfigModel):
    # `clusterID` style keys are accepted as well
    cluster_id: str = Field(validation_alias=AliasChoices("clusterId", "clusterID", "cluster_id"))
    app_id: str = Field("", validation_alias=AliasChoices("appId", "appID", "app_id"))
    secret_id: str = Field(validation_alias=AliasChoices("secretId", "secretID", "secret_id"))
    secret_key: str = Field(repr=False)

    @field_validator("cluster_id")
    @classmethod
    def validate_cluster_id(cls, value: str) -> str:
        if not value.startswith(settings.CLUSTER_ID_PREFIX):
            raise ValueError(f"cluster id must start with `{settings.CLUSTER_ID_PREFIX}`")

        return value

    @field_validator("secret_id", "secret_key")
    @classmethod
    def validate_not_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("must not be empty")

        return value


class AddressConfigData(ConfigModel):
    address_type: str = settings.DEFAULT_ADDRESS_TYPE
    anycast_zone: str = ""
    bandwidth: int = 0
    tags: Tags = {}
    conflicting_types: List[str] = settings.DEFAULT_CONFLICTING_ADDRESS_TYPES

    @field_validator("address_type", mode="before")
    @classmethod
    def validate_address_type(cls, value: Optional[str]) -> str:
        return value or settings.DEFAULT_ADDRESS_TYPE

    def get_conflicting_types(self) -> List[str]:
        """Address types that block allocation, never including the target type."""

        return [type_ for type_ in self.conflicting_types if type_ != self.address_type]


class NodeConfigData(ConfigModel):
    labels: Tags = {}


class ConfigData(ConfigModel):
    controller: ControllerConfigData = ControllerConfigData()
    region: RegionConfigData
    credential: CredentialConfigData
    address: AddressConfigData = Field(
        AddressConfigData(), validation_alias=AliasChoices("address", "aia")
    )
    node: NodeConfigData = NodeConfigData()


class Address(BaseModel):
    address_id: str
    address_ip: Optional[str] = None
    address_status: Optional[str] = None
    address_type: Optional[str] = None
    instance_id: Optional[str] = None
    tags: Tags = {}

    @classmethod
    def from_api(cls, data: Dict) -> "Address":
        return cls(
            address_id=data["AddressId"],
            address_ip=data.get("AddressIp") or None,
            address_status=data.get("AddressStatus"),
            address_type=data.get("AddressType"),
            instance_id=data.get("InstanceId") or None,
            tags={tag["Key"]: tag["Value"] for tag in data.get("TagSet") or []},
        )

    @property
    def is_bound(self) -> bool:
        return self.address_status == settings.ADDRESS_STATUS_BOUND

    @property
    def is_unbound(self) -> bool:
        return self.address_status == settings.ADDRESS_STATUS_UNBOUND


class NodeSnapshot(BaseModel):
    name: str
    labels: Tags = {}

    @property
    def instance_id(self) -> Optional[str]:
        return self.labels.get(settings.NODE_INSTANCE_ID_LABEL) or None


class NodeEventType(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class NodeCreated(BaseModel):
    type: Literal[NodeEventType.CREATE] = NodeEventType.CREATE
    node: Optional[NodeSnapshot]


class NodeUpdated(BaseModel):
    type: Literal[NodeEventType.UPDATE] = NodeEventType.UPDATE
    old: Optional[NodeSnapshot]
    new: Optional[NodeSnapshot]


class NodeDeleted(BaseModel):
    type: Literal[NodeEventType.DELETE] = NodeEventType.DELETE
    node: Optional[NodeSnapshot]


NodeEvent = Union[NodeCreated, NodeUpdated, NodeDeleted]


class SweepResult(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    released_unbound: List[str] = []
    released_bound: List[str] = []
    error: Optional[str] = None


class ControllerStatus(BaseModel):
    version: str
    cluster_uuid: str
    is_leader: bool
    reverse_reconcile_enabled: bool
    last_sweep: Optional[SweepResult] = None
    queue_length: int


class ControllerOptions(BaseModel):
    max_concurrent_reconciles: int = Field(default=settings.DEFAULT_MAX_CONCURRENT_RECONCILES, ge=1)
    reverse_reconcile_enabled: bool = False
    reverse_reconcile_interval: timedelta = settings.DEFAULT_REVERSE_RECONCILE_INTERVAL
    leader_elect: bool = True
    leader_election_namespace: str = settings.DEFAULT_LEADER_ELECTION_NAMESPACE
    lease_duration: timedelta = settings.DEFAULT_LEASE_DURATION
    renew_deadline: timedelta = settings.DEFAULT_RENEW_DEADLINE
    retry_period: timedelta = settings.DEFAULT_RETRY_PERIOD
    resource_lock_name: Optional[str] = None
    port: int = settings.DEFAULT_PORT
    kubeconfig: Optional[Path] = None
