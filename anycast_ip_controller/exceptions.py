from typing import Optional


class AnycastIpControllerError(Exception):
    pass


class ConfigError(AnycastIpControllerError):
    pass


class ClusterIdentityError(AnycastIpControllerError):
    pass


class KubernetesError(AnycastIpControllerError):
    """Kubernetes API failure other than a missing object."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)

        self.status = status

    @property
    def is_conflict(self) -> bool:
        return self.status == 409


class CloudApiError(AnycastIpControllerError):
    """Error response (or transport failure) of the cloud API."""

    TAG_NOT_EXISTED_CODES = ("InvalidTag.NotExisted", "InvalidParameterValue.TagNotExisted")
    TAG_DUPLICATE_CODE = "TagDuplicate"

    def __init__(self, code: str, message: str = "", request_id: Optional[str] = None) -> None:
        super().__init__(code, message, request_id)

        self.code = code
        self.message = message
        self.request_id = request_id

    def __str__(self) -> str:
        request_id = f", RequestId: {self.request_id}" if self.request_id else ""
        return f"[{self.code}] {self.message}{request_id}"

    @property
    def summary(self) -> str:
        """Error description without the request id, suitable for node events."""

        return f"[{self.code}] {self.message}"

    def is_tag_not_existed(self) -> bool:
        return self.code in self.TAG_NOT_EXISTED_CODES

    def is_tag_duplicate(self) -> bool:
        return self.TAG_DUPLICATE_CODE in self.code


class ReconcileError(AnycastIpControllerError):
    """Retryable failure of a single reconcile task."""


class AddressNotReady(ReconcileError):
    """Address is not yet in the state required to make progress."""


class MissingTagsError(ReconcileError):
    """Address allocation failed on tags missing from the tag namespace.

    The tags have been created by the time this is raised, so a redelivered task is expected
    to allocate successfully."""

    def __init__(self, cause: CloudApiError) -> None:
        super().__init__(f"Allocation failed on missing tags, tags created: {cause.summary}")

        self.cause = cause


class NodeTerminated(ReconcileError):
    pass


class AddressConflict(AnycastIpControllerError):
    """Address is bound to an instance other than the one of the requesting node."""

    def __init__(self, address_id: str, instance_id: str) -> None:
        super().__init__(
            f"Anycast ip `{address_id}` is associated with another instance `{instance_id}`"
        )

        self.address_id = address_id
        self.instance_id = instance_id
