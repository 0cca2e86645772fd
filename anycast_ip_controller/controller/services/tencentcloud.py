import asyncio
import json
import logging
from types import ModuleType
from typing import Any, Dict, Optional

from tencentcloud.common import credential
from tencentcloud.common.abstract_client import AbstractClient
from tencentcloud.common.exception.tencent_cloud_sdk_exception import TencentCloudSDKException
from tencentcloud.common.profile.client_profile import ClientProfile
from tencentcloud.common.profile.http_profile import HttpProfile
from tencentcloud.tag.v20180813 import models as tag_models
from tencentcloud.tag.v20180813 import tag_client
from tencentcloud.vpc.v20170312 import models as vpc_models
from tencentcloud.vpc.v20170312 import vpc_client

from anycast_ip_controller.controller.settings import (
    TAG_SERVICE,
    TENCENTCLOUD_ENDPOINT,
    TENCENTCLOUD_REQUEST_TIMEOUT,
    VPC_SERVICE,
)
from anycast_ip_controller.exceptions import CloudApiError

logger = logging.getLogger(__name__)

CLIENT_ERROR_CODE = "ClientError"

SERVICE_MODELS: Dict[str, ModuleType] = {
    VPC_SERVICE: vpc_models,
    TAG_SERVICE: tag_models,
}


class TencentCloudClient:
    """Cloud API client shared by all the cloud services.

    Each call runs the blocking vendor SDK in a worker thread, with an SDK client of its own.
    """

    def __init__(
        self,
        *,
        secret_id: str,
        secret_key: str,
        region: str,
        endpoint: str = TENCENTCLOUD_ENDPOINT,
    ) -> None:
        self._secret_id = secret_id
        self._secret_key = secret_key
        self._region = region
        self._endpoint = endpoint

        self._credential: Optional[credential.Credential] = None

    async def start(self) -> None:
        if self._credential is not None:
            logger.info("Not starting TencentCloudClient, as it's already started")
            return

        logger.info("Starting TencentCloudClient...")

        self._credential = credential.Credential(self._secret_id, self._secret_key)

        logger.info("Starting TencentCloudClient done")

    async def stop(self) -> None:
        if self._credential is None:
            logger.info("Not stopping TencentCloudClient, as it's already stopped")
            return

        logger.info("Stopping TencentCloudClient...")

        self._credential = None

        logger.info("Stopping TencentCloudClient done")

    def get_endpoint(self, service: str) -> str:
        return f"{service}.{self._endpoint}"

    def create_sdk_client(self, service: str) -> AbstractClient:
        profile = ClientProfile(
            httpProfile=HttpProfile(
                endpoint=self.get_endpoint(service),
                reqTimeout=int(TENCENTCLOUD_REQUEST_TIMEOUT.total_seconds()),
            )
        )

        if service == VPC_SERVICE:
            return vpc_client.VpcClient(self._credential, self._region, profile)

        if service == TAG_SERVICE:
            return tag_client.TagClient(self._credential, self._region, profile)

        raise CloudApiError(CLIENT_ERROR_CODE, f"Unknown cloud service `{service}`")

    async def call(self, service: str, action: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Call the action and return the response fields as a plain dict.

        Error responses and transport failures are raised as `CloudApiError`."""

        if self._credential is None:
            raise CloudApiError(CLIENT_ERROR_CODE, "Client is not started")

        request = getattr(SERVICE_MODELS[service], f"{action}Request")()
        request.from_json_string(json.dumps(params))

        logger.debug("Calling `%s.%s` with %s", service, action, params)

        def _call():
            sdk_client = self.create_sdk_client(service)
            return getattr(sdk_client, action)(request)

        try:
            response = await asyncio.to_thread(_call)
        except TencentCloudSDKException as e:
            raise CloudApiError(
                e.get_code() or CLIENT_ERROR_CODE, e.get_message() or "", e.get_request_id()
            ) from e

        result = json.loads(response.to_json_string())

        logger.debug("Calling `%s.%s` done with %s", service, action, result)

        return result
