import pytest

from anycast_ip_controller.controller.models import AddressConfigData
from anycast_ip_controller.controller.reconcile import AddressManager
from tests.fakes import CLUSTER_ID, CLUSTER_UUID, REGION, FakeCloud, FakeKubernetesService


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def kubernetes_service():
    return FakeKubernetesService()


@pytest.fixture
def address_config():
    return AddressConfigData(tags={"team": "net"})


@pytest.fixture
def address_manager(cloud, kubernetes_service, address_config):
    return AddressManager(
        vpc_service=cloud.vpc,
        tag_service=cloud.tag,
        kubernetes_service=kubernetes_service,
        address_config=address_config,
        cluster_uuid=CLUSTER_UUID,
        cluster_id=CLUSTER_ID,
        region=REGION,
    )
