import asyncio
import logging
import logging.config
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
from aiohttp import web
from kubernetes_asyncio import client, config

from anycast_ip_controller.cli import with_config_path
from anycast_ip_controller.controller.config import load_config
from anycast_ip_controller.controller.middlewares import error_middleware, trace_id_middleware
from anycast_ip_controller.controller.models import ConfigData, ControllerOptions
from anycast_ip_controller.controller.reconcile import (
    AddressManager,
    ForwardReconciler,
    ReverseReconciler,
    get_or_create_cluster_uuid,
)
from anycast_ip_controller.controller.runner import ControllerRunner
from anycast_ip_controller.controller.services import (
    KubernetesService,
    LeaseLeaderElector,
    StaticLeadership,
    TagService,
    TencentCloudClient,
    VpcService,
)
from anycast_ip_controller.controller.settings import (
    DEFAULT_LEADER_ELECTION_NAMESPACE,
    DEFAULT_LEASE_DURATION,
    DEFAULT_MAX_CONCURRENT_RECONCILES,
    DEFAULT_PORT,
    DEFAULT_RENEW_DEADLINE,
    DEFAULT_RETRY_PERIOD,
    DEFAULT_REVERSE_RECONCILE_INTERVAL,
    SHUTDOWN_CONNECTIONS_TIMEOUT,
    get_logging_config,
)
from anycast_ip_controller.controller.views import routes
from anycast_ip_controller.controller.watcher import NodeWatcher
from anycast_ip_controller.controller.workqueue import WorkQueue
from anycast_ip_controller.exceptions import ConfigError
from anycast_ip_controller.utils import (
    create_task_with_logging,
    ensure_cancelled,
    raise_graceful_exit,
)

logger = logging.getLogger(__name__)


@click.command(
    name="run",
    help="Run the anycast ip controller.",
    context_settings={"show_default": True},
)
@with_config_path
@click.option(
    "--max-concurrent-reconciles",
    "--max-concurrent-reconcile",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_CONCURRENT_RECONCILES,
    help="Maximum number of nodes reconciled at the same time.",
)
@click.option(
    "--enable-reverse-reconcile/--disable-reverse-reconcile",
    default=False,
    help="Periodically release addresses of nodes that are gone from the cluster.",
)
@click.option(
    "--reverse-reconcile-interval",
    type=click.IntRange(min=1),
    default=int(DEFAULT_REVERSE_RECONCILE_INTERVAL.total_seconds()),
    help="Seconds between the end of a reverse reconcile and the start of the next one.",
)
@click.option(
    "--leader-elect/--no-leader-elect",
    default=True,
    help="Run reconciles only in the replica holding the leader election lease.",
)
@click.option(
    "--leader-election-namespace",
    default=DEFAULT_LEADER_ELECTION_NAMESPACE,
    help="Namespace of the leader election lease.",
)
@click.option(
    "--leader-election-lease-duration",
    type=click.IntRange(min=1),
    default=int(DEFAULT_LEASE_DURATION.total_seconds()),
    help="Seconds other replicas wait before taking over a lease that was not renewed.",
)
@click.option(
    "--leader-election-renew-deadline",
    type=click.IntRange(min=1),
    default=int(DEFAULT_RENEW_DEADLINE.total_seconds()),
    help="Seconds the leader keeps retrying to renew the lease before giving up leadership.",
)
@click.option(
    "--leader-election-retry-period",
    type=click.IntRange(min=1),
    default=int(DEFAULT_RETRY_PERIOD.total_seconds()),
    help="Seconds between attempts to acquire or renew the lease.",
)
@click.option(
    "--resource-lock-name",
    help="Name of the leader election lease, overrides `controller.resourceLockName` config.",
)
@click.option(
    "-p",
    "--port",
    type=int,
    default=DEFAULT_PORT,
    help="Port for the status webserver to listen on.",
)
@click.option(
    "--kubeconfig",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Kubeconfig file. By default, in-cluster config is used, falling back to ~/.kube/config.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    help="Log level of the controller.",
)
def main(
    config_path: Path,
    max_concurrent_reconciles: int,
    enable_reverse_reconcile: bool,
    reverse_reconcile_interval: int,
    leader_elect: bool,
    leader_election_namespace: str,
    leader_election_lease_duration: int,
    leader_election_renew_deadline: int,
    leader_election_retry_period: int,
    resource_lock_name: Optional[str],
    port: int,
    kubeconfig: Optional[Path],
    log_level: str,
):
    logging.config.dictConfig(get_logging_config(log_level))

    try:
        config_data = load_config(config_path)
    except ConfigError as e:
        logger.error("Not starting controller, as config is invalid: %s", e)
        sys.exit(1)

    options = ControllerOptions(
        max_concurrent_reconciles=max_concurrent_reconciles,
        reverse_reconcile_enabled=enable_reverse_reconcile,
        reverse_reconcile_interval=timedelta(seconds=reverse_reconcile_interval),
        leader_elect=leader_elect,
        leader_election_namespace=leader_election_namespace,
        lease_duration=timedelta(seconds=leader_election_lease_duration),
        renew_deadline=timedelta(seconds=leader_election_renew_deadline),
        retry_period=timedelta(seconds=leader_election_retry_period),
        resource_lock_name=resource_lock_name,
        port=port,
        kubeconfig=kubeconfig,
    )

    app = create_application(config_data, options)

    logger.info(
        "Starting controller... cluster_id=%s, region=%s, %s",
        config_data.credential.cluster_id,
        config_data.region.long_name,
        options,
    )

    try:
        web.run_app(
            app,
            port=options.port,
            print=None,
            shutdown_timeout=SHUTDOWN_CONNECTIONS_TIMEOUT.total_seconds(),
        )
    except Exception:
        logger.exception("Controller unexpectedly died, bye!")
        sys.exit(1)

    if app["leadership_lost"].is_set():
        logger.error("Stopping controller done, leadership lost, bye!")
        sys.exit(1)

    logger.info("Stopping controller done, bye!")


def create_application(config_data: ConfigData, options: ControllerOptions) -> web.Application:
    app = web.Application(
        middlewares=[
            trace_id_middleware,
            error_middleware,
        ]
    )

    app["config"] = config_data
    app["options"] = options
    app["leadership_lost"] = asyncio.Event()
    app["queue"] = WorkQueue()

    app["cloud_client"] = TencentCloudClient(
        secret_id=config_data.credential.secret_id,
        secret_key=config_data.credential.secret_key,
        region=config_data.region.long_name,
    )

    app.add_routes(routes)
    app.cleanup_ctx.append(cloud_client_ctx)
    app.cleanup_ctx.append(kubernetes_ctx)
    app.cleanup_ctx.append(reconcilers_ctx)
    app.cleanup_ctx.append(controller_ctx)
    app.on_startup.append(startup_print)

    return app


async def startup_print(app: web.Application) -> None:
    logger.info(
        "Starting controller done, status webserver listening on port %s", app["options"].port
    )


async def load_kubernetes_config(kubeconfig: Optional[Path]) -> None:
    if kubeconfig:
        await config.load_kube_config(config_file=str(kubeconfig))
        return

    try:
        config.load_incluster_config()
    except config.ConfigException:
        logger.info("Not using in-cluster kubernetes config, as it's not available")
        await config.load_kube_config()


async def cloud_client_ctx(app: web.Application) -> None:
    cloud_client: TencentCloudClient = app["cloud_client"]

    await cloud_client.start()

    yield

    await cloud_client.stop()


async def kubernetes_ctx(app: web.Application) -> None:
    await load_kubernetes_config(app["options"].kubeconfig)

    api_client = client.ApiClient()
    app["api_client"] = api_client
    app["kubernetes_service"] = KubernetesService(api_client)

    yield

    await api_client.close()


async def reconcilers_ctx(app: web.Application) -> None:
    config_data: ConfigData = app["config"]
    options: ControllerOptions = app["options"]
    kubernetes_service: KubernetesService = app["kubernetes_service"]

    app["cluster_uuid"] = await get_or_create_cluster_uuid(kubernetes_service)

    if options.leader_elect:
        app["leadership"] = LeaseLeaderElector(
            app["api_client"],
            name=options.resource_lock_name or config_data.controller.resource_lock_name,
            namespace=options.leader_election_namespace,
            lease_duration=options.lease_duration,
            renew_deadline=options.renew_deadline,
            retry_period=options.retry_period,
        )
    else:
        app["leadership"] = StaticLeadership(True)

    address_manager = AddressManager(
        vpc_service=VpcService(app["cloud_client"]),
        tag_service=TagService(app["cloud_client"]),
        kubernetes_service=kubernetes_service,
        address_config=config_data.address,
        cluster_uuid=app["cluster_uuid"],
        cluster_id=config_data.credential.cluster_id,
        region=config_data.region.long_name,
    )

    app["reverse_reconciler"] = ReverseReconciler(
        kubernetes_service=kubernetes_service,
        address_manager=address_manager,
        leadership=app["leadership"],
    )

    app["runner"] = ControllerRunner(
        queue=app["queue"],
        watcher=NodeWatcher(
            kubernetes_service=kubernetes_service,
            queue=app["queue"],
            required_labels=config_data.node.labels,
        ),
        forward_reconciler=ForwardReconciler(
            kubernetes_service=kubernetes_service,
            address_manager=address_manager,
            extra_tags=config_data.address.tags,
        ),
        reverse_reconciler=app["reverse_reconciler"],
        max_concurrent_reconciles=options.max_concurrent_reconciles,
        reverse_reconcile_enabled=options.reverse_reconcile_enabled,
        reverse_reconcile_interval=options.reverse_reconcile_interval,
    )

    yield


async def controller_ctx(app: web.Application) -> None:
    runner: ControllerRunner = app["runner"]

    lead_task = create_task_with_logging(lead(app), trace_id="leader-election")

    yield

    await ensure_cancelled(lead_task)
    await runner.stop()


async def lead(app: web.Application) -> None:
    """Run the controller for as long as this replica is the leader.

    Losing the lease and failing to take part in the election both end with a graceful exit."""

    runner: ControllerRunner = app["runner"]
    leadership = app["leadership"]

    if not isinstance(leadership, LeaseLeaderElector):
        await runner.start()
        return

    try:
        await leadership.run(on_started_leading=runner.start)
    except Exception:
        logger.exception("Leader election failed!")

    app["leadership_lost"].set()
    await runner.stop()

    asyncio.get_running_loop().call_soon(raise_graceful_exit)
