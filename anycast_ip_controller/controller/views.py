import logging

from aiohttp import web
from pydantic import BaseModel

from anycast_ip_controller.controller import models, settings
from anycast_ip_controller.controller.reconcile import ReverseReconciler
from anycast_ip_controller.controller.runner import ControllerRunner
from anycast_ip_controller.controller.services import LeadershipStatus
from anycast_ip_controller.controller.workqueue import WorkQueue
from anycast_ip_controller.version import get_version

logger = logging.getLogger(__name__)

routes = web.RouteTableDef()


def json_response(model_obj: BaseModel) -> web.Response:
    """Return a JSON web response based on the provided pydantic model."""
    return web.json_response(text=model_obj.model_dump_json())


@routes.get(settings.URL_HEALTHZ)
async def healthz(request: web.Request) -> web.Response:
    runner: ControllerRunner = request.app["runner"]

    if not runner.is_healthy():
        return web.json_response({"status": "node watcher is not running"}, status=503)

    return web.json_response({"status": "ok"})


@routes.get(settings.URL_STATUS)
async def status(request: web.Request) -> web.Response:
    leadership: LeadershipStatus = request.app["leadership"]
    reverse_reconciler: ReverseReconciler = request.app["reverse_reconciler"]
    queue: WorkQueue = request.app["queue"]
    options: models.ControllerOptions = request.app["options"]

    return json_response(
        models.ControllerStatus(
            version=get_version(),
            cluster_uuid=request.app["cluster_uuid"],
            is_leader=leadership.is_leader(),
            reverse_reconcile_enabled=options.reverse_reconcile_enabled,
            last_sweep=reverse_reconciler.last_result,
            queue_length=len(queue),
        )
    )
