import logging

from aiohttp import web

from anycast_ip_controller.exceptions import AnycastIpControllerError
from anycast_ip_controller.log import get_trace_id_name, trace_id_var

logger = logging.getLogger(__name__)


@web.middleware
async def trace_id_middleware(request, handler):
    trace_id_var.set(get_trace_id_name("webserver-request"))

    return await handler(request)


@web.middleware
async def error_middleware(request, handler):
    try:
        response = await handler(request)
    except web.HTTPException as e:
        message = e.reason
        status_code = e.status_code
    except AnycastIpControllerError as e:
        message = str(e)
        status_code = 400
    except Exception:
        logger.exception("Handling `%s %s` failed unexpectedly", request.method, request.path)
        message = "Internal Server Error"
        status_code = 500
    else:
        if response.status != 404:
            return response

        message = "not found"
        status_code = 404

    return web.json_response({"error": message}, status=status_code)
