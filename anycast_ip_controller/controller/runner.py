import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from anycast_ip_controller.controller.reconcile import ForwardReconciler, ReverseReconciler
from anycast_ip_controller.controller.settings import DEFAULT_REVERSE_RECONCILE_INTERVAL
from anycast_ip_controller.controller.watcher import NodeWatcher
from anycast_ip_controller.controller.workqueue import WorkQueue
from anycast_ip_controller.exceptions import AnycastIpControllerError
from anycast_ip_controller.log import get_trace_id_name, trace_id_var
from anycast_ip_controller.utils import create_task_with_logging, ensure_cancelled_many

logger = logging.getLogger(__name__)


class ControllerRunner:
    """Runs the node watcher, the reconcile workers and the periodic reverse reconcile."""

    def __init__(
        self,
        *,
        queue: WorkQueue,
        watcher: NodeWatcher,
        forward_reconciler: ForwardReconciler,
        reverse_reconciler: ReverseReconciler,
        max_concurrent_reconciles: int = 1,
        reverse_reconcile_enabled: bool = False,
        reverse_reconcile_interval: timedelta = DEFAULT_REVERSE_RECONCILE_INTERVAL,
    ) -> None:
        self._queue = queue
        self._watcher = watcher
        self._forward_reconciler = forward_reconciler
        self._reverse_reconciler = reverse_reconciler
        self._max_concurrent_reconciles = max_concurrent_reconciles
        self._reverse_reconcile_enabled = reverse_reconcile_enabled
        self._reverse_reconcile_interval = reverse_reconcile_interval

        self._worker_tasks: List[asyncio.Task] = []
        self._sweep_task: Optional[asyncio.Task] = None

    def is_running(self) -> bool:
        return bool(self._worker_tasks)

    def is_healthy(self) -> bool:
        """Stopped runner is healthy, a running one needs its node watcher alive."""

        return not self.is_running() or self._watcher.is_running()

    async def start(self) -> None:
        if self.is_running():
            logger.info("Not starting ControllerRunner, as it's already running")
            return

        logger.info(
            "Starting ControllerRunner with %s workers...", self._max_concurrent_reconciles
        )

        await self._watcher.start()

        self._worker_tasks = [
            create_task_with_logging(self._worker(), trace_id=f"reconcile-worker-{i}")
            for i in range(self._max_concurrent_reconciles)
        ]

        if self._reverse_reconcile_enabled:
            self._sweep_task = create_task_with_logging(
                self._sweep_loop(), trace_id="reverse-reconcile-loop"
            )
        else:
            logger.info("Not starting reverse reconcile, as it's disabled")

        logger.info("Starting ControllerRunner done")

    async def stop(self) -> None:
        if not self.is_running():
            logger.info("Not stopping ControllerRunner, as it's already stopped")
            return

        logger.info("Stopping ControllerRunner...")

        self._queue.shutdown()
        await self._watcher.stop()

        tasks = list(self._worker_tasks)
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)

        await ensure_cancelled_many(tasks)
        self._worker_tasks = []
        self._sweep_task = None

        logger.info("Stopping ControllerRunner done")

    async def _worker(self) -> None:
        while True:
            node_name = await self._queue.get()
            if node_name is None:
                return

            trace_id_var.set(get_trace_id_name(f"reconcile-{node_name}"))

            try:
                await self._forward_reconciler.reconcile(node_name)
            except AnycastIpControllerError as e:
                delay = self._queue.add_rate_limited(node_name)
                logger.warning(
                    "Reconciling node `%s` failed, retrying in `%s`: %s", node_name, delay, e
                )
                logger.debug("Reconciling node `%s` failure details", node_name, exc_info=True)
            except Exception:
                delay = self._queue.add_rate_limited(node_name)
                logger.exception(
                    "Reconciling node `%s` failed unexpectedly, retrying in `%s`", node_name, delay
                )
            else:
                self._queue.forget(node_name)
            finally:
                self._queue.done(node_name)

    async def _sweep_loop(self) -> None:
        while True:
            await self.run_sweep()
            await asyncio.sleep(self._reverse_reconcile_interval.total_seconds())

    async def run_sweep(self) -> None:
        trace_id_var.set(get_trace_id_name("reverse-reconcile"))

        try:
            await self._reverse_reconciler.reconcile()
        except AnycastIpControllerError as e:
            logger.warning("Reverse reconcile aborted, retrying on next run: %s", e)
            logger.debug("Reverse reconcile failure details", exc_info=True)
        except Exception:
            logger.exception("Reverse reconcile failed unexpectedly, retrying on next run")
