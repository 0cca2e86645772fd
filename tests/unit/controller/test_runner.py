import asyncio
from datetime import timedelta
from unittest import mock

import pytest

from anycast_ip_controller.controller.runner import ControllerRunner
from anycast_ip_controller.controller.workqueue import WorkQueue
from anycast_ip_controller.exceptions import AddressNotReady


async def wait_for(condition, timeout=1.0):
    for _ in range(int(timeout / 0.01)):
        if condition():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not met in time")


@pytest.fixture
def queue():
    return WorkQueue(base_delay=timedelta(milliseconds=1))


@pytest.fixture
def watcher():
    return mock.AsyncMock()


@pytest.fixture
def forward_reconciler():
    return mock.AsyncMock()


@pytest.fixture
def reverse_reconciler():
    return mock.AsyncMock()


@pytest.fixture
async def runner(queue, watcher, forward_reconciler, reverse_reconciler):
    runner = ControllerRunner(
        queue=queue,
        watcher=watcher,
        forward_reconciler=forward_reconciler,
        reverse_reconciler=reverse_reconciler,
        max_concurrent_reconciles=2,
    )
    yield runner
    await runner.stop()


async def test_start_stop(runner, watcher, reverse_reconciler):
    await runner.start()

    assert runner.is_running()
    watcher.start.assert_awaited_once()

    await runner.stop()

    assert not runner.is_running()
    watcher.stop.assert_awaited_once()
    reverse_reconciler.reconcile.assert_not_awaited()


async def test_worker_reconciles_queued_nodes(runner, queue, forward_reconciler):
    await runner.start()

    queue.add("n1")
    queue.add("n2")

    await wait_for(lambda: forward_reconciler.reconcile.await_count == 2)
    assert {call.args[0] for call in forward_reconciler.reconcile.await_args_list} == {"n1", "n2"}
    assert queue.num_requeues("n1") == 0


@pytest.mark.parametrize("error", (AddressNotReady("binding"), RuntimeError("boom")))
async def test_worker_retries_failed_node(runner, queue, forward_reconciler, error):
    forward_reconciler.reconcile.side_effect = [error, None]
    await runner.start()

    queue.add("n1")

    await wait_for(lambda: forward_reconciler.reconcile.await_count == 2)
    await wait_for(lambda: queue.num_requeues("n1") == 0)
    assert runner.is_running()


async def test_node_is_not_reconciled_concurrently(runner, queue, forward_reconciler):
    release = asyncio.Event()
    running = []
    max_running = []

    async def reconcile(node_name):
        running.append(node_name)
        max_running.append(running.count(node_name))
        await release.wait()
        running.remove(node_name)

    forward_reconciler.reconcile.side_effect = reconcile
    await runner.start()

    queue.add("n1")
    await wait_for(lambda: running == ["n1"])
    queue.add("n1")
    await asyncio.sleep(0.05)
    release.set()

    await wait_for(lambda: forward_reconciler.reconcile.await_count == 2)
    assert max(max_running) == 1


async def test_sweep_loop(queue, watcher, forward_reconciler, reverse_reconciler):
    reverse_reconciler.reconcile.side_effect = [AddressNotReady("unbinding"), None, None]
    runner = ControllerRunner(
        queue=queue,
        watcher=watcher,
        forward_reconciler=forward_reconciler,
        reverse_reconciler=reverse_reconciler,
        reverse_reconcile_enabled=True,
        reverse_reconcile_interval=timedelta(milliseconds=10),
    )

    await runner.start()
    await wait_for(lambda: reverse_reconciler.reconcile.await_count >= 2)
    await runner.stop()

    assert not runner.is_running()


async def test_unhealthy_when_watcher_died(runner, watcher):
    watcher.is_running = mock.Mock(return_value=False)

    assert runner.is_healthy()

    await runner.start()

    assert not runner.is_healthy()

    watcher.is_running.return_value = True

    assert runner.is_healthy()
