import asyncio

import pytest

from atende.services.tasks import TaskSupervisor


class TestTaskSupervisor:
    @pytest.mark.asyncio
    async def test_failure_does_not_propagate(self):
        supervisor = TaskSupervisor()

        async def broken():
            raise RuntimeError("webhook endpoint down")

        task = supervisor.spawn(broken(), name="broken")
        await supervisor.drain()

        assert task.done()
        assert supervisor.pending == 0

    @pytest.mark.asyncio
    async def test_drain_waits_for_all(self):
        supervisor = TaskSupervisor()
        finished = []

        async def work(value):
            await asyncio.sleep(0)
            finished.append(value)

        supervisor.spawn(work(1), name="one")
        supervisor.spawn(work(2), name="two")
        await supervisor.drain()

        assert sorted(finished) == [1, 2]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers_and_rejects_new_work(self):
        supervisor = TaskSupervisor()
        task = supervisor.spawn(asyncio.sleep(60), name="slow")

        await supervisor.shutdown(timeout=0.01)

        assert task.cancelled()

        async def late():
            return None

        assert supervisor.spawn(late(), name="late") is None
