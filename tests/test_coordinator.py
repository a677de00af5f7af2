"""Tests for the in-flight coordinator."""
import asyncio

import pytest
import pytest_asyncio

from mocktwilio.coordinator import Coordinator
from mocktwilio.errors import InFlightTimeoutError, ServerClosedError


class FakeLifecycle:
    """Runs until released or until the server starts stopping."""

    kind = "fake"

    def __init__(self, sid, fail=False, honor_stop=True):
        self.sid = sid
        self.fail = fail
        self.honor_stop = honor_stop
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.finished = False

    async def run(self, stopping):
        self.started.set()
        if self.honor_stop:
            release = asyncio.ensure_future(self.release.wait())
            stop = asyncio.ensure_future(stopping.wait())
            await asyncio.wait({release, stop}, return_when=asyncio.FIRST_COMPLETED)
            release.cancel()
            stop.cancel()
        else:
            await self.release.wait()
        if self.fail:
            raise RuntimeError(f"{self.sid} broke")
        self.finished = True


@pytest_asyncio.fixture
async def coordinator():
    errors = []
    coordinator = Coordinator(on_error=errors.append)
    coordinator.errors = errors
    coordinator.start()
    yield coordinator
    await coordinator.close()


class TestWaitInFlight:
    """Tests for draining in-flight work."""

    @pytest.mark.asyncio
    async def test_idle_returns_immediately(self, coordinator):
        await coordinator.wait_in_flight(timeout=1)

    @pytest.mark.asyncio
    async def test_waits_for_every_submission(self, coordinator):
        lifecycles = [FakeLifecycle(f"L{i}") for i in range(3)]
        for lifecycle in lifecycles:
            coordinator.submit(lifecycle)

        waiter = asyncio.create_task(coordinator.wait_in_flight(timeout=2))
        await asyncio.gather(*(lifecycle.started.wait() for lifecycle in lifecycles))
        assert not waiter.done()

        for lifecycle in lifecycles:
            lifecycle.release.set()
        await waiter

        assert all(lifecycle.finished for lifecycle in lifecycles)
        assert coordinator.in_flight == 0

    @pytest.mark.asyncio
    async def test_submission_before_wait_is_seen(self, coordinator):
        """A submit followed directly by wait_in_flight never returns early."""
        lifecycle = FakeLifecycle("L1")
        coordinator.submit(lifecycle)

        with pytest.raises(InFlightTimeoutError):
            await coordinator.wait_in_flight(timeout=0.05)

        lifecycle.release.set()
        await coordinator.wait_in_flight(timeout=1)

    @pytest.mark.asyncio
    async def test_timeout_leaves_work_running(self, coordinator):
        lifecycle = FakeLifecycle("L1")
        coordinator.submit(lifecycle)

        with pytest.raises(InFlightTimeoutError):
            await coordinator.wait_in_flight(timeout=0.05)

        assert coordinator.in_flight == 1
        assert not lifecycle.finished

        lifecycle.release.set()
        await coordinator.wait_in_flight(timeout=1)
        assert lifecycle.finished

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self, coordinator):
        coordinator.submit(FakeLifecycle("L1"))

        with pytest.raises(TimeoutError):
            await coordinator.wait_in_flight(timeout=0.01)

    @pytest.mark.asyncio
    async def test_concurrent_waiters(self, coordinator):
        lifecycle = FakeLifecycle("L1")
        coordinator.submit(lifecycle)

        waiters = [asyncio.create_task(coordinator.wait_in_flight(timeout=2)) for _ in range(3)]
        await lifecycle.started.wait()
        lifecycle.release.set()

        await asyncio.gather(*waiters)


class TestFailures:
    """Tests for lifecycle exceptions."""

    @pytest.mark.asyncio
    async def test_exception_reported_and_drained(self, coordinator):
        lifecycle = FakeLifecycle("L1", fail=True)
        coordinator.submit(lifecycle)
        lifecycle.release.set()

        await coordinator.wait_in_flight(timeout=1)

        assert len(coordinator.errors) == 1
        assert str(coordinator.errors[0]) == "L1 broke"


class TestClose:
    """Tests for shutdown."""

    @pytest.mark.asyncio
    async def test_close_signals_lifecycles_to_stop(self):
        coordinator = Coordinator()
        coordinator.start()
        lifecycle = FakeLifecycle("L1")
        coordinator.submit(lifecycle)
        await lifecycle.started.wait()

        await asyncio.wait_for(coordinator.close(), timeout=1)

        assert lifecycle.finished
        assert coordinator.in_flight == 0
        assert coordinator.closed

    @pytest.mark.asyncio
    async def test_close_waits_for_running_work(self):
        """Lifecycles mid-transition are allowed to finish."""
        coordinator = Coordinator()
        coordinator.start()
        lifecycle = FakeLifecycle("L1", honor_stop=False)
        coordinator.submit(lifecycle)
        await lifecycle.started.wait()

        closer = asyncio.create_task(coordinator.close())
        await asyncio.sleep(0.05)
        assert not closer.done()

        lifecycle.release.set()
        await asyncio.wait_for(closer, timeout=1)
        assert lifecycle.finished

    @pytest.mark.asyncio
    async def test_close_is_idempotent_and_concurrent(self):
        coordinator = Coordinator()
        coordinator.start()
        lifecycle = FakeLifecycle("L1", honor_stop=False)
        coordinator.submit(lifecycle)
        await lifecycle.started.wait()

        closers = [asyncio.create_task(coordinator.close()) for _ in range(3)]
        await asyncio.sleep(0.01)
        lifecycle.release.set()
        await asyncio.wait_for(asyncio.gather(*closers), timeout=1)

        await coordinator.close()

    @pytest.mark.asyncio
    async def test_submit_after_close_rejected(self):
        coordinator = Coordinator()
        coordinator.start()
        await coordinator.close()

        with pytest.raises(ServerClosedError):
            coordinator.submit(FakeLifecycle("L1"))

    @pytest.mark.asyncio
    async def test_wait_after_close(self):
        coordinator = Coordinator()
        coordinator.start()
        await coordinator.close()

        await coordinator.wait_in_flight(timeout=1)

    @pytest.mark.asyncio
    async def test_close_without_start(self):
        coordinator = Coordinator()

        await coordinator.close()

        assert coordinator.closed
        with pytest.raises(ServerClosedError):
            coordinator.start()

    def test_submit_before_start(self):
        with pytest.raises(RuntimeError):
            Coordinator().submit(FakeLifecycle("L1"))
