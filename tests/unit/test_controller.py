"""
Unit tests for ChannelController, driven through a scripted channel.
"""

import asyncio
import time

import pytest

from sandbox_bridge.controller.controller import ChannelController, ControllerState
from sandbox_bridge.errors import ErrorKind, SandboxBridgeError
from sandbox_bridge.protocol.identity import RequestIdGenerator
from sandbox_bridge.settings import Settings
from tests.helpers import ScriptedChannel, make_request, wait_until


class ChannelFactory:
    """Hands out the given channels in order and counts calls."""

    def __init__(self, *channels: ScriptedChannel):
        self._channels = list(channels)
        self.calls = 0

    def __call__(self) -> ScriptedChannel:
        self.calls += 1
        return self._channels.pop(0)


@pytest.fixture
def channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture
def controller(channel, settings) -> ChannelController:
    return ChannelController(ChannelFactory(channel), settings=settings)


class TestSubmit:
    """Tests for submission and response correlation."""

    @pytest.mark.asyncio
    async def test_starts_lazily_and_resolves(self, controller, channel):
        assert controller.state is ControllerState.UNINITIALIZED

        task = asyncio.create_task(controller.submit(make_request(code="print(2+3)")))
        await wait_until(lambda: len(channel.sent) == 1)

        assert controller.state is ControllerState.ACTIVE
        assert controller.pending_count == 1
        sent = channel.sent[0]
        assert sent.id.startswith("req_")
        assert sent.payload.code == "print(2+3)"

        channel.reply_result(sent.id, stdout="5\n")
        result = await task

        assert result.stdout == "5\n"
        assert controller.pending_count == 0

    @pytest.mark.asyncio
    async def test_responses_in_reverse_order_reach_their_own_callers(self, controller, channel):
        tasks = [asyncio.create_task(controller.submit(make_request(code=f"job {i}"))) for i in range(3)]
        await wait_until(lambda: len(channel.sent) == 3)

        for envelope in reversed(channel.sent):
            channel.reply_result(envelope.id, stdout=envelope.payload.code)
        results = await asyncio.gather(*tasks)

        assert [r.stdout for r in results] == ["job 0", "job 1", "job 2"]
        assert controller.pending_count == 0

    @pytest.mark.asyncio
    async def test_ids_are_distinct(self, controller, channel):
        tasks = [asyncio.create_task(controller.submit(make_request())) for _ in range(20)]
        await wait_until(lambda: len(channel.sent) == 20)

        assert len({envelope.id for envelope in channel.sent}) == 20
        for envelope in channel.sent:
            channel.reply_result(envelope.id)
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_duplicate_id_is_rejected(self, channel, settings):
        class FixedIds(RequestIdGenerator):
            def next_id(self) -> str:
                return "req_fixed"

        controller = ChannelController(ChannelFactory(channel), settings=settings, id_generator=FixedIds())
        first = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 1)

        with pytest.raises(RuntimeError):
            await controller.submit(make_request())

        channel.reply_result("req_fixed", stdout="first")
        assert (await first).stdout == "first"

    @pytest.mark.asyncio
    async def test_stale_and_duplicate_responses_are_discarded(self, controller, channel):
        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 1)
        request_id = channel.sent[0].id

        channel.reply_result("req_unknown", stdout="stray")
        assert controller.pending_count == 1

        channel.reply_result(request_id, stdout="real")
        channel.reply_result(request_id, stdout="duplicate")

        assert (await task).stdout == "real"
        assert controller.pending_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", ["ExecutionTimeout", "UnsupportedLanguage", "ExecutionError", "SomethingNew"])
    async def test_error_envelope_kind_passes_through(self, controller, channel, kind):
        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 1)

        channel.reply_error(channel.sent[0].id, kind, "details")

        with pytest.raises(SandboxBridgeError) as exc_info:
            await task
        assert exc_info.value.kind == kind
        assert exc_info.value.message == "details"

    @pytest.mark.asyncio
    async def test_send_failure_is_a_channel_fault(self, settings):
        channel = ScriptedChannel(fail_send=ConnectionError("pipe closed"))
        controller = ChannelController(ChannelFactory(channel), settings=settings)

        with pytest.raises(SandboxBridgeError) as exc_info:
            await controller.submit(make_request())

        assert exc_info.value.kind == ErrorKind.CHANNEL_FAULT
        assert "Failed to send request" in exc_info.value.message
        assert controller.pending_count == 0
        assert controller.state is ControllerState.ACTIVE

    @pytest.mark.asyncio
    async def test_caller_cancellation_removes_pending_entry(self, controller, channel):
        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 1)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert controller.pending_count == 0
        channel.reply_result(channel.sent[0].id)

    @pytest.mark.asyncio
    async def test_oversized_request_fails_alone(self, channel):
        settings = Settings(max_frame_bytes=1024, timeout_margin_ms=100)
        controller = ChannelController(ChannelFactory(channel), settings=settings)
        normal = asyncio.create_task(controller.submit(make_request(code="print('ok')")))
        await wait_until(lambda: len(channel.sent) == 1)

        with pytest.raises(SandboxBridgeError) as exc_info:
            await controller.submit(make_request(code="x" * 200_000))

        assert exc_info.value.kind == ErrorKind.EXECUTION_ERROR
        assert exc_info.value.message == "Request frame exceeds 1024 bytes"
        assert len(channel.sent) == 1
        assert controller.pending_count == 1
        assert controller.state is ControllerState.ACTIVE

        channel.reply_result(channel.sent[0].id, stdout="ok\n")
        assert (await normal).stdout == "ok\n"


class TestRequestTimeout:
    """Tests for the outer per-request timeout."""

    @pytest.mark.asyncio
    async def test_fires_after_timeout_plus_margin(self, controller, channel):
        start = time.monotonic()

        with pytest.raises(SandboxBridgeError) as exc_info:
            await controller.submit(make_request(timeout_ms=50))

        elapsed = time.monotonic() - start
        assert exc_info.value.kind == ErrorKind.REQUEST_TIMEOUT
        assert exc_info.value.message == "Request timed out after 50ms"
        # timeout_ms=50 plus the fixture's 100ms margin
        assert 0.14 <= elapsed < 1.0
        assert controller.pending_count == 0

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_discarded(self, controller, channel):
        with pytest.raises(SandboxBridgeError):
            await controller.submit(make_request(timeout_ms=10))

        channel.reply_result(channel.sent[0].id, stdout="late")

        assert controller.pending_count == 0
        assert controller.state is ControllerState.ACTIVE

    @pytest.mark.asyncio
    async def test_response_before_deadline_cancels_timer(self, controller, channel):
        task = asyncio.create_task(controller.submit(make_request(timeout_ms=50)))
        await wait_until(lambda: len(channel.sent) == 1)

        channel.reply_result(channel.sent[0].id, stdout="in time")
        assert (await task).stdout == "in time"

        await asyncio.sleep(0.2)
        assert controller.pending_count == 0


class TestStart:
    """Tests for channel establishment."""

    @pytest.mark.asyncio
    async def test_concurrent_submits_open_channel_once(self, channel, settings):
        factory = ChannelFactory(channel)
        controller = ChannelController(factory, settings=settings)

        tasks = [asyncio.create_task(controller.submit(make_request())) for _ in range(5)]
        await wait_until(lambda: len(channel.sent) == 5)
        for envelope in channel.sent:
            channel.reply_result(envelope.id)
        await asyncio.gather(*tasks)

        assert factory.calls == 1
        assert channel.open_calls == 1

    @pytest.mark.asyncio
    async def test_creation_failure_is_reported_and_retryable(self, settings):
        broken = ScriptedChannel(fail_open=OSError("cannot spawn"))
        healthy = ScriptedChannel()
        controller = ChannelController(ChannelFactory(broken, healthy), settings=settings)

        with pytest.raises(SandboxBridgeError) as exc_info:
            await controller.submit(make_request())

        assert exc_info.value.kind == ErrorKind.CHANNEL_CREATION_FAILED
        assert "cannot spawn" in exc_info.value.message
        assert broken.close_calls == 1
        assert controller.state is ControllerState.UNINITIALIZED

        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(healthy.sent) == 1)
        healthy.reply_result(healthy.sent[0].id, stdout="ok")
        assert (await task).stdout == "ok"

    @pytest.mark.asyncio
    async def test_terminate_during_open_wins(self, settings):
        gate = asyncio.Event()
        channel = ScriptedChannel(open_gate=gate)
        controller = ChannelController(ChannelFactory(channel), settings=settings)

        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: channel.open_calls == 1)
        await controller.terminate()
        gate.set()

        with pytest.raises(SandboxBridgeError) as exc_info:
            await task
        assert exc_info.value.kind == ErrorKind.CHANNEL_TERMINATED
        assert channel.close_calls == 1
        assert channel.sent == []


class TestTerminate:
    """Tests for teardown."""

    @pytest.mark.asyncio
    async def test_fails_every_pending_request(self, controller, channel):
        tasks = [asyncio.create_task(controller.submit(make_request())) for _ in range(4)]
        await wait_until(lambda: len(channel.sent) == 4)

        await controller.terminate()
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(o, SandboxBridgeError) for o in outcomes)
        assert {o.kind for o in outcomes} == {ErrorKind.CHANNEL_TERMINATED.value}
        assert controller.pending_count == 0
        assert controller.state is ControllerState.TERMINATED
        assert channel.close_calls == 1

    @pytest.mark.asyncio
    async def test_is_idempotent(self, controller, channel):
        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 1)
        channel.reply_result(channel.sent[0].id)
        await task

        await controller.terminate()
        await controller.terminate()

        assert channel.close_calls == 1

    @pytest.mark.asyncio
    async def test_submit_after_terminate_never_creates_channel(self, channel, settings):
        factory = ChannelFactory(channel)
        controller = ChannelController(factory, settings=settings)

        await controller.terminate()

        with pytest.raises(SandboxBridgeError) as exc_info:
            await controller.submit(make_request())
        assert exc_info.value.kind == ErrorKind.CHANNEL_TERMINATED
        assert controller.state is ControllerState.TERMINATED
        assert factory.calls == 0

        with pytest.raises(SandboxBridgeError):
            await controller.start()

    @pytest.mark.asyncio
    async def test_context_manager_terminates(self, channel, settings):
        async with ChannelController(ChannelFactory(channel), settings=settings) as controller:
            task = asyncio.create_task(controller.submit(make_request()))
            await wait_until(lambda: len(channel.sent) == 1)
            channel.reply_result(channel.sent[0].id)
            await task

        assert controller.state is ControllerState.TERMINATED
        assert channel.close_calls == 1


class TestChannelFaults:
    """Tests for faults reported by the channel."""

    @pytest.mark.asyncio
    async def test_recoverable_fault_fails_pending_and_stays_active(self, controller, channel):
        tasks = [asyncio.create_task(controller.submit(make_request())) for _ in range(2)]
        await wait_until(lambda: len(channel.sent) == 2)

        channel.fault("Undecodable frame")
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        assert [o.kind for o in outcomes] == [ErrorKind.CHANNEL_FAULT.value] * 2
        assert all("Undecodable frame" in o.message for o in outcomes)
        assert controller.state is ControllerState.ACTIVE
        assert controller.pending_count == 0

        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 3)
        channel.reply_result(channel.sent[2].id, stdout="recovered")
        assert (await task).stdout == "recovered"
        assert channel.open_calls == 1

    @pytest.mark.asyncio
    async def test_fatal_fault_terminates(self, controller, channel):
        task = asyncio.create_task(controller.submit(make_request()))
        await wait_until(lambda: len(channel.sent) == 1)

        channel.fault("Worker process exited with code -9", fatal=True)

        with pytest.raises(SandboxBridgeError) as exc_info:
            await task
        assert exc_info.value.kind == ErrorKind.CHANNEL_FAULT
        assert controller.state is ControllerState.TERMINATED
        await wait_until(lambda: channel.close_calls == 1)

        with pytest.raises(SandboxBridgeError) as exc_info:
            await controller.submit(make_request())
        assert exc_info.value.kind == ErrorKind.CHANNEL_TERMINATED

        await controller.terminate()
        assert channel.close_calls == 1
