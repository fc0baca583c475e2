"""Tests for the admission queue / single-flight scheduler."""

from __future__ import annotations

import asyncio
import json
import logging

import httpx
import pytest

from conftest import ENDPOINT, DownstreamStub, json_response, read_channel
from queue_proxy.config import load_config
from queue_proxy.proxy.channel import ResponseChannel
from queue_proxy.proxy.dispatcher import DownstreamDispatcher
from queue_proxy.proxy.metrics import ProxyMetrics
from queue_proxy.proxy.scheduler import DispatchScheduler, DispatchSignal
from queue_proxy.types import DispatchState, PendingRequest, SchedulerClosed


def _pending(body, method: str = "POST", headers: dict | None = None) -> PendingRequest:
    return PendingRequest(
        method=method,
        headers=headers or {"content-type": "application/json"},
        body=body,
        channel=ResponseChannel(),
    )


async def _settle(scheduler: DispatchScheduler, timeout: float = 2.0) -> None:
    """Wait until the scheduler has drained and gone idle."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while scheduler.state is not DispatchState.IDLE:
        assert loop.time() < deadline, "scheduler never went idle"
        await asyncio.sleep(0.005)


def _make_scheduler(stub, config, metrics=None):
    client = stub.client()
    dispatcher = DownstreamDispatcher(client, ENDPOINT, relay_mode=config.relay_mode)
    return DispatchScheduler(dispatcher, config, metrics=metrics), client


class TestDispatchSignal:
    def test_fires_once(self):
        async def _run():
            signal = DispatchSignal()
            assert signal.fire() is True
            assert signal.fire() is False
            await signal.wait()
            return signal

        signal = asyncio.run(_run())
        assert signal.fired
        assert signal.fire_count == 2


class TestOrderingAndSingleFlight:
    def test_fifo_and_never_concurrent(self, proxy_config):
        stub = DownstreamStub(
            lambda r: json_response({"n": json.loads(r.content)["n"]}), delay=0.005,
        )

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            pendings = [_pending({"n": i}) for i in range(8)]
            for p in pendings:
                scheduler.enqueue(p)
            results = await asyncio.gather(*(read_channel(p.channel) for p in pendings))
            await _settle(scheduler)
            await client.aclose()
            return pendings, results, scheduler

        pendings, results, scheduler = asyncio.run(_run())
        assert [p.index for p in pendings] == list(range(8))
        starts = [tag for event, tag in stub.timeline if event == "start"]
        assert starts == list(range(8))
        assert stub.max_active == 1
        for i, (status, _, body) in enumerate(results):
            assert status == 200
            assert json.loads(body) == {"n": i}
        assert scheduler.state is DispatchState.IDLE
        assert scheduler.depth == 0
        assert scheduler.in_flight is None

    def test_each_start_follows_previous_end(self, proxy_config):
        stub = DownstreamStub(delay=0.002)

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            pendings = [_pending({"n": i}) for i in range(5)]
            for p in pendings:
                scheduler.enqueue(p)
            await asyncio.gather(*(read_channel(p.channel) for p in pendings))
            await _settle(scheduler)
            await client.aclose()

        asyncio.run(_run())
        expected = []
        for i in range(5):
            expected += [("start", i), ("end", i)]
        assert stub.timeline == expected

    def test_busy_set_synchronously_on_enqueue(self, proxy_config):
        stub = DownstreamStub()

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            assert scheduler.state is DispatchState.IDLE
            first = scheduler.enqueue(_pending({"n": 0}))
            assert scheduler.state is DispatchState.BUSY
            second = scheduler.enqueue(_pending({"n": 1}))
            assert scheduler.depth == 2  # nothing popped before the loop runs
            await asyncio.gather(read_channel(first.channel), read_channel(second.channel))
            await _settle(scheduler)
            await client.aclose()

        asyncio.run(_run())

    def test_requests_arriving_later_restart_the_loop(self, proxy_config):
        stub = DownstreamStub()

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            first = scheduler.enqueue(_pending({"n": 0}))
            await read_channel(first.channel)
            await _settle(scheduler)
            second = scheduler.enqueue(_pending({"n": 1}))
            status, _, _ = await read_channel(second.channel)
            await _settle(scheduler)
            await client.aclose()
            return status

        assert asyncio.run(_run()) == 200
        assert len(stub.calls) == 2


class TestStreamingGate:
    def test_second_request_waits_for_stream_end(self, proxy_config):
        def responder(request):
            n = json.loads(request.content)["n"]
            if n == 0:
                return 200, {"content-type": "text/event-stream"}, [b"one,", b"two,", b"three"]
            return json_response({"n": n})

        stub = DownstreamStub(responder)

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            streaming = scheduler.enqueue(_pending({"n": 0, "stream": True}))
            buffered = scheduler.enqueue(_pending({"n": 1}))
            results = await asyncio.gather(
                read_channel(streaming.channel), read_channel(buffered.channel),
            )
            await _settle(scheduler)
            await client.aclose()
            return results

        (s_status, _, s_body), (b_status, _, b_body) = asyncio.run(_run())
        assert s_status == 200
        assert s_body == b"one,two,three"
        assert b_status == 200
        assert json.loads(b_body) == {"n": 1}
        assert stub.timeline == [("start", 0), ("end", 0), ("start", 1), ("end", 1)]
        # The control field never reaches the downstream.
        assert json.loads(stub.calls[0].content) == {"n": 0}


class TestFailuresAdvanceQueue:
    def test_network_failure_then_next_dispatched(self, proxy_config):
        def responder(request):
            if json.loads(request.content)["n"] == 0:
                raise httpx.ConnectError("connection refused")
            return json_response({"result": "ok"})

        stub = DownstreamStub(responder)
        metrics = ProxyMetrics()

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config, metrics)
            failing = scheduler.enqueue(_pending({"n": 0}))
            ok = scheduler.enqueue(_pending({"n": 1}))
            results = await asyncio.gather(read_channel(failing.channel), read_channel(ok.channel))
            await _settle(scheduler)
            await client.aclose()
            return results

        (f_status, _, f_body), (o_status, _, o_body) = asyncio.run(_run())
        assert f_status == 500
        assert b"connection refused" in f_body
        assert o_status == 200
        assert json.loads(o_body) == {"result": "ok"}
        snap = metrics.snapshot()
        assert snap["total_completed"] == 2
        assert snap["total_errors"] == 1

    def test_http_error_then_next_dispatched(self, proxy_config):
        def responder(request):
            if json.loads(request.content)["n"] == 0:
                return json_response({"error": "bad request"}, status=400)
            return json_response({"result": "ok"})

        stub = DownstreamStub(responder)

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            first = scheduler.enqueue(_pending({"n": 0}))
            second = scheduler.enqueue(_pending({"n": 1}))
            results = await asyncio.gather(read_channel(first.channel), read_channel(second.channel))
            await _settle(scheduler)
            await client.aclose()
            return results

        (f_status, _, f_body), (o_status, _, _) = asyncio.run(_run())
        assert f_status == 400
        assert json.loads(f_body) == {"error": "bad request"}
        assert o_status == 200

    def test_unexpected_dispatcher_crash_still_advances(self, proxy_config):
        stub = DownstreamStub()

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            broken = _pending({"n": 0})
            broken.headers = None  # header filter cannot iterate this
            scheduler.enqueue(broken)
            ok = scheduler.enqueue(_pending({"n": 1}))
            results = await asyncio.gather(read_channel(broken.channel), read_channel(ok.channel))
            await _settle(scheduler)
            await client.aclose()
            return results

        (b_status, _, b_body), (o_status, _, _) = asyncio.run(_run())
        assert b_status == 500
        assert b"AttributeError" in b_body
        assert o_status == 200
        assert len(stub.calls) == 1

    def test_crashed_loop_restarts_for_waiting_requests(self, proxy_config, caplog):
        class FlakyMetrics(ProxyMetrics):
            def record(self, event):
                if event["type"] == "abandoned":
                    raise RuntimeError("metrics backend down")
                super().record(event)

        stub = DownstreamStub()

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config, metrics=FlakyMetrics())
            gone = scheduler.enqueue(_pending({"n": 0}))
            gone.channel.close()
            waiting = scheduler.enqueue(_pending({"n": 1}))
            result = await asyncio.wait_for(read_channel(waiting.channel), 2.0)
            await _settle(scheduler)
            await client.aclose()
            return result, scheduler

        with caplog.at_level(logging.ERROR, logger="queue_proxy.proxy.scheduler"):
            (status, _, body), scheduler = asyncio.run(_run())
        assert status == 200
        assert json.loads(body) == {"result": "ok"}
        assert scheduler.state is DispatchState.IDLE
        assert scheduler.in_flight is None
        assert "Dispatch loop crashed" in caplog.text
        assert [tag for event, tag in stub.timeline if event == "start"] == [1]


class TestClientDisconnects:
    def test_abandoned_request_is_skipped(self, proxy_config):
        stub = DownstreamStub(delay=0.02)
        metrics = ProxyMetrics()

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config, metrics)
            first = scheduler.enqueue(_pending({"n": 0}))
            gone = scheduler.enqueue(_pending({"n": 1}))
            third = scheduler.enqueue(_pending({"n": 2}))
            gone.channel.close()
            results = await asyncio.gather(read_channel(first.channel), read_channel(third.channel))
            await _settle(scheduler)
            await client.aclose()
            return results

        results = asyncio.run(_run())
        assert [r[0] for r in results] == [200, 200]
        assert [tag for event, tag in stub.timeline if event == "start"] == [0, 2]
        assert metrics.snapshot()["total_abandoned"] == 1

    def test_disconnect_mid_stream_advances_queue(self, proxy_config):
        def responder(request):
            n = json.loads(request.content)["n"]
            if n == 0:
                return 200, {"content-type": "text/event-stream"}, [b"x" * 10] * 100
            return json_response({"n": n})

        stub = DownstreamStub(responder)

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            streaming = scheduler.enqueue(_pending({"n": 0, "stream": True}))
            after = scheduler.enqueue(_pending({"n": 1}))

            async def leave_early():
                await streaming.channel.head()
                body = streaming.channel.body()
                await body.__anext__()
                await body.aclose()

            _, result = await asyncio.gather(leave_early(), read_channel(after.channel))
            await _settle(scheduler)
            await client.aclose()
            return result

        status, _, body = asyncio.run(_run())
        assert status == 200
        assert json.loads(body) == {"n": 1}


class TestTextRelayMode:
    def test_heartbeat_then_transition_then_payload(self, text_config):
        stub = DownstreamStub()

        async def _run():
            scheduler, client = _make_scheduler(stub, text_config)
            pending = scheduler.enqueue(_pending({"n": 0}))
            result = await read_channel(pending.channel)
            await _settle(scheduler)
            await client.aclose()
            return result

        status, headers, body = asyncio.run(_run())
        text = body.decode()
        hb = text_config.heartbeat
        assert status == 200
        assert headers["content-type"].startswith("text/plain")
        assert text.startswith(hb.message)
        head, _, payload = text.partition(hb.transition)
        assert set(head.splitlines(keepends=True)) == {hb.message}
        assert hb.message not in payload
        assert json.loads(payload) == {"result": "ok"}

    def test_min_hold_respected(self, text_config):
        stub = DownstreamStub(delay=0)

        async def _run():
            loop = asyncio.get_running_loop()
            scheduler, client = _make_scheduler(stub, text_config)
            t0 = loop.time()
            pending = scheduler.enqueue(_pending({"n": 0}))
            await read_channel(pending.channel)
            elapsed = loop.time() - t0
            await _settle(scheduler)
            await client.aclose()
            return elapsed

        assert asyncio.run(_run()) >= text_config.heartbeat.min_hold

    def test_queued_requests_keep_receiving_heartbeats(self, text_config):
        stub = DownstreamStub(delay=0.1)

        async def _run():
            scheduler, client = _make_scheduler(stub, text_config)
            first = scheduler.enqueue(_pending({"n": 0}))
            second = scheduler.enqueue(_pending({"n": 1}))
            results = await asyncio.gather(read_channel(first.channel), read_channel(second.channel))
            await _settle(scheduler)
            await client.aclose()
            return results

        (_, _, first_body), (_, _, second_body) = asyncio.run(_run())
        msg = text_config.heartbeat.message.encode()
        # The second caller waited through the first dispatch.
        assert second_body.count(msg) > first_body.count(msg)

    def test_network_failure_inline(self, text_config):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        stub = DownstreamStub(refuse)

        async def _run():
            scheduler, client = _make_scheduler(stub, text_config)
            pending = scheduler.enqueue(_pending({"n": 0}))
            result = await read_channel(pending.channel)
            await _settle(scheduler)
            await client.aclose()
            return result

        status, _, body = asyncio.run(_run())
        assert status == 200
        assert b"[proxy error] ConnectError: connection refused" in body


class TestShutdown:
    def test_queued_requests_get_503(self, proxy_config):
        stub = DownstreamStub(delay=0.5)

        async def _run():
            scheduler, client = _make_scheduler(stub, proxy_config)
            first = scheduler.enqueue(_pending({"n": 0}))
            second = scheduler.enqueue(_pending({"n": 1}))
            readers = asyncio.gather(read_channel(first.channel), read_channel(second.channel))
            await asyncio.sleep(0.05)
            await scheduler.shutdown()
            results = await readers
            with pytest.raises(SchedulerClosed):
                scheduler.enqueue(_pending({"n": 2}))
            await client.aclose()
            return results, scheduler

        (first, second), scheduler = asyncio.run(_run())
        assert first[0] == 500  # cancelled mid-dispatch, before any head
        assert second[0] == 503
        assert second[2] == b"proxy is shutting down"
        assert scheduler.state is DispatchState.IDLE
        assert len(stub.calls) == 1

    def test_text_mode_request_in_hold_is_finalized(self):
        config = load_config(config_dict={
            "relay_mode": "text",
            "upstream": {"endpoint": ENDPOINT},
            "heartbeat": {"interval": 0.01, "min_hold": 5.0},
        }, env={})
        stub = DownstreamStub()
        notice = b"[proxy error] proxy is shutting down\n"

        async def _run():
            scheduler, client = _make_scheduler(stub, config)
            holding = scheduler.enqueue(_pending({"n": 0}))
            queued = scheduler.enqueue(_pending({"n": 1}))
            readers = asyncio.gather(read_channel(holding.channel), read_channel(queued.channel))
            await asyncio.sleep(0.05)
            await scheduler.shutdown()
            results = await asyncio.wait_for(readers, 1.0)
            await client.aclose()
            return results, scheduler

        (holding, queued), scheduler = asyncio.run(_run())
        status, _, body = holding
        assert status == 200
        assert body.startswith(config.heartbeat.message.encode())
        assert body.endswith(notice)
        assert config.heartbeat.transition.encode() not in body
        assert queued[0] == 200
        assert queued[2].endswith(notice)
        assert b"upstream returned" not in queued[2]
        assert scheduler.state is DispatchState.IDLE
        assert stub.calls == []
