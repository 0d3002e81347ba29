"""Unit tests for the ponder_monitor module.

A local aiohttp server stands in for the ponder API.
"""

import asyncio
import time

from aiohttp import test_utils, web

from registry_supervisor.ponder_monitor import PonderMonitor

NOT_READY_BODY = "Historical indexing is not complete"


def make_app(state):
    async def ready(request):
        state["ready_calls"] += 1
        if state["ready_calls"] > state["ready_after"]:
            return web.Response(text="")
        return web.Response(status=503, text=NOT_READY_BODY)

    async def status(request):
        if state.get("status_error"):
            return web.Response(status=500, text="internal error")
        return web.json_response(
            {
                "ethereum": {"id": 1, "block": {"number": 21000000, "timestamp": 1730000000}},
                "base": {"id": 8453, "block": {"number": 22000000, "timestamp": 1730000000}},
            }
        )

    async def health(request):
        return web.Response(text="")

    app = web.Application()
    app.router.add_get("/ready", ready)
    app.router.add_get("/status", status)
    app.router.add_get("/health", health)
    return app


async def with_server(state, scenario):
    server = test_utils.TestServer(make_app(state))
    await server.start_server()
    try:
        return await scenario(str(server.make_url("")).rstrip("/"))
    finally:
        await server.close()


def test_is_ready():
    state = {"ready_calls": 0, "ready_after": 1}

    async def scenario(url):
        monitor = PonderMonitor(url)
        return [await monitor.is_ready(), await monitor.is_ready()]

    assert asyncio.run(with_server(state, scenario)) == [False, True]


def test_ready_status_with_not_complete_body_is_not_ready():
    async def ready(request):
        return web.Response(text=NOT_READY_BODY)

    async def scenario():
        app = web.Application()
        app.router.add_get("/ready", ready)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            return await PonderMonitor(str(server.make_url(""))).is_ready()
        finally:
            await server.close()

    assert asyncio.run(scenario()) is False


def test_connection_failure_is_not_ready():
    monitor = PonderMonitor("http://127.0.0.1:1", request_timeout=1)

    assert asyncio.run(monitor.is_ready()) is False
    assert asyncio.run(monitor.is_api_healthy()) is False
    assert asyncio.run(monitor.get_indexing_status()) is None
    assert asyncio.run(monitor.get_ready_chains()) == []


def test_indexing_status_and_ready_chains():
    state = {"ready_calls": 0, "ready_after": 0}

    async def scenario(url):
        monitor = PonderMonitor(url)
        status = await monitor.get_indexing_status()
        chains = await monitor.get_ready_chains()
        return monitor, status, chains

    monitor, status, chains = asyncio.run(with_server(state, scenario))

    assert status["ethereum"]["id"] == 1
    assert monitor.last_known_status == status
    assert chains == ["base", "ethereum"]


def test_indexing_status_error_keeps_last_known_status():
    state = {"ready_calls": 0, "ready_after": 0, "status_error": True}

    async def scenario(url):
        monitor = PonderMonitor(url)
        monitor.last_known_status = {"ethereum": {"id": 1}}
        return monitor, await monitor.get_indexing_status()

    monitor, status = asyncio.run(with_server(state, scenario))

    assert status is None
    assert monitor.last_known_status == {"ethereum": {"id": 1}}


def test_is_api_healthy():
    state = {"ready_calls": 0, "ready_after": 0}

    async def scenario(url):
        return await PonderMonitor(url).is_api_healthy()

    assert asyncio.run(with_server(state, scenario)) is True


def test_wait_until_ready():
    state = {"ready_calls": 0, "ready_after": 2}

    async def scenario(url):
        return await PonderMonitor(url).wait_until_ready(timeout=5, interval=0.05)

    assert asyncio.run(with_server(state, scenario)) is True
    assert state["ready_calls"] == 3


def test_wait_until_ready_times_out():
    state = {"ready_calls": 0, "ready_after": 1000}

    async def scenario(url):
        started = time.monotonic()
        ready = await PonderMonitor(url).wait_until_ready(timeout=0.3, interval=0.05)
        return ready, time.monotonic() - started

    ready, elapsed = asyncio.run(with_server(state, scenario))

    assert ready is False
    assert elapsed >= 0.3
    assert elapsed < 3
