"""
Tests for the HTTP service client against a local aiohttp server.
"""
import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp import test_utils

from quantrunner.errors import BacktestRejected, TransportError
from quantrunner.service.client import HttpBacktestService, MockBacktestService, unwrap_envelope


async def echo_query(request: web.Request) -> web.Response:
    return web.json_response({"code": 200, "message": "success", "data": dict(request.query)})


async def strategies(request: web.Request) -> web.Response:
    return web.json_response({"code": 200, "message": "success",
                              "data": {"SMA": {"name": "SMA crossover"}}})


async def detail(request: web.Request) -> web.Response:
    return web.json_response({"code": 200, "data": {"id": request.match_info["backtest_id"]}})


async def server_error(request: web.Request) -> web.Response:
    return web.Response(status=500, text="internal error")


async def not_json(request: web.Request) -> web.Response:
    return web.Response(text="<html>maintenance</html>", content_type="text/html")


async def slow(request: web.Request) -> web.Response:
    await asyncio.sleep(1)
    return web.json_response({"code": 200})


def make_app(**overrides) -> web.Application:
    handlers = {
        "/api/strategies": strategies,
        "/api/backtest/run": echo_query,
        "/api/backtest/run-all": echo_query,
        "/api/backtest/run-all-results": echo_query,
        "/api/backtest/detail/{backtest_id}": detail,
    }
    handlers.update(overrides)
    app = web.Application()
    for path, handler in handlers.items():
        app.router.add_get(path, handler)
    return app


@asynccontextmanager
async def serve(app: web.Application, timeout_seconds: float = 5.0):
    server = test_utils.TestServer(app)
    await server.start_server()
    client = HttpBacktestService(str(server.make_url("/api/")), timeout_seconds=timeout_seconds)
    try:
        yield client
    finally:
        await client.close()
        await server.close()


@pytest.mark.asyncio
async def test_endpoints_and_parameters():
    params = {"startTime": "2024-01-01 00:00:00", "strategyType": "SMA", "feeRatio": "0.001"}

    async with serve(make_app()) as client:
        assert (await client.fetch_strategies())["data"]["SMA"]["name"] == "SMA crossover"
        assert (await client.run_backtest(params))["data"] == params
        assert (await client.run_batch({"strategyCodes": "SMA,RSI"}))["data"] == {"strategyCodes": "SMA,RSI"}
        assert (await client.fetch_batch_results("batch-42"))["data"] == {"batch_backtest_id": "batch-42"}
        assert (await client.fetch_backtest_detail("bt-123"))["data"] == {"id": "bt-123"}


@pytest.mark.asyncio
async def test_http_error_status_raises_transport_error():
    async with serve(make_app(**{"/api/backtest/run": server_error})) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.run_backtest({})

    assert excinfo.value.status == 500


@pytest.mark.asyncio
async def test_unknown_path_raises_transport_error():
    async with serve(web.Application()) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.fetch_strategies()

    assert excinfo.value.status == 404


@pytest.mark.asyncio
async def test_malformed_json_is_rejected():
    async with serve(make_app(**{"/api/backtest/run": not_json})) as client:
        with pytest.raises(BacktestRejected, match="Malformed JSON"):
            await client.run_backtest({})


@pytest.mark.asyncio
async def test_timeout_raises_transport_error():
    async with serve(make_app(**{"/api/backtest/run": slow}), timeout_seconds=0.2) as client:
        with pytest.raises(TransportError):
            await client.run_backtest({})


@pytest.mark.asyncio
async def test_connection_refused_raises_transport_error():
    server = test_utils.TestServer(web.Application())
    await server.start_server()
    url = str(server.make_url("/api"))
    await server.close()

    async with HttpBacktestService(url, timeout_seconds=2.0) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.fetch_strategies()

    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_close_is_idempotent():
    client = HttpBacktestService("http://localhost:8088/api")
    await client.close()
    await client.close()


def test_unwrap_envelope():
    assert unwrap_envelope({"code": 200, "message": "success", "data": [1, 2]}) == [1, 2]
    assert unwrap_envelope({"success": True}) == {"success": True}
    assert unwrap_envelope([1]) == [1]

    with pytest.raises(BacktestRejected, match="strategy not found"):
        unwrap_envelope({"code": 500, "message": "strategy not found"})
    with pytest.raises(BacktestRejected, match="code 401"):
        unwrap_envelope({"code": 401})


@pytest.mark.asyncio
async def test_mock_records_calls_and_raises_canned_errors():
    client = MockBacktestService(batch_response=TransportError("down"))

    response = await client.run_backtest({"strategyType": "SMA"})
    with pytest.raises(TransportError):
        await client.run_batch({})

    assert response["data"]["backtestId"] == "mock-backtest"
    assert client.calls == [("run", {"strategyType": "SMA"}), ("run-all", {})]


@pytest.mark.asyncio
async def test_mock_returns_copies():
    client = MockBacktestService()
    first = await client.fetch_strategies()
    first["data"].clear()

    second = await client.fetch_strategies()
    assert "SMA" in second["data"]
