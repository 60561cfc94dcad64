"""
Abstract interface, HTTP implementation and mock implementation of the remote
backtest service.

Service clients only move JSON: they return the decoded response body and
raise `TransportError` when no usable response was received. Interpreting the
payload is left to the domain modules, which validate it at the boundary.
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type

import aiohttp

from quantrunner.errors import BacktestRejected, TransportError

logger = logging.getLogger(__name__)

SUCCESS_CODE = 200

# Registry for service clients
SERVICE_REGISTRY: Dict[str, Type["BacktestService"]] = {}


def register_service(name: str, service_class: Type["BacktestService"]):
    """
    Registers a new backtest service client class.

    Args:
        name (str): The identifier for the client.
        service_class (Type["BacktestService"]): The client class to register.
    """
    if name in SERVICE_REGISTRY:
        raise ValueError(f"Service client '{name}' is already registered.")
    SERVICE_REGISTRY[name] = service_class


def get_service(name: str, **kwargs) -> "BacktestService":
    """
    Retrieves an instance of a registered service client.

    Args:
        name (str): The identifier of the client to retrieve.
        **kwargs: Keyword arguments to pass to the client's constructor.

    Returns:
        BacktestService: An instance of the requested client.
    """
    if name not in SERVICE_REGISTRY:
        raise ValueError(
            f"Service client '{name}' is not registered. Available: {list(SERVICE_REGISTRY.keys())}"
        )
    return SERVICE_REGISTRY[name](**kwargs)


def unwrap_envelope(payload: Any) -> Any:
    """
    Returns the `data` member of a `{code, data, message}` envelope.

    Payloads that are not enveloped are returned unchanged.

    Raises:
        BacktestRejected: If the envelope carries a non-success code.
    """
    if isinstance(payload, dict) and "code" in payload:
        if payload.get("code") != SUCCESS_CODE:
            message = payload.get("message") or f"Service returned code {payload.get('code')}"
            raise BacktestRejected(str(message))
        return payload.get("data")
    return payload


class BacktestService(ABC):
    """
    Abstract base class for all remote backtest service clients.
    """

    @abstractmethod
    async def fetch_strategies(self) -> Any:
        """Returns the strategy catalog response (`GET /strategies`)."""
        raise NotImplementedError

    @abstractmethod
    async def run_backtest(self, params: Dict[str, str]) -> Any:
        """
        Runs a single backtest (`GET /backtest/run`).

        Args:
            params (Dict[str, str]): Query parameters, already formatted.

        Returns:
            Any: The decoded response body.
        """
        raise NotImplementedError

    @abstractmethod
    async def run_batch(self, params: Dict[str, str]) -> Any:
        """Runs a batch of strategies (`GET /backtest/run-all`)."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_batch_results(self, batch_id: str) -> Any:
        """Returns the per-strategy outcomes of a past batch."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_backtest_detail(self, backtest_id: str) -> Any:
        """Returns the trade detail of a past backtest."""
        raise NotImplementedError

    async def close(self) -> None:
        """Releases any resources held by the client."""

    async def __aenter__(self) -> "BacktestService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class HttpBacktestService(BacktestService):
    """
    Backtest service client speaking HTTP/JSON through aiohttp.

    The aiohttp session is created lazily on the first request and must be
    released with `close()` (or by using the client as an async context
    manager).
    """

    def __init__(self, base_url: str, timeout_seconds: float = 30.0):
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def fetch_strategies(self) -> Any:
        return await self._get("/strategies")

    async def run_backtest(self, params: Dict[str, str]) -> Any:
        return await self._get("/backtest/run", params)

    async def run_batch(self, params: Dict[str, str]) -> Any:
        return await self._get("/backtest/run-all", params)

    async def fetch_batch_results(self, batch_id: str) -> Any:
        return await self._get("/backtest/run-all-results", {"batch_backtest_id": batch_id})

    async def fetch_backtest_detail(self, backtest_id: str) -> Any:
        return await self._get(f"/backtest/detail/{backtest_id}")

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        """Issue a GET request and decode its JSON body."""
        session = await self._get_session()
        url = f"{self._base_url}{path}"
        logger.debug(f"GET {url} params={params}")

        try:
            async with session.get(url, params=params) as response:
                if not 200 <= response.status < 300:
                    raise TransportError(
                        f"GET {path} failed with HTTP {response.status}",
                        status=response.status,
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise BacktestRejected(f"Malformed JSON in response to GET {path}") from e
        except aiohttp.ClientError as e:
            raise TransportError(f"Network error on GET {path}: {e}") from e
        except asyncio.TimeoutError as e:
            raise TransportError(f"Request timeout on GET {path}") from e


class MockBacktestService(BacktestService):
    """
    A mock service client for tests and offline demonstrations.

    Each endpoint answers with a canned response. A canned value that is an
    exception instance is raised instead of returned. Every call is recorded
    in `calls` as `(endpoint, params)`.
    """

    DEFAULT_STRATEGIES = {
        "code": SUCCESS_CODE,
        "message": "success",
        "data": {
            "SMA": {"name": "SMA crossover", "description": "Fast/slow moving average cross",
                    "params": "shortPeriod=5, longPeriod=20"},
            "RSI": {"name": "RSI reversal", "description": "Oversold/overbought reversal",
                    "params": "period=14"},
        },
    }

    DEFAULT_RUN = {
        "code": SUCCESS_CODE,
        "message": "success",
        "data": {
            "success": True,
            "backtestId": "mock-backtest",
            "initialAmount": 10000.0,
            "finalAmount": 10000.0,
            "totalProfit": 0.0,
            "totalReturn": 0.0,
            "numberOfTrades": 0,
            "profitableTrades": 0,
            "unprofitableTrades": 0,
            "winRate": 0.0,
            "maxDrawdown": 0.0,
            "sharpeRatio": 0.0,
            "trades": [],
        },
    }

    DEFAULT_BATCH = {
        "success": True,
        "batchBacktestId": "mock-batch",
        "message": "success",
        "results": [
            {"strategy_code": "SMA", "strategy_name": "SMA crossover", "success": True},
            {"strategy_code": "RSI", "strategy_name": "RSI reversal", "success": True},
        ],
    }

    def __init__(
        self,
        strategies: Any = None,
        run_response: Any = None,
        batch_response: Any = None,
        batch_results: Any = None,
        detail_response: Any = None,
    ):
        self.strategies = strategies if strategies is not None else self.DEFAULT_STRATEGIES
        self.run_response = run_response if run_response is not None else self.DEFAULT_RUN
        self.batch_response = batch_response if batch_response is not None else self.DEFAULT_BATCH
        self.batch_results = batch_results if batch_results is not None else self.batch_response
        self.detail_response = (
            detail_response if detail_response is not None
            else {"code": SUCCESS_CODE, "message": "success", "data": []}
        )
        self.calls: List[Tuple[str, Dict[str, str]]] = []

    def _answer(self, endpoint: str, params: Dict[str, str], canned: Any) -> Any:
        self.calls.append((endpoint, dict(params)))
        if isinstance(canned, BaseException):
            raise canned
        return copy.deepcopy(canned)

    async def fetch_strategies(self) -> Any:
        return self._answer("strategies", {}, self.strategies)

    async def run_backtest(self, params: Dict[str, str]) -> Any:
        return self._answer("run", params, self.run_response)

    async def run_batch(self, params: Dict[str, str]) -> Any:
        return self._answer("run-all", params, self.batch_response)

    async def fetch_batch_results(self, batch_id: str) -> Any:
        return self._answer("run-all-results", {"batch_backtest_id": batch_id}, self.batch_results)

    async def fetch_backtest_detail(self, backtest_id: str) -> Any:
        return self._answer("detail", {"backtest_id": backtest_id}, self.detail_response)


register_service("mock", MockBacktestService)
register_service("http", HttpBacktestService)
