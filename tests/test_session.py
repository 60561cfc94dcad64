"""
Tests for the orchestrating backtest session.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from quantrunner.batch import BatchStatus, OutcomeStatus
from quantrunner.config import Settings
from quantrunner.errors import BacktestRejected, TransportError, ValidationError
from quantrunner.persistence import RESULTS_KEY, JsonFileStorage
from quantrunner.results import BacktestResults
from quantrunner.service.client import MockBacktestService
from quantrunner.session import BacktestSession
from quantrunner.store import Phase


class GatedService(MockBacktestService):
    """Holds `run_backtest` until the test releases it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run_backtest(self, params):
        self.entered.set()
        await self.release.wait()
        return await super().run_backtest(params)


@pytest.fixture
def storage(tmp_path) -> JsonFileStorage:
    return JsonFileStorage(str(tmp_path / "state"))


@pytest.mark.asyncio
async def test_successful_run(run_payload):
    session = BacktestSession(MockBacktestService(run_response=run_payload))
    phases = []
    session.subscribe(lambda s: phases.append(s.phase))
    session.configure(strategy_code="SMA")

    assert await session.run() is True

    state = session.state
    assert state.phase == Phase.SUCCESS
    assert state.results.backtest_id == "bt-123"
    assert state.results.total_trades == 20
    assert phases == [Phase.IDLE, Phase.RUNNING, Phase.SUCCESS]


@pytest.mark.asyncio
async def test_rejected_run_ends_in_failure(run_payload):
    run_payload["data"] = {"success": False, "errorMessage": "Unknown strategy SMA"}
    session = BacktestSession(MockBacktestService(run_response=run_payload))
    session.configure(strategy_code="SMA")

    await session.run()

    state = session.state
    assert state.phase == Phase.FAILURE
    assert state.results is None
    assert state.error == "Unknown strategy SMA"


@pytest.mark.asyncio
async def test_transport_error_ends_in_failure():
    session = BacktestSession(MockBacktestService(run_response=TransportError("connection refused")))
    session.configure(strategy_code="SMA")

    await session.run()

    assert session.state.phase == Phase.FAILURE
    assert "connection refused" in session.state.error


@pytest.mark.asyncio
async def test_run_without_strategy_leaves_state_untouched():
    service = MockBacktestService()
    session = BacktestSession(service)
    before = session.state

    with pytest.raises(ValidationError):
        await session.run()

    assert session.state is before
    assert service.calls == []


@pytest.mark.asyncio
async def test_second_run_while_running_is_rejected(run_payload):
    service = GatedService(run_response=run_payload)
    session = BacktestSession(service)
    session.configure(strategy_code="SMA")

    first = asyncio.create_task(session.run())
    await service.entered.wait()
    assert session.running

    assert await session.run() is False
    assert session.configure(symbol="ETH-USDT") is False
    assert session.clear() is False

    service.release.set()
    assert await first is True
    assert session.state.phase == Phase.SUCCESS
    assert session.state.config.symbol == "BTC-USDT"
    assert [endpoint for endpoint, _ in service.calls] == ["run"]


@pytest.mark.asyncio
async def test_clear_after_run(run_payload):
    session = BacktestSession(MockBacktestService(run_response=run_payload))
    session.configure(strategy_code="SMA")
    await session.run()

    assert session.clear() is True
    assert session.state.phase == Phase.IDLE
    assert session.state.results is None


@pytest.mark.asyncio
async def test_paging(run_payload):
    session = BacktestSession(MockBacktestService(run_response=run_payload))
    session.configure(strategy_code="SMA")
    assert session.set_page_size(13) is True
    await session.run()

    assert session.total_pages() == 2
    assert len(session.page()) == 13
    assert session.set_page(2) is True
    assert [t.id for t in session.page()] == [str(i) for i in range(13, 20)]
    assert session.set_page(3) is False


@pytest.mark.asyncio
async def test_run_batch_publishes_progress(batch_payload):
    session = BacktestSession(MockBacktestService(batch_response=batch_payload))
    seen = []
    session.subscribe(lambda s: seen.append(s.batch.status if s.batch else None))

    batch = await session.run_batch()

    assert batch.status == BatchStatus.COMPLETED
    assert session.state.batch == batch
    assert seen == [BatchStatus.RUNNING, BatchStatus.COMPLETED]
    assert session.state.phase == Phase.IDLE


@pytest.mark.asyncio
async def test_load_failed_strategies(batch_payload):
    session = BacktestSession(MockBacktestService(batch_response=batch_payload))
    assert await session.load_failed_strategies() == []

    await session.run_batch()
    failed = await session.load_failed_strategies()

    assert [o.strategy_code for o in failed] == ["BOLL"]
    assert failed[0].status == OutcomeStatus.FAILED


@pytest.mark.asyncio
async def test_from_settings_restores_persisted_results(tmp_path, run_payload):
    settings = Settings(
        service={"client": "mock"},
        storage={"directory": str(tmp_path / "state")},
        view={"page_size": 5},
        backtest={"symbol": "ETH-USDT", "strategy_code": "SMA"},
    )

    async with BacktestSession.from_settings(settings, run_response=run_payload) as session:
        assert session.state.phase == Phase.IDLE
        assert session.state.page_size == 5
        assert session.state.config.symbol == "ETH-USDT"
        await session.run()
        assert session.state.phase == Phase.SUCCESS

    async with BacktestSession.from_settings(settings) as restored:
        assert restored.state.phase == Phase.SUCCESS
        assert restored.state.results.backtest_id == "bt-123"
        assert restored.total_pages() == 4


@pytest.mark.asyncio
async def test_failed_run_removes_persisted_results(storage, sample_results):
    storage.save(RESULTS_KEY, sample_results)
    session = BacktestSession(MockBacktestService(run_response=TransportError("down")), storage=storage)
    session.configure(strategy_code="SMA")

    await session.run()

    assert session.state.phase == Phase.FAILURE
    assert storage.load(RESULTS_KEY, BacktestResults) is None


@pytest.mark.asyncio
async def test_close_detaches_storage(storage, run_payload):
    session = BacktestSession(MockBacktestService(run_response=run_payload), storage=storage)
    await session.close()

    session.configure(strategy_code="SMA")
    await session.run()

    assert session.state.phase == Phase.SUCCESS
    assert storage.load(RESULTS_KEY, BacktestResults) is None


@pytest.mark.asyncio
async def test_context_manager_closes_service():
    service = MockBacktestService()
    service.close = AsyncMock()

    async with BacktestSession(service):
        pass

    service.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_out_of_range_counts_end_in_failure(run_payload):
    run_payload["data"]["numberOfTrades"] = -1
    session = BacktestSession(MockBacktestService(run_response=run_payload))
    session.configure(strategy_code="SMA")

    assert await session.run() is True

    assert session.state.phase == Phase.FAILURE
    assert "Malformed backtest payload" in session.state.error
    assert session.configure(symbol="ETH-USDT") is True


class BrokenService(MockBacktestService):
    """Fails with an error the session does not expect."""

    async def run_backtest(self, params):
        raise RuntimeError("decoder crashed")

    async def run_batch(self, params):
        raise RuntimeError("decoder crashed")


@pytest.mark.asyncio
async def test_unexpected_error_still_finishes_run(run_payload):
    session = BacktestSession(BrokenService(run_response=run_payload))
    session.configure(strategy_code="SMA")

    with pytest.raises(RuntimeError):
        await session.run()

    assert session.state.phase == Phase.FAILURE
    assert session.state.error == "Backtest aborted"
    assert not session.running


@pytest.mark.asyncio
async def test_unreadable_batch_response_completes():
    session = BacktestSession(MockBacktestService(batch_response=BacktestRejected("Malformed JSON")))

    batch = await session.run_batch(["SMA"])

    assert batch.status == BatchStatus.COMPLETED
    assert session.state.batch.status == BatchStatus.COMPLETED
    assert session.state.batch.status_message == "Malformed JSON"


@pytest.mark.asyncio
async def test_unexpected_batch_error_marks_batch_failed():
    session = BacktestSession(BrokenService())

    with pytest.raises(RuntimeError):
        await session.run_batch()

    assert session.state.batch.status == BatchStatus.FAILED
    assert session.state.batch.status_message == "decoder crashed"


@pytest.mark.asyncio
async def test_overlapping_batches_keep_last_finished(batch_payload):
    session = BacktestSession(MockBacktestService(batch_response=batch_payload))

    first, second = await asyncio.gather(session.run_batch(["SMA"]), session.run_batch(["RSI"]))

    assert first.terminal and second.terminal
    assert session.state.batch in (first, second)
    assert session.state.batch.terminal
