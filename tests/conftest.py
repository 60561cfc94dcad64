"""
Shared fixtures: canned service payloads and a sample result set.
"""
from datetime import datetime, timedelta

import pytest

from quantrunner.results import BacktestResults, TradeRecord

BASE_TIME = datetime(2024, 1, 1, 8, 0, 0)


def raw_trade(index: int) -> dict:
    """A trade as the remote service serializes it."""
    entry = BASE_TIME + timedelta(days=index)
    return {
        "index": index,
        "entryTime": entry.strftime("%Y-%m-%d %H:%M:%S"),
        "entryPrice": 40000.0 + index,
        "exitTime": (entry + timedelta(hours=12)).strftime("%Y-%m-%d %H:%M:%S"),
        "exitPrice": 40100.0 + index,
        "type": "BUY" if index % 2 == 0 else "SELL",
        "entryAmount": 0.25,
        "profit": 25.0,
        "profitPercentage": 0.0025,
    }


def run_response(trade_count: int = 20, **overrides) -> dict:
    """A successful `/backtest/run` envelope."""
    data = {
        "success": True,
        "backtestId": "bt-123",
        "initialAmount": 10000.0,
        "finalAmount": 11500.0,
        "totalProfit": 1500.0,
        "totalReturn": 0.15,
        "numberOfTrades": trade_count,
        "profitableTrades": trade_count - trade_count // 4,
        "unprofitableTrades": trade_count // 4,
        "winRate": 0.629,
        "maxDrawdown": 0.083,
        "sharpeRatio": 1.42,
        "trades": [raw_trade(i) for i in range(trade_count)],
    }
    data.update(overrides)
    return {"code": 200, "message": "success", "data": data}


def batch_response() -> dict:
    """A `/backtest/run-all` answer with three successes and one failure."""
    return {
        "success": True,
        "batchBacktestId": "batch-42",
        "message": "batch finished",
        "results": [
            {"strategy_code": "SMA", "strategy_name": "SMA crossover", "success": True},
            {"strategy_code": "RSI", "strategy_name": "RSI reversal", "success": True},
            {"strategy_code": "MACD", "strategy_name": "MACD", "success": True},
            {"strategy_code": "BOLL", "strategy_name": "Bollinger", "success": False,
             "error": "insufficient data"},
        ],
    }


def make_results(trade_count: int = 20, backtest_id: str = "bt-123") -> BacktestResults:
    trades = tuple(
        TradeRecord(
            id=str(i),
            entry_time=BASE_TIME + timedelta(days=i),
            entry_price=40000.0 + i,
            exit_time=BASE_TIME + timedelta(days=i, hours=12),
            exit_price=40100.0 + i,
            side="buy" if i % 2 == 0 else "sell",
            amount=0.25,
            profit=25.0,
            profit_percentage=0.25,
        )
        for i in range(trade_count)
    )
    return BacktestResults(
        initial_capital=10000.0,
        final_capital=11500.0,
        profit=1500.0,
        profit_percentage=15.0,
        total_trades=trade_count,
        winning_trades=trade_count - trade_count // 4,
        losing_trades=trade_count // 4,
        win_rate=75.0,
        max_drawdown=8.3,
        sharpe_ratio=1.42,
        backtest_id=backtest_id,
        trades=trades,
    )


@pytest.fixture
def sample_results() -> BacktestResults:
    """A result set with 20 trades."""
    return make_results()


@pytest.fixture
def run_payload() -> dict:
    """A fresh `/backtest/run` envelope with 20 trades."""
    return run_response()


@pytest.fixture
def batch_payload() -> dict:
    """A fresh `/backtest/run-all` answer: three successes, one failure."""
    return batch_response()


@pytest.fixture
def results_factory():
    """Builds result sets with a chosen number of trades."""
    return make_results
