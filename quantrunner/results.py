"""
Data structures for holding the results of a backtest run.
"""
import os
from datetime import datetime
from typing import Literal, Tuple

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field


class TradeRecord(BaseModel):
    """
    Represents a single round-trip trade reported by the remote service.

    Args:
        id (str): Identifier of the trade within its backtest.
        entry_time (datetime): The timestamp of the trade entry.
        entry_price (float): The price at which the trade was entered.
        exit_time (datetime): The timestamp of the trade exit.
        exit_price (float): The price at which the trade was exited.
        side (str): 'buy' or 'sell'.
        amount (float): The size of the trade.
        profit (float): Absolute profit of the trade.
        profit_percentage (float): Profit of the trade, in percent.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    entry_time: datetime
    entry_price: float
    exit_time: datetime
    exit_price: float
    side: Literal["buy", "sell"]
    amount: float
    profit: float
    profit_percentage: float


class BacktestResults(BaseModel):
    """
    Holds the outcome of a single backtest run.

    Rates (`profit_percentage`, `win_rate`, `max_drawdown`) are expressed in
    percent. `backtest_id` identifies the run on the remote service and is
    required so a persisted result can always be looked up again.

    Args:
        initial_capital (float): Capital at the start of the run.
        final_capital (float): Capital at the end of the run.
        profit (float): Absolute profit.
        profit_percentage (float): Total return, in percent.
        total_trades (int): Number of trades.
        winning_trades (int): Number of profitable trades.
        losing_trades (int): Number of unprofitable trades.
        win_rate (float): Share of winning trades, in percent.
        max_drawdown (float): Maximum drawdown, in percent.
        sharpe_ratio (float): Sharpe ratio of the run.
        backtest_id (str): Remote identifier of the run.
        trades (Tuple[TradeRecord, ...]): Trades, in the order reported.
    """
    model_config = ConfigDict(frozen=True)

    initial_capital: float
    final_capital: float
    profit: float
    profit_percentage: float
    total_trades: int = Field(..., ge=0)
    winning_trades: int = Field(..., ge=0)
    losing_trades: int = Field(..., ge=0)
    win_rate: float
    max_drawdown: float
    sharpe_ratio: float
    backtest_id: str = Field(..., min_length=1)
    trades: Tuple[TradeRecord, ...] = ()

    @property
    def fully_materialized(self) -> bool:
        """True when every counted trade is present in `trades`."""
        return len(self.trades) == self.total_trades

    @property
    def counts_consistent(self) -> bool:
        return self.total_trades == self.winning_trades + self.losing_trades

    def trades_frame(self) -> pd.DataFrame:
        """Returns the trades as a DataFrame, one row per trade."""
        columns = list(TradeRecord.model_fields)
        return pd.DataFrame([t.model_dump() for t in self.trades], columns=columns)

    def generate_report(self, output_dir: str):
        """
        Writes a plain-text summary and the trade list as CSV into
        `output_dir`.
        """
        os.makedirs(output_dir, exist_ok=True)

        with open(os.path.join(output_dir, "summary.txt"), 'w') as f:
            f.write(f"=== Backtest {self.backtest_id} ===\n\n")
            f.write(f"Initial capital: {self.initial_capital:.2f}\n")
            f.write(f"Final capital:   {self.final_capital:.2f}\n")
            f.write(f"Profit:          {self.profit:.2f} ({self.profit_percentage:.2f}%)\n")
            f.write(f"Trades:          {self.total_trades} "
                    f"({self.winning_trades} won / {self.losing_trades} lost)\n")
            f.write(f"Win rate:        {self.win_rate:.2f}%\n")
            f.write(f"Max drawdown:    {self.max_drawdown:.2f}%\n")
            f.write(f"Sharpe ratio:    {self.sharpe_ratio:.2f}\n")

        self.trades_frame().to_csv(os.path.join(output_dir, "trades.csv"), index=False)
