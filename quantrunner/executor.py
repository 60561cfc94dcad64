"""
Single-run executor: drives one backtest request through the remote service
and maps the response into `BacktestResults`.
"""
import logging
import time
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from quantrunner.config import BacktestConfig
from quantrunner.errors import BacktestRejected, ValidationError
from quantrunner.results import BacktestResults, TradeRecord
from quantrunner.service.client import BacktestService, unwrap_envelope

logger = logging.getLogger(__name__)

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_SIDES = {"buy": "buy", "long": "buy", "sell": "sell", "short": "sell"}


def to_percent(rate: float) -> float:
    """Converts a fractional rate (0.629) to percent (62.9)."""
    return round(rate * 100, 10)


def day_bounds(start: date, end: date) -> Dict[str, str]:
    """Formats a date range as start-of-day / end-of-day timestamps."""
    return {
        "startTime": datetime.combine(start, datetime.min.time()).strftime(DATETIME_FORMAT),
        "endTime": datetime.combine(end, datetime.max.time()).strftime(DATETIME_FORMAT),
    }


def market_params(config: BacktestConfig) -> Dict[str, str]:
    """Query parameters shared by single and batch runs."""
    params = day_bounds(config.start_date, config.end_date)
    params.update({
        "initialAmount": str(config.initial_capital),
        "symbol": config.symbol,
        "interval": config.interval,
        "feeRatio": str(config.fee_ratio),
    })
    return params


class RawTrade(BaseModel):
    """A trade as serialized by the remote service."""
    id: Union[int, str] = Field(validation_alias=AliasChoices("id", "index"))
    entry_time: datetime = Field(validation_alias=AliasChoices("entryTime", "entry_time"))
    entry_price: float = Field(validation_alias=AliasChoices("entryPrice", "entry_price"))
    exit_time: datetime = Field(validation_alias=AliasChoices("exitTime", "exit_time"))
    exit_price: float = Field(validation_alias=AliasChoices("exitPrice", "exit_price"))
    side: str = Field(validation_alias=AliasChoices("side", "type"))
    amount: float = Field(validation_alias=AliasChoices("amount", "entryAmount", "volume"))
    profit: float
    profit_percentage: float = Field(
        validation_alias=AliasChoices("profitPercentage", "profit_percentage")
    )

    @field_validator("side")
    @classmethod
    def _normalize_side(cls, value: str) -> str:
        side = _SIDES.get(value.strip().lower())
        if side is None:
            raise ValueError(f"unknown trade side '{value}'")
        return side

    def to_record(self) -> TradeRecord:
        return TradeRecord(
            id=str(self.id),
            entry_time=self.entry_time,
            entry_price=self.entry_price,
            exit_time=self.exit_time,
            exit_price=self.exit_price,
            side=self.side,
            amount=self.amount,
            profit=self.profit,
            profit_percentage=to_percent(self.profit_percentage),
        )


class RawBacktestPayload(BaseModel):
    """The `data` member of a `/backtest/run` response."""
    success: bool
    error_message: Optional[str] = Field(None, validation_alias="errorMessage")
    backtest_id: Optional[Union[str, int]] = Field(None, validation_alias="backtestId")
    initial_amount: float = Field(validation_alias="initialAmount")
    final_amount: float = Field(validation_alias="finalAmount")
    total_profit: float = Field(validation_alias="totalProfit")
    total_return: float = Field(validation_alias="totalReturn")
    number_of_trades: int = Field(ge=0, validation_alias="numberOfTrades")
    profitable_trades: int = Field(ge=0, validation_alias="profitableTrades")
    unprofitable_trades: int = Field(ge=0, validation_alias="unprofitableTrades")
    win_rate: float = Field(validation_alias="winRate")
    max_drawdown: float = Field(validation_alias="maxDrawdown")
    sharpe_ratio: float = Field(validation_alias="sharpeRatio")
    trades: List[RawTrade] = Field(default_factory=list)


def parse_trades(raw_trades: Any) -> List[TradeRecord]:
    if not isinstance(raw_trades, list):
        raise BacktestRejected("Trade detail payload is not a list")
    try:
        return [RawTrade.model_validate(t).to_record() for t in raw_trades]
    except PydanticValidationError as e:
        raise BacktestRejected(f"Malformed trade in backtest payload: {e}") from e


def map_results(payload: RawBacktestPayload) -> BacktestResults:
    """
    Maps a successful payload into `BacktestResults`.

    Fractional rates are converted to percent. When the service omitted the
    backtest id, the current timestamp in milliseconds is used instead.

    Raises:
        pydantic.ValidationError: If the mapped values violate the
            `BacktestResults` constraints.
    """
    backtest_id = str(payload.backtest_id) if payload.backtest_id not in (None, "") else ""
    if not backtest_id:
        backtest_id = str(int(time.time() * 1000))
        logger.warning(
            f"Service returned no backtestId; using client timestamp {backtest_id}, "
            "which is not guaranteed to be unique"
        )

    results = BacktestResults(
        initial_capital=payload.initial_amount,
        final_capital=payload.final_amount,
        profit=payload.total_profit,
        profit_percentage=to_percent(payload.total_return),
        total_trades=payload.number_of_trades,
        winning_trades=payload.profitable_trades,
        losing_trades=payload.unprofitable_trades,
        win_rate=to_percent(payload.win_rate),
        max_drawdown=to_percent(payload.max_drawdown),
        sharpe_ratio=payload.sharpe_ratio,
        backtest_id=backtest_id,
        trades=tuple(t.to_record() for t in payload.trades),
    )
    if results.fully_materialized and not results.counts_consistent:
        logger.warning(
            f"Backtest {backtest_id}: {results.total_trades} trades but "
            f"{results.winning_trades} won + {results.losing_trades} lost"
        )
    return results


class SingleRunExecutor:
    """
    Runs one backtest against the remote service.

    The executor never touches the session store: the caller dispatches the
    start transition before `run` and the finish transition with its outcome.
    """

    def __init__(self, service: BacktestService):
        self._service = service

    async def run(self, config: BacktestConfig) -> BacktestResults:
        """
        Runs a backtest for `config`.

        Args:
            config (BacktestConfig): The parameters of the run. A copy is taken
                before the request is issued.

        Returns:
            BacktestResults: The mapped results.

        Raises:
            ValidationError: If no strategy is selected.
            TransportError: If the service could not be reached.
            BacktestRejected: If the service reported a failure or answered
                with an unexpected shape.
        """
        frozen = config.model_copy()
        if not frozen.strategy_code:
            raise ValidationError("No strategy selected for the backtest")

        params = market_params(frozen)
        params["strategyType"] = frozen.strategy_code
        logger.info(
            f"Running backtest {frozen.strategy_code} on {frozen.symbol} {frozen.interval} "
            f"[{params['startTime']} .. {params['endTime']}]"
        )

        response = await self._service.run_backtest(params)
        data = unwrap_envelope(response)
        if not isinstance(data, dict):
            raise BacktestRejected("Backtest payload is missing")

        if not data.get("success", False):
            message = data.get("errorMessage") or response.get("message") or "Backtest failed"
            raise BacktestRejected(str(message))

        try:
            payload = RawBacktestPayload.model_validate(data)
            results = map_results(payload)
        except PydanticValidationError as e:
            raise BacktestRejected(f"Malformed backtest payload: {e}") from e

        logger.info(
            f"Backtest {results.backtest_id} finished: {results.total_trades} trades, "
            f"return {results.profit_percentage:.2f}%"
        )
        return results

    async def load_trades(self, backtest_id: str) -> List[TradeRecord]:
        """
        Fetches the trade detail of a previous run.

        Raises:
            TransportError: If the service could not be reached.
            BacktestRejected: If the service reported an error or the payload
                is malformed.
        """
        data = unwrap_envelope(await self._service.fetch_backtest_detail(backtest_id))
        return parse_trades(data if data is not None else [])
