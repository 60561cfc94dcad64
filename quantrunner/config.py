"""
Configuration models for quantrunner.

This module defines the Pydantic models for validating and managing both the
user-editable backtest parameters and the engine settings, which are typically
loaded from a YAML file.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

MAX_FEE_RATIO = Decimal("0.01")


def _one_year_ago() -> date:
    today = date.today()
    try:
        return today.replace(year=today.year - 1)
    except ValueError:
        # 29 February
        return today - timedelta(days=365)


class BacktestConfig(BaseModel):
    """
    Parameters of a single backtest, as edited by the user before a run.

    The model is frozen: every edit produces a new instance, so the instance
    handed to a run can never change underneath it.

    Args:
        symbol (str): The trading pair to evaluate (e.g., 'BTC-USDT').
        interval (str): The candle interval (e.g., '1D', '4H').
        start_date (date): First day of the evaluated range.
        end_date (date): Last day of the evaluated range (inclusive).
        initial_capital (Decimal): Starting capital, strictly positive.
        fee_ratio (Decimal): Fee per trade as a fraction, between 0 and 0.01.
        strategy_code (Optional[str]): Catalog code of the strategy to run.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    symbol: str = Field("BTC-USDT", min_length=1, description="Trading pair.")
    interval: str = Field("1D", min_length=1, description="Candle interval.")
    start_date: date = Field(default_factory=_one_year_ago)
    end_date: date = Field(default_factory=date.today)
    initial_capital: Decimal = Field(Decimal("10000"), gt=0)
    fee_ratio: Decimal = Field(Decimal("0.001"), ge=0, le=MAX_FEE_RATIO)
    strategy_code: Optional[str] = Field(None, description="Strategy to run.")

    @model_validator(mode="after")
    def _check_date_range(self) -> "BacktestConfig":
        if self.start_date > self.end_date:
            raise ValueError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )
        return self


class ServiceConfig(BaseModel):
    """
    Configuration for the remote backtest service.

    Args:
        client (str): Identifier of the registered service client ('http', 'mock').
        base_url (str): Root URL the service endpoints are resolved against.
        timeout_seconds (float): Total timeout applied to every request.
    """
    client: str = Field("http", description="Identifier for the service client.")
    base_url: str = Field("http://localhost:8088/api", description="Service root URL.")
    timeout_seconds: float = Field(30.0, gt=0, description="Request timeout in seconds.")


class StorageConfig(BaseModel):
    """
    Configuration for the durable session store.

    Args:
        directory (str): Directory holding one JSON file per persisted key.
    """
    directory: str = Field(".quantrunner", description="Directory for persisted state.")


class ViewConfig(BaseModel):
    """Configuration for result pagination."""
    page_size: int = Field(10, gt=0, description="Trades shown per page.")


class LoggingConfig(BaseModel):
    level: str = Field("INFO", description="Root logging level.")


class Settings(BaseModel):
    """
    Top-level configuration object for a quantrunner process.

    Args:
        service (ServiceConfig): Remote service configuration.
        storage (StorageConfig): Persistence configuration.
        view (ViewConfig): Pagination configuration.
        logging (LoggingConfig): Logging configuration.
        backtest (BacktestConfig): Defaults for a fresh session.
    """
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    view: ViewConfig = Field(default_factory=ViewConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
