"""
Batch execution for running many strategies against the same market
parameters.
"""
import logging
import os
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import pandas as pd
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from quantrunner.config import BacktestConfig
from quantrunner.errors import BacktestRejected, QuantRunnerError, TransportError, ValidationError
from quantrunner.executor import market_params
from quantrunner.service.client import BacktestService, unwrap_envelope
from quantrunner.strategy import StrategyCatalog

logger = logging.getLogger(__name__)

NO_OUTCOME_REPORTED = "no outcome reported"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class BatchStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StrategyOutcome(BaseModel):
    """Result of one strategy within a batch run."""
    model_config = ConfigDict(frozen=True)

    strategy_code: str
    strategy_name: str
    status: OutcomeStatus
    error: Optional[str] = None


class BatchRun(BaseModel):
    """
    Snapshot of a batch run.

    A batch is `completed` as soon as the service answered, however many of
    its strategies failed; it is `failed` only when no response was received.

    Args:
        id (Optional[str]): Identifier assigned by the service, if any.
        status (BatchStatus): Lifecycle status of the batch.
        outcomes (Dict[str, StrategyOutcome]): Outcome per strategy code.
        status_message (str): Message for display.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    status: BatchStatus = BatchStatus.IDLE
    outcomes: Dict[str, StrategyOutcome] = Field(default_factory=dict)
    status_message: str = ""

    @property
    def terminal(self) -> bool:
        return self.status in (BatchStatus.COMPLETED, BatchStatus.FAILED)

    @property
    def succeeded(self) -> List[StrategyOutcome]:
        return [o for o in self.outcomes.values() if o.status == OutcomeStatus.SUCCESS]

    @property
    def failed_outcomes(self) -> List[StrategyOutcome]:
        return [o for o in self.outcomes.values() if o.status == OutcomeStatus.FAILED]

    def outcomes_frame(self) -> pd.DataFrame:
        """Returns the outcomes as a DataFrame, one row per strategy."""
        rows = [o.model_dump(mode="json") for o in self.outcomes.values()]
        return pd.DataFrame(rows, columns=list(StrategyOutcome.model_fields))

    def generate_report(self, output_dir: str):
        """Writes a batch summary and the per-strategy outcomes as CSV."""
        os.makedirs(output_dir, exist_ok=True)

        with open(os.path.join(output_dir, "batch_summary.txt"), 'w') as f:
            f.write("=== Batch Run Summary ===\n\n")
            f.write(f"Batch id: {self.id or '-'}\n")
            f.write(f"Status: {self.status.value}\n")
            if self.status_message:
                f.write(f"Message: {self.status_message}\n")
            f.write(f"\nTotal strategies: {len(self.outcomes)}\n")
            f.write(f"Successful: {len(self.succeeded)}\n")
            f.write(f"Failed: {len(self.failed_outcomes)}\n")

            if self.failed_outcomes:
                f.write("\n=== Failed Strategies ===\n\n")
                for outcome in self.failed_outcomes:
                    f.write(f"{outcome.strategy_code} ({outcome.strategy_name}): {outcome.error}\n")

        self.outcomes_frame().to_csv(os.path.join(output_dir, "outcomes.csv"), index=False)


class RawOutcome(BaseModel):
    strategy_code: str = Field(validation_alias=AliasChoices("strategy_code", "strategyCode", "code"))
    strategy_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("strategy_name", "strategyName", "name")
    )
    success: Optional[bool] = None
    error: Optional[str] = Field(None, validation_alias=AliasChoices("error", "errorMessage"))

    @property
    def failed(self) -> bool:
        return self.success is False or bool(self.error)


class RawBatchPayload(BaseModel):
    success: Optional[bool] = None
    batch_id: Optional[Union[str, int]] = Field(
        None, validation_alias=AliasChoices("batchBacktestId", "batch_backtest_id")
    )
    message: Optional[str] = None
    results: List[RawOutcome] = Field(
        default_factory=list, validation_alias=AliasChoices("results", "outcomes")
    )


def parse_batch_payload(response: Any) -> RawBatchPayload:
    """
    Validates a batch response, enveloped or flat.

    Raises:
        BacktestRejected: If the envelope reports an error or the payload
            has an unexpected shape.
    """
    envelope_message = response.get("message") if isinstance(response, dict) else None
    data = unwrap_envelope(response)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BacktestRejected("Batch payload is not an object")
    try:
        payload = RawBatchPayload.model_validate(data)
    except PydanticValidationError as e:
        raise BacktestRejected(f"Malformed batch payload: {e}") from e
    if payload.message is None and envelope_message:
        payload = payload.model_copy(update={"message": envelope_message})
    return payload


class BatchOrchestrator:
    """
    Runs a set of strategies as one batch on the remote service and collects
    one outcome per strategy.

    The service does the fan-out: the orchestrator issues a single request
    and records every reported outcome, successful or not.
    """

    def __init__(self, service: BacktestService, catalog: Optional[StrategyCatalog] = None):
        self._service = service
        self._catalog = catalog

    async def run_batch(
        self,
        config: BacktestConfig,
        strategy_codes: Optional[Iterable[str]] = None,
        on_progress: Optional[Callable[[BatchRun], None]] = None,
    ) -> BatchRun:
        """
        Runs a batch and returns its terminal snapshot.

        Args:
            config (BacktestConfig): Market parameters shared by every strategy.
                Its `strategy_code` is ignored.
            strategy_codes (Optional[Iterable[str]]): Strategies to run. When
                omitted, the service runs every known strategy.
            on_progress (Optional[Callable[[BatchRun], None]]): Called with the
                running snapshot and with the terminal snapshot.

        Returns:
            BatchRun: `completed` if the service answered, `failed` otherwise.
        """
        requested = list(strategy_codes) if strategy_codes is not None else None
        if requested is not None and not requested:
            raise ValidationError("strategy_codes must not be empty; pass None to run all strategies")

        params = market_params(config)
        params["saveResult"] = "true"
        if requested:
            params["strategyCodes"] = ",".join(requested)

        scope = f"{len(requested)} strategies" if requested else "all strategies"
        running = BatchRun(status=BatchStatus.RUNNING, status_message=f"Running {scope}")
        self._notify(on_progress, running)
        logger.info(f"Batch run started for {scope} on {config.symbol} {config.interval}")

        batch_id: Optional[str] = None
        message = ""
        raw_outcomes: List[RawOutcome] = []
        try:
            payload = parse_batch_payload(await self._service.run_batch(params))
            batch_id = str(payload.batch_id) if payload.batch_id not in (None, "") else None
            message = payload.message or ""
            raw_outcomes = payload.results
        except TransportError as e:
            logger.error(f"Batch request failed: {e}")
            failed = running.model_copy(update={"status": BatchStatus.FAILED, "status_message": str(e)})
            self._notify(on_progress, failed)
            return failed
        except BacktestRejected as e:
            logger.warning(f"Batch response rejected: {e.message}")
            message = e.message

        await self._ensure_catalog()
        outcomes = self._collect(raw_outcomes, requested)
        batch = BatchRun(
            id=batch_id,
            status=BatchStatus.COMPLETED,
            outcomes=outcomes,
            status_message=message or self._summary(outcomes),
        )

        logger.info(
            f"Batch {batch.id or '-'} completed: {len(batch.succeeded)} succeeded, "
            f"{len(batch.failed_outcomes)} failed"
        )
        for outcome in batch.failed_outcomes:
            logger.warning(f"Strategy {outcome.strategy_code} failed: {outcome.error}")

        self._notify(on_progress, batch)
        return batch

    async def fetch_outcomes(self, batch_id: str) -> Dict[str, StrategyOutcome]:
        """
        Re-reads the per-strategy outcomes of a past batch.

        Raises:
            TransportError: If the service could not be reached.
            BacktestRejected: If the service reported an error or the payload
                is malformed.
        """
        payload = parse_batch_payload(await self._service.fetch_batch_results(batch_id))
        await self._ensure_catalog()
        return self._collect(payload.results, None)

    async def _ensure_catalog(self):
        """Loads the catalog for labelling; a failure only costs the labels."""
        if self._catalog is None or self._catalog.loaded:
            return
        try:
            await self._catalog.load()
        except QuantRunnerError as e:
            logger.warning(f"Strategy catalog unavailable, labelling by code: {e}")

    def _collect(
        self,
        raw_outcomes: List[RawOutcome],
        requested: Optional[List[str]],
    ) -> Dict[str, StrategyOutcome]:
        outcomes: Dict[str, StrategyOutcome] = {}
        for raw in raw_outcomes:
            outcomes[raw.strategy_code] = StrategyOutcome(
                strategy_code=raw.strategy_code,
                strategy_name=raw.strategy_name or self._label(raw.strategy_code),
                status=OutcomeStatus.FAILED if raw.failed else OutcomeStatus.SUCCESS,
                error=(raw.error or "unknown error") if raw.failed else None,
            )

        for code in requested or []:
            if code not in outcomes:
                outcomes[code] = StrategyOutcome(
                    strategy_code=code,
                    strategy_name=self._label(code),
                    status=OutcomeStatus.FAILED,
                    error=NO_OUTCOME_REPORTED,
                )
        return outcomes

    def _label(self, code: str) -> str:
        return self._catalog.name_for(code) if self._catalog else code

    @staticmethod
    def _summary(outcomes: Dict[str, StrategyOutcome]) -> str:
        failed = sum(1 for o in outcomes.values() if o.status == OutcomeStatus.FAILED)
        return f"{len(outcomes) - failed} succeeded, {failed} failed"

    @staticmethod
    def _notify(on_progress: Optional[Callable[[BatchRun], None]], batch: BatchRun):
        if on_progress is not None:
            on_progress(batch)
