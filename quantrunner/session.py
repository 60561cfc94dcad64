"""
The orchestrating caller: wires the session store, the executor, the batch
orchestrator and durable storage into one object a front end can drive.
"""
import logging
from typing import Callable, Iterable, List, Optional, Tuple

from quantrunner.batch import BatchOrchestrator, BatchRun, BatchStatus, OutcomeStatus
from quantrunner.config import Settings
from quantrunner.errors import QuantRunnerError, ValidationError
from quantrunner.executor import SingleRunExecutor
from quantrunner.persistence import JsonFileStorage, SessionMirror, restore_session
from quantrunner.results import BacktestResults, TradeRecord
from quantrunner.service.client import BacktestService, get_service
from quantrunner.store import (
    ClearResults,
    Finish,
    Phase,
    Session,
    SessionStore,
    SetBatch,
    SetConfig,
    SetPage,
    SetPageSize,
    Start,
)
from quantrunner.strategy import StrategyCatalog
from quantrunner.views import current_page, total_pages

logger = logging.getLogger(__name__)


class BacktestSession:
    """
    Drives single and batch backtests for one user session.

    Args:
        service (BacktestService): Client of the remote service.
        store (Optional[SessionStore]): Store holding the session. A fresh
            idle store is created when omitted.
        storage (Optional[JsonFileStorage]): When given, every change is
            mirrored to it.
    """

    def __init__(
        self,
        service: BacktestService,
        store: Optional[SessionStore] = None,
        storage: Optional[JsonFileStorage] = None,
    ):
        self.service = service
        self.store = store if store is not None else SessionStore()
        self.catalog = StrategyCatalog(service)
        self.executor = SingleRunExecutor(service)
        self.orchestrator = BatchOrchestrator(service, self.catalog)
        self._mirror: Optional[SessionMirror] = None
        if storage is not None:
            self._mirror = SessionMirror(storage)
            self._mirror.attach(self.store)

    @classmethod
    def from_settings(cls, settings: Settings, **service_kwargs) -> "BacktestSession":
        """
        Builds a session from configuration, restoring any persisted state.

        Args:
            settings (Settings): The loaded settings.
            **service_kwargs: Constructor arguments for the service client.
                For the 'http' client they default to the configured base URL
                and timeout.
        """
        if settings.service.client == "http" and not service_kwargs:
            service_kwargs = {
                "base_url": settings.service.base_url,
                "timeout_seconds": settings.service.timeout_seconds,
            }
        service = get_service(settings.service.client, **service_kwargs)
        storage = JsonFileStorage(settings.storage.directory)
        defaults = Session(config=settings.backtest, page_size=settings.view.page_size)
        store = SessionStore(restore_session(storage, defaults))
        return cls(service, store=store, storage=storage)

    @property
    def state(self) -> Session:
        return self.store.get_state()

    def subscribe(self, listener: Callable[[Session], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def configure(self, **patch) -> bool:
        """Applies a configuration patch; returns False if it was rejected."""
        return self.store.dispatch(SetConfig(patch))

    async def run(self) -> bool:
        """
        Runs a backtest with the current configuration.

        Returns:
            bool: False if a run is already in progress, True once this run
            has finished (successfully or not; see `state.phase`).

        Raises:
            ValidationError: If no strategy is selected. The session is left
                untouched.
        """
        config = self.state.config
        if not config.strategy_code:
            raise ValidationError("Select a strategy before starting a backtest")

        if not self.store.dispatch(Start()):
            return False
        run_id = self.state.run_id

        results: Optional[BacktestResults] = None
        error = "Backtest aborted"
        try:
            results = await self.executor.run(config)
        except QuantRunnerError as e:
            logger.error(f"Backtest run {run_id} failed: {e}")
            error = str(e)
        finally:
            # the store must leave `running` whatever escapes the executor
            if results is not None:
                error = None
            self.store.dispatch(Finish(results, run_id=run_id, error=error))
        return True

    async def run_batch(self, strategy_codes: Optional[Iterable[str]] = None) -> BatchRun:
        """
        Runs a batch with the current market parameters. Progress is
        published to subscribers through the session's `batch` field.

        Unlike single runs, batches carry no run id: when two batches overlap,
        `state.batch` holds the snapshot of whichever finished last. If the
        batch aborts with an unexpected error, its running snapshot is
        replaced by a `failed` one before the error propagates.
        """
        published: List[BatchRun] = []

        def publish(batch: BatchRun):
            published.append(batch)
            self.store.dispatch(SetBatch(batch))

        try:
            batch = await self.orchestrator.run_batch(self.state.config, strategy_codes, on_progress=publish)
        except Exception as e:
            if published and not published[-1].terminal:
                publish(published[-1].model_copy(
                    update={"status": BatchStatus.FAILED, "status_message": str(e)}
                ))
            raise
        if batch.status == BatchStatus.COMPLETED and batch.id:
            logger.info(f"Batch summary available under id {batch.id}")
        return batch

    async def load_failed_strategies(self, batch_id: Optional[str] = None):
        """
        Returns the failed outcomes of a batch, re-read from the service.

        Defaults to the batch held by the session.
        """
        batch_id = batch_id or (self.state.batch.id if self.state.batch else None)
        if not batch_id:
            return []
        outcomes = await self.orchestrator.fetch_outcomes(batch_id)
        return [o for o in outcomes.values() if o.status == OutcomeStatus.FAILED]

    def clear(self) -> bool:
        return self.store.dispatch(ClearResults())

    def page(self) -> Tuple[TradeRecord, ...]:
        """Trades on the current page."""
        return current_page(self.state)

    def total_pages(self) -> int:
        return total_pages(self.state.results, self.state.page_size)

    def set_page(self, page: int) -> bool:
        return self.store.dispatch(SetPage(page))

    def set_page_size(self, page_size: int) -> bool:
        return self.store.dispatch(SetPageSize(page_size))

    @property
    def running(self) -> bool:
        return self.state.phase == Phase.RUNNING

    async def close(self):
        if self._mirror is not None:
            self._mirror.detach()
        await self.service.close()

    async def __aenter__(self) -> "BacktestSession":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
