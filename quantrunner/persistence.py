"""
Durable key/value storage for session state.

Storage failures never reach the caller: writes are logged and dropped, and
reads of missing, malformed or mis-shaped records return None, which callers
treat as "no prior session".
"""
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, Optional, Type, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from quantrunner.config import BacktestConfig
from quantrunner.errors import PersistenceError
from quantrunner.results import BacktestResults
from quantrunner.store import Phase, Session, SessionStore

logger = logging.getLogger(__name__)

RESULTS_KEY = "backtest_results"
CONFIG_KEY = "session_config"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")

T = TypeVar("T", bound=BaseModel)


class JsonFileStorage:
    """
    Stores one JSON document per key in a directory.

    Args:
        directory (str): Directory holding `<key>.json` files. Created on the
            first write.
    """

    def __init__(self, directory: str):
        self._directory = Path(directory)

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise PersistenceError(f"Invalid storage key: {key!r}")
        return self._directory / f"{key}.json"

    def save(self, key: str, value: Any) -> bool:
        """
        Serializes `value` and writes it under `key`.

        Pydantic models are serialized with `model_dump_json`; anything else
        must be JSON-compatible.

        Returns:
            bool: True if the value was written.
        """
        try:
            if isinstance(value, BaseModel):
                document = value.model_dump_json()
            else:
                document = json.dumps(value)
            self._write(self._path(key), document)
        except (TypeError, ValueError, OSError, PersistenceError) as e:
            logger.error(f"Failed to persist '{key}': {e}")
            return False
        return True

    def load(self, key: str, model: Optional[Type[T]] = None) -> Any:
        """
        Reads the value stored under `key`.

        Args:
            key (str): The storage key.
            model (Optional[Type[T]]): When given, the document is validated
                into this Pydantic model.

        Returns:
            The stored value, or None if it is missing, malformed or does not
            match `model`.
        """
        try:
            path = self._path(key)
            if not path.exists():
                return None
            document = path.read_text(encoding="utf-8")
            if model is not None:
                return model.model_validate_json(document)
            return json.loads(document)
        except PydanticValidationError as e:
            logger.warning(f"Discarding stored '{key}': unexpected shape ({e.error_count()} error(s))")
        except ValueError as e:
            logger.warning(f"Discarding stored '{key}': malformed JSON ({e})")
        except (OSError, PersistenceError) as e:
            logger.error(f"Failed to read '{key}': {e}")
        return None

    def remove(self, key: str) -> bool:
        """Deletes the record under `key`. Missing records are not an error."""
        try:
            self._path(key).unlink(missing_ok=True)
        except (OSError, PersistenceError) as e:
            logger.error(f"Failed to remove '{key}': {e}")
            return False
        return True

    def _write(self, path: Path, document: str):
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'w', encoding="utf-8") as f:
                f.write(document)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


def restore_session(storage: JsonFileStorage, defaults: Optional[Session] = None) -> Session:
    """
    Builds the initial session from durable storage.

    Stored results put the session in the success phase; anything else
    (including unreadable records) starts an idle session.
    """
    session = defaults if defaults is not None else Session()

    config = storage.load(CONFIG_KEY, BacktestConfig)
    if config is not None:
        session = session.model_copy(update={"config": config})

    results = storage.load(RESULTS_KEY, BacktestResults)
    if results is not None:
        logger.info(f"Restored results of backtest {results.backtest_id}")
        return session.model_copy(update={"phase": Phase.SUCCESS, "results": results, "error": None})
    return session.model_copy(update={"phase": Phase.IDLE, "results": None})


class SessionMirror:
    """
    Mirrors store changes to durable storage.

    Non-null results are written on every change; null results (a run
    started, failed or was cleared) remove the record, so an interrupted run
    is restored as "no results" rather than a stuck running phase.
    """

    def __init__(self, storage: JsonFileStorage):
        self._storage = storage
        self._last: Optional[Session] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self, store: SessionStore):
        self.detach()
        self._last = store.get_state()
        self._unsubscribe = store.subscribe(self)

    def detach(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def __call__(self, session: Session):
        last = self._last
        self._last = session

        if session.results is not None:
            self._storage.save(RESULTS_KEY, session.results)
        elif last is None or last.results is not None or session.phase != last.phase:
            self._storage.remove(RESULTS_KEY)

        if last is None or session.config != last.config:
            self._storage.save(CONFIG_KEY, session.config)
