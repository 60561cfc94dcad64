"""
Strategy descriptors and the in-memory strategy catalog.
"""
import logging
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from quantrunner.errors import BacktestRejected
from quantrunner.service.client import BacktestService, unwrap_envelope

logger = logging.getLogger(__name__)


class StrategyDescriptor(BaseModel):
    """
    Describes one strategy offered by the remote service.

    Args:
        code (str): Unique strategy code, used as the `strategyType` request
            parameter.
        name (str): Display name.
        description (str): Free-form description.
        param_spec (str): Description of the strategy's parameters.
    """
    model_config = ConfigDict(frozen=True)

    code: str
    name: str
    description: str = ""
    param_spec: str = Field(
        "",
        validation_alias=AliasChoices("param_spec", "paramSpec", "params", "strategyParams"),
    )


class StrategyCatalog:
    """
    Caches the strategy descriptors published by the remote service.

    The catalog is fetched once, on first use, and kept for the lifetime of
    the catalog object.
    """

    def __init__(self, service: BacktestService):
        self._service = service
        self._descriptors: Optional[Dict[str, StrategyDescriptor]] = None

    @property
    def loaded(self) -> bool:
        return self._descriptors is not None

    async def load(self) -> Dict[str, StrategyDescriptor]:
        """
        Returns the catalog, fetching it from the service on first call.

        Raises:
            TransportError: If the service cannot be reached.
            BacktestRejected: If the service reports an error or the payload
                does not describe strategies.
        """
        if self._descriptors is not None:
            return self._descriptors

        data = unwrap_envelope(await self._service.fetch_strategies())
        if not isinstance(data, dict):
            raise BacktestRejected("Strategy catalog payload is not a mapping")

        descriptors: Dict[str, StrategyDescriptor] = {}
        for code, raw in data.items():
            if not isinstance(raw, dict):
                raise BacktestRejected(f"Strategy '{code}' has no descriptor")
            try:
                descriptors[code] = StrategyDescriptor.model_validate({"code": code, **raw})
            except PydanticValidationError as e:
                raise BacktestRejected(f"Malformed descriptor for strategy '{code}': {e}") from e

        logger.info(f"Loaded {len(descriptors)} strategies from the catalog")
        self._descriptors = descriptors
        return descriptors

    def get(self, code: str) -> Optional[StrategyDescriptor]:
        """Returns a cached descriptor, or None if unknown or not loaded yet."""
        if self._descriptors is None:
            return None
        return self._descriptors.get(code)

    def name_for(self, code: str) -> str:
        """Display name for `code`, falling back to the code itself."""
        descriptor = self.get(code)
        return descriptor.name if descriptor else code

    def codes(self) -> List[str]:
        return list(self._descriptors or {})
