"""
Producer Registry

Maps each fact domain to its producer. The process-wide default registry is
built once from the configured upstream seed and blob root.
"""
import logging
from functools import lru_cache
from typing import Dict, Optional

from .base import FactProducer
from .covenant import CovenantEvaluationProducer
from .esg import EsgKpiProducer
from .portfolio import PortfolioRiskProducer
from .trading import TradingReadinessProducer
from .upstream import InMemoryUpstreamSource, UpstreamSource
from ..storage import BlobStore, LocalBlobStore
from ...config import UPSTREAM_SEED_FILE
from ...models.facts import FactModule


logger = logging.getLogger(__name__)


class ProducerRegistry:
    """Lookup of FactProducer by FactModule."""

    def __init__(self, upstream: UpstreamSource, producers: Dict[FactModule, FactProducer]):
        self.upstream = upstream
        self._producers = dict(producers)

    def get(self, module: FactModule) -> FactProducer:
        producer = self._producers.get(module)
        if producer is None:
            raise KeyError(f"No fact producer registered for {module.value}")
        return producer

    @classmethod
    def reference(cls, upstream: UpstreamSource, blob_store: BlobStore) -> "ProducerRegistry":
        """Registry wired with the bundled reference producers."""
        return cls(
            upstream,
            {
                FactModule.TRADING: TradingReadinessProducer(upstream),
                FactModule.ESG: EsgKpiProducer(upstream, blob_store),
                FactModule.SERVICING: CovenantEvaluationProducer(upstream),
                FactModule.PORTFOLIO: PortfolioRiskProducer(upstream),
            },
        )


@lru_cache(maxsize=1)
def get_producer_registry(seed_file: Optional[str] = None) -> ProducerRegistry:
    """Default registry for the API and worker processes."""
    seed_file = seed_file if seed_file is not None else UPSTREAM_SEED_FILE
    if seed_file:
        logger.info(f"Loading upstream seed from {seed_file}")
        upstream = InMemoryUpstreamSource.from_json_file(seed_file)
    else:
        logger.warning("UPSTREAM_SEED_FILE not set; producers start with no upstream data")
        upstream = InMemoryUpstreamSource()
    return ProducerRegistry.reference(upstream, LocalBlobStore())
