"""
Fact Producer Interface

A producer owns the business rules of one fact domain. It reads upstream
state and returns a FactPayload; it never touches the snapshot store or the
audit log.
"""
from abc import ABC, abstractmethod
from typing import Dict

from .upstream import UpstreamSource
from ...models.facts import FactModule, FactPayload


class FactProducer(ABC):
    """
    Computes the current fact for one entity.

    Implementations must be deterministic: the same upstream state yields an
    identical payload, so its hash is stable across recomputes.
    """

    module: FactModule
    name: str = "fact-producer"  # recorded as snapshot computed_by
    fact_version: int = 1

    def __init__(self, upstream: UpstreamSource):
        self.upstream = upstream

    @abstractmethod
    def compute(self, tenant_id: str, entity_keys: Dict[str, str]) -> FactPayload:
        """
        Raises:
            UpstreamNotFoundError: the entity does not exist for the tenant
            TransientIOError: a dependency read failed after retries
        """
        raise NotImplementedError
