"""Provider contract: shape fetched secrets into delivery effects."""
from abc import ABC, abstractmethod
from typing import Any, FrozenSet, List

from .errors import MergeError
from .models import InjectionRequest, PreparedEffect, SecretValue


class Provider(ABC):
    """
    Abstract base class that all providers must implement.

    Attributes:
        allow_merge: If False, any identifier collision is a conflict
        supported_strategies: Strategy kinds accepted by injection_payload()
    """

    allow_merge: bool = False
    supported_strategies: FrozenSet[str] = frozenset()

    @abstractmethod
    def prepare(self, name: str, value: SecretValue) -> List[PreparedEffect]:
        """
        Shape a fetched value into effects. Must not touch external state.

        Args:
            name: Secret name
            value: Secret value as fetched by a connector

        Returns:
            Ordered list of effects
        """
        pass

    @abstractmethod
    def identifier_of(self, effect: PreparedEffect) -> str:
        """Deterministic merge key of an effect."""
        pass

    def merge(self, effects: List[PreparedEffect]) -> PreparedEffect:
        """
        Combine effects sharing an identifier into one.

        Raises:
            MergeError: If the payloads are structurally incompatible
        """
        raise MergeError(f"{type(self).__name__} does not support merging")

    def target_path_for(self, strategy_kind: str) -> str:
        """Path, relative to the host fragment, that a strategy writes to."""
        raise ValueError(f"{type(self).__name__} does not support strategy '{strategy_kind}'")

    def injection_payload(self, requests: List[InjectionRequest]) -> Any:
        """Fragment wiring references to the requested secrets into a host resource."""
        raise ValueError(f"{type(self).__name__} does not support injection")
