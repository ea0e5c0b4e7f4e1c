"""Connector contract: fetch raw secret values from one external source kind."""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Set

from .errors import FetchError, NotLoadedError
from .models import SecretValue

logger = logging.getLogger(__name__)


class Connector(ABC):
    """
    Abstract base class that all connectors must implement.

    The orchestrator calls load() once per run with every name bound to the
    connector, then get() once per name.
    """

    @abstractmethod
    def load(self, names: Set[str]) -> None:
        """
        Fetch every name in one bulk call.

        Must be idempotent: loading overlapping sets refreshes cached values.

        Raises:
            FetchError: listing every name that could not be resolved
        """
        pass

    @abstractmethod
    def get(self, name: str) -> SecretValue:
        """
        Return a value fetched by a prior successful load().

        Raises:
            NotLoadedError: If name was not part of a successful load()
        """
        pass


class CachingConnector(Connector):
    """
    Connector base that keeps loaded values in memory.

    Subclasses implement _fetch(), returning the values they found. Names
    missing from the result are reported together in one FetchError, and the
    cache is only updated when every requested name was found.
    """

    def __init__(self):
        self._cache: Dict[str, SecretValue] = {}

    @abstractmethod
    def _fetch(self, names: Set[str]) -> Dict[str, SecretValue]:
        pass

    def load(self, names: Iterable[str]) -> None:
        requested = set(names)
        found = self._fetch(requested)
        missing = requested - set(found)
        if missing:
            raise FetchError(
                f"{type(self).__name__} could not resolve: {', '.join(sorted(missing))}",
                missing,
            )
        self._cache.update({name: found[name] for name in requested})
        logger.debug(f"{type(self).__name__} loaded {len(requested)} secret(s)")

    def get(self, name: str) -> SecretValue:
        try:
            return self._cache[name]
        except KeyError:
            raise NotLoadedError(name) from None

    def clear(self) -> None:
        """Drop every cached value."""
        self._cache.clear()
