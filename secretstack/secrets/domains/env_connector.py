"""Environment variable and in-memory connectors."""
import os
import logging
from typing import Dict, Mapping, Optional, Set

from .connector import CachingConnector
from .models import SecretValue

logger = logging.getLogger(__name__)


class EnvConnector(CachingConnector):
    """Reads secrets from environment variables, optionally prefixed."""

    def __init__(self, prefix: str = "", environ: Optional[Mapping[str, str]] = None):
        super().__init__()
        self.prefix = prefix
        self._environ = environ

    def _env_key(self, name: str) -> str:
        return f"{self.prefix}{name}" if self.prefix else name

    def _fetch(self, names: Set[str]) -> Dict[str, SecretValue]:
        environ = os.environ if self._environ is None else self._environ
        found = {}
        for name in names:
            value = environ.get(self._env_key(name))
            if value is None:
                logger.debug(f"Environment variable {self._env_key(name)} not set")
                continue
            found[name] = value
        return found


class StaticConnector(CachingConnector):
    """Serves secrets from a mapping supplied by the caller."""

    def __init__(self, values: Optional[Mapping[str, SecretValue]] = None):
        super().__init__()
        self.values = dict(values or {})

    def _fetch(self, names: Set[str]) -> Dict[str, SecretValue]:
        return {name: self.values[name] for name in names if name in self.values}
