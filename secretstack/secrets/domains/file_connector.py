"""File-based connector reading a flat YAML mapping of secret names to values."""
import logging
from pathlib import Path
from typing import Dict, Set, Union

import yaml

from .connector import CachingConnector
from .errors import FetchError
from .models import SecretValue

logger = logging.getLogger(__name__)


class FileConnector(CachingConnector):
    """
    Reads secrets from a YAML file.

    The file is re-read on every load() so edits are picked up between runs.
    Only strings (and !!binary bytes) are secret values. Numbers, booleans
    and nested values are reported as missing so a quoted value is required.
    """

    def __init__(self, path: Union[str, Path]):
        super().__init__()
        self.path = Path(path).expanduser()

    def _read(self, names: Set[str]) -> Dict[str, object]:
        if not self.path.is_file():
            raise FetchError(f"Secrets file not found: {self.path}", names)

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise FetchError(f"Failed to parse secrets file {self.path}: {e}", names) from e
        except OSError as e:
            raise FetchError(f"Failed to read secrets file {self.path}: {e}", names) from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise FetchError(f"Secrets file {self.path} must contain a mapping", names)
        return data

    def _fetch(self, names: Set[str]) -> Dict[str, SecretValue]:
        data = self._read(names)
        found = {}
        for name in names:
            if name not in data or data[name] is None:
                continue
            value = data[name]
            if not isinstance(value, (str, bytes)):
                # true, 1.0e3 and 0755 would not round-trip through str()
                logger.warning(
                    f"Ignoring {type(value).__name__} value for '{name}' in {self.path}; "
                    f"quote it to store it as a string"
                )
                continue
            found[name] = value
        logger.debug(f"Read {len(found)} of {len(names)} secret(s) from {self.path}")
        return found
