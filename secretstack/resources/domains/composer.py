"""Resource composer: accumulate entries, layer overrides and injections, then build."""
import copy
import logging
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, Dict, Iterator, List, Tuple, Union

from ...secrets.domains.errors import (
    DuplicateEntryError,
    InjectionPathError,
    UnknownEntryError,
)
from .merge import Path, deep_merge, format_path, merge_at_path, parse_path

logger = logging.getLogger(__name__)

TYPED = "typed"
PLAIN = "plain"
ENTRY_KINDS = (TYPED, PLAIN)


@dataclass
class ResourceEntry:
    """
    One output artifact prior to materialization.

    Attributes:
        id: Unique id within the composer
        kind: "plain" for mappings, "typed" for objects exposing to_dict() or dataclasses
        base_config: Initial configuration
        override_config: Accumulated override layer
        injected_fragments: (path segments, value) pairs in call order
    """
    id: str
    kind: str
    base_config: Any
    override_config: Dict[str, Any] = field(default_factory=dict)
    injected_fragments: List[Tuple[Tuple[Union[str, int], ...], Any]] = field(default_factory=list)

    def base_mapping(self) -> Dict[str, Any]:
        if self.kind == PLAIN:
            return copy.deepcopy(self.base_config)
        if hasattr(self.base_config, "to_dict"):
            return copy.deepcopy(self.base_config.to_dict())
        if is_dataclass(self.base_config):
            return asdict(self.base_config)
        raise TypeError(
            f"Typed entry '{self.id}' needs a dataclass or an object with to_dict(), "
            f"got {type(self.base_config).__name__}"
        )


class ResourceComposer:
    """
    Builds a map of resources from entries, overrides and injected fragments.

    Precedence, lowest to highest: base config, override layer, injected
    fragments in call order. build() never mutates entries.

    Usage:
        composer = ResourceComposer()
        composer.add_entry("web", {"kind": "Deployment", ...})
        composer.override("web", {"spec": {"replicas": 3}})
        composer.inject("web", "spec.template.spec.containers.0", {"env": [...]})
        resources = composer.build()
    """

    def __init__(self):
        self._entries: Dict[str, ResourceEntry] = {}

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def entry(self, entry_id: str) -> ResourceEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise UnknownEntryError(entry_id) from None

    def add_entry(self, entry_id: str, base_config: Any, kind: str = PLAIN) -> ResourceEntry:
        if entry_id in self._entries:
            raise DuplicateEntryError(entry_id)
        if kind not in ENTRY_KINDS:
            raise ValueError(f"Unknown entry kind '{kind}'; expected one of: {', '.join(ENTRY_KINDS)}")
        if kind == PLAIN and not isinstance(base_config, dict):
            raise TypeError(f"Plain entry '{entry_id}' needs a mapping, got {type(base_config).__name__}")

        entry = ResourceEntry(
            id=entry_id,
            kind=kind,
            base_config=copy.deepcopy(base_config) if kind == PLAIN else base_config,
        )
        self._entries[entry_id] = entry
        logger.debug(f"Added {kind} entry '{entry_id}'")
        return entry

    def override(self, entry_id: str, partial_config: Dict[str, Any]) -> None:
        entry = self.entry(entry_id)
        entry.override_config = deep_merge(entry.override_config, partial_config)

    def inject(self, entry_id: str, path: Path, value: Any) -> None:
        entry = self.entry(entry_id)
        entry.injected_fragments.append((parse_path(path), copy.deepcopy(value)))
        logger.debug(f"Injected fragment into '{entry_id}' at '{format_path(path)}'")

    def build(self) -> Dict[str, Any]:
        """
        Materialize every entry.

        Returns:
            Mapping of entry id to resource, in insertion order

        Raises:
            InjectionPathError: If an injected path cannot be applied
        """
        resources = {}
        for entry_id, entry in self._entries.items():
            resource = deep_merge(entry.base_mapping(), entry.override_config)
            for path, value in entry.injected_fragments:
                try:
                    resource = merge_at_path(resource, path, value)
                except ValueError as e:
                    raise InjectionPathError(entry_id, format_path(path), str(e)) from e
            resources[entry_id] = resource
        return resources
