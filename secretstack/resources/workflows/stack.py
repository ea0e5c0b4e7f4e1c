"""Stack: a named set of resources with secret references wired in."""
import logging
from typing import Any, Dict, Iterable, List, Optional

from ...secrets.domains.models import InjectionRequest
from ...secrets.domains.provider import Provider
from ..domains.composer import PLAIN, ResourceComposer
from ..domains.merge import Path

logger = logging.getLogger(__name__)

# First container of a Deployment/StatefulSet/Job pod template
DEFAULT_CONTAINER_PATH = "spec.template.spec.containers.0"


class Stack:
    """
    Owns a ResourceComposer and feeds it entries, overrides and secret wiring.

    The composer never sees provider-specific shapes: the provider renders
    the fragment and the stack injects it at the container path.
    """

    def __init__(self, name: str, composer: Optional[ResourceComposer] = None):
        self.name = name
        self.composer = composer if composer is not None else ResourceComposer()

    def add(self, entry_id: str, config: Any, kind: str = PLAIN) -> None:
        self.composer.add_entry(entry_id, config, kind)

    def override(self, entry_id: str, partial_config: Dict[str, Any]) -> None:
        self.composer.override(entry_id, partial_config)

    def wire_secrets(self, entry_id: str, provider: Provider,
                     requests: Iterable[InjectionRequest],
                     container_path: Path = DEFAULT_CONTAINER_PATH) -> None:
        """
        Inject references to secrets into a container of an entry.

        Args:
            entry_id: Target entry
            provider: Provider whose Secret holds the values
            requests: Secrets to reference and how
            container_path: Path of the container mapping within the entry

        Raises:
            UnknownEntryError: If entry_id has not been added
            ValueError: If a strategy is not supported by the provider
        """
        requests: List[InjectionRequest] = list(requests)
        unsupported = sorted({
            request.strategy_kind for request in requests
            if request.strategy_kind not in provider.supported_strategies
        })
        if unsupported:
            raise ValueError(
                f"{type(provider).__name__} does not support strategies: {', '.join(unsupported)}"
            )
        if not requests:
            return

        self.composer.entry(entry_id)
        fragment = provider.injection_payload(requests)
        self.composer.inject(entry_id, container_path, fragment)
        logger.info(
            f"Stack '{self.name}': wired {len(requests)} secret reference(s) into '{entry_id}'"
        )

    def build(self) -> Dict[str, Any]:
        return self.composer.build()
