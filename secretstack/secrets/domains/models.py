"""Domain models for secret orchestration."""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Optional, Union

SecretValue = Union[str, bytes]


class ConflictPolicy(str, Enum):
    """How the merge pass resolves effects that share an identifier."""
    ERROR = "error"
    OVERWRITE = "overwrite"
    AUTO_MERGE = "autoMerge"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    LOADING = "loading"
    PREPARING = "preparing"
    MERGING = "merging"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SecretDeclaration:
    """A named secret with optional connector/provider references."""
    name: str
    connector_ref: Optional[str] = None
    provider_ref: Optional[str] = None


@dataclass(frozen=True)
class ResolvedDeclaration:
    """A declaration whose references point at registered adapters."""
    registry_name: str
    name: str
    connector_ref: str
    provider_ref: str


@dataclass(frozen=True)
class ResolvedSecret:
    """A fetched secret. The value is masked in repr."""
    registry_name: str
    name: str
    connector_ref: str
    provider_ref: str
    value: SecretValue = field(repr=False)

    def __repr__(self) -> str:
        return (
            f"ResolvedSecret(registry_name={self.registry_name!r}, name={self.name!r}, "
            f"connector_ref={self.connector_ref!r}, provider_ref={self.provider_ref!r}, "
            f"value=***)"
        )


@dataclass(frozen=True)
class PreparedEffect:
    """
    A provider-specific unit of output.

    Attributes:
        kind: Discriminator, e.g. "apply-resource"
        identifier: Merge key; equal identifiers target the same artifact
        payload: Structured value handed to the renderer
        provider_ref: Alias of the provider that produced the effect
        origin_secret_names: Secrets whose data the payload carries
    """
    kind: str
    identifier: str
    payload: Any
    provider_ref: Optional[str] = None
    origin_secret_names: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class InjectionRequest:
    """Ask a provider to wire a reference to a secret into a host resource."""
    secret_name: str
    strategy_kind: str
