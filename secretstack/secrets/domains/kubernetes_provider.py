"""Kubernetes Secret provider."""
import base64
import copy
import logging
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .errors import KeyCollisionError, MergeError
from .models import InjectionRequest, PreparedEffect, SecretValue
from .provider import Provider

logger = logging.getLogger(__name__)

APPLY_RESOURCE = "apply-resource"

# Top-level manifest fields whose leaves carry secret data
DATA_FIELDS = ("data", "stringData")

# Container fields written by each injection strategy
STRATEGY_PATHS = {
    "env": "env",
    "envFrom": "envFrom",
}


def manifest_identifier(manifest: Mapping[str, Any]) -> str:
    """Kind/namespace/name of a manifest, e.g. Secret/default/app-secrets."""
    metadata = manifest.get("metadata", {})
    return f"{manifest.get('kind')}/{metadata.get('namespace', 'default')}/{metadata.get('name')}"


def encode_value(value: SecretValue) -> str:
    """Base64-encode a value for the data field of a Secret."""
    raw = value if isinstance(value, bytes) else str(value).encode("UTF-8")
    return base64.b64encode(raw).decode("ascii")


class KubernetesSecretProvider(Provider):
    """
    Renders secrets into a single Kubernetes Secret manifest.

    Every secret bound to the provider becomes one key of the Secret's data
    map. Secrets targeting the same Secret (same kind, namespace and name)
    share an identifier and are merged key by key.

    Args:
        name: metadata.name of the target Secret
        namespace: metadata.namespace of the target Secret
        keys: Optional mapping of secret name to data key (defaults to the name)
        secret_type: Secret type field
        labels: Optional metadata labels
    """

    allow_merge = True
    supported_strategies = frozenset(STRATEGY_PATHS)

    def __init__(self, name: str, namespace: str = "default",
                 keys: Optional[Mapping[str, str]] = None,
                 secret_type: str = "Opaque",
                 labels: Optional[Mapping[str, str]] = None):
        if not name:
            raise ValueError("KubernetesSecretProvider requires a target Secret name")
        self.name = name
        self.namespace = namespace
        self.keys = dict(keys or {})
        self.secret_type = secret_type
        self.labels = dict(labels or {})

    def key_for(self, secret_name: str) -> str:
        return self.keys.get(secret_name, secret_name)

    def _manifest(self, data: Dict[str, str]) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        return {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": metadata,
            "type": self.secret_type,
            "data": data,
        }

    def prepare(self, name: str, value: SecretValue) -> List[PreparedEffect]:
        payload = self._manifest({self.key_for(name): encode_value(value)})
        return [PreparedEffect(
            kind=APPLY_RESOURCE,
            identifier=manifest_identifier(payload),
            payload=payload,
            origin_secret_names=frozenset({name}),
        )]

    def identifier_of(self, effect: PreparedEffect) -> str:
        return manifest_identifier(effect.payload)

    def merge(self, effects: List[PreparedEffect]) -> PreparedEffect:
        if not effects:
            raise MergeError("Nothing to merge")

        kinds = {effect.kind for effect in effects}
        if len(kinds) > 1:
            raise MergeError(f"Cannot merge effects of different kinds: {', '.join(sorted(kinds))}")

        merged: Dict[str, Any] = {}
        owners: Dict[Tuple[str, ...], Set[str]] = {}
        for effect in effects:
            if not isinstance(effect.payload, dict):
                raise MergeError(f"Cannot merge non-mapping payload for '{effect.identifier}'")
            _merge_payload(merged, effect.payload, (), owners, effect.origin_secret_names)

        first = effects[0]
        names = frozenset().union(*(effect.origin_secret_names for effect in effects))
        logger.debug(f"Merged {len(effects)} effect(s) into {first.identifier}")
        return PreparedEffect(
            kind=first.kind,
            identifier=first.identifier,
            payload=merged,
            provider_ref=first.provider_ref,
            origin_secret_names=names,
        )

    def target_path_for(self, strategy_kind: str) -> str:
        if strategy_kind not in STRATEGY_PATHS:
            raise ValueError(
                f"Unsupported strategy '{strategy_kind}'; expected one of: "
                f"{', '.join(sorted(STRATEGY_PATHS))}"
            )
        return STRATEGY_PATHS[strategy_kind]

    def injection_payload(self, requests: List[InjectionRequest]) -> Dict[str, List[Dict[str, Any]]]:
        """
        Build a container fragment referencing this Secret.

        "env" adds one secretKeyRef variable per secret, named after the secret.
        "envFrom" adds a single secretRef exposing the whole Secret.

        Returns:
            Mapping of container field to its entries, e.g. {"env": [...]}
        """
        fragment: Dict[str, List[Dict[str, Any]]] = {}
        for request in requests:
            path = self.target_path_for(request.strategy_kind)
            entries = fragment.setdefault(path, [])
            if request.strategy_kind == "env":
                entries.append({
                    "name": request.secret_name,
                    "valueFrom": {
                        "secretKeyRef": {"name": self.name, "key": self.key_for(request.secret_name)},
                    },
                })
            else:
                ref = {"secretRef": {"name": self.name}}
                if ref not in entries:
                    entries.append(ref)
        return fragment


def _merge_payload(target: Dict[str, Any], source: Mapping[str, Any], path: Tuple[str, ...],
                   owners: Dict[Tuple[str, ...], Set[str]], origin: frozenset) -> None:
    for key, value in source.items():
        key_path = path + (key,)
        dotted = ".".join(key_path)
        existing = target.get(key)

        if isinstance(value, dict):
            if key not in target:
                target[key] = existing = {}
            if not isinstance(existing, dict):
                raise MergeError(f"'{dotted}' is a mapping in one effect and a scalar in another")
            _merge_payload(existing, value, key_path, owners, origin)
            continue

        claimed = owners.get(key_path, set())
        if key not in target:
            target[key] = copy.deepcopy(value)
            owners[key_path] = set(origin)
        elif isinstance(existing, dict):
            raise MergeError(f"'{dotted}' is a mapping in one effect and a scalar in another")
        elif existing != value or (key_path[0] in DATA_FIELDS and claimed - set(origin)):
            # Data keys belong to one secret even when another holds an equal value
            raise KeyCollisionError(dotted, claimed | set(origin))
        else:
            owners.setdefault(key_path, set()).update(origin)
