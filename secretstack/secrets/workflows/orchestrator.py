"""Secret pipeline: validate, load, prepare and merge across registries."""
import time
import logging
import threading
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from ..domains.config_loader import build_registries
from ..domains.connector import Connector
from ..domains.errors import (
    ConfigurationError,
    ConflictError,
    FetchError,
    KeyCollisionError,
)
from ..domains.models import (
    ConflictPolicy,
    OrchestratorState,
    PreparedEffect,
    ResolvedDeclaration,
    ResolvedSecret,
)
from ..domains.provider import Provider
from ..domains.registry import SecretRegistry

logger = logging.getLogger(__name__)

Resolution = Dict[str, Tuple[ResolvedDeclaration, ...]]


class _LoadTask(threading.Thread):
    """One connector's load() call, run in a daemon thread."""

    def __init__(self, connector: Connector, label: str, name: str):
        super().__init__(name=name, daemon=True)
        self.connector = connector
        self.label = label
        self.names: Set[str] = set()
        self.error: Optional[Exception] = None
        self.started_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.monotonic()
        super().start()

    def run(self) -> None:
        try:
            self.connector.load(set(self.names))
        except Exception as e:
            # Reported by the joining thread
            self.error = e

    def join_within(self, timeout: Optional[float]) -> None:
        """Wait until timeout seconds have passed since this load started."""
        if timeout is None:
            self.join()
            return
        self.join(max(0.0, timeout - (time.monotonic() - self.started_at)))


# Keyed by id() of the connector instance
LoadPlan = Dict[int, _LoadTask]


class Orchestrator:
    """
    Drives the secret pipeline over one or more registries.

    Registries are read-only to the orchestrator; the per-run merge state is
    its own. apply() is all-or-nothing: it either returns every effect or
    raises without returning any.

    Args:
        registries: Registries to process, in order; names must be unique
        conflict_policy: How identifier collisions are resolved
        load_timeout: Seconds allowed for each connector's load() call
    """

    def __init__(self, registries: Iterable[SecretRegistry],
                 conflict_policy: Union[ConflictPolicy, str] = ConflictPolicy.AUTO_MERGE,
                 load_timeout: Optional[float] = None):
        self.registries: List[SecretRegistry] = list(registries)
        names = [registry.name for registry in self.registries]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate registry name(s): {', '.join(duplicates)}")

        self.conflict_policy = ConflictPolicy(conflict_policy)
        self.load_timeout = load_timeout
        self.state = OrchestratorState.IDLE

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "Orchestrator":
        """Build an orchestrator from a mapping returned by load_config()."""
        return cls(
            build_registries(config),
            conflict_policy=config.get('conflict_policy', ConflictPolicy.AUTO_MERGE.value),
            load_timeout=config.get('load_timeout'),
        )

    def _set_state(self, state: OrchestratorState) -> None:
        logger.debug(f"Orchestrator state: {self.state.value} -> {state.value}")
        self.state = state

    def registry(self, name: str) -> SecretRegistry:
        for registry in self.registries:
            if registry.name == name:
                return registry
        raise KeyError(name)

    def validate(self) -> Resolution:
        """
        Resolve every registry and attempt to fetch every secret.

        prepare() is never called here.

        Returns:
            Mapping of registry name to its resolved declarations

        Raises:
            ConfigurationError: aggregating every unresolved reference and
                every connector load failure
        """
        try:
            resolution = self._validate()
        except Exception:
            self._set_state(OrchestratorState.FAILED)
            raise
        self._set_state(OrchestratorState.IDLE)
        return resolution

    def apply(self) -> List[PreparedEffect]:
        """
        Run the full pipeline.

        Returns:
            Effects ordered by first occurrence of their identifier

        Raises:
            ConfigurationError: If validation or fetching failed
            ConflictError: If two secrets collide on a target
            MergeError: If a provider cannot merge colliding effects
        """
        try:
            resolution = self._validate()
            self._set_state(OrchestratorState.PREPARING)
            raw = self._prepare(resolution)
            self._set_state(OrchestratorState.MERGING)
            effects = self._merge(raw)
        except Exception:
            self._set_state(OrchestratorState.FAILED)
            raise

        self._set_state(OrchestratorState.DONE)
        logger.info(f"Prepared {len(effects)} effect(s) from {len(raw)} raw effect(s)")
        return effects

    def _validate(self) -> Resolution:
        self._set_state(OrchestratorState.VALIDATING)
        resolution: Resolution = {}
        errors: List[Exception] = []

        for registry in self.registries:
            try:
                resolution[registry.name] = registry.validate()
            except ConfigurationError as e:
                # Failed registries are not loaded
                errors.extend(e.errors or [e])

        self._set_state(OrchestratorState.LOADING)
        errors.extend(self._load(self._plan(resolution)))

        if errors:
            raise ConfigurationError(
                f"Secret validation failed with {len(errors)} error(s)", errors
            )
        return resolution

    def _plan(self, resolution: Resolution) -> LoadPlan:
        """Group resolved names by the connector instance they are bound to."""
        plan: LoadPlan = {}
        for registry in self.registries:
            for declaration in resolution.get(registry.name, ()):
                connector = registry.connector(declaration.connector_ref)
                if id(connector) not in plan:
                    label = f"Connector '{declaration.connector_ref}' in registry '{registry.name}'"
                    plan[id(connector)] = _LoadTask(
                        connector, label, f"secretstack-load-{registry.name}-{declaration.connector_ref}"
                    )
                plan[id(connector)].names.add(declaration.name)
        return plan

    def _load(self, plan: LoadPlan) -> List[FetchError]:
        """
        Call load() once per connector, concurrently, and join all of them.

        Each load runs in its own daemon thread and gets load_timeout seconds
        from its own start. A failure or timeout is recorded for that
        connector's secrets and does not cancel the other loads. A timed out
        load keeps running in the background but never blocks exit.
        """
        tasks = list(plan.values())
        for task in tasks:
            task.start()

        errors: List[FetchError] = []
        for task in tasks:
            task.join_within(self.load_timeout)
            names = ", ".join(sorted(task.names))
            if task.is_alive():
                logger.warning(f"{task.label} timed out after {self.load_timeout}s")
                errors.append(FetchError(
                    f"{task.label} timed out after {self.load_timeout}s: {names}",
                    task.names,
                ))
            elif isinstance(task.error, FetchError):
                logger.warning(f"{task.label} failed to load {len(task.error.names)} secret(s)")
                errors.append(FetchError(f"{task.label}: {task.error}", task.error.names))
            elif task.error is not None:
                logger.warning(f"{task.label} raised {type(task.error).__name__}")
                errors.append(FetchError(f"{task.label} failed: {task.error}", task.names))
            else:
                logger.info(f"{task.label} loaded {len(task.names)} secret(s)")
        return errors

    def _prepare(self, resolution: Resolution) -> List[Tuple[Provider, PreparedEffect]]:
        """Fetch each value from its connector and shape it with its provider."""
        raw: List[Tuple[Provider, PreparedEffect]] = []
        for registry in self.registries:
            for declaration in resolution[registry.name]:
                connector = registry.connector(declaration.connector_ref)
                provider = registry.provider(declaration.provider_ref)
                secret = ResolvedSecret(
                    registry_name=registry.name,
                    name=declaration.name,
                    connector_ref=declaration.connector_ref,
                    provider_ref=declaration.provider_ref,
                    value=connector.get(declaration.name),
                )
                for effect in provider.prepare(secret.name, secret.value):
                    raw.append((provider, replace(
                        effect,
                        provider_ref=secret.provider_ref,
                        origin_secret_names=effect.origin_secret_names | {secret.name},
                    )))
        return raw

    def _merge(self, raw: List[Tuple[Provider, PreparedEffect]]) -> List[PreparedEffect]:
        """Group raw effects by identifier and resolve collisions in encounter order."""
        groups: Dict[str, List[Tuple[Provider, PreparedEffect]]] = {}
        for provider, effect in raw:
            groups.setdefault(provider.identifier_of(effect), []).append((provider, effect))

        merged = []
        for identifier, members in groups.items():
            if len(members) == 1:
                merged.append(members[0][1])
            else:
                merged.append(self._resolve_collision(identifier, members))
        return merged

    def _resolve_collision(self, identifier: str,
                           members: List[Tuple[Provider, PreparedEffect]]) -> PreparedEffect:
        effects = [effect for _, effect in members]
        names = frozenset().union(*(effect.origin_secret_names for effect in effects))

        if self.conflict_policy is ConflictPolicy.OVERWRITE:
            winner = effects[-1]
            logger.warning(
                f"Overwriting '{identifier}': keeping {', '.join(sorted(winner.origin_secret_names))}, "
                f"discarding {len(effects) - 1} earlier effect(s)"
            )
            return winner

        mergeable = all(provider.allow_merge for provider, _ in members)
        if not mergeable or self.conflict_policy is ConflictPolicy.ERROR:
            raise ConflictError(identifier, names)

        # The first provider to claim an identifier owns its merge
        provider = members[0][0]
        try:
            result = provider.merge(effects)
        except KeyCollisionError as e:
            raise ConflictError(identifier, e.secret_names or names, key=e.key) from e

        logger.info(f"Merged {len(effects)} effect(s) into '{identifier}'")
        return replace(result, identifier=identifier, origin_secret_names=names)
