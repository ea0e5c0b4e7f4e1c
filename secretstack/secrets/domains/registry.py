"""Secret registry: declarations plus the adapters they are bound to."""
import logging
from typing import Dict, List, Optional, Tuple, Union

from .connector import Connector
from .errors import (
    AmbiguousConnectorError,
    AmbiguousProviderError,
    ConfigurationError,
    DuplicateAliasError,
    DuplicateSecretError,
    RegistryFrozenError,
    UnresolvedReferenceError,
)
from .models import ResolvedDeclaration, SecretDeclaration
from .provider import Provider

logger = logging.getLogger(__name__)


class SecretRegistry:
    """
    Holds secret declarations and the named connectors/providers they use.

    References left empty on a declaration are resolved once, in validate():
    the only registered adapter of that kind, else the registry default.
    A successful validate() freezes the registry.

    Usage:
        registry = SecretRegistry("default")
        registry.add_connector("env", EnvConnector())
        registry.add_provider("app", KubernetesSecretProvider("app-secrets"))
        registry.add_declaration(SecretDeclaration("API_KEY"))
        resolved = registry.validate()
    """

    def __init__(self, name: str = "default", default_connector: Optional[str] = None,
                 default_provider: Optional[str] = None):
        self.name = name
        self.default_connector = default_connector
        self.default_provider = default_provider
        self.connectors: Dict[str, Connector] = {}
        self.providers: Dict[str, Provider] = {}
        self.declarations: Dict[str, SecretDeclaration] = {}
        self._resolved: Optional[Tuple[ResolvedDeclaration, ...]] = None

    @property
    def frozen(self) -> bool:
        return self._resolved is not None

    def _check_mutable(self) -> None:
        if self.frozen:
            raise RegistryFrozenError(self.name)

    def add_connector(self, alias: str, connector: Connector) -> None:
        self._check_mutable()
        if alias in self.connectors:
            raise DuplicateAliasError("Connector", alias)
        self.connectors[alias] = connector
        logger.debug(f"Registry '{self.name}': connector '{alias}' registered")

    def add_provider(self, alias: str, provider: Provider) -> None:
        self._check_mutable()
        if alias in self.providers:
            raise DuplicateAliasError("Provider", alias)
        self.providers[alias] = provider
        logger.debug(f"Registry '{self.name}': provider '{alias}' registered")

    def add_declaration(self, declaration: Union[SecretDeclaration, str]) -> SecretDeclaration:
        self._check_mutable()
        if isinstance(declaration, str):
            declaration = SecretDeclaration(declaration)
        if declaration.name in self.declarations:
            raise DuplicateSecretError(self.name, declaration.name)
        self.declarations[declaration.name] = declaration
        return declaration

    def connector(self, alias: str) -> Connector:
        return self.connectors[alias]

    def provider(self, alias: str) -> Provider:
        return self.providers[alias]

    def _resolve_ref(self, secret_name: str, kind: str, ref: Optional[str],
                     adapters: Dict[str, object], default: Optional[str]) -> str:
        if ref is not None:
            if ref not in adapters:
                raise UnresolvedReferenceError(
                    secret_name, kind, ref, f"unknown {kind} '{ref}'"
                )
            return ref

        if len(adapters) == 1:
            return next(iter(adapters))

        if default is not None:
            if default not in adapters:
                raise UnresolvedReferenceError(
                    secret_name, kind, default, f"default {kind} '{default}' is not registered"
                )
            return default

        if not adapters:
            raise UnresolvedReferenceError(
                secret_name, kind, None, f"no {kind}s registered in registry '{self.name}'"
            )

        if kind == "connector":
            raise AmbiguousConnectorError(secret_name, adapters)
        raise AmbiguousProviderError(secret_name, adapters)

    def validate(self) -> Tuple[ResolvedDeclaration, ...]:
        """
        Resolve every declaration to a registered connector and provider.

        Errors are collected across all declarations rather than stopping at
        the first one.

        Returns:
            Resolved declarations in registration order

        Raises:
            ConfigurationError: aggregating one error per unresolved reference
        """
        if self._resolved is not None:
            return self._resolved

        resolved: List[ResolvedDeclaration] = []
        errors: List[UnresolvedReferenceError] = []

        for declaration in self.declarations.values():
            refs = {}
            for kind, ref, adapters, default in (
                ("connector", declaration.connector_ref, self.connectors, self.default_connector),
                ("provider", declaration.provider_ref, self.providers, self.default_provider),
            ):
                try:
                    refs[kind] = self._resolve_ref(declaration.name, kind, ref, adapters, default)
                except UnresolvedReferenceError as e:
                    errors.append(e)

            if len(refs) == 2:
                resolved.append(ResolvedDeclaration(
                    registry_name=self.name,
                    name=declaration.name,
                    connector_ref=refs["connector"],
                    provider_ref=refs["provider"],
                ))

        if errors:
            raise ConfigurationError(
                f"Registry '{self.name}' has {len(errors)} unresolved reference(s)",
                errors,
            )

        self._resolved = tuple(resolved)
        logger.info(f"Registry '{self.name}' validated with {len(resolved)} declaration(s)")
        return self._resolved
