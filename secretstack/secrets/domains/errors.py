"""Exception hierarchy for secretstack.

Every error names the offending secrets, identifiers or entry ids.
None of them ever carries a secret value.
"""
from typing import Iterable, List, Optional


class SecretStackError(Exception):
    """Base class for all secretstack errors."""
    pass


class ConfigurationError(SecretStackError):
    """Invalid declarations or adapters, optionally aggregating sub-errors."""

    def __init__(self, message: str, errors: Optional[List[Exception]] = None):
        self.errors = list(errors or [])
        self.message = message
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.errors:
            return self.message
        lines = [self.message]
        lines.extend(f"  - {error}" for error in self.errors)
        return "\n".join(lines)


class DuplicateAliasError(ConfigurationError):
    """An adapter alias was registered twice."""

    def __init__(self, kind: str, alias: str):
        self.kind = kind
        self.alias = alias
        super().__init__(f"{kind} alias '{alias}' is already registered")


class DuplicateSecretError(ConfigurationError):
    """A secret name was declared twice in the same registry."""

    def __init__(self, registry_name: str, secret_name: str):
        self.registry_name = registry_name
        self.secret_name = secret_name
        super().__init__(
            f"Secret '{secret_name}' is already declared in registry '{registry_name}'"
        )


class RegistryFrozenError(ConfigurationError):
    """A registry was mutated after it validated successfully."""

    def __init__(self, registry_name: str):
        self.registry_name = registry_name
        super().__init__(
            f"Registry '{registry_name}' is frozen after validation and cannot be modified"
        )


class UnresolvedReferenceError(ConfigurationError):
    """A declaration's connector or provider reference could not be resolved."""

    def __init__(self, secret_name: str, ref_kind: str, ref: Optional[str], reason: str):
        self.secret_name = secret_name
        self.ref_kind = ref_kind
        self.ref = ref
        super().__init__(f"Secret '{secret_name}': {reason}")


class AmbiguousConnectorError(UnresolvedReferenceError):
    """Several connectors are registered and neither the declaration nor the registry picks one."""

    def __init__(self, secret_name: str, aliases: Iterable[str]):
        self.aliases = sorted(aliases)
        super().__init__(
            secret_name,
            "connector",
            None,
            f"no connector given and no default set; candidates: {', '.join(self.aliases)}",
        )


class AmbiguousProviderError(UnresolvedReferenceError):
    """Several providers are registered and neither the declaration nor the registry picks one."""

    def __init__(self, secret_name: str, aliases: Iterable[str]):
        self.aliases = sorted(aliases)
        super().__init__(
            secret_name,
            "provider",
            None,
            f"no provider given and no default set; candidates: {', '.join(self.aliases)}",
        )


class ConfigError(ConfigurationError):
    """Configuration file error."""

    def __init__(self, message: str):
        super().__init__(message)


class FetchError(SecretStackError):
    """One or more secrets could not be fetched from their source."""

    def __init__(self, message: str, names: Iterable[str] = ()):
        self.names = sorted(set(names))
        super().__init__(message)


class NotLoadedError(FetchError):
    """get() was called for a name that no successful load() covered."""

    def __init__(self, name: str):
        super().__init__(f"Secret '{name}' was not loaded", [name])


class ConflictError(SecretStackError):
    """Several secrets target the same artifact and the collision cannot be resolved."""

    def __init__(self, identifier: str, secret_names: Iterable[str], key: Optional[str] = None):
        self.identifier = identifier
        self.secret_names = sorted(set(secret_names))
        self.key = key
        names = ", ".join(self.secret_names)
        if key is None:
            message = f"Conflicting secrets for '{identifier}': {names}"
        else:
            message = f"Conflicting secrets for '{identifier}' at key '{key}': {names}"
        super().__init__(message)


class MergeError(SecretStackError):
    """Effects are structurally incompatible and cannot be merged."""
    pass


class KeyCollisionError(MergeError):
    """Two secrets claim the same leaf key with different values."""

    def __init__(self, key: str, secret_names: Iterable[str]):
        self.key = key
        self.secret_names = sorted(set(secret_names))
        super().__init__(
            f"Key '{key}' is claimed by several secrets: {', '.join(self.secret_names)}"
        )


class ComposerError(SecretStackError):
    """Misuse of a ResourceComposer."""
    pass


class DuplicateEntryError(ComposerError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Resource entry '{entry_id}' already exists")


class UnknownEntryError(ComposerError):
    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Resource entry '{entry_id}' does not exist")


class InjectionPathError(ComposerError):
    """An injection path cannot be applied to the materialized resource."""

    def __init__(self, entry_id: str, path: str, reason: str):
        self.entry_id = entry_id
        self.path = path
        super().__init__(f"Cannot inject into '{entry_id}' at '{path}': {reason}")
