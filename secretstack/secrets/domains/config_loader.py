"""Configuration loader for secretstack."""
import os
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from .connector import Connector
from .env_connector import EnvConnector, StaticConnector
from .errors import ConfigError
from .file_connector import FileConnector
from .kubernetes_provider import KubernetesSecretProvider
from .models import ConflictPolicy, SecretDeclaration
from .provider import Provider
from .registry import SecretRegistry

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "SECRETSTACK_CONFIG"
LOCAL_CONFIG_NAME = "secretstack.yml"


def default_config_path() -> Path:
    """XDG location: ~/.config/secretstack/config.yml"""
    return Path.home() / ".config" / "secretstack" / "config.yml"


def find_config_path(explicit: Optional[str] = None) -> Tuple[Path, str]:
    """
    Locate the config file.

    Priority order:
    1. Explicit path (--config)
    2. SECRETSTACK_CONFIG environment variable
    3. ./secretstack.yml
    4. ~/.config/secretstack/config.yml

    Returns:
        (path, source) where source names the rule that matched

    Raises:
        FileNotFoundError: If no candidate exists
    """
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        return path, "argument"

    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path).expanduser()
        if path.is_file():
            return path, "environment"
        logger.warning(f"{CONFIG_ENV_VAR} points to a missing file: {path}")

    local = Path.cwd() / LOCAL_CONFIG_NAME
    if local.is_file():
        return local, "working directory"

    default = default_config_path()
    if default.is_file():
        return default, "default"

    raise FileNotFoundError(
        "Configuration file not found. Provide one using one of these methods:\n\n"
        "1. Pass it explicitly:\n"
        "   secretstack --config /path/to/config.yml secrets validate\n\n"
        f"2. Export {CONFIG_ENV_VAR}=/path/to/config.yml\n\n"
        f"3. Create ./{LOCAL_CONFIG_NAME} in the working directory\n\n"
        "4. Use the default location:\n"
        f"   mkdir -p {default.parent}\n"
        f"   cp /path/to/your/config.yml {default}\n"
    )


def _require_mapping(value: Any, where: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"'{where}' must be a mapping, got {type(value).__name__}")
    return value


def _validate_authentication(auth: Any, config_path: str) -> None:
    auth = _require_mapping(auth, "authentication")

    if 'type' not in auth:
        raise ConfigError("Missing 'authentication.type' in config")

    if auth['type'] != 'service_account':
        raise ConfigError(
            f"Unsupported authentication type: {auth['type']}\n"
            f"Only 'service_account' is supported."
        )

    if 'service_account_path' not in auth:
        raise ConfigError(
            "Missing 'authentication.service_account_path' in config\n"
            "Please specify the absolute path to your service account JSON file."
        )

    service_account_path = auth['service_account_path']
    if not os.path.isfile(service_account_path):
        raise ConfigError(
            f"Service account file not found at: {service_account_path}\n"
            f"Please ensure the file exists or update the path in {config_path}"
        )


def _validate_registries(registries: Any) -> None:
    registries = _require_mapping(registries, "registries")
    if not registries:
        raise ConfigError("'registries' must declare at least one registry")

    for name, section in registries.items():
        section = _require_mapping(section, f"registries.{name}")
        for adapters in ("connectors", "providers"):
            for alias, options in _require_mapping(
                    section.get(adapters, {}), f"registries.{name}.{adapters}").items():
                options = _require_mapping(options, f"registries.{name}.{adapters}.{alias}")
                if 'type' not in options:
                    raise ConfigError(f"Missing 'registries.{name}.{adapters}.{alias}.type' in config")

        secrets = section.get("secrets", [])
        if not isinstance(secrets, list):
            raise ConfigError(f"'registries.{name}.secrets' must be a list")
        for item in secrets:
            if isinstance(item, str):
                continue
            if not isinstance(item, dict) or 'name' not in item:
                raise ConfigError(
                    f"Invalid secret declaration in registry '{name}': {item!r}\n"
                    f"Use a name string or a mapping with 'name', 'connector' and 'provider'."
                )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Explicit path; discovered with find_config_path() if omitted

    Returns:
        Dict with 'registries' and optional 'conflict_policy', 'load_timeout'
        and 'authentication' keys

    Raises:
        FileNotFoundError: If no config file exists
        ConfigError: If the file is unreadable, empty or invalid
    """
    path, source = find_config_path(config_path)

    try:
        with open(path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file at {path}: {e}") from e

    if not config:
        raise ConfigError(f"Config file at {path} is empty")
    config = _require_mapping(config, str(path))

    if 'registries' not in config:
        raise ConfigError(
            f"Missing 'registries' section in config at {path}\n"
            f"Required format:\n"
            f"registries:\n"
            f"  default:\n"
            f"    connectors:\n"
            f"      env: {{type: env}}\n"
            f"    providers:\n"
            f"      app: {{type: kubernetes-secret, name: app-secrets}}\n"
            f"    secrets:\n"
            f"      - API_KEY"
        )
    _validate_registries(config['registries'])

    if 'authentication' in config:
        _validate_authentication(config['authentication'], str(path))

    policy = config.get('conflict_policy', ConflictPolicy.AUTO_MERGE.value)
    try:
        ConflictPolicy(policy)
    except ValueError:
        allowed = ", ".join(p.value for p in ConflictPolicy)
        raise ConfigError(f"Invalid conflict_policy '{policy}'; expected one of: {allowed}") from None

    timeout = config.get('load_timeout')
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigError(f"'load_timeout' must be a positive number of seconds, got {timeout!r}")

    config['_path'] = str(path)
    logger.info(f"Configuration loaded from {path} ({source})")
    return config


def _gcp_connector(options: Dict[str, Any], config: Dict[str, Any]) -> Connector:
    # Google client libraries load only when a gcp connector is configured
    from .gcp_client import GCPSecretConnector

    auth = config.get('authentication')
    if auth:
        os.environ['GOOGLE_APPLICATION_CREDENTIALS'] = auth['service_account_path']
        logger.info(f"Set GOOGLE_APPLICATION_CREDENTIALS from config: {auth['service_account_path']}")
    return GCPSecretConnector(
        project_id=options.get('project_id'),
        version=str(options.get('version', 'latest')),
    )


def _file_connector(options: Dict[str, Any], config: Dict[str, Any]) -> Connector:
    if 'path' not in options:
        raise ConfigError("File connector requires a 'path'")
    path = Path(options['path']).expanduser()
    if not path.is_absolute() and '_path' in config:
        path = Path(config['_path']).parent / path
    return FileConnector(path)


CONNECTOR_FACTORIES: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Connector]] = {
    "env": lambda options, config: EnvConnector(prefix=options.get('prefix', '')),
    "static": lambda options, config: StaticConnector(options.get('values', {})),
    "file": _file_connector,
    "gcp": _gcp_connector,
}


def _kubernetes_provider(options: Dict[str, Any], config: Dict[str, Any]) -> Provider:
    if 'name' not in options:
        raise ConfigError("kubernetes-secret provider requires a 'name'")
    return KubernetesSecretProvider(
        name=options['name'],
        namespace=options.get('namespace', 'default'),
        keys=options.get('keys'),
        secret_type=options.get('secret_type', 'Opaque'),
        labels=options.get('labels'),
    )


PROVIDER_FACTORIES: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Provider]] = {
    "kubernetes-secret": _kubernetes_provider,
}


def _create(factories: Dict[str, Callable], kind: str, alias: str,
            options: Dict[str, Any], config: Dict[str, Any]):
    adapter_type = options['type']
    if adapter_type not in factories:
        raise ConfigError(
            f"Unknown {kind} type '{adapter_type}' for '{alias}'; "
            f"expected one of: {', '.join(sorted(factories))}"
        )
    return factories[adapter_type](options, config)


def build_registries(config: Dict[str, Any]) -> List[SecretRegistry]:
    """Instantiate one SecretRegistry per entry of the 'registries' section."""
    registries = []
    for name, section in config['registries'].items():
        registry = SecretRegistry(
            name=name,
            default_connector=section.get('default_connector'),
            default_provider=section.get('default_provider'),
        )
        for alias, options in section.get('connectors', {}).items():
            registry.add_connector(alias, _create(CONNECTOR_FACTORIES, "connector", alias, options, config))
        for alias, options in section.get('providers', {}).items():
            registry.add_provider(alias, _create(PROVIDER_FACTORIES, "provider", alias, options, config))
        for item in section.get('secrets', []):
            if isinstance(item, str):
                registry.add_declaration(SecretDeclaration(item))
            else:
                registry.add_declaration(SecretDeclaration(
                    name=item['name'],
                    connector_ref=item.get('connector'),
                    provider_ref=item.get('provider'),
                ))
        registries.append(registry)
        logger.debug(f"Built registry '{name}' with {len(registry.declarations)} declaration(s)")
    return registries

