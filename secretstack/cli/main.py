"""CLI entrypoint for secretstack."""
import sys
import argparse
import logging
from importlib import metadata

import yaml

from .validators import validate_registry_name, validate_secret_name

# Configure logging to stderr
logging.basicConfig(
    level=logging.WARNING,
    format="%(message)s",
    stream=sys.stderr
)
logger = logging.getLogger(__name__)


def _version() -> str:
    try:
        return metadata.version("secretstack")
    except metadata.PackageNotFoundError:
        return "0.1.0"


def _orchestrator(args):
    from secretstack.secrets.domains.config_loader import load_config
    from secretstack.secrets.workflows.orchestrator import Orchestrator

    return Orchestrator.from_config(load_config(args.config))


def render_effects(effects) -> str:
    """Serialize effect payloads as a multi-document YAML stream."""
    return yaml.safe_dump_all(
        [effect.payload for effect in effects],
        sort_keys=False,
        default_flow_style=False,
    )


def cmd_version(args):
    """Show version information."""
    print(f"secretstack {_version()}")


def cmd_config_show(args):
    """Show which config file would be used."""
    from secretstack.secrets.domains.config_loader import find_config_path, default_config_path

    try:
        path, source = find_config_path(args.config)
    except FileNotFoundError:
        print(f"Config path: {default_config_path()}")
        print("Source: default (file not found)")
        return

    print(f"Config path: {path}")
    print(f"Source: {source}")


def cmd_secrets_list(args):
    """List declarations and the adapters they resolve to. Values are never printed."""
    from secretstack.secrets.domains.errors import ConfigurationError

    orchestrator = _orchestrator(args)
    failed = False
    for registry in orchestrator.registries:
        try:
            resolved = registry.validate()
        except ConfigurationError as e:
            print(f"[{registry.name}] unresolved:", file=sys.stderr)
            print(str(e), file=sys.stderr)
            failed = True
            continue
        print(f"[{registry.name}]")
        for declaration in resolved:
            print(f"  {declaration.name}  connector={declaration.connector_ref}  "
                  f"provider={declaration.provider_ref}")
    if failed:
        sys.exit(1)


def cmd_secrets_validate(args):
    """Resolve and fetch every declared secret, reporting every failure."""
    orchestrator = _orchestrator(args)
    resolution = orchestrator.validate()
    total = sum(len(declarations) for declarations in resolution.values())
    print(f"Success: {total} secret(s) in {len(resolution)} registr{'y' if len(resolution) == 1 else 'ies'} validated")


def cmd_secrets_apply(args):
    """Run the pipeline and write the resulting manifests."""
    orchestrator = _orchestrator(args)
    effects = orchestrator.apply()
    rendered = render_effects(effects)

    if args.output:
        with open(args.output, 'w') as f:
            f.write(rendered)
        print(f"Wrote {len(effects)} manifest(s) to {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(rendered)


def cmd_secrets_get(args):
    """Fetch a single declared secret through its connector."""
    validate_secret_name(args.secret_name)
    orchestrator = _orchestrator(args)

    if args.registry:
        validate_registry_name(args.registry, [r.name for r in orchestrator.registries])
        candidates = [orchestrator.registry(args.registry)]
    else:
        candidates = orchestrator.registries

    candidates = [r for r in candidates if args.secret_name in r.declarations]
    if not candidates:
        print(f"Error: Secret '{args.secret_name}' is not declared", file=sys.stderr)
        sys.exit(1)
    if len(candidates) > 1:
        names = ", ".join(r.name for r in candidates)
        print(f"Error: Secret '{args.secret_name}' is declared in several registries ({names}); "
              f"use --registry", file=sys.stderr)
        sys.exit(2)

    registry = candidates[0]
    declaration = next(d for d in registry.validate() if d.name == args.secret_name)
    connector = registry.connector(declaration.connector_ref)
    connector.load({declaration.name})
    secret_value = connector.get(declaration.name)
    if isinstance(secret_value, bytes):
        secret_value = secret_value.decode("UTF-8", errors="replace")

    if args.quiet:
        # Quiet mode: output only value, no formatting
        print(secret_value)
    else:
        print(f"Secret '{args.secret_name}': {secret_value}")


def main():
    """Main CLI entrypoint.

    Exit codes:
        0 - Success
        1 - Runtime errors (unresolved references, fetch failures, conflicts, etc.)
        2 - Usage errors (invalid arguments, invalid secret name format, etc.)
    """
    parser = argparse.ArgumentParser(
        prog="secretstack",
        description="secretstack - fetch declared secrets and render them into Kubernetes manifests",
        epilog="""
Exit codes:
  0 - Success
  1 - Runtime error (unresolved reference, fetch failure, conflict, etc.)
  2 - Usage error (invalid arguments, invalid secret name format, etc.)

Environment variables:
  SECRETSTACK_CONFIG - Path to the config file
  GCP_PROJECT - GCP project ID for gcp connectors without project_id

Configuration:
  Lookup order: --config, SECRETSTACK_CONFIG, ./secretstack.yml,
  ~/.config/secretstack/config.yml
  View current: Run 'secretstack config show'
        """
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to config file (overrides discovery)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log pipeline progress to stderr"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # version command
    _version_parser = subparsers.add_parser(
        "version",
        help="Show version information",
        description="Display the current version of secretstack"
    )

    # config command
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Inspect secretstack configuration"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")

    _config_show_parser = config_subparsers.add_parser(
        "show",
        help="Show current config path",
        description="""
Display the configuration file path and how it was found.

Sources:
  - argument: --config
  - environment: SECRETSTACK_CONFIG
  - working directory: ./secretstack.yml
  - default: ~/.config/secretstack/config.yml
        """
    )

    # secrets command
    secrets_parser = subparsers.add_parser(
        "secrets",
        help="Secret pipeline operations",
        description="Validate declared secrets and render them into manifests"
    )
    secrets_subparsers = secrets_parser.add_subparsers(dest="secrets_command")

    _list_parser = secrets_subparsers.add_parser(
        "list",
        help="List declared secrets",
        description="List every declaration with its resolved connector and provider. Values are not fetched."
    )

    _validate_parser = secrets_subparsers.add_parser(
        "validate",
        help="Validate declarations and fetch every secret",
        description="""
Resolve every declaration and fetch every secret from its connector.

All unresolved references and fetch failures are reported together.
No manifests are produced.
        """
    )

    apply_parser = secrets_subparsers.add_parser(
        "apply",
        help="Render secrets into manifests",
        description="""
Run the full pipeline and print the resulting manifests as multi-document YAML.

Nothing is written if any secret fails to resolve, fetch or merge.
        """
    )
    apply_parser.add_argument(
        "-o", "--output",
        help="Write manifests to this file instead of stdout"
    )

    get_parser = secrets_subparsers.add_parser(
        "get",
        help="Get a secret value",
        description="Fetch one declared secret through its resolved connector and print it."
    )
    get_parser.add_argument(
        "secret_name",
        help="Name of the secret (format: [-._a-zA-Z0-9]+)"
    )
    get_parser.add_argument(
        "--registry",
        help="Registry declaring the secret (required when several do)"
    )
    get_parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Output only the secret value (useful for scripts)"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.INFO)

    # If no command provided, show help and exit with usage error code
    if not args.command:
        parser.print_help()
        sys.exit(2)

    # Route to command handlers
    try:
        if args.command == "version":
            cmd_version(args)
        elif args.command == "config":
            if args.config_command == "show":
                cmd_config_show(args)
            else:
                config_parser.print_help()
                sys.exit(2)
        elif args.command == "secrets":
            handlers = {
                "list": cmd_secrets_list,
                "validate": cmd_secrets_validate,
                "apply": cmd_secrets_apply,
                "get": cmd_secrets_get,
            }
            handler = handlers.get(args.secrets_command)
            if handler is None:
                secrets_parser.print_help()
                sys.exit(2)
            handler(args)
        else:
            parser.print_help()
            sys.exit(2)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
