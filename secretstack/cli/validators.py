"""Input validation for CLI arguments."""
import re
import sys

# Kubernetes Secret data keys: alphanumerics, '-', '_' and '.'
SECRET_NAME_PATTERN = re.compile(r'^[-._a-zA-Z0-9]+$')


def validate_secret_name(name: str) -> None:
    """
    Validate secret name is usable as a Kubernetes Secret data key.

    Args:
        name: Secret name to validate

    Raises:
        SystemExit with code 2 if validation fails
    """
    if not name:
        print("Error: Secret name cannot be empty", file=sys.stderr)
        print("\nSecret names must match: [-._a-zA-Z0-9]+", file=sys.stderr)
        sys.exit(2)

    if name in (".", "..") or not SECRET_NAME_PATTERN.match(name):
        print(f"Error: Invalid secret name '{name}'", file=sys.stderr)
        print("\nAllowed characters: letters, numbers, dots (.), underscores (_), hyphens (-)", file=sys.stderr)
        print("Not allowed: spaces, slashes, special characters (@, $, !, etc.)", file=sys.stderr)
        print("\nExamples of valid names:", file=sys.stderr)
        print("  ✓ API_KEY", file=sys.stderr)
        print("  ✓ db-password", file=sys.stderr)
        print("  ✓ tls.crt", file=sys.stderr)
        print("\nExamples of invalid names:", file=sys.stderr)
        print("  ✗ MY SECRET (contains space)", file=sys.stderr)
        print("  ✗ app/key (contains slash)", file=sys.stderr)
        print("  ✗ ..", file=sys.stderr)
        sys.exit(2)


def validate_registry_name(name: str, available) -> None:
    """
    Validate a --registry argument against the configured registries.

    Raises:
        SystemExit with code 2 if the registry is unknown
    """
    if name not in available:
        print(f"Error: Unknown registry '{name}'", file=sys.stderr)
        print(f"\nConfigured registries: {', '.join(available) or '(none)'}", file=sys.stderr)
        sys.exit(2)
