"""Deep-merge and path helpers for resource composition.

Mappings merge key by key, recursively. Lists and scalars from the later
value replace the earlier one wholesale; list items are never concatenated.
"""
import copy
from typing import Any, Mapping, Sequence, Tuple, Union

Path = Union[str, Sequence[Union[str, int]]]


def deep_merge(base: Any, override: Any) -> Any:
    """Return a new value with override deep-merged into base. Inputs are not modified."""
    if isinstance(base, Mapping) and isinstance(override, Mapping):
        result = {key: copy.deepcopy(value) for key, value in base.items()}
        for key, value in override.items():
            if key in result:
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = copy.deepcopy(value)
        return result
    return copy.deepcopy(override)


def parse_path(path: Path) -> Tuple[Union[str, int], ...]:
    """
    Split a path expression into segments.

    Example:
        parse_path("spec.template.spec.containers.0.env")
        # ("spec", "template", "spec", "containers", "0", "env")
    """
    if isinstance(path, str):
        return tuple(path.split(".")) if path else ()
    return tuple(path)


def format_path(path: Path) -> str:
    return ".".join(str(segment) for segment in parse_path(path))


def _is_index(segment: Union[str, int]) -> bool:
    if isinstance(segment, bool):
        return False
    if isinstance(segment, int):
        return True
    return segment.lstrip("-").isdigit()


def merge_at_path(target: Any, segments: Sequence[Union[str, int]], value: Any) -> Any:
    """
    Deep-merge value into target at the given segments and return the result.

    Missing mapping keys are created unless the next segment is a list index.
    target may be modified in place.

    Raises:
        ValueError: If a segment traverses a scalar, indexes past a list or
            indexes a missing key
    """
    if not segments:
        return deep_merge(target, value)

    head, rest = segments[0], segments[1:]

    if isinstance(target, list):
        try:
            index = int(head)
        except (TypeError, ValueError):
            raise ValueError(f"segment '{head}' is not a list index") from None
        if not -len(target) <= index < len(target):
            raise ValueError(f"list index {index} out of range (length {len(target)})")
        target[index] = merge_at_path(target[index], rest, value)
        return target

    if target is None:
        target = {}
    if not isinstance(target, dict):
        raise ValueError(f"segment '{head}' traverses a {type(target).__name__} value")

    child = target.get(head)
    if child is None and rest:
        if _is_index(rest[0]):
            # Lists are never created, only indexed
            raise ValueError(f"'{head}' is missing, cannot index it with '{rest[0]}'")
        child = {}
    target[head] = merge_at_path(child, rest, value)
    return target


def get_at_path(target: Any, path: Path) -> Any:
    """Read the value at path, raising KeyError if it is absent."""
    current = target
    for segment in parse_path(path):
        if isinstance(current, list):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                raise KeyError(format_path(path)) from None
        elif isinstance(current, Mapping) and segment in current:
            current = current[segment]
        else:
            raise KeyError(format_path(path))
    return current
