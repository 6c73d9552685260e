"""Key codec: request descriptors to canonical cache keys."""

from collections.abc import Mapping

from querysync.types import CacheKey, RequestDescriptor, Scalar

# Invalidation target: resource prefix, exact key or exact descriptor
KeyTarget = str | CacheKey | RequestDescriptor

_ESCAPE_MAP = {"\\": "\\\\", "/": "\\/", "&": "\\&", "=": "\\=", "?": "\\?"}


def _type_tag(value: Scalar) -> str:
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return "b"
    if isinstance(value, int):
        return "i"
    if isinstance(value, float):
        return "f"
    return "s"


def _canonical_value(value: Scalar) -> Scalar:
    # repr keeps NaN equal to itself
    if isinstance(value, float):
        return repr(value)
    return value


def split_resource(resource: str) -> tuple[str, ...]:
    """Split a "/"-separated resource into its segments."""
    return tuple(part for part in resource.split("/") if part)


def encode(
    descriptor: RequestDescriptor,
    *,
    defaults: Mapping[str, Scalar] | None = None,
) -> CacheKey:
    """Derive the canonical cache key for a descriptor.

    Parameters set to None, or to the value given for them in ``defaults``,
    are omitted so that absent and default-valued parameters share a key.
    Insertion order never matters.
    """
    defaults = defaults or {}
    params = []
    for name in sorted(descriptor.params):
        value = descriptor.params[name]
        if value is None:
            continue
        if name in defaults:
            default = defaults[name]
            if _type_tag(default) == _type_tag(value) and _canonical_value(
                default
            ) == _canonical_value(value):
                continue
        params.append((name, _type_tag(value), _canonical_value(value)))
    return CacheKey(path=descriptor.segments, params=tuple(params))


def matches_prefix(key: CacheKey, prefix: KeyTarget) -> bool:
    """Check whether ``key`` is covered by an invalidation target.

    A string matches segment-wise on the resource path regardless of
    parameters; a CacheKey or RequestDescriptor matches exactly.
    """
    if isinstance(prefix, CacheKey):
        return key == prefix
    if isinstance(prefix, RequestDescriptor):
        return key == encode(prefix)
    parts = split_resource(prefix)
    if not parts or len(parts) > len(key.path):
        return False
    return key.path[: len(parts)] == parts


def format_key(key: CacheKey) -> str:
    """Readable form of a key, e.g. ``items?page=1&sort=name``."""

    def escape(part: object) -> str:
        result = str(part)
        for char, escaped in _ESCAPE_MAP.items():
            result = result.replace(char, escaped)
        return result

    path = "/".join(escape(p) for p in key.path)
    if not key.params:
        return path
    query = "&".join(f"{escape(name)}={escape(value)}" for name, _, value in key.params)
    return f"{path}?{query}"
