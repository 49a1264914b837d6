"""
Cache key derivation for read requests.
"""

import re
from typing import Any, Dict, Optional
from urllib.parse import urlencode

CACHE_KEY_PREFIX = "aem"

_SLASHES = re.compile(r"/{2,}")


def normalize_path(path: str) -> str:
    """Collapse duplicate slashes, force a leading slash, drop a trailing one."""
    path = _SLASHES.sub("/", "/" + path.strip())
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def _flatten(params: Dict[str, Any]):
    for key in sorted(params):
        value = params[key]
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for item in sorted(str(v) for v in value):
                yield key, item
        elif isinstance(value, bool):
            yield key, "true" if value else "false"
        else:
            yield key, str(value)


def generate_cache_key(method: str, path: str, params: Optional[Dict[str, Any]] = None) -> str:
    """Deterministic fingerprint of a read request.

    Bodies never take part: only method, normalized path and sorted query
    parameters.
    """
    query = urlencode(list(_flatten(params))) if params else ""
    return f"{CACHE_KEY_PREFIX}:{method.upper()}:{normalize_path(path)}:{query}"
