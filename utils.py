"""Cache key resolution for incoming request paths."""

from collections.abc import Mapping

from config import INDEX_FALLBACKS

INDEX_DOCUMENT: str = "index.html"


def resolve_cache_key(
    request_path: str,
    store: Mapping[str, bytes],
    index_fallback: str = "any",
) -> str | None:
    """Return the store key serving ``request_path``, or None when nothing does.

    The literal path wins. Otherwise a path ending in ``/`` falls back to its
    ``index.html`` member; with ``index_fallback="root"`` only ``/`` does.
    """
    if index_fallback not in INDEX_FALLBACKS:
        raise ValueError(f"Unsupported index fallback: {index_fallback}")

    if request_path in store:
        return request_path

    if not request_path.endswith("/"):
        return None
    if index_fallback == "root" and request_path != "/":
        return None

    index_key = request_path + INDEX_DOCUMENT
    if index_key in store:
        return index_key
    return None
