"""Entity store backends."""

from .base import EntityStore

# Store registry - backend modules register themselves on import
_stores: list[type[EntityStore]] = []


def register_store(store_class: type[EntityStore]) -> type[EntityStore]:
    """Decorator to register a store backend."""
    _stores.append(store_class)
    return store_class


def get_all_stores() -> list[type[EntityStore]]:
    """Return all registered store classes."""
    return _stores.copy()


def open_store(url: str) -> EntityStore:
    """Open the store described by ``url``.

    Supported forms are ``memory://`` and ``sqlite:///path/to/file.db`` (a bare
    path ending in ``.db`` also works).

    Raises:
        ValueError: If no registered backend accepts the URL
    """
    for store_class in _stores:
        if store_class.can_open(url):
            return store_class.from_url(url)
    raise ValueError(f"No store backend for {url!r}")


# Import backends to register them
from derbyvote.store import memory  # noqa: E402,F401
from derbyvote.store import sqlite  # noqa: E402,F401
