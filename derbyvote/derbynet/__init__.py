"""DerbyNet integration: HTTP client and synchronisation."""

from .client import DerbyNetClient, DerbyNetConnectionError, DerbyNetError
from .sync import DerbyNetSync, PushResult

__all__ = [
    "DerbyNetClient",
    "DerbyNetConnectionError",
    "DerbyNetError",
    "DerbyNetSync",
    "PushResult",
]
