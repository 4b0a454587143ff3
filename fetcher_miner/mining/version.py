from __future__ import annotations

import os
from importlib import metadata

DISTRIBUTION = "fetcher-miner"

# Used when running from a source tree that was never installed.
__version__ = "0.1.0"


def installed_version(distribution: str = DISTRIBUTION) -> str | None:
    try:
        return metadata.version(distribution)
    except metadata.PackageNotFoundError:
        return None


def get_version() -> str:
    """
    Version shown by ``--version`` and in the startup log.

    FETCHER_MINER_VERSION wins when set (release builds stamp it); otherwise
    the installed distribution's metadata, then the source-tree fallback.
    """
    env = os.getenv("FETCHER_MINER_VERSION")
    if env:
        return env
    return installed_version() or __version__


__all__ = ["DISTRIBUTION", "__version__", "get_version", "installed_version"]
