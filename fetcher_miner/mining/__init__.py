"""
Mining primitives for the fetcher miner.

Pure helpers with no I/O: nonce encoding, the difficulty predicate, preimage
construction and the error taxonomy shared by the orchestration layer.

Exports
-------
__version__ : str
    Semantic version string for the mining module.
"""

from .version import __version__  # re-export

__all__ = ["__version__"]
