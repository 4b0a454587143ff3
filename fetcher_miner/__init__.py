"""
Multi-address proof-of-work challenge miner.

`MiningOrchestrator` polls the challenge API, drives the external hash
service and submits solutions; the CLI entry point wraps it.
"""

from .config import MinerConfig
from .orchestrator import MiningOrchestrator

__all__ = ["MinerConfig", "MiningOrchestrator"]
