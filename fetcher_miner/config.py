from __future__ import annotations

import os
import pathlib
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional

from .mining.errors import ConfigurationError

ENV_PREFIX = "FETCHER_"


@dataclass(frozen=True)
class MinerConfig:
    """
    Runtime settings for the orchestrator.

    Every field can be set from the environment as ``FETCHER_<FIELD>`` (upper
    case); CLI flags override the environment.
    """

    api_base: str = "https://scavenger.prod.gd.midnighttge.io"
    hash_url: str = "http://127.0.0.1:9001"
    poll_interval: float = 30.0
    worker_threads: int = 10
    batch_size: int = 1000
    rom_max_wait: float = 60.0
    rom_poll_interval: float = 0.5
    cancel_grace: float = 1.0
    registration_delay: float = 1.5
    submit_timeout: float = 30.0
    http_timeout: float = 10.0
    storage_dir: pathlib.Path = field(default_factory=lambda: pathlib.Path("storage"))
    devfee_url: str = "https://miner.ada.markets/api/get-dev-address"
    devfee_ratio: int = 25
    devfee_max_catchup: int = 10
    devfee_cache_ttl: float = 3600.0
    event_queue_size: int = 1000

    def __post_init__(self) -> None:
        if self.worker_threads < 1:
            raise ConfigurationError(message="worker_threads must be >= 1")
        if self.batch_size < 1:
            raise ConfigurationError(message="batch_size must be >= 1")
        if self.poll_interval <= 0:
            raise ConfigurationError(message="poll_interval must be positive")
        if self.rom_poll_interval <= 0 or self.rom_max_wait < 0:
            raise ConfigurationError(message="invalid compute-context wait settings")
        if self.devfee_ratio < 0:
            raise ConfigurationError(message="devfee_ratio must be >= 0 (0 disables)")
        if self.devfee_max_catchup < 1:
            raise ConfigurationError(message="devfee_max_catchup must be >= 1")

    @property
    def devfee_enabled(self) -> bool:
        return self.devfee_ratio > 0 and bool(self.devfee_url)

    @property
    def devfee_cache_file(self) -> pathlib.Path:
        return self.storage_dir / ".devfee_cache.json"

    def with_overrides(self, **overrides: Any) -> "MinerConfig":
        """Copy with every non-None override applied."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(clean))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MinerConfig":
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is not None and raw != "":
                values[f.name] = raw
        return cls(**_coerce(values))


def _coerce(values: Dict[str, Any]) -> Dict[str, Any]:
    types = {f.name: f.type for f in fields(MinerConfig)}
    out: Dict[str, Any] = {}
    for name, value in values.items():
        if name not in types:
            raise ConfigurationError(message=f"unknown setting {name!r}")
        kind = types[name]
        try:
            if kind == "int":
                out[name] = int(value)
            elif kind == "float":
                out[name] = float(value)
            elif kind == "pathlib.Path":
                out[name] = pathlib.Path(value)
            else:
                out[name] = str(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                message=f"invalid value for {name}: {value!r}",
                context={"expected": kind},
            ) from None
    return out


__all__ = ["MinerConfig", "ENV_PREFIX"]
