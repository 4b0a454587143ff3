from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List, Optional, Sequence

import aiohttp

from .mining.errors import ContextInitTimeout, HashServiceError

log = logging.getLogger("fetcher_miner.hash")


class HashEngineClient:
    """
    Client for the local hash compute service.

    The service owns the expensive per-challenge context (ROM); this client
    asks it to rebuild that context, probes readiness, and submits preimage
    batches. Digests come back as hex strings in request order.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:9001",
        *,
        timeout: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _call(self, method: str, path: str, payload: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._ensure_session().request(method, url, json=payload) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise HashServiceError(
                        message=f"{method} {path} answered HTTP {resp.status}",
                        context={"status": resp.status, "body": text[:200]},
                    )
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise HashServiceError(
                message=f"{method} {path} failed: {exc or type(exc).__name__}",
                context={"type": type(exc).__name__},
            ) from exc

    # ------------- compute context -------------

    async def init_rom(self, no_pre_mine: str) -> None:
        await self._call("POST", "/init", {"no_pre_mine": no_pre_mine})
        log.info("[hash] context init requested no_pre_mine=%s…", no_pre_mine[:16])

    async def is_rom_ready(self) -> bool:
        body = await self._call("GET", "/health")
        return bool(isinstance(body, dict) and body.get("romInitialized"))

    # ------------- hashing -------------

    async def hash_batch(self, preimages: Sequence[str]) -> List[str]:
        if not preimages:
            return []
        body = await self._call("POST", "/hash-batch", {"preimages": list(preimages)})
        hashes = body.get("hashes") if isinstance(body, dict) else None
        if not isinstance(hashes, list) or len(hashes) != len(preimages):
            raise HashServiceError(
                message="hash batch size mismatch",
                context={
                    "sent": len(preimages),
                    "received": len(hashes) if isinstance(hashes, list) else None,
                },
            )
        return [str(h) for h in hashes]


async def wait_until_ready(
    engine: Any,
    *,
    max_wait: float = 60.0,
    poll_interval: float = 0.5,
) -> float:
    """
    Poll ``engine.is_rom_ready()`` until it reports True.

    Returns the seconds waited; raises ContextInitTimeout after ``max_wait``.
    Probe errors count as "not ready yet".
    """
    start = time.monotonic()
    while True:
        try:
            if await engine.is_rom_ready():
                return time.monotonic() - start
        except HashServiceError as exc:
            log.debug("readiness probe failed: %s", exc)
        waited = time.monotonic() - start
        if waited >= max_wait:
            raise ContextInitTimeout(waited=waited)
        await asyncio.sleep(min(poll_interval, max_wait - waited))


__all__ = ["HashEngineClient", "wait_until_ready"]
