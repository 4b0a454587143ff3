from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from .challenge import ChallengeResponse
from .mining.errors import ChallengeFetchFailed, RegistrationFailed, SubmitRejected

log = logging.getLogger("fetcher_miner.api")
JSON = Dict[str, Any]


@dataclass(frozen=True)
class SubmitResult:
    """Decoded 2xx answer to a solution submission."""

    status: int
    data: Any = None

    @property
    def crypto_receipt(self) -> Optional[Any]:
        if isinstance(self.data, dict):
            return self.data.get("crypto_receipt")
        return None


async def _read_body(resp: aiohttp.ClientResponse) -> Any:
    try:
        return await resp.json(content_type=None)
    except (ValueError, aiohttp.ContentTypeError):
        return await resp.text(errors="replace")


class ScavengerClient:
    """
    Minimal asyncio client for the challenge service.

    Usage:
        client = ScavengerClient("https://scavenger.example")
        state = await client.fetch_challenge()
        result = await client.submit_solution(address, challenge_id, nonce)
        await client.close()
    """

    def __init__(
        self,
        api_base: str,
        *,
        timeout: float = 10.0,
        submit_timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._submit_timeout = aiohttp.ClientTimeout(total=submit_timeout)
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

    def _url(self, *parts: str) -> str:
        return "/".join([self.api_base, *(quote(p, safe="") for p in parts)])

    # ------------- challenge -------------

    async def fetch_challenge(self) -> ChallengeResponse:
        url = self._url("challenge")
        try:
            async with self._ensure_session().get(url) as resp:
                body = await _read_body(resp)
                if resp.status != 200:
                    raise ChallengeFetchFailed(
                        message=f"challenge endpoint answered HTTP {resp.status}",
                        context={"status": resp.status},
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ChallengeFetchFailed(
                message=f"challenge fetch failed: {exc or type(exc).__name__}",
                context={"type": type(exc).__name__},
            ) from exc
        return ChallengeResponse.from_dict(body)

    # ------------- registration -------------

    async def fetch_terms(self) -> str:
        url = self._url("TandC")
        async with self._ensure_session().get(url) as resp:
            body = await _read_body(resp)
            if resp.status != 200 or not isinstance(body, dict) or "message" not in body:
                raise RegistrationFailed(
                    message=f"terms fetch failed: HTTP {resp.status}",
                    context={"status": resp.status},
                )
        return str(body["message"])

    async def register(self, address: str, signature: str, public_key: str) -> JSON:
        url = self._url("register", address, signature, public_key)
        async with self._ensure_session().post(url, json={}) as resp:
            body = await _read_body(resp)
            if not 200 <= resp.status < 300:
                detail = body.get("message") if isinstance(body, dict) else body
                raise RegistrationFailed(
                    message=f"register answered HTTP {resp.status}: {detail}",
                    address=address,
                    context={"status": resp.status},
                )
        log.info("[api] registered address=%s", address)
        return body if isinstance(body, dict) else {}

    # ------------- solutions -------------

    async def submit_solution(self, address: str, challenge_id: str, nonce: str) -> SubmitResult:
        """
        POST /solution/{address}/{challenge_id}/{nonce}.

        Any 2xx is an acceptance. Every other status raises SubmitRejected;
        transport errors propagate as aiohttp/asyncio exceptions.
        """
        url = self._url("solution", address, challenge_id, nonce)
        async with self._ensure_session().post(url, json={}, timeout=self._submit_timeout) as resp:
            body = await _read_body(resp)
            status = resp.status
            reason = resp.reason
        if not 200 <= status < 300:
            detail = body.get("message") if isinstance(body, dict) else body
            raise SubmitRejected(
                message=f"server rejected solution: {status} {reason or ''}".strip(),
                status=status,
                details=str(detail) if detail else None,
                context={"response": body},
            )
        log.info("[api] submit accepted address=%s challenge=%s nonce=%s", address, challenge_id, nonce)
        return SubmitResult(status=status, data=body)


__all__ = ["ScavengerClient", "SubmitResult"]
