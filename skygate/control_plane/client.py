"""
Control-plane API client for SKYGATE.

Registers, heartbeats and removes workers on behalf of authenticated SSH
sessions. Every call carries a gateway-signed bearer token.
"""

from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

import aiohttp

from skygate.shared.errors import RegistrationTransportError

WORKERS_PATH = "/api/v1/workers"


class ControlPlaneClient:
    """HTTP client for the control plane's worker endpoints."""

    def __init__(self, timeout_seconds: float = 10.0) -> None:
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _base_url(endpoint: str) -> str:
        return endpoint.rstrip("/")

    @classmethod
    def _worker_url(cls, endpoint: str, worker_name: str, action: str = "") -> str:
        url = f"{cls._base_url(endpoint)}{WORKERS_PATH}/{quote(worker_name, safe='')}"
        return f"{url}/{action}" if action else url

    async def register_worker(
        self,
        endpoint: str,
        token: str,
        payload: dict[str, Any],
        ttl_seconds: float | None = None,
    ) -> None:
        """Register (or heartbeat) a worker. Raises RegistrationTransportError."""
        params = {"ttl": f"{int(ttl_seconds)}s"} if ttl_seconds else None
        await self._request(
            "POST",
            f"{self._base_url(endpoint)}{WORKERS_PATH}",
            endpoint=endpoint,
            token=token,
            json=payload,
            params=params,
        )

    async def deregister_worker(self, endpoint: str, token: str, worker_name: str) -> None:
        """Remove a worker. A worker the control plane no longer knows counts as removed."""
        await self._request(
            "DELETE",
            self._worker_url(endpoint, worker_name),
            endpoint=endpoint,
            token=token,
            ok_statuses={404},
        )

    async def land_worker(self, endpoint: str, token: str, worker_name: str) -> None:
        await self._request(
            "PUT",
            self._worker_url(endpoint, worker_name, "land"),
            endpoint=endpoint,
            token=token,
        )

    async def retire_worker(self, endpoint: str, token: str, worker_name: str) -> None:
        await self._request(
            "PUT",
            self._worker_url(endpoint, worker_name, "retire"),
            endpoint=endpoint,
            token=token,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        endpoint: str,
        token: str,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        ok_statuses: set[int] | None = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"}
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, json=json, params=params, headers=headers
                ) as resp:
                    if 200 <= resp.status < 300 or resp.status in (ok_statuses or ()):
                        return
                    body = (await resp.text())[:200]
                    raise RegistrationTransportError(
                        endpoint,
                        f"{method} {url} returned HTTP {resp.status}: {body}".rstrip(": "),
                        status=resp.status,
                    )
        except asyncio.TimeoutError as exc:
            raise RegistrationTransportError(
                endpoint, f"{method} {url} timed out after {self.timeout_seconds}s"
            ) from exc
        except aiohttp.ClientError as exc:
            raise RegistrationTransportError(endpoint, f"{method} {url}: {exc!r}") from exc
