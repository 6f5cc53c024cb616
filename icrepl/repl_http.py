import asyncio
from typing import Optional, Dict

import httpx

from icrepl.repl_datatypes import CallError
from icrepl.repl_runtime import Invoker


class HttpInvoker(Invoker):
    """
    Posts encoded payloads to `{base_url}/api/call/{canister_id}/{method}`.

    Transport failures are retried `retries` times with exponential backoff;
    non-2xx replies are not retried. Both end up as CallError.
    """

    def __init__(self, base_url: str, *, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 30.0, retries: int = 0, backoff: float = 0.2,
                 headers: Optional[Dict[str, str]] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._client = client

    def url_for(self, canister_id: str, method: str) -> str:
        return f"{self.base_url}/api/call/{canister_id}/{method}"

    async def _post(self, client: httpx.AsyncClient, url: str, payload: bytes) -> httpx.Response:
        last_exc = None
        for attempt in range(self.retries + 1):
            try:
                return await client.post(url, content=payload, headers=self.headers)
            except httpx.HTTPError as e:
                last_exc = e
                if attempt < self.retries:
                    await asyncio.sleep(self.backoff * (2 ** attempt))
        raise CallError(f"POST {url} failed: {last_exc}") from last_exc

    async def invoke(self, canister_id: str, method: str, payload: bytes) -> bytes:
        url = self.url_for(canister_id, method)
        if self._client is not None:
            resp = await self._post(self._client, url, payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await self._post(client, url, payload)
        if not 200 <= resp.status_code < 300:
            preview = (resp.text or "")[:200]
            raise CallError(f"HTTP {resp.status_code} for {canister_id}.{method}: {preview}")
        return resp.content
