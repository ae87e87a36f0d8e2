import asyncio
from typing import Dict, Optional, Tuple

import httpx


async def http_request(method: str, url: str, *,
                       headers: Optional[Dict[str, str]] = None,
                       params: Optional[Dict[str, str]] = None,
                       data: Optional[str] = None,
                       timeout: float = 5.0,
                       retries: int = 2,
                       backoff: float = 0.2,
                       raise_for_status: bool = True) -> Tuple[int, str, Dict[str, str]]:
    """
    Core HTTP helper behind `fetch`.

    Returns (status, body text, headers with lower-cased names). Non-2xx
    responses raise unless `raise_for_status` is False. Failed attempts are
    retried with exponential backoff.
    """
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for attempt in range(retries + 1):
            try:
                body = data.encode("utf-8") if isinstance(data, str) else data
                request_headers = dict(headers or {})
                if body is not None:
                    request_headers.setdefault("Content-Type", "text/plain; charset=utf-8")
                resp = await client.request(
                    method.upper(),
                    url,
                    headers=request_headers,
                    params=dict(params or {}),
                    content=body,
                )
                headers_map = {str(k).lower(): v for k, v in resp.headers.items()}
                if raise_for_status and not 200 <= resp.status_code < 300:
                    preview = (resp.text or "")[:200]
                    raise RuntimeError(f"HTTP {resp.status_code} for {url}: {preview}")
                return int(resp.status_code), resp.text, headers_map
            except Exception:
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                raise
